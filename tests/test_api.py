"""Tests for the ClipKeeper facade."""

import pytest

from clipkeep.api import ClipKeeper
from clipkeep.backfill import BackfillState
from clipkeep.session import Session
from clipkeep.types import ItemKind

from conftest import FakeClipboard, make_item, ts


@pytest.fixture
def keeper(tmp_path, client):
    ck = ClipKeeper(tmp_path, clipboard=FakeClipboard(), client=client, ops_log=False)
    yield ck
    ck.close()


class TestListing:

    def test_recent_is_newest_first(self, keeper):
        for n in range(1, 4):
            keeper.store.insert_item(make_item(f"item {n}", timestamp=ts(n)))
        assert [i.content for i in keeper.recent()] == ["item 3", "item 2", "item 1"]
        assert [i.content for i in keeper.recent(limit=1, offset=1)] == ["item 2"]

    def test_recent_defaults_to_page_size(self, keeper):
        for n in range(1, 15):
            keeper.store.insert_item(make_item(f"item {n}", timestamp=ts(n)))
        assert len(keeper.recent()) == keeper.config.page_size

    def test_find_whole_store_or_newest_page(self, keeper):
        keeper.store.insert_item(make_item("needle", timestamp=ts(1)))
        for n in range(2, 15):
            keeper.store.insert_item(make_item(f"hay {n}", timestamp=ts(n)))
        assert [i.content for i in keeper.find("needle")] == ["needle"]
        assert keeper.find("needle", search_all=False) == []


class TestCopyItems:

    def test_texts_joined_with_newlines(self, keeper):
        a = keeper.store.insert_item(make_item("first", timestamp=ts(1)))
        b = keeper.store.insert_item(make_item("https://example.com", kind=ItemKind.LINK, timestamp=ts(2)))
        assert keeper.copy_items([a, b]) == 2
        assert keeper.clipboard.written_text == ["first\nhttps://example.com"]

    def test_single_image_written_as_image(self, keeper):
        image = keeper.store.insert_item(make_item(kind=ItemKind.IMAGE, image_data=b"png"))
        assert keeper.copy_items([image]) == 1
        assert keeper.clipboard.written_images == [b"png"]

    def test_missing_ids_copy_nothing(self, keeper):
        assert keeper.copy_items([404]) == 0
        assert keeper.clipboard.written_text == []


class TestComponents:

    def test_backfill_and_clear(self, keeper):
        keeper.store.insert_item(make_item("embed me"))
        result = keeper.backfill_job().run()
        assert result.state is BackfillState.COMPLETED
        assert keeper.clear_embeddings() == 1

    def test_session_uses_configured_page_size(self, keeper):
        session = keeper.session()
        try:
            assert isinstance(session, Session)
            assert session._cursor.page_size == keeper.config.page_size
            assert session.snapshot().items == ()
        finally:
            session.close()
