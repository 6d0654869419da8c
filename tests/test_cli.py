"""Tests for the command-line interface."""

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from clipkeep.api import ClipKeeper
from clipkeep.cli import app
from clipkeep.types import ItemKind

from conftest import make_item, ts

runner = CliRunner()
POST = "clipkeep.providers.embeddings.requests.post"


def _vector_response(vector):
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"embedding": vector}
    return response


@pytest.fixture
def store_dir(tmp_path, monkeypatch):
    monkeypatch.setattr("clipkeep.embedding_client.url_reachable", lambda url: True)
    monkeypatch.delenv("CLIPKEEP_VERBOSE", raising=False)
    return tmp_path


def _seed(store_dir, *items):
    with ClipKeeper(store_dir, ops_log=False) as ck:
        return [ck.store.insert_item(item) for item in items]


def _run(store_dir, *args):
    return runner.invoke(app, list(args), env={"CLIPKEEP_STORE_PATH": str(store_dir)})


class TestListing:

    def test_list_newest_first(self, store_dir):
        _seed(store_dir, make_item("older", timestamp=ts(1)), make_item("newer", timestamp=ts(2)))
        result = _run(store_dir, "list")
        assert result.exit_code == 0
        assert result.stdout.index("newer") < result.stdout.index("older")

    def test_no_subcommand_lists(self, store_dir):
        _seed(store_dir, make_item("hello there"))
        result = _run(store_dir)
        assert result.exit_code == 0
        assert "hello there" in result.stdout

    def test_list_json(self, store_dir):
        _seed(store_dir, make_item("json me", tags={"t"}))
        result = _run(store_dir, "--json", "list")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data[0]["content"] == "json me"
        assert data[0]["type"] == "Text"
        assert data[0]["tags"] == ["t"]

    def test_get(self, store_dir):
        (item_id,) = _seed(store_dir, make_item("full\ncontent", tags={"x"}))
        result = _run(store_dir, "get", str(item_id))
        assert result.exit_code == 0
        assert "full\ncontent" in result.stdout
        assert "tags: x" in result.stdout

    def test_get_missing(self, store_dir):
        result = _run(store_dir, "get", "999")
        assert result.exit_code == 1


class TestFind:

    def test_lexical(self, store_dir):
        _seed(store_dir, make_item("Foobar baz", timestamp=ts(1)), make_item("foo only", timestamp=ts(2)))
        result = _run(store_dir, "--json", "find", "foo bar")
        assert result.exit_code == 0
        assert [d["content"] for d in json.loads(result.stdout)] == ["Foobar baz"]

    def test_by_tag(self, store_dir):
        _seed(store_dir, make_item("a", tags={"work"}, timestamp=ts(1)), make_item("b", timestamp=ts(2)))
        result = _run(store_dir, "--json", "find", "--tag", "work")
        assert [d["content"] for d in json.loads(result.stdout)] == ["a"]

    def test_semantic(self, store_dir):
        with ClipKeeper(store_dir, ops_log=False) as ck:
            hit = ck.store.insert_item(make_item("hit", timestamp=ts(1)))
            miss = ck.store.insert_item(make_item("miss", timestamp=ts(2)))
            ck.store.save_embedding(hit, [1.0, 0.0])
            ck.store.save_embedding(miss, [0.0, 1.0])
        with patch(POST, return_value=_vector_response([1.0, 0.0])):
            result = _run(store_dir, "--json", "find", "--semantic", "anything")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [d["id"] for d in data] == [hit]
        assert data[0]["score"] == 1.0

    def test_semantic_error_exits_nonzero(self, store_dir):
        response = MagicMock(status_code=500)
        with patch(POST, return_value=response):
            result = _run(store_dir, "find", "--semantic", "anything")
        assert result.exit_code == 1
        assert "Server error (code: 500)" in result.output


class TestItems:

    def test_delete(self, store_dir):
        (item_id,) = _seed(store_dir, make_item("bye"))
        result = _run(store_dir, "delete", str(item_id))
        assert result.exit_code == 0
        with ClipKeeper(store_dir, ops_log=False) as ck:
            assert ck.store.get_item(item_id) is None

    def test_delete_missing(self, store_dir):
        assert _run(store_dir, "delete", "77").exit_code == 1

    def test_copy(self, store_dir):
        ids = _seed(store_dir, make_item("one", timestamp=ts(1)), make_item("two", timestamp=ts(2)))
        with patch("clipkeep.capture.pyperclip.copy") as copy:
            result = _run(store_dir, "copy", *map(str, ids))
        assert result.exit_code == 0
        copy.assert_called_once_with("one\ntwo")

    def test_copy_image_only_fails_without_image_support(self, store_dir):
        (item_id,) = _seed(store_dir, make_item(kind=ItemKind.IMAGE, image_data=b"png"))
        result = _run(store_dir, "copy", str(item_id))
        assert result.exit_code == 1
        assert "cannot write images" in result.output

    def test_watch_once(self, store_dir):
        with patch("clipkeep.capture.pyperclip.paste", return_value="from the clipboard"), \
             patch(POST, return_value=_vector_response([0.1, 0.2])):
            result = _run(store_dir, "watch", "--once")
        assert result.exit_code == 0
        assert "from the clipboard" in result.stdout
        with ClipKeeper(store_dir, ops_log=False) as ck:
            (item,) = ck.store.list_items(10, 0)
            assert item.content == "from the clipboard"
            assert ck.store.get_embedding(item.id) == pytest.approx([0.1, 0.2])


class TestTags:

    def test_tag_and_untag(self, store_dir):
        (item_id,) = _seed(store_dir, make_item("x"))
        assert _run(store_dir, "tag", str(item_id), "Work").exit_code == 0
        result = _run(store_dir, "--json", "tags")
        assert json.loads(result.stdout) == ["Work"]
        assert _run(store_dir, "untag", str(item_id), "Work").exit_code == 0
        assert _run(store_dir, "untag", str(item_id), "Work").exit_code == 1

    def test_tag_reserved_rejected(self, store_dir):
        (item_id,) = _seed(store_dir, make_item("x"))
        result = _run(store_dir, "tag", str(item_id), "AI")
        assert result.exit_code == 1
        assert "reserved" in result.output

    def test_tag_missing_item(self, store_dir):
        assert _run(store_dir, "tag", "404", "x").exit_code == 1

    def test_tags_add(self, store_dir):
        assert _run(store_dir, "tags", "--add", "Empty").exit_code == 0
        assert json.loads(_run(store_dir, "--json", "tags").stdout) == ["Empty"]

    def test_rename_conflict(self, store_dir):
        _seed(store_dir, make_item("a", tags={"first"}), make_item("b", tags={"second"}))
        result = _run(store_dir, "tag-rename", "first", "second")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_rename_and_delete(self, store_dir):
        _seed(store_dir, make_item("a", tags={"first"}))
        assert _run(store_dir, "tag-rename", "first", "renamed").exit_code == 0
        assert json.loads(_run(store_dir, "--json", "tags").stdout) == ["renamed"]
        assert _run(store_dir, "tag-delete", "renamed").exit_code == 0
        assert json.loads(_run(store_dir, "--json", "tags").stdout) == []
        assert _run(store_dir, "tag-delete", "renamed").exit_code == 1


class TestConfig:

    def test_show_defaults(self, store_dir):
        result = _run(store_dir, "config")
        assert result.exit_code == 0
        assert "provider: local (Local)" in result.stdout

    def test_set_provider_persists(self, store_dir):
        assert _run(store_dir, "config", "--provider", "openai", "--openai-key", "sk-abcdefghij").exit_code == 0
        data = json.loads(_run(store_dir, "--json", "config").stdout)
        assert data["provider"] == "openai"
        assert data["openai_api_key_set"] is True

    def test_invalid_provider(self, store_dir):
        result = _run(store_dir, "config", "--provider", "nope")
        assert result.exit_code == 1


class TestEmbeddings:

    def test_backfill(self, store_dir):
        _seed(store_dir, make_item("one", timestamp=ts(1)), make_item("two", timestamp=ts(2)))
        with patch(POST, return_value=_vector_response([1.0, 0.0])):
            result = _run(store_dir, "--json", "embeddings", "backfill")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["state"] == "completed"
        assert data["saved"] == 2

    def test_status_and_clear(self, store_dir):
        with ClipKeeper(store_dir, ops_log=False) as ck:
            item_id = ck.store.insert_item(make_item("x"))
            ck.store.save_embedding(item_id, [1.0])
        status = json.loads(_run(store_dir, "--json", "embeddings", "status").stdout)
        assert status["embeddings"]["local"] == 1
        assert status["missing"] == 0

        result = _run(store_dir, "embeddings", "clear", "--yes")
        assert result.exit_code == 0
        assert "Cleared 1 Local embeddings" in result.output

    def test_connection_ok(self, store_dir):
        with patch(POST, return_value=_vector_response([0.0] * 4)):
            result = _run(store_dir, "embeddings", "test")
        assert result.exit_code == 0
        assert "Local: OK (4 dimensions)" in result.stdout

    def test_connection_failure(self, store_dir):
        with patch(POST, return_value=MagicMock(status_code=503)):
            result = _run(store_dir, "embeddings", "test")
        assert result.exit_code == 1
        assert "currently unavailable" in result.output
