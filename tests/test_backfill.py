"""Tests for the embedding backfill job."""

from unittest.mock import patch

from clipkeep.backfill import BackfillJob, BackfillState
from clipkeep.types import ItemKind

from conftest import make_item, ts


def _insert_texts(store, count):
    return [store.insert_item(make_item(f"text {n}", timestamp=ts(n))) for n in range(1, count + 1)]


class TestBackfill:

    def test_embeds_all_missing(self, store, client):
        ids = _insert_texts(store, 3)
        result = BackfillJob(store, client).run()
        assert result.state is BackfillState.COMPLETED
        assert (result.processed, result.total, result.saved, result.failed) == (3, 3, 3, 0)
        assert all(store.get_embedding(i) is not None for i in ids)
        assert store.items_missing_embedding() == []

    def test_skips_items_that_have_embeddings(self, store, client, mock_providers):
        first, second = _insert_texts(store, 2)
        store.save_embedding(first, [1.0, 0.0])
        result = BackfillJob(store, client).run()
        assert result.total == 1
        assert mock_providers["local"].embed_calls == ["text 2"]

    def test_ignores_images_and_links(self, store, client, mock_providers):
        store.insert_item(make_item(kind=ItemKind.IMAGE, image_data=b"png"))
        store.insert_item(make_item("https://example.com", kind=ItemKind.LINK))
        result = BackfillJob(store, client).run()
        assert result.state is BackfillState.COMPLETED
        assert result.total == 0
        assert mock_providers["local"].embed_calls == []

    def test_per_item_failure_is_isolated(self, store, client, mock_providers):
        ids = _insert_texts(store, 5)
        mock_providers["local"].fail_on.add("text 3")
        result = BackfillJob(store, client).run()
        assert result.state is BackfillState.COMPLETED
        assert result.processed == 5
        assert result.saved == 4
        assert result.failed == 1
        assert store.get_embedding(ids[2]) is None
        assert [i.id for i in store.items_missing_embedding()] == [ids[2]]

    def test_progress_after_every_item(self, store, client):
        _insert_texts(store, 4)
        progress = []
        BackfillJob(store, client, on_progress=lambda p, t: progress.append((p, t))).run()
        assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]

    def test_cancel_at_item_boundary(self, store, client, mock_providers):
        _insert_texts(store, 100)
        job = None

        def progress(processed, total):
            if processed == 10:
                job.cancel()

        job = BackfillJob(store, client, on_progress=progress)
        result = job.run()
        assert result.state is BackfillState.CANCELLED
        assert 1 <= result.saved <= 10
        assert result.processed == 10
        assert len(mock_providers["local"].embed_calls) == 10
        assert store.embedding_counts()["local"] == result.saved

    def test_unreadable_store_is_failed(self, store, client, mock_providers):
        _insert_texts(store, 2)
        store.close()
        result = BackfillJob(store, client).run()
        assert result.state is BackfillState.FAILED
        assert "Failed to fetch text items without embeddings" in result.error
        assert result.total == 0
        assert mock_providers["local"].embed_calls == []

    def test_snapshot_error_is_failed(self, store, client):
        with patch.object(store, "items_missing_embedding", side_effect=RuntimeError("disk gone")):
            result = BackfillJob(store, client).run()
        assert result.state is BackfillState.FAILED
        assert result.error == "disk gone"

    def test_snapshot_taken_once(self, store, client, mock_providers):
        _insert_texts(store, 2)

        def progress(processed, total):
            # Items captured mid-run wait for the next backfill
            store.insert_item(make_item(f"late {processed}", timestamp=ts(50 + processed)))

        result = BackfillJob(store, client, on_progress=progress).run()
        assert result.total == 2
        assert mock_providers["local"].embed_calls == ["text 1", "text 2"]
        assert len(store.items_missing_embedding()) == 2

    def test_uses_active_provider(self, store, client, settings):
        ids = _insert_texts(store, 2)
        settings.update(provider="google")
        BackfillJob(store, client).run()
        assert all(store.get_embedding(i, provider="google") for i in ids)
        assert store.embedding_counts()["local"] == 0

    def test_background_run(self, store, client):
        _insert_texts(store, 3)
        job = BackfillJob(store, client)
        job.start()
        result = job.wait(timeout=10)
        assert result.state is BackfillState.COMPLETED
        assert result.saved == 3
        assert job.state.terminal


class TestProviderSwitch:

    def test_embeddings_survive_switching_back(self, store, client, settings):
        ids = _insert_texts(store, 2)
        BackfillJob(store, client).run()
        local_vectors = [store.get_embedding(i) for i in ids]

        settings.update(provider="openai")
        BackfillJob(store, client).run()
        settings.update(provider="local")

        assert [store.get_embedding(i) for i in ids] == local_vectors
        assert store.embedding_counts() == {"local": 2, "google": 0, "openai": 2}
