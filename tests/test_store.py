"""Tests for the SQLAlchemy document store."""

from datetime import timedelta

import pytest

from services.shared.models import Document, utcnow
from services.shared.scope import Scope
from conftest import make_chunk_row


class TestDocuments:

    def test_upsert_creates_then_updates(self, store):
        doc, created = store.upsert_document("a.md", "first", "md", Scope.shared())
        assert created

        updated, created = store.upsert_document("a.md", "second", "md", Scope.shared(), {"k": "v"})
        assert not created
        assert updated.id == doc.id
        assert store.get_document(doc.id).content == "second"
        assert store.get_document(doc.id).metadata_dict == {"k": "v"}

    def test_same_filename_in_different_scopes(self, store):
        shared, _ = store.upsert_document("a.md", "x", "md", Scope.shared())
        private, created = store.upsert_document("a.md", "y", "md", Scope.private("bob"))

        assert created
        assert shared.id != private.id
        assert [d.id for d in store.list_documents([Scope.private("bob")])] == [private.id]
        assert len(store.list_documents()) == 2

    def test_content_hash_tracks_content(self, store):
        doc, _ = store.upsert_document("a.md", "x", "md", Scope.shared())
        again, _ = store.upsert_document("a.md", "y", "md", Scope.shared())
        assert doc.content_hash != again.content_hash

    def test_delete_document_removes_chunks(self, store):
        doc, _ = store.upsert_document("a.md", "x", "md", Scope.shared())
        store.replace_chunks(doc.id, [make_chunk_row(0, "x")])

        assert store.delete_document(doc.id)
        assert store.get_document(doc.id) is None
        assert store.count_chunks() == 0
        assert not store.delete_document(doc.id)

    def test_delete_by_filename_is_scoped(self, store):
        store.upsert_document("https://example.com/a", "x", "html", Scope.web())
        store.upsert_document("https://example.com/a", "x", "html", Scope.shared())

        assert store.delete_documents_by_filename("https://example.com/a", Scope.web()) == 1
        assert store.find_document("https://example.com/a", Scope.web()) is None
        assert store.find_document("https://example.com/a", Scope.shared()) is not None
        assert store.delete_documents_by_filename("https://example.com/a", Scope.web()) == 0

    def test_corrupt_metadata_reads_empty(self, store):
        doc, _ = store.upsert_document("a.md", "x", "md", Scope.shared())
        with store.session_scope() as session:
            session.get(Document, doc.id).metadata_json = "{broken"

        assert store.get_document(doc.id).metadata_dict == {}


class TestChunks:

    def test_replace_chunks_replaces_everything(self, store):
        doc, _ = store.upsert_document("a.md", "x", "md", Scope.shared())
        store.replace_chunks(doc.id, [make_chunk_row(i, f"old {i}") for i in range(5)])
        store.replace_chunks(doc.id, [make_chunk_row(i, f"new {i}") for i in range(3)], batch_size=2)

        rows = store.load_index_rows()
        assert [r.content for r in rows] == ["new 0", "new 1", "new 2"]
        assert store.count_chunks(doc.id) == 3

    def test_index_rows_carry_document_fields(self, store):
        doc, _ = store.upsert_document("b.md", "x", "md", Scope.private("ns"))
        store.replace_chunks(doc.id, [make_chunk_row(0, "x", doc_type="budget", dept_ids=["hr"], tags=["DX"])])

        row = store.load_index_rows()[0]
        assert row.filename == "b.md"
        assert row.scope == "private:ns"
        assert row.doc_type == "budget"
        assert row.dept_ids == ["hr"]
        assert row.tags == ["DX"]


class TestWebBookkeeping:

    def test_add_web_source_is_idempotent(self, store):
        first = store.add_web_source("https://example.com/docs", "Example")
        second = store.add_web_source("https://example.com/docs")

        assert first.id == second.id
        assert first.domain == "example.com"
        assert len(store.list_web_sources()) == 1

    def test_add_web_source_rejects_relative_url(self, store):
        with pytest.raises(ValueError):
            store.add_web_source("/docs")

    def test_latest_crawl_log(self, store):
        assert store.latest_crawl_log() is None

        old = store.create_crawl_log()
        store.update_crawl_log(old.id, started_at=utcnow() - timedelta(days=40))
        new = store.create_crawl_log()
        store.update_crawl_log(new.id, status="completed", docs_deleted=2, errors=["x"])

        latest = store.latest_crawl_log()
        assert latest.id == new.id
        assert latest.status == "completed"
        assert latest.docs_deleted == 2
        assert latest.errors == ["x"]
