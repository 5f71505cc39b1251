"""Tests for content hashing and the manifest files."""

import json

from indexer.hashing import HASH_PREFIX, hash_bytes, hash_file, hash_text
from indexer.manifest import ManifestStore, load_refinement_manifest


class TestHashing:

    def test_hash_format(self):
        digest = hash_text("hello")
        assert digest.startswith(HASH_PREFIX)
        assert len(digest) == len(HASH_PREFIX) + 64

    def test_text_and_bytes_agree(self):
        assert hash_text("日本語") == hash_bytes("日本語".encode("utf-8"))

    def test_file_hash_matches_content(self, tmp_path):
        path = tmp_path / "a.md"
        path.write_bytes(b"x" * 200000)
        assert hash_file(path, block_size=4096) == hash_bytes(b"x" * 200000)

    def test_different_content_different_hash(self):
        assert hash_text("a") != hash_text("b")


class TestManifestStore:

    def test_missing_file_is_empty(self, tmp_path):
        assert ManifestStore(tmp_path / "_ingest_manifest.json").load() == {}

    def test_save_then_load(self, tmp_path):
        store = ManifestStore(tmp_path / "_ingest_manifest.json")
        store.save({"b.md": "sha256:2", "a.md": "sha256:1"})

        assert store.load() == {"a.md": "sha256:1", "b.md": "sha256:2"}
        assert not (tmp_path / "_ingest_manifest.json.tmp").exists()
        # keys are written sorted
        assert list(json.loads(store.path.read_text(encoding="utf-8"))) == ["a.md", "b.md"]

    def test_corrupt_file_is_empty(self, tmp_path, caplog):
        path = tmp_path / "_ingest_manifest.json"
        path.write_text("{not json", encoding="utf-8")

        assert ManifestStore(path).load() == {}
        assert "Corrupt manifest" in caplog.text

    def test_non_object_is_empty(self, tmp_path):
        path = tmp_path / "_ingest_manifest.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert ManifestStore(path).load() == {}

    def test_non_string_values_dropped(self, tmp_path):
        path = tmp_path / "_ingest_manifest.json"
        path.write_text(json.dumps({"a.md": "sha256:1", "b.md": 5}), encoding="utf-8")
        assert ManifestStore(path).load() == {"a.md": "sha256:1"}

    def test_save_creates_parent_directory(self, tmp_path):
        store = ManifestStore(tmp_path / "nested" / "_ingest_manifest.json")
        store.save({"a.md": "sha256:1"})
        assert store.load() == {"a.md": "sha256:1"}


class TestRefinementManifest:

    def test_loads_camel_case_entries(self, tmp_path):
        path = tmp_path / "_refine_manifest.json"
        path.write_text(json.dumps({
            "entries": {
                "report.docx": {
                    "sourceFile": "report.docx",
                    "sourceHash": "sha256:aaa",
                    "refinedFile": "report.md",
                    "refinedHash": "sha256:bbb",
                    "status": "refined",
                }
            }
        }), encoding="utf-8")

        manifest = load_refinement_manifest(path)
        entry = manifest.get("report.docx")

        assert entry.source_hash == "sha256:aaa"
        assert entry.refined_file == "report.md"
        assert entry.refined_hash == "sha256:bbb"
        assert manifest.get("missing.docx") is None

    def test_missing_or_corrupt_is_empty(self, tmp_path):
        assert load_refinement_manifest(tmp_path / "none.json").entries == {}

        corrupt = tmp_path / "_refine_manifest.json"
        corrupt.write_text("{", encoding="utf-8")
        assert load_refinement_manifest(corrupt).entries == {}
