"""Three-level integrity check between raw, refined and indexed content.

* source:  raw source files vs. the refinement manifest's ``sourceHash``
* refined: refined files vs. the manifest's ``refinedHash``
* db:      indexed document content vs. the refined file on disk

The checker only reports. Nothing here modifies files or the index.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config.settings import IntegritySettings
from observability.logging import get_audit_logger, log_performance
from observability.metrics import record_integrity_warnings
from services.shared.scope import Scope
from services.shared.store import DocumentStore
from .hashing import hash_file, hash_text
from .manifest import load_refinement_manifest

logger = logging.getLogger(__name__)

SOURCE_LEVEL = "source"
REFINED_LEVEL = "refined"
DB_LEVEL = "db"


@dataclass
class IntegrityWarning:
    level: str
    filename: str
    message: str


@dataclass
class IntegrityReport:
    """Result of one integrity check run."""
    warnings: List[IntegrityWarning] = field(default_factory=list)
    checked_at: str = ""
    source_files: int = 0
    refined_files: int = 0
    db_documents: int = 0

    @property
    def ok(self) -> bool:
        return not self.warnings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IntegrityChecker:
    """Compares source, refined and indexed copies of each document."""

    def __init__(self, store: DocumentStore, settings: Optional[IntegritySettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.settings = settings or IntegritySettings()
        self.source_dir = Path(self.settings.source_dir)
        self.refined_dir = Path(self.settings.refined_dir)
        self._clock = clock
        self._cached: Optional[IntegrityReport] = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def get_integrity_warnings(self) -> IntegrityReport:
        """Cached report, recomputed once the TTL has elapsed."""
        with self._lock:
            cached = self._cached
            if cached is not None and self._clock() - self._cached_at < self.settings.cache_ttl_seconds:
                return cached
        return self.run_integrity_check()

    def clear_integrity_cache(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0

    @log_performance(threshold_ms=5000.0)
    def run_integrity_check(self) -> IntegrityReport:
        """Run all three levels and refresh the cache."""
        manifest = load_refinement_manifest(self.refined_dir / self.settings.manifest_filename)
        report = IntegrityReport(checked_at=datetime.now(timezone.utc).isoformat())

        self._check_source(manifest, report)
        self._check_refined(manifest, report)
        self._check_db(report)

        if report.warnings:
            audit = get_audit_logger(str(self.refined_dir / self.settings.log_filename))
            for warning in report.warnings:
                audit.info(f"{warning.level.upper()} MISMATCH: {warning.filename} - {warning.message}")

        record_integrity_warnings(Counter(w.level for w in report.warnings))
        if report.warnings:
            logger.warning(f"Integrity check found {len(report.warnings)} warnings")
        else:
            logger.info("Integrity check OK")

        with self._lock:
            self._cached = report
            self._cached_at = self._clock()
        return report

    def _check_source(self, manifest, report: IntegrityReport) -> None:
        if not self.source_dir.is_dir():
            return

        files = sorted(
            p for p in self.source_dir.iterdir()
            if p.is_file() and not p.name.startswith("_")
        )
        report.source_files = len(files)

        for path in files:
            entry = manifest.get(path.name)
            if entry is None:
                report.warnings.append(IntegrityWarning(
                    SOURCE_LEVEL, path.name, "Not in refinement manifest (unconverted file)"))
                continue
            if hash_file(path) != entry.source_hash:
                report.warnings.append(IntegrityWarning(
                    SOURCE_LEVEL, path.name, "Source file changed, reconversion needed"))

    def _check_refined(self, manifest, report: IntegrityReport) -> None:
        if not self.refined_dir.is_dir():
            return

        report.refined_files = sum(
            1 for p in self.refined_dir.iterdir()
            if p.is_file() and p.suffix == ".md" and not p.name.startswith("_")
        )

        for source_name, entry in manifest.entries.items():
            refined_path = self.refined_dir / entry.refined_file
            if not entry.refined_file or not refined_path.is_file():
                report.warnings.append(IntegrityWarning(
                    REFINED_LEVEL, entry.refined_file or source_name, "Refined file is missing"))
                continue
            if hash_file(refined_path) != entry.refined_hash:
                report.warnings.append(IntegrityWarning(
                    REFINED_LEVEL, entry.refined_file, "Refined file was edited manually"))

    def _check_db(self, report: IntegrityReport) -> None:
        documents = self.store.list_documents([Scope.shared()])
        report.db_documents = len(documents)

        for doc in documents:
            refined_path = self._resolve_refined_file(doc.filename)
            if refined_path is None:
                # Entered the index by another path, e.g. direct seeding
                continue
            try:
                file_hash = hash_text(refined_path.read_bytes().decode("utf-8"))
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read refined file {refined_path}: {e}")
                continue
            if file_hash != hash_text(doc.content):
                report.warnings.append(IntegrityWarning(
                    DB_LEVEL, doc.filename, "Index drift, reingestion required"))

    def _resolve_refined_file(self, filename: str) -> Optional[Path]:
        """Refined counterpart of an indexed filename: ``<stem>.md`` first, then the name itself."""
        name = Path(filename).name
        if not name or name != filename:
            return None
        for candidate in (Path(name).with_suffix(".md").name, name):
            path = self.refined_dir / candidate
            if path.is_file():
                return path
        return None

