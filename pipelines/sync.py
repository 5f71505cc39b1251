"""Change-detection sync between a source directory and the index.

A sync pass hashes every file in the watched directory, ingests the ones
whose hash differs from the manifest, deletes documents whose file is gone
and rewrites the manifest. Passes are triggered by filesystem events and a
periodic poll, both funnelled through one debounce timer.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from config.settings import SyncSettings
from indexer.hashing import hash_file
from indexer.manifest import ManifestStore
from observability.metrics import record_sync_metrics
from services.shared.guard import RunGuard
from services.shared.scope import Scope
from services.shared.store import DocumentStore
from .extraction import ContentExtractor, ExtractionError, UnsupportedFileType, get_file_type
from .ingest import IngestionPipeline

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync pass."""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    skipped_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        parts = [
            f"{label} {len(items)}"
            for label, items in (("created", self.created), ("updated", self.updated),
                                 ("deleted", self.deleted), ("errors", self.errors))
            if items
        ]
        return ", ".join(parts) if parts else "no changes"


class SyncEngine:
    """Keeps one scope of the index in step with a source directory."""

    def __init__(self, store: DocumentStore, pipeline: IngestionPipeline, extractor: ContentExtractor,
                 settings: Optional[SyncSettings] = None, scope: Optional[Scope] = None):
        self.store = store
        self.pipeline = pipeline
        self.extractor = extractor
        self.settings = settings or SyncSettings()
        self.scope = scope or Scope.shared()
        self.source_dir = Path(self.settings.source_dir)
        self.manifest_store = ManifestStore(self.source_dir / self.settings.manifest_filename)
        self.supported_types = {t.lower() for t in self.settings.supported_types}

        self._guard = RunGuard("sync")
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._pending_task: Optional[asyncio.Task] = None
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._guard.running

    async def sync(self) -> SyncResult:
        """Run one sync pass, or skip if a pass is already running."""
        if not self._guard.try_acquire():
            return SyncResult(skipped_run=True)

        start_time = time.time()
        try:
            result = await self._sync_once()
        except Exception:
            record_sync_metrics(time.time() - start_time, 0, 0, 0, 0, 0, status="failed")
            raise
        finally:
            self._guard.release()

        record_sync_metrics(time.time() - start_time, len(result.created), len(result.updated),
                            len(result.deleted), len(result.skipped), len(result.errors))
        if result.changed or result.errors:
            logger.info(f"Sync complete: {result.summary()}")
        else:
            logger.debug("Sync complete: no changes")
        return result

    async def _sync_once(self) -> SyncResult:
        result = SyncResult()

        if not self.source_dir.is_dir():
            logger.warning(f"Source directory does not exist: {self.source_dir}")
            return result

        manifest = self.manifest_store.load()
        new_manifest: Dict[str, str] = {}
        present: Set[str] = set()

        for path in self._list_files():
            name = path.name
            file_type = get_file_type(name)
            if file_type not in self.supported_types:
                result.skipped.append(name)
                continue
            present.add(name)

            try:
                current_hash = hash_file(path)
            except OSError as e:
                logger.error(f"Could not read {name}: {e}")
                result.errors.append({"file": name, "error": str(e)})
                continue

            if manifest.get(name) == current_hash:
                new_manifest[name] = current_hash
                result.skipped.append(name)
                continue

            try:
                content, metadata = self.extractor.extract(path.read_bytes(), file_type)
            except UnsupportedFileType as e:
                logger.info(f"Skipping {name}: {e}")
                result.skipped.append(name)
                continue
            except (ExtractionError, OSError) as e:
                logger.error(f"Extraction failed for {name}: {e}")
                result.errors.append({"file": name, "error": str(e)})
                continue

            if not content or not content.strip():
                result.errors.append({"file": name, "error": "Content is empty"})
                continue

            try:
                process_result, created = await self.pipeline.ingest_document(
                    name, content, file_type, self.scope, metadata or None
                )
            except Exception as e:
                logger.error(f"Ingestion failed for {name}: {e}")
                result.errors.append({"file": name, "error": str(e)})
                continue
            if not process_result.ok:
                # Left out of the manifest so the next pass retries it
                result.errors.append({"file": name, "error": process_result.error})
                continue

            new_manifest[name] = current_hash
            if created:
                logger.info(f"Created: {name}")
                result.created.append(name)
            else:
                logger.info(f"Updated: {name}")
                result.updated.append(name)

        self._delete_missing(present, result)

        try:
            self.manifest_store.save(new_manifest)
        except OSError as e:
            logger.error(f"Failed to save manifest {self.manifest_store.path}: {e}")
            result.errors.append({"file": self.settings.manifest_filename, "error": str(e)})

        return result

    def _list_files(self) -> List[Path]:
        manifest_name = self.settings.manifest_filename
        return sorted(
            p for p in self.source_dir.iterdir()
            if p.is_file() and p.name not in (manifest_name, manifest_name + ".tmp")
        )

    def _delete_missing(self, present: Set[str], result: SyncResult) -> None:
        for doc in self.store.list_documents([self.scope]):
            if doc.filename in present:
                continue
            try:
                self.store.delete_document(doc.id)
                logger.info(f"Deleted: {doc.filename}")
                result.deleted.append(doc.filename)
            except Exception as e:
                logger.error(f"Delete failed for {doc.filename}: {e}")
                result.errors.append({"file": doc.filename, "error": str(e)})

        if result.deleted:
            self.pipeline.notify_index_changed()

    # Triggers

    def trigger(self) -> None:
        """Schedule a sync after the debounce delay, replacing any pending one.

        Must be called on the event loop thread.
        """
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = loop.call_later(self.settings.debounce_seconds, self._fire)

    def _fire(self) -> None:
        self._debounce_handle = None
        self._pending_task = asyncio.ensure_future(self._run_triggered())

    async def _run_triggered(self) -> None:
        try:
            await self.sync()
        except Exception as e:
            logger.error(f"Sync pass failed: {e}", exc_info=True)

    def cancel_pending(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def start_watching(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Start the filesystem observer feeding :meth:`trigger`."""
        self._loop = loop or asyncio.get_running_loop()
        self.source_dir.mkdir(parents=True, exist_ok=True)

        observer = Observer()
        observer.schedule(SourceDirectoryHandler(self), str(self.source_dir), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.source_dir} for changes")

    def stop_watching(self) -> None:
        self.cancel_pending()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info(f"Stopped watching {self.source_dir}")

    def is_relevant_path(self, path: str) -> bool:
        """Whether a change to ``path`` should trigger a sync."""
        name = Path(path).name
        manifest_name = self.settings.manifest_filename
        if name in (manifest_name, manifest_name + ".tmp"):
            return False
        return get_file_type(name) in self.supported_types

    def trigger_threadsafe(self) -> None:
        """Request a debounced sync from a non-loop thread."""
        if self._loop is None or self._loop.is_closed():
            logger.debug("Ignoring change event, no event loop attached")
            return
        self._loop.call_soon_threadsafe(self.trigger)


class SourceDirectoryHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to a sync engine."""

    def __init__(self, engine: SyncEngine):
        super().__init__()
        self.engine = engine

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and self.engine.is_relevant_path(str(p)) for p in paths):
            logger.debug(f"Change detected: {event.event_type} {event.src_path}")
            self.engine.trigger_threadsafe()
