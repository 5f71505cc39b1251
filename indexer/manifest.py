"""Manifest files used for change detection and integrity checks.

Two formats live on disk:

* the ingest manifest, a flat ``{filename: "sha256:<hex>"}`` JSON object
  written by the sync engine next to the files it watches;
* the refinement manifest, ``{"entries": {filename: {...}}}``, written by the
  external refinement stage and only read here.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class ManifestStore:
    """Filename to content-hash map persisted as JSON."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Dict[str, str]:
        """Load the manifest; a missing file is empty, a corrupt one is empty with a warning."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Corrupt manifest {self.path}, treating every file as new: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Manifest {self.path} is not a JSON object, treating every file as new")
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def save(self, manifest: Dict[str, str]) -> None:
        """Write the manifest atomically via a temp file and rename."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(dict(sorted(manifest.items())), f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)


class RefinementEntry(BaseModel):
    """One source file's refinement record."""
    model_config = ConfigDict(populate_by_name=True)

    source_file: str = Field(default="", alias="sourceFile")
    source_hash: str = Field(default="", alias="sourceHash")
    refined_file: str = Field(default="", alias="refinedFile")
    refined_hash: str = Field(default="", alias="refinedHash")
    status: str = Field(default="")


class RefinementManifest(BaseModel):
    """Refinement manifest as written by the conversion stage."""
    entries: Dict[str, RefinementEntry] = Field(default_factory=dict)

    def get(self, filename: str) -> Optional[RefinementEntry]:
        return self.entries.get(filename)


def load_refinement_manifest(path: Union[str, Path]) -> RefinementManifest:
    """Read a refinement manifest; missing or corrupt files read as empty."""
    path = Path(path)
    if not path.exists():
        return RefinementManifest()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return RefinementManifest.model_validate(json.load(f))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"Corrupt refinement manifest {path}: {e}")
        return RefinementManifest()
