"""Keyword vocabulary loader.

The department, document-type and tag tables are data, kept in
``vocabulary.yaml`` so they can be extended without touching the chunker.
"""

import os
import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_VOCABULARY_PATH = Path(__file__).parent / "vocabulary.yaml"


class DocTypePattern(BaseModel):
    """Keywords that classify a chunk as one document type."""
    type: str
    keywords: List[str]


class Vocabulary(BaseModel):
    """Keyword tables used for chunk metadata derivation."""
    departments: Dict[str, List[str]] = Field(default_factory=dict)
    doc_types: List[DocTypePattern] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    segment_markers: List[str] = Field(default_factory=list)


def _read_vocabulary(path: Path) -> Vocabulary:
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    return Vocabulary.model_validate(data)


def load_vocabulary(path: Optional[str] = None) -> Vocabulary:
    """Load the vocabulary from ``path`` or the bundled default.

    A missing or invalid override falls back to the bundled file with a
    warning rather than failing startup.
    """
    if path:
        override = Path(os.path.expanduser(path))
        if override.exists():
            try:
                vocabulary = _read_vocabulary(override)
                logger.info(f"Loaded vocabulary from {override}")
                return vocabulary
            except (yaml.YAMLError, ValidationError) as e:
                logger.warning(f"Invalid vocabulary file {override}, using defaults: {e}")
        else:
            logger.warning(f"Vocabulary file not found: {override}, using defaults")

    return _read_vocabulary(DEFAULT_VOCABULARY_PATH)
