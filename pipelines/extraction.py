"""Raw-text extraction from file bytes.

The ingestion side only depends on the ``extract(data, file_type)``
contract. :class:`TextExtractor` covers the text-based formats; binary
office and PDF formats need an injected extractor.
"""

import csv
import io
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Tuple

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

_BLANK_LINES_RE = re.compile(r'\n\s*\n+')


class ExtractionError(Exception):
    """Raised when a file's text cannot be extracted."""


class UnsupportedFileType(ExtractionError):
    """Raised for a file type the extractor does not handle."""

    def __init__(self, file_type: str):
        super().__init__(f"Unsupported file type: {file_type or '(none)'}")
        self.file_type = file_type


def get_file_type(filename: str) -> str:
    """Lower-case extension without the dot, or empty string."""
    return Path(filename).suffix.lower().lstrip(".")


class ContentExtractor(ABC):
    """Turns file bytes into plain text plus metadata."""

    @abstractmethod
    def extract(self, data: bytes, file_type: str) -> Tuple[str, Dict[str, Any]]:
        """Extract text from ``data`` declared as ``file_type``.

        Raises:
            UnsupportedFileType: if the type is not handled
            ExtractionError: if the content is malformed
        """


class TextExtractor(ContentExtractor):
    """Extractor for plain text, markdown, JSON, CSV, e-mail text and HTML."""

    TEXT_TYPES = frozenset({"txt", "md", "eml", "msg"})
    HTML_TYPES = frozenset({"html", "htm"})

    def extract(self, data: bytes, file_type: str) -> Tuple[str, Dict[str, Any]]:
        file_type = (file_type or "").lower().lstrip(".")

        if file_type in self.TEXT_TYPES:
            return self._decode(data), {}
        if file_type == "json":
            return self._extract_json(data)
        if file_type == "csv":
            return self._extract_csv(data)
        if file_type in self.HTML_TYPES:
            return self._extract_html(data)

        raise UnsupportedFileType(file_type)

    @staticmethod
    def _decode(data: bytes) -> str:
        # utf-8-sig drops a leading BOM
        return data.decode("utf-8-sig", errors="replace")

    def _extract_json(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        try:
            parsed = json.loads(self._decode(data))
        except ValueError as e:
            raise ExtractionError(f"Invalid JSON: {e}") from e
        return json.dumps(parsed, ensure_ascii=False, indent=2), {}

    def _extract_csv(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        try:
            reader = csv.DictReader(io.StringIO(self._decode(data)))
            records = [
                row for row in reader
                if any((value or "").strip() for value in row.values() if isinstance(value, str))
            ]
        except csv.Error as e:
            raise ExtractionError(f"Invalid CSV: {e}") from e
        return json.dumps(records, ensure_ascii=False, indent=2), {"rows": len(records)}

    def _extract_html(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        soup = BeautifulSoup(self._decode(data), "html.parser")
        for element in soup(["script", "style", "noscript"]):
            element.decompose()

        metadata: Dict[str, Any] = {}
        title = soup.title.get_text(strip=True) if soup.title else ""
        if title:
            metadata["title"] = title

        body = soup.body or soup
        text = body.get_text(separator="\n")
        lines = [line.strip() for line in text.splitlines()]
        text = _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()
        return text, metadata
