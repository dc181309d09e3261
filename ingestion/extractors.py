"""
Document extractors for the RAG support engine.

Turn uploaded files into raw text plus light metadata (page count, title).
Extractors are plain objects; callers build the mapping they need with
default_extractors() and pass it where it is used.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pypdf import PdfReader

from retrieval.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ExtractedDocument:
    """Raw text and metadata pulled from a source file."""
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def page_offsets(self) -> Optional[List[int]]:
        return self.metadata.get("page_offsets")


def _base_metadata(text: str, path: Path) -> Dict[str, Any]:
    return {
        "file_name": path.name,
        "file_type": path.suffix.lower().lstrip("."),
        "word_count": len(text.split()),
        "character_count": len(text),
    }


class DocumentExtractor(ABC):
    """Abstract base class for document extractors."""

    suffixes: tuple = ()

    @abstractmethod
    def extract(self, file_path: Union[str, Path]) -> ExtractedDocument:
        """
        Extract text and metadata from a file.

        Args:
            file_path: Path to the file

        Returns:
            ExtractedDocument
        """
        pass

    def _check(self, file_path: Union[str, Path]) -> Path:
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return path


class PlainTextExtractor(DocumentExtractor):
    """Plain text and markdown files."""

    suffixes = (".txt", ".md", ".markdown")

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def extract(self, file_path: Union[str, Path]) -> ExtractedDocument:
        path = self._check(file_path)
        text = path.read_text(encoding=self.encoding, errors="ignore")
        metadata = _base_metadata(text, path)
        first_line = next((line.strip() for line in text.splitlines() if line.strip()), None)
        if first_line and first_line.startswith("#"):
            metadata["title"] = first_line.lstrip("#").strip()
        return ExtractedDocument(text=text, metadata=metadata)


class PdfExtractor(DocumentExtractor):
    """PDF files via pypdf; pages are joined with blank lines."""

    suffixes = (".pdf",)

    def extract(self, file_path: Union[str, Path]) -> ExtractedDocument:
        path = self._check(file_path)
        try:
            reader = PdfReader(str(path))
        except Exception as e:
            logger.error(f"Failed to read PDF {path}: {e}")
            raise ValidationError(f"Unreadable PDF: {path.name}", field="file") from e

        parts: List[str] = []
        page_offsets: List[int] = []
        offset = 0
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            page_offsets.append(offset)
            parts.append(page_text)
            offset += len(page_text) + 2  # "\n\n" separator

        text = "\n\n".join(parts)
        metadata = _base_metadata(text, path)
        metadata["page_count"] = len(reader.pages)
        metadata["page_offsets"] = page_offsets

        title = None
        if reader.metadata is not None:
            title = reader.metadata.title
        if title:
            metadata["title"] = str(title)

        logger.info(f"Extracted {len(reader.pages)} pages from PDF: {path.name}")
        return ExtractedDocument(text=text, metadata=metadata)


class DocxExtractor(DocumentExtractor):
    """Word documents via python-docx."""

    suffixes = (".docx",)

    def extract(self, file_path: Union[str, Path]) -> ExtractedDocument:
        from docx import Document

        path = self._check(file_path)
        try:
            document = Document(str(path))
        except Exception as e:
            logger.error(f"Failed to read DOCX {path}: {e}")
            raise ValidationError(f"Unreadable DOCX: {path.name}", field="file") from e

        text = "\n\n".join(p.text for p in document.paragraphs if p.text.strip())
        metadata = _base_metadata(text, path)
        title = document.core_properties.title
        if title:
            metadata["title"] = title
        return ExtractedDocument(text=text, metadata=metadata)


def default_extractors() -> Dict[str, DocumentExtractor]:
    """Build a fresh suffix -> extractor mapping."""
    mapping: Dict[str, DocumentExtractor] = {}
    for extractor in (PlainTextExtractor(), PdfExtractor(), DocxExtractor()):
        for suffix in extractor.suffixes:
            mapping[suffix] = extractor
    return mapping


def extractor_for(
    file_path: Union[str, Path],
    extractors: Mapping[str, DocumentExtractor],
) -> DocumentExtractor:
    """Select the extractor for a file by its suffix."""
    suffix = Path(file_path).suffix.lower()
    extractor = extractors.get(suffix)
    if extractor is None:
        raise ValidationError(f"Unsupported file type: {suffix or '(none)'}", field="file")
    return extractor
