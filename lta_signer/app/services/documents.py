"""
Document sources and signed document values.

The orchestrators read their input through a ``DocumentSource`` (a file
on disk or an in-memory buffer) and return ``SignedDocument`` values.
A ``SignedDocument`` is never modified; every signing or extension step
produces a new one.
"""

from __future__ import annotations

import abc
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from pyhanko.pdf_utils.misc import PdfReadError
from pyhanko.pdf_utils.reader import PdfFileReader

from lta_signer.app.core.errors import InvalidDocumentError, MissingInputError
from lta_signer.app.services.parameters import SignatureLevel

logger = logging.getLogger("lta_signer.documents")


# ----------------------------------------------------------------------
# Sources
# ----------------------------------------------------------------------

class DocumentSource(abc.ABC):
    @abc.abstractmethod
    def read(self) -> bytes:
        """Return the document bytes, raising ``MissingInputError`` if none."""

    @property
    @abc.abstractmethod
    def name(self) -> str: ...


class InMemoryDocument(DocumentSource):
    def __init__(self, data: bytes, name: str = "document.pdf"):
        self._data = bytes(data or b"")
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def read(self) -> bytes:
        if not self._data:
            raise MissingInputError("Request body is empty")
        return self._data


class FileDocument(DocumentSource):
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    @property
    def name(self) -> str:
        return self.path.name

    def read(self) -> bytes:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError as exc:
            raise MissingInputError(
                f"Input document not found: {self.path}"
            ) from exc
        if not data:
            raise MissingInputError(f"Input document is empty: {self.path}")
        return data


# ----------------------------------------------------------------------
# Signed documents
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class SignedDocument:
    data: bytes
    level: SignatureLevel

    def write_to(self, path: Union[str, Path]) -> Path:
        target = Path(path)
        target.write_bytes(self.data)
        logger.info(
            "signed_document_written",
            extra={
                "path": str(target),
                "signature_level": self.level.value,
                "bytes": len(self.data),
            },
        )
        return target


# ----------------------------------------------------------------------
# Inspection
# ----------------------------------------------------------------------

def open_reader(data: bytes) -> PdfFileReader:
    """Parse PDF bytes, raising ``InvalidDocumentError`` on failure."""
    try:
        return PdfFileReader(io.BytesIO(data))
    except (PdfReadError, ValueError) as exc:
        raise InvalidDocumentError("Input is not a readable PDF") from exc


def count_timestamps(data: bytes) -> int:
    """
    Number of timestamps in the document: document timestamps plus
    signature timestamps embedded in regular signatures.
    """
    reader = open_reader(data)
    doc_timestamps = len(reader.embedded_timestamp_signatures)
    signature_timestamps = sum(
        1
        for sig in reader.embedded_regular_signatures
        if sig.attached_timestamp_data is not None
    )
    return doc_timestamps + signature_timestamps


def detect_level(data: bytes) -> SignatureLevel:
    """
    Best-effort PAdES baseline level of a signed document.

    - any document timestamp: LTA
    - a signature timestamp plus a document security store: LT
    - a signature timestamp: T
    - otherwise: B-B
    """
    reader = open_reader(data)

    if reader.embedded_timestamp_signatures:
        return SignatureLevel.LTA

    has_signature_timestamp = any(
        sig.attached_timestamp_data is not None
        for sig in reader.embedded_regular_signatures
    )
    if has_signature_timestamp and "/DSS" in reader.root:
        return SignatureLevel.LT
    if has_signature_timestamp:
        return SignatureLevel.T
    return SignatureLevel.B_B
