"""
PDF signature container operations on top of pyHanko.

This module is the only place that touches pyHanko's writer API:
- allocate the signature placeholder and digest the byte range
- build and embed the CMS signature container
- append document security store (DSS) revisions
- append archive (document) timestamps

Reserved capacity is enforced here. A container larger than its
reservation raises ``ContainerOverflowError``; nothing is retried.
"""

from __future__ import annotations

import asyncio
import io
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import IO, AsyncIterator, Iterable, Optional, Sequence

import aiohttp
from asn1crypto import cms, x509
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.pdf_utils.misc import PdfReadError
from pyhanko.sign import signers
from pyhanko.sign.fields import SigSeedSubFilter
from pyhanko.sign.signers.pdf_byterange import PreparedByteRangeDigest
from pyhanko.sign.signers.pdf_signer import PdfTBSDocument
from pyhanko.sign.timestamps import TimeStamper, TimestampRequestError
from pyhanko.sign.timestamps.aiohttp_client import AIOHttpTimeStamper
from pyhanko.sign.validation.dss import DocumentSecurityStore
from pyhanko_certvalidator import ValidationContext
from pyhanko_certvalidator.path import ValidationPath

from lta_signer.app.core.errors import (
    ContainerOverflowError,
    InvalidDocumentError,
    InvalidTimestampError,
)
from lta_signer.app.core.config import OperationConfig
from lta_signer.app.services.parameters import SignatureParameters

logger = logging.getLogger("lta_signer.container")

_TRANSPORT_ERRORS = (
    TimestampRequestError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)


# ----------------------------------------------------------------------
# Timestamp authority client
# ----------------------------------------------------------------------

def build_timestamper(
    url: str,
    session: aiohttp.ClientSession,
    timeout: float,
) -> AIOHttpTimeStamper:
    return AIOHttpTimeStamper(url=url, session=session, timeout=timeout)


@asynccontextmanager
async def open_timestamper(
    config: OperationConfig,
    override: Optional[TimeStamper] = None,
) -> AsyncIterator[TimeStamper]:
    """
    Timestamp authority client for one operation.

    ``override`` replaces the HTTP client (offline TSA, tests). Otherwise
    an aiohttp session is opened for the configured URL and closed when
    the block exits.
    """
    if override is not None:
        yield override
        return

    timeout = aiohttp.ClientTimeout(total=config.tsa_timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        yield build_timestamper(
            str(config.tsa_url),
            session,
            config.tsa_timeout_seconds,
        )


class CapacityBoundTimeStamper(TimeStamper):
    """
    Wraps a timestamper and rejects tokens larger than the reservation
    they have to fit in.
    """

    def __init__(self, inner: TimeStamper, capacity: int):
        super().__init__()
        self._inner = inner
        self.capacity = capacity

    async def async_timestamp(self, message_digest, md_algorithm):
        token = await self._inner.async_timestamp(message_digest, md_algorithm)
        size = len(token.dump())
        if size > self.capacity:
            raise ContainerOverflowError(size, self.capacity)
        return token

    async def async_dummy_response(self, md_algorithm):
        return await self._inner.async_dummy_response(md_algorithm)


# ----------------------------------------------------------------------
# Document handles
# ----------------------------------------------------------------------

def load_document(data: bytes) -> IncrementalPdfFileWriter:
    """Open PDF bytes for an incremental update."""
    try:
        return IncrementalPdfFileWriter(io.BytesIO(data))
    except (PdfReadError, ValueError) as exc:
        raise InvalidDocumentError("Input is not a readable PDF") from exc


def _new_field_name(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class PendingSignature:
    """A document whose placeholder is allocated and byte range digested."""

    params: SignatureParameters
    prepared_digest: PreparedByteRangeDigest
    output: IO
    field_name: str

    @property
    def document_digest(self) -> bytes:
        return self.prepared_digest.document_digest

    @property
    def md_algorithm(self) -> str:
        return self.params.digest_algorithm.value


# ----------------------------------------------------------------------
# Signing
# ----------------------------------------------------------------------

async def get_data_to_sign(
    data: bytes,
    params: SignatureParameters,
    signer: signers.Signer,
    *,
    reason: Optional[str] = None,
) -> PendingSignature:
    """
    Allocate a signature placeholder of ``params.bytes_reserved`` hex
    digits and compute the byte range digest.
    """
    writer = load_document(data)
    field_name = _new_field_name("Signature")

    meta = signers.PdfSignatureMetadata(
        field_name=field_name,
        md_algorithm=params.digest_algorithm.value,
        subfilter=SigSeedSubFilter.PADES,
        reason=reason,
    )
    pdf_signer = signers.PdfSigner(meta, signer=signer)

    prepared_digest, _, output = await pdf_signer.async_digest_doc_for_signing(
        writer,
        bytes_reserved=params.bytes_reserved,
    )

    logger.debug(
        "signature_placeholder_allocated",
        extra={
            "field_name": field_name,
            "capacity": params.capacity,
            "signature_level": params.level.value,
        },
    )
    return PendingSignature(
        params=params,
        prepared_digest=prepared_digest,
        output=output,
        field_name=field_name,
    )


async def build_signature_container(
    pending: PendingSignature,
    signer: signers.Signer,
    timestamper: Optional[TimeStamper] = None,
) -> cms.ContentInfo:
    """
    Produce the CMS container for a pending signature. With a timestamper,
    a signature timestamp token is embedded as an unsigned attribute.
    """
    try:
        return await signer.async_sign(
            pending.document_digest,
            pending.md_algorithm,
            use_pades=True,
            timestamper=timestamper,
        )
    except _TRANSPORT_ERRORS as exc:
        raise InvalidTimestampError(
            f"Signature timestamp request failed: {exc}"
        ) from exc


async def embed_signature(
    pending: PendingSignature,
    signature_cms: cms.ContentInfo,
) -> bytes:
    """Write the CMS container into the reserved placeholder."""
    size = len(signature_cms.dump())
    if size > pending.params.capacity:
        logger.warning(
            "signature_container_overflow",
            extra={"required": size, "capacity": pending.params.capacity},
        )
        raise ContainerOverflowError(size, pending.params.capacity)

    await PdfTBSDocument.async_finish_signing(
        pending.output,
        pending.prepared_digest,
        signature_cms,
    )

    pending.output.seek(0)
    return pending.output.read()


# ----------------------------------------------------------------------
# Long-term validation data and archive timestamps
# ----------------------------------------------------------------------

def _has_validation_data(
    paths: Sequence[ValidationPath],
    certs: Sequence[x509.Certificate],
    validation_context: Optional[ValidationContext],
) -> bool:
    if paths or certs:
        return True
    if validation_context is None:
        return False
    return bool(validation_context.crls or validation_context.ocsps)


def _supply_dss(
    writer: IncrementalPdfFileWriter,
    paths: Sequence[ValidationPath],
    certs: Sequence[x509.Certificate],
    validation_context: Optional[ValidationContext],
) -> None:
    DocumentSecurityStore.supply_dss_in_writer(
        writer,
        None,
        certs=list(certs),
        paths=list(paths),
        validation_context=validation_context,
    )


def append_validation_data(
    data: bytes,
    *,
    paths: Iterable[ValidationPath] = (),
    certs: Iterable[x509.Certificate] = (),
    validation_context: Optional[ValidationContext] = None,
) -> bytes:
    """
    Append a revision carrying certificates and revocation evidence in
    the document security store. Returns the input unchanged when there
    is nothing to add.
    """
    paths = list(paths)
    certs = list(certs)
    if not _has_validation_data(paths, certs, validation_context):
        return data

    writer = load_document(data)
    _supply_dss(writer, paths, certs, validation_context)

    out = io.BytesIO()
    writer.write(out)

    logger.debug(
        "validation_data_appended",
        extra={"paths": len(paths), "certs": len(certs)},
    )
    return out.getvalue()


async def add_archive_timestamp(
    data: bytes,
    params: SignatureParameters,
    timestamper: TimeStamper,
    *,
    paths: Iterable[ValidationPath] = (),
    certs: Iterable[x509.Certificate] = (),
    validation_context: Optional[ValidationContext] = None,
) -> bytes:
    """
    Update the document security store and append exactly one document
    timestamp, in a single incremental revision.
    """
    paths = list(paths)
    certs = list(certs)

    writer = load_document(data)
    if _has_validation_data(paths, certs, validation_context):
        _supply_dss(writer, paths, certs, validation_context)

    bounded = CapacityBoundTimeStamper(timestamper, params.capacity)
    pdf_timestamper = signers.PdfTimeStamper(
        bounded,
        field_name=_new_field_name("ArchiveTimestamp"),
    )

    try:
        output = await pdf_timestamper.async_timestamp_pdf(
            writer,
            params.digest_algorithm.value,
            bytes_reserved=params.bytes_reserved,
        )
    except _TRANSPORT_ERRORS as exc:
        raise InvalidTimestampError(
            f"Archive timestamp request failed: {exc}"
        ) from exc

    logger.info(
        "archive_timestamp_added",
        extra={"capacity": params.capacity, "paths": len(paths)},
    )
    output.seek(0)
    return output.read()
