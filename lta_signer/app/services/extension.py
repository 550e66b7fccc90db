"""
Extension of signed documents to PAdES BASELINE-LTA.

A document at any prior level (B-B, T, LT) is advanced to LTA in a
single step: the verifier is re-assembled, validation data for every
existing signature goes into the document security store, and exactly one
archive timestamp is appended. There is no intermediate LT call, so the
extension never adds more than one timestamp.

A document that is already LTA is re-archived: one new archive timestamp
is stacked on the existing timestamp chain and the DSS is refreshed. The
level stays LTA.

Existing bytes are never rewritten; the output starts with the input.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from asn1crypto import crl, ocsp, x509
from pyhanko.sign.timestamps import TimeStamper

from lta_signer.app.core.config import OperationConfig
from lta_signer.app.core.errors import (
    ExtensionFailedError,
    InvalidChainError,
    InvalidDocumentError,
    NoSigningKeyError,
)
from lta_signer.app.services.container import (
    add_archive_timestamp,
    open_timestamper,
)
from lta_signer.app.services.documents import (
    DocumentSource,
    InMemoryDocument,
    SignedDocument,
    detect_level,
    open_reader,
)
from lta_signer.app.services.identity import InlinePemIdentity, SigningIdentity
from lta_signer.app.services.parameters import (
    SignatureLevel,
    SignatureParameters,
    build_extension_parameters,
)
from lta_signer.app.services.revocation import (
    RevocationSources,
    open_revocation_sources,
)
from lta_signer.app.services.trust import classify_chain
from lta_signer.app.services.verifier import (
    AlertCondition,
    VerificationContext,
    build_minimal_verification_context,
    build_verification_context,
    check_timestamp,
    verify_certificate,
)

logger = logging.getLogger("lta_signer.extension")


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

@asynccontextmanager
async def operation_revocation_sources(
    config: OperationConfig,
) -> AsyncIterator[RevocationSources]:
    async with open_revocation_sources(
        allow_fetching=config.allow_revocation_fetching,
        crls=[crl.CertificateList.load(der) for der in config.known_crls],
        ocsps=[ocsp.OCSPResponse.load(der) for der in config.known_ocsps],
    ) as sources:
        yield sources


def _best_signature_time(embedded_sig) -> datetime:
    """
    Earliest trustworthy time for a signature: its signature timestamp if
    it has one, else the signer's claimed time, else now.
    """
    tst_data = embedded_sig.attached_timestamp_data
    if tst_data is not None:
        tst_info = tst_data["encap_content_info"]["content"].parsed
        return tst_info["gen_time"].native

    claimed = embedded_sig.self_reported_timestamp
    if claimed is None:
        return datetime.now(timezone.utc)
    if claimed.tzinfo is None:
        return claimed.replace(tzinfo=timezone.utc)
    return claimed


def _unique(certs) -> List[x509.Certificate]:
    seen = set()
    result = []
    for cert in certs:
        if cert.sha256 in seen:
            continue
        seen.add(cert.sha256)
        result.append(cert)
    return result


def ensure_monotonic(before: SignatureLevel, after: SignatureLevel) -> None:
    if after < before:
        raise ExtensionFailedError(
            f"Signature level would regress from {before.value} "
            f"to {after.value}"
        )


# ----------------------------------------------------------------------
# Core step
# ----------------------------------------------------------------------

async def advance_to_lta(
    data: bytes,
    ctx: VerificationContext,
    timestamper: TimeStamper,
    *,
    params: Optional[SignatureParameters] = None,
    trace_id: Optional[str] = None,
) -> SignedDocument:
    """
    Add validation data and one archive timestamp to a signed document.

    Raises:
        ExtensionFailedError: the input is unreadable or carries no
            regular signature.
        RevokedCertificateError: a certificate of an existing signature
            is revoked. A signer whose chain cannot be built is logged
            and extended without a validation path.
    """
    params = params or build_extension_parameters()

    try:
        reader = open_reader(data)
    except InvalidDocumentError as exc:
        raise ExtensionFailedError(
            "Input is not a readable signed PDF"
        ) from exc

    signatures = reader.embedded_regular_signatures
    if not signatures:
        raise ExtensionFailedError(
            "Document carries no recognizable prior signature"
        )

    input_level = detect_level(data)
    doc_timestamps = reader.embedded_timestamp_signatures

    logger.info(
        "extension_started",
        extra={
            "trace_id": trace_id,
            "input_level": input_level.value,
            "signatures": len(signatures),
            "document_timestamps": len(doc_timestamps),
            "chain_validation": ctx.chain_validation,
        },
    )

    paths = []
    certs: List[x509.Certificate] = []

    for sig in signatures:
        signer_cert = sig.signer_cert
        others = list(sig.other_embedded_certs)
        certs.append(signer_cert)
        certs.extend(others)

        # A foreign chain only costs the path; its certificates still go
        # into the DSS. Revocation stays fatal.
        try:
            path = await verify_certificate(
                ctx,
                signer_cert,
                others,
                best_signature_time=_best_signature_time(sig),
            )
        except InvalidChainError as exc:
            logger.warning(
                "document_signer_unverified",
                extra={
                    "trace_id": trace_id,
                    "field_name": sig.field_name,
                    "subject": signer_cert.subject.human_friendly,
                    "detail": str(exc),
                },
            )
            path = None

        if path is not None:
            paths.append(path)

        covered = sig.attached_timestamp_data is not None or any(
            ts.signed_revision > sig.signed_revision for ts in doc_timestamps
        )
        if not covered:
            ctx.alert(
                AlertCondition.UNCOVERED_POE,
                ExtensionFailedError(
                    f"Signature {sig.field_name} has no proof of existence "
                    "before this extension"
                ),
            )

    for ts in doc_timestamps:
        await check_timestamp(ctx, ts)

    extended = await add_archive_timestamp(
        data,
        params,
        timestamper,
        paths=paths,
        certs=_unique(certs),
        validation_context=ctx.validation_context,
    )

    ensure_monotonic(input_level, params.level)

    logger.info(
        "extension_completed",
        extra={
            "trace_id": trace_id,
            "input_level": input_level.value,
            "signature_level": params.level.value,
            "re_archived": input_level == SignatureLevel.LTA,
        },
    )
    return SignedDocument(data=extended, level=params.level)


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

async def extend_document(
    source: DocumentSource,
    identity: Optional[SigningIdentity] = None,
    *,
    config: OperationConfig,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> SignedDocument:
    """
    Advance a signed document to LTA.

    With an identity, its certificate chain seeds the verifier and every
    signer certificate is validated. Without one, a minimal verifier is
    used and chain validation is skipped.
    """
    data = source.read()
    if identity is not None:
        identity.validate()

    chain = ()
    if identity is not None:
        with identity.open() as token:
            entries = token.keys()
            if not entries:
                raise NoSigningKeyError(
                    "Signing identity has no usable key entry"
                )
            chain = entries[0].chain

    async with operation_revocation_sources(config) as sources:
        if chain:
            ctx = build_verification_context(
                classify_chain(chain),
                sources,
                config.alert_policy,
            )
        else:
            ctx = build_minimal_verification_context(
                sources,
                config.alert_policy,
            )

        async with open_timestamper(config, timestamper) as tsa:
            return await advance_to_lta(data, ctx, tsa, trace_id=trace_id)


async def extend_pdf_bytes(
    pdf_bytes: bytes,
    identity: Optional[SigningIdentity] = None,
    *,
    config: OperationConfig,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> bytes:
    result = await extend_document(
        InMemoryDocument(pdf_bytes),
        identity,
        config=config,
        timestamper=timestamper,
        trace_id=trace_id,
    )
    return result.data


async def extend_pdf_with_pem(
    pdf_bytes: bytes,
    certificate_pem: str,
    private_key_pem: str,
    *,
    config: OperationConfig,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> bytes:
    return await extend_pdf_bytes(
        pdf_bytes,
        InlinePemIdentity(
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
        ),
        config=config,
        timestamper=timestamper,
        trace_id=trace_id,
    )
