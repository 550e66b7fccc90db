"""
Signing orchestration.

State machine for one signature:

    UNSIGNED -> DIGEST_COMPUTED -> SIGNATURE_EMBEDDED

Two target paths share the machine:
- TWO_STEP: sign at LT (signature timestamp in the CMS, validation data
  in the DSS), then extend to LTA with one archive timestamp. The result
  carries two timestamps. Used by the file entry point.
- DIRECT_LTA: sign with LTA parameters and append the DSS together with a
  single archive timestamp. The result carries one timestamp. Used by the
  byte entry points.

Guarantees:
- Input and identity problems surface before any network access
- The signing token is closed on every exit path
- A revoked certificate anywhere on the path is fatal; no document is
  returned
- Container overflow is reported, never retried
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pyhanko.sign.timestamps import TimeStamper

from lta_signer.app.core.config import OperationConfig
from lta_signer.app.services.container import (
    add_archive_timestamp,
    append_validation_data,
    build_signature_container,
    embed_signature,
    get_data_to_sign,
    open_timestamper,
)
from lta_signer.app.services.documents import (
    DocumentSource,
    FileDocument,
    InMemoryDocument,
    SignedDocument,
    open_reader,
)
from lta_signer.app.services.extension import (
    advance_to_lta,
    operation_revocation_sources,
)
from lta_signer.app.services.identity import (
    InlinePemIdentity,
    SigningIdentity,
    TokenSigner,
)
from lta_signer.app.services.parameters import (
    SignatureLevel,
    build_extension_parameters,
    build_signature_parameters,
)
from lta_signer.app.services.trust import classify_chain
from lta_signer.app.services.verifier import (
    build_verification_context,
    verify_certificate,
)

logger = logging.getLogger("lta_signer.signing")


class SigningState(str, Enum):
    UNSIGNED = "unsigned"
    DIGEST_COMPUTED = "digest_computed"
    SIGNATURE_EMBEDDED = "signature_embedded"


class SigningPath(str, Enum):
    TWO_STEP = "two_step"
    DIRECT_LTA = "direct_lta"


_NEXT_STATE = {
    SigningState.UNSIGNED: SigningState.DIGEST_COMPUTED,
    SigningState.DIGEST_COMPUTED: SigningState.SIGNATURE_EMBEDDED,
}

_INITIAL_LEVEL = {
    SigningPath.TWO_STEP: SignatureLevel.LT,
    SigningPath.DIRECT_LTA: SignatureLevel.LTA,
}


class SigningStateMachine:
    """Enforces the order of the signing states for one operation."""

    def __init__(self, trace_id: Optional[str] = None):
        self.state = SigningState.UNSIGNED
        self.trace_id = trace_id

    def advance(self, target: SigningState) -> None:
        if _NEXT_STATE.get(self.state) != target:
            raise RuntimeError(
                f"Illegal signing transition {self.state.value} -> "
                f"{target.value}"
            )
        logger.debug(
            "signing_state_changed",
            extra={
                "trace_id": self.trace_id,
                "from_state": self.state.value,
                "to_state": target.value,
            },
        )
        self.state = target


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

async def sign_document(
    source: DocumentSource,
    identity: SigningIdentity,
    *,
    config: OperationConfig,
    path: SigningPath = SigningPath.DIRECT_LTA,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> SignedDocument:
    """
    Sign a document and bring it to PAdES BASELINE-LTA.

    Raises:
        MissingInputError / InvalidDocumentError / NoSigningKeyError:
            before any network access.
        KeyAccessError: the private key cannot be used.
        RevokedCertificateError / InvalidChainError: after verification.
        ContainerOverflowError: the CMS container exceeds its reservation.
        InvalidTimestampError: the timestamp authority failed.
    """
    # --------------------------------------------------------------
    # Validation (no network)
    # --------------------------------------------------------------
    data = source.read()
    open_reader(data)
    identity.validate()

    machine = SigningStateMachine(trace_id)
    target_level = _INITIAL_LEVEL[path]

    logger.info(
        "signing_started",
        extra={
            "trace_id": trace_id,
            "document": source.name,
            "identity": identity.kind,
            "signing_path": path.value,
        },
    )

    with identity.open() as token:
        entries = token.keys()
        key_entry = entries[0] if entries else None
        params = build_signature_parameters(key_entry, target_level)
        trust = classify_chain(key_entry.chain)

        async with operation_revocation_sources(config) as sources:
            # ----------------------------------------------------------
            # Verifier assembly and signer certificate validation
            # ----------------------------------------------------------
            ctx = build_verification_context(
                trust,
                sources,
                config.alert_policy,
            )
            signer_path = await verify_certificate(
                ctx,
                key_entry.certificate,
                trust.intermediates,
            )
            paths = [signer_path] if signer_path is not None else []
            signer = TokenSigner(token=token, key_entry=key_entry)

            async with open_timestamper(config, timestamper) as tsa:
                # ------------------------------------------------------
                # Digest, sign, embed
                # ------------------------------------------------------
                pending = await get_data_to_sign(data, params, signer)
                machine.advance(SigningState.DIGEST_COMPUTED)

                signature_cms = await build_signature_container(
                    pending,
                    signer,
                    timestamper=(
                        tsa if path is SigningPath.TWO_STEP else None
                    ),
                )
                signed = await embed_signature(pending, signature_cms)
                machine.advance(SigningState.SIGNATURE_EMBEDDED)

                # ------------------------------------------------------
                # Long-term validation data and archival
                # ------------------------------------------------------
                if path is SigningPath.TWO_STEP:
                    lt_document = SignedDocument(
                        data=append_validation_data(
                            signed,
                            paths=paths,
                            certs=key_entry.chain,
                            validation_context=ctx.validation_context,
                        ),
                        level=SignatureLevel.LT,
                    )
                    logger.info(
                        "signature_embedded",
                        extra={
                            "trace_id": trace_id,
                            "signature_level": lt_document.level.value,
                        },
                    )
                    result = await advance_to_lta(
                        lt_document.data,
                        ctx,
                        tsa,
                        params=build_extension_parameters(),
                        trace_id=trace_id,
                    )
                else:
                    result = SignedDocument(
                        data=await add_archive_timestamp(
                            signed,
                            params,
                            tsa,
                            paths=paths,
                            certs=key_entry.chain,
                            validation_context=ctx.validation_context,
                        ),
                        level=SignatureLevel.LTA,
                    )

    logger.info(
        "signing_completed",
        extra={
            "trace_id": trace_id,
            "signature_level": result.level.value,
            "signing_path": path.value,
            "bytes": len(result.data),
        },
    )
    return result


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

async def sign_pdf(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    identity: SigningIdentity,
    *,
    config: OperationConfig,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> Path:
    """File to file signing through LT, then LTA."""
    result = await sign_document(
        FileDocument(input_path),
        identity,
        config=config,
        path=SigningPath.TWO_STEP,
        timestamper=timestamper,
        trace_id=trace_id,
    )
    return result.write_to(output_path)


async def sign_pdf_bytes(
    pdf_bytes: bytes,
    identity: SigningIdentity,
    *,
    config: OperationConfig,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> bytes:
    """Bytes to bytes signing straight to LTA."""
    result = await sign_document(
        InMemoryDocument(pdf_bytes),
        identity,
        config=config,
        path=SigningPath.DIRECT_LTA,
        timestamper=timestamper,
        trace_id=trace_id,
    )
    return result.data


async def sign_pdf_with_pem(
    pdf_bytes: bytes,
    certificate_pem: str,
    private_key_pem: str,
    *,
    config: OperationConfig,
    timestamper: Optional[TimeStamper] = None,
    trace_id: Optional[str] = None,
) -> bytes:
    return await sign_pdf_bytes(
        pdf_bytes,
        InlinePemIdentity(
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
        ),
        config=config,
        timestamper=timestamper,
        trace_id=trace_id,
    )
