"""
Verifier assembly.

Combines the trust sources of a certificate chain, the revocation sources
of the current operation and an alert policy into one immutable
``VerificationContext``. Both the signing and the extension flows consult
this context to decide whether a certificate may be used and whether the
revocation evidence gathered is good enough to embed.

Alert policy:
    Each verification condition maps to LOG (record and continue) or
    RAISE (escalate to a failure). A revoked certificate is always RAISE;
    a policy that says otherwise cannot be constructed.

Exception handling policy:
    Only pyhanko-certvalidator's path and revocation errors are caught
    here, and each is translated into the sealing error taxonomy. Anything
    else propagates unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from asn1crypto import crl, ocsp, x509
from pydantic import BaseModel, ConfigDict, field_validator
from pyhanko.sign.validation import async_validate_pdf_timestamp
from pyhanko.sign.validation.errors import SignatureValidationError
from pyhanko_certvalidator import CertificateValidator, ValidationContext
from pyhanko_certvalidator.errors import (
    InsufficientRevinfoError,
    InvalidCertificateError,
    PathBuildingError,
    PathValidationError,
    RevokedError,
)
from pyhanko_certvalidator.path import ValidationPath

from lta_signer.app.core.errors import (
    InvalidChainError,
    InvalidTimestampError,
    RevocationUnavailableError,
    RevokedCertificateError,
    SealingError,
)
from lta_signer.app.services.revocation import RevocationSources
from lta_signer.app.services.trust import TrustSources

logger = logging.getLogger("lta_signer.verifier")

# Either bit qualifies a certificate for document signatures.
SIGNER_KEY_USAGE = frozenset({"digital_signature", "non_repudiation"})


# ----------------------------------------------------------------------
# Alert policy
# ----------------------------------------------------------------------

class AlertAction(str, Enum):
    LOG = "log"
    RAISE = "raise"


class AlertCondition(str, Enum):
    MISSING_REVOCATION_DATA = "missing_revocation_data"
    INVALID_TIMESTAMP = "invalid_timestamp"
    NO_REVOCATION_AFTER_BEST_SIGNATURE_TIME = (
        "no_revocation_after_best_signature_time"
    )
    REVOKED_CERTIFICATE = "revoked_certificate"
    UNCOVERED_POE = "uncovered_poe"


class AlertPolicy(BaseModel):
    """
    Severity mapping for verification conditions.
    """

    missing_revocation_data: AlertAction = AlertAction.LOG
    invalid_timestamp: AlertAction = AlertAction.LOG
    no_revocation_after_best_signature_time: AlertAction = AlertAction.LOG
    uncovered_poe: AlertAction = AlertAction.LOG
    revoked_certificate: AlertAction = AlertAction.RAISE

    model_config = ConfigDict(frozen=True)

    @field_validator("revoked_certificate")
    @classmethod
    def _revocation_is_fatal(cls, value: AlertAction) -> AlertAction:
        if value != AlertAction.RAISE:
            raise ValueError("A revoked certificate must always be fatal")
        return value

    def action_for(self, condition: AlertCondition) -> AlertAction:
        return getattr(self, condition.value)


STANDARD_ALERT_POLICY = AlertPolicy()


# ----------------------------------------------------------------------
# Verification context
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationContext:
    """
    Everything one operation needs to judge certificates and timestamps.

    Built fresh per operation. ``validation_context`` accumulates the
    revocation evidence gathered while validating, which is what ends up
    in the document security store.
    """

    trust: Optional[TrustSources]
    revocation: RevocationSources
    policy: AlertPolicy
    validation_context: ValidationContext
    check_revocation_for_untrusted_chains: bool = True
    chain_validation: bool = True
    provisional_anchor: bool = False

    def alert(self, condition: AlertCondition, error: SealingError) -> None:
        """Apply the policy to a detected condition."""
        if self.policy.action_for(condition) == AlertAction.RAISE:
            logger.error(
                "verification_alert_escalated",
                extra={"condition": condition.value, "error_code": error.code},
            )
            raise error

        logger.warning(
            "verification_alert",
            extra={
                "condition": condition.value,
                "error_code": error.code,
                "detail": str(error),
            },
        )


def _revocation_mode(policy: AlertPolicy) -> str:
    if policy.missing_revocation_data == AlertAction.RAISE:
        return "hard-fail"
    return "soft-fail"


def build_verification_context(
    trust: TrustSources,
    revocation: RevocationSources,
    policy: AlertPolicy = STANDARD_ALERT_POLICY,
    *,
    check_revocation_for_untrusted_chains: bool = True,
) -> VerificationContext:
    """
    Assemble the verifier for a chain-backed operation.

    When the chain has no self-signed member and revocation checks for
    untrusted chains are on, the top of the chain stands in as a
    provisional anchor so every certificate below it is still checked.
    """
    anchors = list(trust.anchors)
    provisional = False

    if not anchors:
        if not check_revocation_for_untrusted_chains:
            raise InvalidChainError(
                "Certificate chain has no self-signed trust anchor"
            )
        anchors = [trust.adjunct[-1]]
        provisional = True
        logger.warning(
            "untrusted_chain_provisional_anchor",
            extra={"chain_length": len(trust.adjunct)},
        )

    validation_context = ValidationContext(
        trust_roots=anchors,
        other_certs=list(trust.adjunct),
        allow_fetching=revocation.allow_fetching,
        crls=list(revocation.known_crls),
        ocsps=list(revocation.known_ocsps),
        revocation_mode=_revocation_mode(policy),
        fetcher_backend=revocation.fetcher_backend,
    )

    return VerificationContext(
        trust=trust,
        revocation=revocation,
        policy=policy,
        validation_context=validation_context,
        check_revocation_for_untrusted_chains=(
            check_revocation_for_untrusted_chains
        ),
        chain_validation=True,
        provisional_anchor=provisional,
    )


def build_minimal_verification_context(
    revocation: RevocationSources,
    policy: AlertPolicy = STANDARD_ALERT_POLICY,
) -> VerificationContext:
    """
    Verifier without certificate chain validation.

    Used when a document is extended without a signing identity: only the
    revocation sources are available.
    """
    validation_context = ValidationContext(
        trust_roots=[],
        allow_fetching=revocation.allow_fetching,
        crls=list(revocation.known_crls),
        ocsps=list(revocation.known_ocsps),
        revocation_mode=_revocation_mode(policy),
        fetcher_backend=revocation.fetcher_backend,
    )
    return VerificationContext(
        trust=None,
        revocation=revocation,
        policy=policy,
        validation_context=validation_context,
        chain_validation=False,
    )


# ----------------------------------------------------------------------
# Certificate verification
# ----------------------------------------------------------------------

def _revocation_issue_times(vc: ValidationContext) -> List[datetime]:
    times: List[datetime] = []

    for entry in vc.crls:
        if isinstance(entry, crl.CertificateList):
            times.append(entry["tbs_cert_list"]["this_update"].native)

    for entry in vc.ocsps:
        if not isinstance(entry, ocsp.OCSPResponse):
            continue
        response = entry["response_bytes"]["response"].parsed
        times.append(response["tbs_response_data"]["produced_at"].native)

    return times


def _check_signer_key_usage(cert: x509.Certificate) -> None:
    key_usage = cert.key_usage_value
    if key_usage is None:
        return
    if not SIGNER_KEY_USAGE & set(key_usage.native):
        raise InvalidChainError(
            f"Certificate {cert.subject.human_friendly} allows neither "
            "digital signature nor non-repudiation"
        )


async def verify_certificate(
    ctx: VerificationContext,
    cert: x509.Certificate,
    intermediates: Iterable[x509.Certificate] = (),
    best_signature_time: Optional[datetime] = None,
) -> Optional[ValidationPath]:
    """
    Validate a signing certificate and its revocation status.

    Returns the validation path, or ``None`` when this context does not
    validate chains or revocation data turned out to be insufficient and
    the policy let that pass.

    Raises:
        RevokedCertificateError: any certificate on the path is revoked.
        InvalidChainError: no valid path to an anchor could be built, or
            the certificate allows neither digital signature nor
            non-repudiation.
        RevocationUnavailableError: missing revocation data under a
            policy that escalates it.
    """
    if not ctx.chain_validation:
        return None

    vc = ctx.validation_context
    soft_failures_before = len(vc.soft_fail_exceptions)
    subject = cert.subject.human_friendly

    _check_signer_key_usage(cert)

    validator = CertificateValidator(
        cert,
        intermediate_certs=list(intermediates),
        validation_context=vc,
    )

    try:
        path = await validator.async_validate_path()
    except RevokedError as exc:
        logger.error(
            "certificate_revoked",
            extra={
                "subject": subject,
                "reason": str(getattr(exc, "reason", "unspecified")),
            },
        )
        raise RevokedCertificateError(
            f"Certificate on the signing path is revoked: {exc}"
        ) from exc
    except InsufficientRevinfoError as exc:
        ctx.alert(
            AlertCondition.MISSING_REVOCATION_DATA,
            RevocationUnavailableError(str(exc)),
        )
        return None
    except (PathBuildingError, PathValidationError) as exc:
        raise InvalidChainError(
            f"Signing certificate chain is not valid: {exc}"
        ) from exc
    except InvalidCertificateError as exc:
        raise InvalidChainError(
            f"Signing certificate cannot be used for signing: {exc}"
        ) from exc

    soft_failures = vc.soft_fail_exceptions[soft_failures_before:]
    if soft_failures:
        ctx.alert(
            AlertCondition.MISSING_REVOCATION_DATA,
            RevocationUnavailableError(
                "; ".join(str(e) for e in soft_failures)
            ),
        )

    if best_signature_time is not None:
        issued = _revocation_issue_times(vc)
        if issued and not any(t > best_signature_time for t in issued):
            ctx.alert(
                AlertCondition.NO_REVOCATION_AFTER_BEST_SIGNATURE_TIME,
                RevocationUnavailableError(
                    "No revocation data was issued after the best "
                    "signature time"
                ),
            )

    logger.info(
        "certificate_verified",
        extra={
            "subject": subject,
            "path_length": path.pkix_len,
            "provisional_anchor": ctx.provisional_anchor,
        },
    )
    return path


async def check_timestamp(
    ctx: VerificationContext,
    embedded_timestamp,
) -> bool:
    """
    Check an existing document timestamp.

    An invalid timestamp triggers the ``invalid_timestamp`` alert.
    """
    try:
        status = await async_validate_pdf_timestamp(
            embedded_timestamp,
            validation_context=ctx.validation_context,
            skip_diff=True,
        )
    except SignatureValidationError as exc:
        ctx.alert(
            AlertCondition.INVALID_TIMESTAMP,
            InvalidTimestampError(f"Document timestamp is invalid: {exc}"),
        )
        return False

    if not (status.intact and status.valid):
        ctx.alert(
            AlertCondition.INVALID_TIMESTAMP,
            InvalidTimestampError(
                f"Document timestamp {embedded_timestamp.field_name} "
                "does not verify"
            ),
        )
        return False

    return True
