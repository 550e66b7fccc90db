"""
Tests for verifier assembly and certificate verification.

Coverage matrix:

  Chain with root                      → root anchors, no provisional anchor
  Chain without root                   → top of chain as provisional anchor
  Chain without root, checks disabled  → InvalidChainError
  Minimal verifier                     → chain validation skipped
  Valid signer certificate             → validation path returned
  Revoked certificate                  → RevokedCertificateError, always
  Insufficient revocation data         → LOG continues, RAISE escalates
  Revoked signer listed in a real CRL  → RevokedCertificateError
  Broken path                          → InvalidChainError
  Key usage                            → signature or non-repudiation bit
  Policy that logs revocation          → cannot be constructed
"""

import logging

import pytest
from asn1crypto import crl
from cryptography import x509
from pydantic import ValidationError
from pyhanko_certvalidator.errors import (
    InsufficientRevinfoError,
    PathBuildingError,
    RevokedError,
)

from lta_signer.app.core.errors import (
    InvalidChainError,
    RevocationUnavailableError,
    RevokedCertificateError,
)
from lta_signer.app.services import verifier
from lta_signer.app.services.revocation import offline_revocation_sources
from lta_signer.app.services.trust import classify_chain, to_asn1
from lta_signer.app.services.verifier import (
    AlertAction,
    AlertCondition,
    AlertPolicy,
    STANDARD_ALERT_POLICY,
    build_minimal_verification_context,
    build_verification_context,
    verify_certificate,
)
from lta_signer.tests.fixtures.pki_factory import (
    NON_REPUDIATION_ONLY,
    build_sample_pki,
    issue_certificate,
    issue_crl,
)

pytestmark = pytest.mark.anyio


def _context(pki, policy=STANDARD_ALERT_POLICY, chain=None):
    chain = chain if chain is not None else [to_asn1(c) for c in pki.chain]
    return build_verification_context(
        classify_chain(chain),
        offline_revocation_sources(),
        policy,
    )


def _failing_validator(error):
    class _FailingValidator:
        def __init__(self, cert, intermediate_certs=None,
                     validation_context=None):
            self.cert = cert

        async def async_validate_path(self):
            raise error

    return _FailingValidator


def _path_error(cls, message):
    # Path validation errors normally carry the validator's internal state.
    return cls.__new__(cls, message)


# ---------------------------------------------------------------------------
# Verifier assembly
# ---------------------------------------------------------------------------

async def test_chain_with_root_uses_real_anchor(pki):
    ctx = _context(pki)

    assert ctx.chain_validation is True
    assert ctx.provisional_anchor is False
    assert ctx.trust.has_anchor


async def test_chain_without_root_uses_provisional_anchor(pki, caplog):
    chain = [to_asn1(pki.signer), to_asn1(pki.issuing)]
    caplog.set_level(logging.WARNING, logger="lta_signer.verifier")

    ctx = _context(pki, chain=chain)

    assert ctx.provisional_anchor is True
    assert any(
        r.message == "untrusted_chain_provisional_anchor"
        for r in caplog.records
    )


async def test_untrusted_chain_rejected_when_checks_disabled(pki):
    chain = [to_asn1(pki.signer), to_asn1(pki.issuing)]

    with pytest.raises(InvalidChainError):
        build_verification_context(
            classify_chain(chain),
            offline_revocation_sources(),
            check_revocation_for_untrusted_chains=False,
        )


async def test_minimal_context_skips_chain_validation(pki):
    ctx = build_minimal_verification_context(offline_revocation_sources())

    assert ctx.trust is None
    assert ctx.chain_validation is False
    assert await verify_certificate(ctx, to_asn1(pki.signer)) is None


# ---------------------------------------------------------------------------
# Certificate verification
# ---------------------------------------------------------------------------

async def test_valid_signer_certificate_yields_path(pki):
    ctx = _context(pki)

    path = await verify_certificate(
        ctx,
        to_asn1(pki.signer),
        [to_asn1(pki.issuing)],
    )

    assert path is not None
    assert path.pkix_len == 2


async def test_revoked_certificate_is_fatal(pki, monkeypatch):
    monkeypatch.setattr(
        verifier,
        "CertificateValidator",
        _failing_validator(_path_error(RevokedError, "revoked")),
    )
    ctx = _context(pki)

    with pytest.raises(RevokedCertificateError):
        await verify_certificate(ctx, to_asn1(pki.signer))


async def test_insufficient_revocation_data_is_logged(pki, monkeypatch, caplog):
    monkeypatch.setattr(
        verifier,
        "CertificateValidator",
        _failing_validator(
            _path_error(InsufficientRevinfoError, "no revocation data")
        ),
    )
    caplog.set_level(logging.WARNING, logger="lta_signer.verifier")
    ctx = _context(pki)

    assert await verify_certificate(ctx, to_asn1(pki.signer)) is None
    assert any(r.message == "verification_alert" for r in caplog.records)


async def test_insufficient_revocation_data_escalates_under_strict_policy(
    pki, monkeypatch
):
    monkeypatch.setattr(
        verifier,
        "CertificateValidator",
        _failing_validator(
            _path_error(InsufficientRevinfoError, "no revocation data")
        ),
    )
    policy = AlertPolicy(missing_revocation_data=AlertAction.RAISE)
    ctx = _context(pki, policy=policy)

    with pytest.raises(RevocationUnavailableError):
        await verify_certificate(ctx, to_asn1(pki.signer))


async def test_path_building_failure_is_invalid_chain(pki, monkeypatch):
    monkeypatch.setattr(
        verifier,
        "CertificateValidator",
        _failing_validator(PathBuildingError("no path to a trust root")),
    )
    ctx = _context(pki)

    with pytest.raises(InvalidChainError):
        await verify_certificate(ctx, to_asn1(pki.signer))


async def test_signer_listed_in_crl_is_revoked():
    crl_pki = build_sample_pki(signer_crl_url="http://crl.invalid/ca.crl")
    revocations = crl.CertificateList.load(
        issue_crl(crl_pki.issuing, crl_pki.issuing_key, [crl_pki.signer])
    )
    ctx = build_verification_context(
        classify_chain([to_asn1(c) for c in crl_pki.chain]),
        offline_revocation_sources(crls=[revocations]),
    )

    with pytest.raises(RevokedCertificateError):
        await verify_certificate(
            ctx,
            to_asn1(crl_pki.signer),
            [to_asn1(crl_pki.issuing)],
        )


# ---------------------------------------------------------------------------
# Key usage
# ---------------------------------------------------------------------------

def _leaf(pki, key_usage):
    return to_asn1(
        issue_certificate(
            "Test Leaf",
            pki.signer_key,
            issuer_cert=pki.issuing,
            issuer_key=pki.issuing_key,
            key_usage=key_usage,
        )
    )


async def test_non_repudiation_only_certificate_is_accepted(pki):
    path = await verify_certificate(
        _context(pki),
        _leaf(pki, NON_REPUDIATION_ONLY),
        [to_asn1(pki.issuing)],
    )

    assert path is not None


async def test_encipherment_only_certificate_is_rejected(pki):
    encipherment_only = x509.KeyUsage(
        digital_signature=False,
        content_commitment=False,
        key_encipherment=True,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=False,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )

    with pytest.raises(InvalidChainError):
        await verify_certificate(
            _context(pki),
            _leaf(pki, encipherment_only),
            [to_asn1(pki.issuing)],
        )


# ---------------------------------------------------------------------------
# Alert policy
# ---------------------------------------------------------------------------

def test_policy_cannot_downgrade_revocation():
    with pytest.raises(ValidationError):
        AlertPolicy(revoked_certificate=AlertAction.LOG)


def test_standard_policy_logs_everything_but_revocation():
    for condition in AlertCondition:
        action = STANDARD_ALERT_POLICY.action_for(condition)
        if condition is AlertCondition.REVOKED_CERTIFICATE:
            assert action == AlertAction.RAISE
        else:
            assert action == AlertAction.LOG


def test_alert_raises_only_under_raise_policy(pki):
    error = RevocationUnavailableError("missing")

    _context(pki).alert(AlertCondition.MISSING_REVOCATION_DATA, error)

    strict = _context(
        pki, policy=AlertPolicy(missing_revocation_data=AlertAction.RAISE)
    )
    with pytest.raises(RevocationUnavailableError):
        strict.alert(AlertCondition.MISSING_REVOCATION_DATA, error)
