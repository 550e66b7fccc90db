"""
Trust classification for signing certificate chains.

A chain is split into:
- trust anchors: members that are self-signed (issuer equals subject and
  the signature verifies against the certificate's own public key)
- adjunct certificates: every member of the chain, anchors included, so
  that path construction always has the full chain available

The classification is derived from the chain and never edited on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple, Union

from asn1crypto import x509
from cryptography import x509 as crypto_x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from lta_signer.app.core.errors import InvalidChainError

logger = logging.getLogger("lta_signer.trust")

CertificateLike = Union[x509.Certificate, bytes]


@dataclass(frozen=True)
class TrustSources:
    """
    Anchor and adjunct sets derived from one certificate chain.

    Invariants:
    - every anchor is self-signed
    - anchors are a subset of the adjunct set
    - the adjunct set is the input chain, each certificate once, in order
    """

    anchors: Tuple[x509.Certificate, ...]
    adjunct: Tuple[x509.Certificate, ...]

    @property
    def has_anchor(self) -> bool:
        return bool(self.anchors)

    @property
    def intermediates(self) -> Tuple[x509.Certificate, ...]:
        anchor_ids = {cert.sha256 for cert in self.anchors}
        return tuple(
            cert for cert in self.adjunct if cert.sha256 not in anchor_ids
        )


# ----------------------------------------------------------------------
# Parsing helpers
# ----------------------------------------------------------------------

def load_certificate(value: CertificateLike) -> x509.Certificate:
    """Parse a certificate given as asn1crypto object, DER or PEM bytes."""
    if isinstance(value, x509.Certificate):
        return value

    if not isinstance(value, (bytes, bytearray)) or not value:
        raise InvalidChainError("Certificate chain member is empty")

    data = bytes(value)
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            parsed = crypto_x509.load_pem_x509_certificate(data)
        else:
            parsed = crypto_x509.load_der_x509_certificate(data)
    except ValueError as exc:
        raise InvalidChainError(
            "Certificate chain member cannot be parsed"
        ) from exc

    return to_asn1(parsed)


def to_asn1(cert: crypto_x509.Certificate) -> x509.Certificate:
    return x509.Certificate.load(
        cert.public_bytes(serialization.Encoding.DER)
    )


def is_self_signed(cert: x509.Certificate) -> bool:
    """
    True when the issuer equals the subject and the certificate's
    signature verifies against its own public key.
    """
    if cert.issuer != cert.subject:
        return False

    try:
        parsed = crypto_x509.load_der_x509_certificate(cert.dump())
        parsed.verify_directly_issued_by(parsed)
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False
    return True


def order_chain(
    leaf: x509.Certificate,
    others: Iterable[x509.Certificate],
) -> Tuple[x509.Certificate, ...]:
    """
    Order a keystore's certificate bag leaf first by following issuer
    links. Certificates that are not on the leaf's path keep their input
    order after the path.
    """
    remaining = [c for c in others if c.sha256 != leaf.sha256]
    ordered = [leaf]
    current = leaf

    while not is_self_signed(current):
        issuer = next(
            (c for c in remaining if c.subject == current.issuer),
            None,
        )
        if issuer is None:
            break
        remaining.remove(issuer)
        ordered.append(issuer)
        current = issuer

    return tuple(ordered + remaining)


# ----------------------------------------------------------------------
# Classification
# ----------------------------------------------------------------------

def classify_chain(chain: Sequence[CertificateLike]) -> TrustSources:
    """
    Partition a certificate chain into trust anchors and adjunct
    certificates.

    Raises:
        InvalidChainError: if the chain is empty or a member cannot be
            parsed.
    """
    if not chain:
        raise InvalidChainError("Certificate chain is empty")

    adjunct: list[x509.Certificate] = []
    anchors: list[x509.Certificate] = []
    seen: set[bytes] = set()

    for member in chain:
        cert = load_certificate(member)
        fingerprint = cert.sha256
        if fingerprint in seen:
            continue
        seen.add(fingerprint)

        adjunct.append(cert)
        if is_self_signed(cert):
            anchors.append(cert)

    logger.debug(
        "certificate_chain_classified",
        extra={
            "chain_length": len(adjunct),
            "anchor_count": len(anchors),
        },
    )

    return TrustSources(anchors=tuple(anchors), adjunct=tuple(adjunct))
