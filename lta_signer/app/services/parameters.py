"""
Level-specific signature parameters.

Reserved container capacity per level:
- LT:  32 KiB (one certificate chain plus one set of CRL / OCSP evidence)
- LTA: 64 KiB (room for an additional archive timestamp token)

Capacity is counted in bytes of DER-encoded signature container. The PDF
``/Contents`` placeholder is hex-encoded and therefore twice as large.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from asn1crypto import x509

from lta_signer.app.core.errors import NoSigningKeyError

if TYPE_CHECKING:
    from lta_signer.app.services.identity import PrivateKeyEntry


class SignatureLevel(str, Enum):
    """PAdES baseline levels in order of archival maturity."""

    B_B = "PAdES-BASELINE-B"
    T = "PAdES-BASELINE-T"
    LT = "PAdES-BASELINE-LT"
    LTA = "PAdES-BASELINE-LTA"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, SignatureLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, SignatureLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, SignatureLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, SignatureLevel):
            return NotImplemented
        return self.rank >= other.rank


_LEVEL_ORDER = (
    SignatureLevel.B_B,
    SignatureLevel.T,
    SignatureLevel.LT,
    SignatureLevel.LTA,
)


class DigestAlgorithm(str, Enum):
    SHA256 = "sha256"


LEVEL_CAPACITY = {
    SignatureLevel.LT: 32 * 1024,
    SignatureLevel.LTA: 64 * 1024,
}


@dataclass(frozen=True)
class SignatureParameters:
    level: SignatureLevel
    capacity: int
    digest_algorithm: DigestAlgorithm = DigestAlgorithm.SHA256
    signing_certificate: Optional[x509.Certificate] = None
    certificate_chain: Tuple[x509.Certificate, ...] = ()

    @property
    def bytes_reserved(self) -> int:
        """Size of the hex-encoded placeholder in the PDF."""
        return self.capacity * 2


def _capacity_for(level: SignatureLevel) -> int:
    try:
        return LEVEL_CAPACITY[level]
    except KeyError:
        raise ValueError(
            f"No container reservation is defined for {level.value}"
        ) from None


def build_signature_parameters(
    key_entry: Optional["PrivateKeyEntry"],
    level: SignatureLevel,
) -> SignatureParameters:
    """
    Parameters for signing with ``key_entry`` at ``level``.

    Raises:
        NoSigningKeyError: the identity produced no usable key entry.
        ValueError: ``level`` has no container reservation.
    """
    if key_entry is None:
        raise NoSigningKeyError("Signing identity has no usable key entry")

    return SignatureParameters(
        level=level,
        capacity=_capacity_for(level),
        signing_certificate=key_entry.certificate,
        certificate_chain=key_entry.chain,
    )


def build_extension_parameters(
    level: SignatureLevel = SignatureLevel.LTA,
) -> SignatureParameters:
    """Parameters for extending a document without a signing identity."""
    return SignatureParameters(level=level, capacity=_capacity_for(level))


def with_level(
    params: SignatureParameters,
    level: SignatureLevel,
) -> SignatureParameters:
    """Copy of ``params`` targeting a higher level."""
    if level < params.level:
        raise ValueError(
            f"Cannot lower target level from {params.level.value} "
            f"to {level.value}"
        )
    return replace(params, level=level, capacity=_capacity_for(level))
