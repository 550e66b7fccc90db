"""
Signing identities and the signing token.

A signing identity is where the private key and certificate chain come
from:
- ``KeystoreIdentity``: a PKCS#12 keystore on disk, unlocked by password
- ``InlinePemIdentity``: certificate and private key PEM supplied by the
  caller

Opening an identity yields a ``SigningToken``: a scoped private-key handle
that signs pre-computed digests. The token is closed when the signing
operation ends, whatever the outcome. ``TokenSigner`` adapts a token to
pyHanko's ``Signer`` interface so the CMS container is assembled locally
while the raw signature comes from the token.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from asn1crypto import x509
from cryptography import x509 as crypto_x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from cryptography.hazmat.primitives.serialization import pkcs12
from pyhanko.sign import signers
from pyhanko_certvalidator.registry import SimpleCertificateStore

from lta_signer.app.core.errors import (
    KeyAccessError,
    MissingInputError,
    NoSigningKeyError,
)
from lta_signer.app.services.parameters import DigestAlgorithm
from lta_signer.app.services.trust import order_chain, to_asn1

logger = logging.getLogger("lta_signer.identity")

_HASHES = {
    DigestAlgorithm.SHA256: hashes.SHA256,
}


# ----------------------------------------------------------------------
# Key entries and the signing token
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PrivateKeyEntry:
    """Certificate and chain (leaf first) bound to one private key."""

    alias: str
    certificate: x509.Certificate
    chain: Tuple[x509.Certificate, ...]


def _hash_for(algorithm: Union[DigestAlgorithm, str]) -> hashes.HashAlgorithm:
    if not isinstance(algorithm, DigestAlgorithm):
        algorithm = algorithm.lower()
    try:
        return _HASHES[DigestAlgorithm(algorithm)]()
    except (KeyError, ValueError):
        raise KeyAccessError(
            f"Unsupported digest algorithm: {algorithm}"
        ) from None


class SigningToken:
    """
    Scoped handle on a private key.

    Use as a context manager; signing through a closed token fails.
    """

    def __init__(self, private_key, entries: Sequence[PrivateKeyEntry]):
        self._private_key = private_key
        self._entries = list(entries)
        self._closed = False

    def __enter__(self) -> "SigningToken":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def keys(self) -> List[PrivateKeyEntry]:
        return list(self._entries)

    def sign(
        self,
        digest: bytes,
        algorithm: Union[DigestAlgorithm, str],
        key_entry: PrivateKeyEntry,
    ) -> bytes:
        """Sign a pre-computed ``digest`` with the key behind ``key_entry``."""
        if self._closed:
            raise KeyAccessError("Signing token is already closed")
        if key_entry not in self._entries:
            raise KeyAccessError(
                f"Key entry {key_entry.alias!r} does not belong to this token"
            )

        prehashed = Prehashed(_hash_for(algorithm))
        key = self._private_key

        try:
            if isinstance(key, rsa.RSAPrivateKey):
                return key.sign(digest, padding.PKCS1v15(), prehashed)
            if isinstance(key, ec.EllipticCurvePrivateKey):
                return key.sign(digest, ec.ECDSA(prehashed))
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyAccessError(
                f"Private key operation failed: {exc}"
            ) from exc

        raise KeyAccessError(
            f"Unsupported private key type: {type(key).__name__}"
        )

    def close(self) -> None:
        if not self._closed:
            self._private_key = None
            self._closed = True
            logger.debug("signing_token_closed")


class TokenSigner(signers.Signer):
    """
    pyHanko Signer that delegates the raw signature to a SigningToken.
    """

    def __init__(self, *, token: SigningToken, key_entry: PrivateKeyEntry):
        self._token = token
        self._key_entry = key_entry

        cert_registry = SimpleCertificateStore()
        cert_registry.register_multiple(key_entry.chain)

        super().__init__(
            signing_cert=key_entry.certificate,
            cert_registry=cert_registry,
            prefer_pss=False,
        )

        public_key = key_entry.certificate.public_key
        if public_key.algorithm == "rsa":
            self._placeholder_size = public_key.bit_size // 8
        else:
            # DER ECDSA signature upper bound
            self._placeholder_size = 2 * (public_key.bit_size // 8) + 9

    async def async_sign_raw(
        self,
        data: bytes,
        digest_algorithm: str,
        dry_run: bool = False,
    ) -> bytes:
        if dry_run:
            return b"\x00" * self._placeholder_size

        hasher = hashes.Hash(_hash_for(digest_algorithm))
        hasher.update(data)
        digest = hasher.finalize()

        return self._token.sign(digest, digest_algorithm, self._key_entry)


# ----------------------------------------------------------------------
# Identities
# ----------------------------------------------------------------------

def _same_public_key(cert: crypto_x509.Certificate, private_key) -> bool:
    fmt = (
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return (
        cert.public_key().public_bytes(*fmt)
        == private_key.public_key().public_bytes(*fmt)
    )


class SigningIdentity(abc.ABC):
    """Source of a private key and its certificate chain."""

    kind: str = "identity"

    @abc.abstractmethod
    def validate(self) -> None:
        """Raise ``MissingInputError`` when required material is absent."""

    @abc.abstractmethod
    def open(self) -> SigningToken:
        """Load the key material and return an open signing token."""


@dataclass(frozen=True)
class KeystoreIdentity(SigningIdentity):
    """PKCS#12 keystore on disk."""

    path: Path
    password: str = field(repr=False)
    kind = "keystore"

    def validate(self) -> None:
        if not str(self.path):
            raise MissingInputError("Keystore path is required")
        if not self.password:
            raise MissingInputError("Keystore password is required")

    def open(self) -> SigningToken:
        self.validate()
        try:
            data = Path(self.path).read_bytes()
        except OSError as exc:
            raise KeyAccessError(
                f"Keystore cannot be read: {self.path}"
            ) from exc

        try:
            key, cert, additional = pkcs12.load_key_and_certificates(
                data, self.password.encode("utf-8")
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyAccessError(
                "Keystore cannot be unlocked with the supplied password"
            ) from exc

        if key is None or cert is None:
            raise NoSigningKeyError("Keystore holds no private key entry")

        leaf = to_asn1(cert)
        chain = order_chain(leaf, [to_asn1(c) for c in additional or ()])

        logger.info(
            "keystore_identity_loaded",
            extra={
                "subject": leaf.subject.human_friendly,
                "chain_length": len(chain),
            },
        )
        return SigningToken(
            key,
            [PrivateKeyEntry(alias="keystore", certificate=leaf, chain=chain)],
        )


@dataclass(frozen=True)
class InlinePemIdentity(SigningIdentity):
    """
    Certificate (optionally followed by its chain) and private key given
    as PEM text by the caller.
    """

    certificate_pem: str
    private_key_pem: str = field(repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    kind = "inline_pem"

    def validate(self) -> None:
        if not self.certificate_pem or not self.certificate_pem.strip():
            raise MissingInputError("Certificate PEM is required")
        if not self.private_key_pem or not self.private_key_pem.strip():
            raise MissingInputError("Private key PEM is required")

    def open(self) -> SigningToken:
        self.validate()

        try:
            certs = crypto_x509.load_pem_x509_certificates(
                self.certificate_pem.encode("ascii")
            )
        except ValueError as exc:
            raise NoSigningKeyError(
                "Certificate PEM holds no readable certificate"
            ) from exc

        try:
            key = serialization.load_pem_private_key(
                self.private_key_pem.encode("ascii"),
                password=(
                    self.passphrase.encode("utf-8")
                    if self.passphrase else None
                ),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyAccessError("Private key PEM cannot be loaded") from exc

        leaf = next((c for c in certs if _same_public_key(c, key)), None)
        if leaf is None:
            raise NoSigningKeyError(
                "No certificate in the PEM matches the private key"
            )

        leaf_asn1 = to_asn1(leaf)
        chain = order_chain(leaf_asn1, [to_asn1(c) for c in certs])

        logger.info(
            "inline_identity_loaded",
            extra={
                "subject": leaf_asn1.subject.human_friendly,
                "chain_length": len(chain),
            },
        )
        entry = PrivateKeyEntry(
            alias="inline", certificate=leaf_asn1, chain=chain
        )
        return SigningToken(key, [entry])
