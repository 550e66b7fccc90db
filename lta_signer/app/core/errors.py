"""
Named failure conditions for the sealing core.

Every failure raised by the signing and extension flows is one of the
classes below. Callers match on the family (input, key access, trust,
container) rather than parsing messages.

Guarantees:
- Each error carries a stable machine-readable ``code``
- Each error carries the HTTP status the service boundary should use
- Transport errors from CRL / OCSP / TSA fetches never leak unwrapped
"""

from __future__ import annotations


class SealingError(RuntimeError):
    """Base class for every failure raised by the sealing core."""

    code: str = "sealing_failed"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ----------------------------------------------------------------------
# Input validation (raised before any network access)
# ----------------------------------------------------------------------

class InputError(SealingError):
    """Raised when caller-supplied input is unusable."""

    code = "invalid_input"
    status_code = 400


class MissingInputError(InputError):
    """Raised when a request body or a required field is empty."""

    code = "missing_input"


class InvalidDocumentError(InputError):
    """Raised when the input bytes cannot be parsed as a PDF."""

    code = "invalid_document"


class NoSigningKeyError(InputError):
    """Raised when a signing identity yields no usable key entry."""

    code = "no_signing_key"


class KeyAccessError(SealingError):
    """Raised when the private key cannot be loaded or used."""

    code = "key_access_error"
    status_code = 500


# ----------------------------------------------------------------------
# Trust and revocation
# ----------------------------------------------------------------------

class TrustError(SealingError):
    """Raised when certificate trust cannot be established."""

    code = "trust_error"
    status_code = 422


class InvalidChainError(TrustError):
    code = "invalid_chain"


class RevocationUnavailableError(TrustError):
    code = "revocation_unavailable"


class RevokedCertificateError(TrustError):
    """Raised when any certificate on the signing path is revoked."""

    code = "revoked_certificate"


class InvalidTimestampError(TrustError):
    code = "invalid_timestamp"


# ----------------------------------------------------------------------
# Container / document structure
# ----------------------------------------------------------------------

class ContainerError(SealingError):
    """Raised when the PDF signature container cannot be written."""

    code = "container_error"
    status_code = 422


class ContainerOverflowError(ContainerError):
    """Raised when a signature container exceeds its reserved capacity."""

    code = "container_overflow"

    def __init__(self, required: int, capacity: int) -> None:
        super().__init__(
            f"Signature container needs {required} bytes but only "
            f"{capacity} bytes are reserved"
        )
        self.required = required
        self.capacity = capacity


class ExtensionFailedError(ContainerError):
    """Raised when a document cannot be advanced to the archival level."""

    code = "extension_failed"
