"""
Configuration for the LTA signer service.

Two layers:
- ``Settings``: process configuration parsed from the environment once,
  at startup, failing fast when required values are missing.
- ``OperationConfig``: the explicit, immutable configuration handed to
  every signing or extension call. The sealing core never reads the
  environment itself.
"""

from pathlib import Path
from typing import Annotated, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr, AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict

from lta_signer.app.services.verifier import AlertPolicy, STANDARD_ALERT_POLICY


DEFAULT_TSA_URL = "http://timestamp.digicert.com"


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

SensitiveEnv = Annotated[
    SecretStr,
    Field(description="Sensitive credential, redacted from logs"),
]

TsaUrl = Annotated[
    AnyHttpUrl,
    Field(
        default=DEFAULT_TSA_URL,
        description="RFC 3161 timestamp authority endpoint",
    ),
]

TsaTimeout = Annotated[
    float,
    Field(
        default=30.0,
        gt=0,
        le=300,
        description="Timestamp authority request timeout in seconds",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Variable names match the deployment manifests of the service:
    ``P12_PATH``, ``P12_PASSWORD``, ``TSA_URL``.
    """

    # ---------------------------------------------------------------------
    # Keystore-backed signing identity
    # ---------------------------------------------------------------------

    p12_path: Annotated[
        Path,
        Field(
            default=Path("signer.p12"),
            description="PKCS#12 keystore holding the signing key and chain",
        ),
    ]
    p12_password: SensitiveEnv

    # ---------------------------------------------------------------------
    # Timestamp authority
    # ---------------------------------------------------------------------

    tsa_url: TsaUrl
    tsa_timeout_seconds: TsaTimeout

    # ---------------------------------------------------------------------
    # Operational Boundaries
    # ---------------------------------------------------------------------

    max_pdf_size_mb: Annotated[
        int,
        Field(
            default=25,
            ge=1,
            le=100,
            description="Largest accepted request body",
        ),
    ]

    max_concurrent_operations: Annotated[
        int,
        Field(
            default=8,
            ge=1,
            le=64,
            description="Signing / extension operations allowed in flight",
        ),
    ]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        validate_default=True,
        frozen=True,
    )

    def operation_config(
        self,
        tsa_url: Optional[str] = None,
    ) -> "OperationConfig":
        """Per-call configuration, optionally overriding the TSA."""
        return OperationConfig(
            tsa_url=tsa_url or str(self.tsa_url),
            tsa_timeout_seconds=self.tsa_timeout_seconds,
        )


class OperationConfig(BaseModel):
    """
    Immutable configuration for a single signing or extension operation.
    """

    tsa_url: TsaUrl
    tsa_timeout_seconds: TsaTimeout
    alert_policy: AlertPolicy = STANDARD_ALERT_POLICY
    allow_revocation_fetching: Annotated[
        bool,
        Field(
            default=True,
            description=(
                "Fetch CRL / OCSP data over the network. When off, only "
                "evidence already at hand is used."
            ),
        ),
    ]
    known_crls: Annotated[
        Tuple[bytes, ...],
        Field(
            default=(),
            description="DER-encoded CRLs consulted before any fetching",
        ),
    ]
    known_ocsps: Annotated[
        Tuple[bytes, ...],
        Field(
            default=(),
            description="DER-encoded OCSP responses consulted likewise",
        ),
    ]

    model_config = ConfigDict(frozen=True, validate_default=True)
