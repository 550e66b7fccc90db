"""
Shared fixtures: an in-memory RSA test PKI, an offline timestamp authority
and ready-made signing identities.

PKI layout:

    Test Root CA
    ├── Test Issuing CA
    │   └── Test Signer        (digital signature, non-repudiation)
    └── Test TSA               (critical EKU: time stamping)

No fixture touches the network: revocation fetching is switched off and
the timestamp authority is pyHanko's DummyTimeStamper.
"""

from typing import Optional

import pytest
from asn1crypto import keys
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from pyhanko.sign import timestamps
from pyhanko_certvalidator.registry import SimpleCertificateStore

from lta_signer.app.core.config import OperationConfig
from lta_signer.app.services.container import (
    append_validation_data,
    build_signature_container,
    embed_signature,
    get_data_to_sign,
)
from lta_signer.app.services.identity import (
    InlinePemIdentity,
    KeystoreIdentity,
    TokenSigner,
)
from lta_signer.app.services.parameters import (
    SignatureLevel,
    build_signature_parameters,
)
from lta_signer.app.services.trust import to_asn1
from lta_signer.tests.fixtures.pdf_factory import minimal_valid_pdf
from lta_signer.tests.fixtures.pki_factory import (
    SamplePki,
    build_sample_pki,
)


P12_PASSWORD = "test-keystore-password"


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ---------------------------------------------------------------------------
# PKI fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def pki() -> SamplePki:
    return build_sample_pki()


@pytest.fixture
def timestamper(pki) -> timestamps.DummyTimeStamper:
    tsa_key_info = keys.PrivateKeyInfo.load(
        pki.tsa_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return timestamps.DummyTimeStamper(
        tsa_cert=to_asn1(pki.tsa),
        tsa_key=tsa_key_info,
        certs_to_embed=SimpleCertificateStore.from_certs([to_asn1(pki.root)]),
    )


@pytest.fixture
def operation_config() -> OperationConfig:
    return OperationConfig(
        tsa_url="http://tsa.invalid",
        allow_revocation_fetching=False,
    )


@pytest.fixture
def pem_identity(pki) -> InlinePemIdentity:
    return InlinePemIdentity(
        certificate_pem=pki.chain_pem,
        private_key_pem=pki.signer_key_pem,
    )


@pytest.fixture
def keystore_path(pki, tmp_path):
    path = tmp_path / "signer.p12"
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            name=b"signer",
            key=pki.signer_key,
            cert=pki.signer,
            cas=[pki.issuing, pki.root],
            encryption_algorithm=serialization.BestAvailableEncryption(
                P12_PASSWORD.encode("utf-8")
            ),
        )
    )
    return path


@pytest.fixture
def keystore_identity(keystore_path) -> KeystoreIdentity:
    return KeystoreIdentity(path=keystore_path, password=P12_PASSWORD)


@pytest.fixture
def unsigned_pdf() -> bytes:
    return minimal_valid_pdf()


# ---------------------------------------------------------------------------
# Pre-LTA documents
# ---------------------------------------------------------------------------

@pytest.fixture
def sign_at_level(pem_identity, timestamper):
    """
    Build a signed document at B-B, T or LT using the container
    primitives directly, without any archive timestamp.
    """

    async def _sign(level: SignatureLevel, data: Optional[bytes] = None):
        data = data or minimal_valid_pdf()

        with pem_identity.open() as token:
            key_entry = token.keys()[0]
            params = build_signature_parameters(key_entry, SignatureLevel.LT)
            signer = TokenSigner(token=token, key_entry=key_entry)

            pending = await get_data_to_sign(data, params, signer)
            cms = await build_signature_container(
                pending,
                signer,
                timestamper=(
                    None if level == SignatureLevel.B_B else timestamper
                ),
            )
            signed = await embed_signature(pending, cms)

        if level == SignatureLevel.LT:
            signed = append_validation_data(signed, certs=key_entry.chain)
        return signed

    return _sign
