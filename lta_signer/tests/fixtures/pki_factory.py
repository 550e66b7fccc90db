import datetime
from dataclasses import dataclass
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------

def _name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "LTA Signer Tests"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _key_usage(
    *,
    digital_signature: bool = False,
    content_commitment: bool = False,
    key_cert_sign: bool = False,
    crl_sign: bool = False,
) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=digital_signature,
        content_commitment=content_commitment,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=key_cert_sign,
        crl_sign=crl_sign,
        encipher_only=False,
        decipher_only=False,
    )


NON_REPUDIATION_ONLY = _key_usage(content_commitment=True)


def issue_certificate(
    subject: str,
    key: rsa.RSAPrivateKey,
    *,
    issuer_cert: Optional[x509.Certificate] = None,
    issuer_key: Optional[rsa.RSAPrivateKey] = None,
    ca: bool = False,
    time_stamping: bool = False,
    key_usage: Optional[x509.KeyUsage] = None,
    crl_url: Optional[str] = None,
) -> x509.Certificate:
    """Issue a certificate; self-signed when no issuer is given."""
    now = datetime.datetime.now(datetime.timezone.utc)
    issuer_name = issuer_cert.subject if issuer_cert else _name(subject)
    signing_key = issuer_key or key
    public_key = key.public_key()

    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(issuer_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(
            x509.BasicConstraints(ca=ca, path_length=None),
            critical=True,
        )
        .add_extension(
            key_usage or _key_usage(
                digital_signature=not ca,
                content_commitment=not ca and not time_stamping,
                key_cert_sign=ca,
                crl_sign=ca,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                signing_key.public_key()
            ),
            critical=False,
        )
    )

    if time_stamping:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.TIME_STAMPING]),
            critical=True,
        )

    if crl_url:
        builder = builder.add_extension(
            x509.CRLDistributionPoints([
                x509.DistributionPoint(
                    full_name=[x509.UniformResourceIdentifier(crl_url)],
                    relative_name=None,
                    reasons=None,
                    crl_issuer=None,
                ),
            ]),
            critical=False,
        )

    return builder.sign(signing_key, hashes.SHA256())


def issue_crl(
    issuer_cert: x509.Certificate,
    issuer_key: rsa.RSAPrivateKey,
    revoked: Sequence[x509.Certificate] = (),
) -> bytes:
    """DER-encoded CRL listing ``revoked``, issued an hour ago."""
    now = datetime.datetime.now(datetime.timezone.utc)
    an_hour_ago = now - datetime.timedelta(hours=1)

    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(issuer_cert.subject)
        .last_update(an_hour_ago)
        .next_update(now + datetime.timedelta(days=7))
        .add_extension(x509.CRLNumber(1), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                issuer_key.public_key()
            ),
            critical=False,
        )
    )
    for cert in revoked:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder()
            .serial_number(cert.serial_number)
            .revocation_date(an_hour_ago)
            .build()
        )

    crl = builder.sign(issuer_key, hashes.SHA256())
    return crl.public_bytes(serialization.Encoding.DER)


def to_pem(*certs: x509.Certificate) -> str:
    return "".join(
        cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        for cert in certs
    )


def key_to_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


@dataclass
class SamplePki:
    root_key: rsa.RSAPrivateKey
    root: x509.Certificate
    issuing_key: rsa.RSAPrivateKey
    issuing: x509.Certificate
    signer_key: rsa.RSAPrivateKey
    signer: x509.Certificate
    tsa_key: rsa.RSAPrivateKey
    tsa: x509.Certificate

    @property
    def chain(self) -> List[x509.Certificate]:
        """Signer chain, leaf first."""
        return [self.signer, self.issuing, self.root]

    @property
    def chain_pem(self) -> str:
        return to_pem(*self.chain)

    @property
    def signer_key_pem(self) -> str:
        return key_to_pem(self.signer_key)


def build_sample_pki(
    *,
    signer_key_usage: Optional[x509.KeyUsage] = None,
    signer_crl_url: Optional[str] = None,
    issuing_crl_url: Optional[str] = None,
) -> SamplePki:
    """
    Root, issuing CA, signer and TSA, all RSA-2048.

    The CRL URLs only declare where revocation data lives; nothing is
    served there, so tests hand the CRLs over directly.
    """
    root_key = _new_key()
    root = issue_certificate("Test Root CA", root_key, ca=True)

    issuing_key = _new_key()
    issuing = issue_certificate(
        "Test Issuing CA",
        issuing_key,
        issuer_cert=root,
        issuer_key=root_key,
        ca=True,
        crl_url=issuing_crl_url,
    )

    signer_key = _new_key()
    signer = issue_certificate(
        "Test Signer",
        signer_key,
        issuer_cert=issuing,
        issuer_key=issuing_key,
        key_usage=signer_key_usage,
        crl_url=signer_crl_url,
    )

    tsa_key = _new_key()
    tsa = issue_certificate(
        "Test TSA",
        tsa_key,
        issuer_cert=root,
        issuer_key=root_key,
        time_stamping=True,
    )

    return SamplePki(
        root_key=root_key,
        root=root,
        issuing_key=issuing_key,
        issuing=issuing,
        signer_key=signer_key,
        signer=signer,
        tsa_key=tsa_key,
        tsa=tsa,
    )

