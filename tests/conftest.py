import datetime
import types

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID

from cert_lib import parse_certificate


class Issued:
    """A generated certificate with its private key."""

    def __init__(self, cert, key):
        self.cert = cert
        self.key = key

    @property
    def pem(self):
        return self.cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    @property
    def der(self):
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def key_pem(self):
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")

    @property
    def record(self):
        return parse_certificate(self.pem)


def make_name(cn, org="Chain Test"):
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, org),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def issue(cn, issuer=None, key=None, aia_url=None, ca=True, valid_days=(-1, 365), subject=None):
    """Create a certificate signed by ``issuer`` (self-signed when None)."""
    if key is None:
        key = ec.generate_private_key(ec.SECP256R1())
    subject = subject or make_name(cn)
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now + datetime.timedelta(days=valid_days[0]))
        .not_valid_after(now + datetime.timedelta(days=valid_days[1]))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if aia_url:
        builder = builder.add_extension(
            x509.AuthorityInformationAccess([
                x509.AccessDescription(AuthorityInformationAccessOID.OCSP,
                                       x509.UniformResourceIdentifier("http://ocsp.pki.test")),
                x509.AccessDescription(AuthorityInformationAccessOID.CA_ISSUERS,
                                       x509.UniformResourceIdentifier(aia_url)),
            ]),
            critical=False,
        )
    signing_key = issuer.key if issuer else key
    return Issued(builder.sign(signing_key, hashes.SHA256()), key)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def pki(rsa_key):
    """root -> intermediate -> leaf, with AIA URLs pointing upwards."""
    root = issue("Test Root CA")
    intermediate = issue("Test Intermediate CA", issuer=root, aia_url="http://pki.test/root.crt")
    leaf = issue("www.example.test", issuer=intermediate, key=rsa_key, ca=False,
                 aia_url="http://pki.test/intermediate.crt")
    other_root = issue("Unrelated Root CA")
    return types.SimpleNamespace(root=root, intermediate=intermediate, leaf=leaf, other_root=other_root)


@pytest.fixture
def issue_cert():
    return issue
