"""Utility functions for working with X.509 certificates.

Provides centralized functions for loading, splitting, describing and
downloading certificates. Every other module goes through this adapter
instead of touching the cryptography API directly.
"""

from __future__ import annotations

import datetime
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union
from urllib.parse import quote

import requests
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtensionOID, NameOID

__all__ = [
    "CertificateFormatError",
    "CertificateRecord",
    "normalize_pem",
    "load_certificate",
    "parse_certificate",
    "split_pem_bundle",
    "read_certificate_file",
    "get_aia_urls",
    "get_aia_url",
    "get_common_name",
    "get_organization",
    "format_dn_sorted",
    "check_key_pair",
    "validity_status",
    "download_with_retry",
]

logger = logging.getLogger(__name__)

PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"

FETCH_TIMEOUT = int(os.environ.get("CERTPACK_FETCH_TIMEOUT", "30"))
PROXY_URL_TEMPLATE = os.environ.get("CERTPACK_PROXY_URL", "https://api.allorigins.win/raw?url={url}")

AIA_URL_PATTERN = re.compile(r"^https?://[A-Za-z0-9._~%/:-]+\.(?:crt|cer|der|pem)$", re.IGNORECASE)


class CertificateFormatError(ValueError):
    """Raised when input cannot be parsed as a certificate."""


@dataclass(frozen=True)
class CertificateRecord:
    """Parsed view of one certificate, as shown to the user and stored in a chain."""

    common_name: str
    organization: str
    issuer: str
    valid_from: datetime.datetime
    valid_to: datetime.datetime
    serial_number: str
    pem: str
    fingerprint: str
    aia_url: Optional[str] = None
    certificate: x509.Certificate = field(default=None, repr=False, compare=False)


def normalize_pem(text: str) -> str:
    """Wrap bare base64 text with PEM delimiters if they are missing."""
    if PEM_BEGIN not in text:
        return f"{PEM_BEGIN}\n{text.strip()}\n{PEM_END}\n"
    return text


def load_certificate(cert_bytes: Union[bytes, str]) -> x509.Certificate:
    """Load a certificate from PEM, bare base64 or DER.

    Tries PEM first, then DER. Text input without PEM delimiters is
    treated as bare base64 and wrapped before parsing.

    Parameters
    ----------
    cert_bytes : bytes or str
        Certificate in PEM, base64 or DER format.

    Returns
    -------
    x509.Certificate
        Parsed certificate object.

    Raises
    ------
    CertificateFormatError
        If the input cannot be parsed.
    """
    if isinstance(cert_bytes, str):
        try:
            return x509.load_pem_x509_certificate(normalize_pem(cert_bytes).encode("ascii"), backend=default_backend())
        except (ValueError, UnicodeEncodeError) as e:
            raise CertificateFormatError("Invalid certificate format, expected PEM encoded certificate") from e

    try:
        return x509.load_pem_x509_certificate(cert_bytes, backend=default_backend())
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(cert_bytes, backend=default_backend())
    except ValueError:
        pass
    try:
        text = cert_bytes.decode("ascii")
    except UnicodeDecodeError as e:
        raise CertificateFormatError("Failed to parse certificate as PEM or DER") from e
    return load_certificate(text)


def get_common_name(name: x509.Name, default: str = "Unknown") -> str:
    """Extract Common Name from x509.Name object.

    Parameters
    ----------
    name : x509.Name
        Subject or issuer name.
    default : str, optional
        Value to return if CN not found (default: "Unknown").

    Returns
    -------
    str
        Common Name value or default.
    """
    cn_attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return cn_attrs[0].value if cn_attrs else default


def get_organization(name: x509.Name, default: str = "Unknown") -> str:
    org_attrs = name.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    return org_attrs[0].value if org_attrs else default


def format_dn_sorted(name: x509.Name) -> str:
    """Render a DN as sorted ``KEY=value`` pairs for order-insensitive comparison."""
    parts = []
    for attr in name:
        value = attr.value if isinstance(attr.value, str) else attr.value.hex()
        parts.append(f"{attr.rfc4514_attribute_name}={' '.join(value.split())}")
    return ", ".join(sorted(parts))


def get_aia_urls(cert: x509.Certificate) -> List[str]:
    """Return all CA Issuers URIs from the Authority Information Access extension."""
    try:
        aia_ext = cert.extensions.get_extension_for_oid(ExtensionOID.AUTHORITY_INFORMATION_ACCESS)
    except x509.ExtensionNotFound:
        return []
    return [
        access.access_location.value
        for access in aia_ext.value
        if access.access_method == AuthorityInformationAccessOID.CA_ISSUERS
        and isinstance(access.access_location, x509.UniformResourceIdentifier)
    ]


def get_aia_url(cert: x509.Certificate) -> Optional[str]:
    """First AIA issuer URL pointing at a certificate file, or None."""
    for url in get_aia_urls(cert):
        if AIA_URL_PATTERN.match(url.strip()):
            return url.strip()
    return None


def _validity(cert: x509.Certificate):
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        return (
            cert.not_valid_before.replace(tzinfo=datetime.timezone.utc),
            cert.not_valid_after.replace(tzinfo=datetime.timezone.utc),
        )


def parse_certificate(data: Union[bytes, str]) -> CertificateRecord:
    """Parse a certificate and describe it as a CertificateRecord.

    Raises
    ------
    CertificateFormatError
        If the input is not a certificate.
    """
    cert = load_certificate(data)
    valid_from, valid_to = _validity(cert)
    return CertificateRecord(
        common_name=get_common_name(cert.subject),
        organization=get_organization(cert.subject),
        issuer=get_common_name(cert.issuer),
        valid_from=valid_from,
        valid_to=valid_to,
        serial_number=format(cert.serial_number, "x"),
        pem=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        fingerprint=cert.fingerprint(hashes.SHA1()).hex(),
        aia_url=get_aia_url(cert),
        certificate=cert,
    )


def split_pem_bundle(text: Union[bytes, str]) -> List[str]:
    """Split a bundle into individual certificate blocks.

    Scans for paired BEGIN/END markers. A BEGIN without a matching END
    before the next BEGIN is kept as its own (malformed) block so callers
    can report it. Text without any BEGIN marker is returned as a single
    bare base64 block.
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    if PEM_BEGIN not in text:
        stripped = text.strip()
        return [stripped] if stripped else []

    blocks = []
    pos = 0
    while True:
        start = text.find(PEM_BEGIN, pos)
        if start < 0:
            break
        end = text.find(PEM_END, start + len(PEM_BEGIN))
        next_begin = text.find(PEM_BEGIN, start + len(PEM_BEGIN))
        if end < 0 or 0 <= next_begin < end:
            stop = next_begin if next_begin >= 0 else len(text)
            blocks.append(text[start:stop].strip())
            pos = stop
            continue
        stop = end + len(PEM_END)
        blocks.append(text[start:stop] + "\n")
        pos = stop
    return blocks


def read_certificate_file(filename: str) -> str:
    """Read a certificate or bundle file as PEM text.

    PEM and bare base64 files are returned as they are. A DER file is
    converted to PEM. Anything else is returned decoded so that the
    caller reports it as malformed.
    """
    with open(filename, "rb") as f:
        content = f.read()

    if PEM_BEGIN.encode("ascii") in content:
        return content.decode("utf-8", errors="replace")
    try:
        cert = x509.load_der_x509_certificate(content, backend=default_backend())
    except ValueError:
        return content.decode("utf-8", errors="replace")
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def check_key_pair(cert_pem: Union[bytes, str], key_pem: Union[bytes, str]) -> Optional[bool]:
    """Check whether an RSA private key belongs to a certificate.

    Compares the key modulus with the modulus embedded in the certificate.

    Returns
    -------
    bool or None
        True or False for RSA pairs. False if either input does not parse.
        None if the check cannot be made (non-RSA or encrypted key).
    """
    if isinstance(key_pem, str):
        key_pem = key_pem.encode("utf-8")
    try:
        cert = load_certificate(cert_pem)
    except CertificateFormatError:
        logger.debug("Key pair check: certificate does not parse")
        return False
    try:
        private_key = serialization.load_pem_private_key(key_pem, password=None, backend=default_backend())
    except TypeError:
        logger.info("Key pair check skipped: private key is encrypted")
        return None
    except ValueError:
        logger.debug("Key pair check: private key does not parse")
        return False

    public_key = cert.public_key()
    if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
        logger.info("Key pair check skipped: only RSA keys are compared")
        return None
    return private_key.public_key().public_numbers().n == public_key.public_numbers().n


def validity_status(cert: x509.Certificate, now: Optional[datetime.datetime] = None) -> str:
    """Classify a certificate as 'valid', 'expired' or 'not_yet_valid' at ``now`` (UTC)."""
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    not_before, not_after = _validity(cert)
    if now < not_before:
        return "not_yet_valid"
    if now > not_after:
        return "expired"
    return "valid"


def download_with_retry(
    url: str,
    *,
    timeout: int = FETCH_TIMEOUT,
    verify: bool = True,
    proxy_template: Optional[str] = PROXY_URL_TEMPLATE,
) -> Optional[bytes]:
    """Download a certificate, retrying once through a CORS proxy.

    The direct URL is tried first. If the request fails or the response
    is not a certificate, the URL is fetched again through
    ``proxy_template``.

    Parameters
    ----------
    url : str
        URL to download.
    timeout : int, optional
        Request timeout in seconds (default: CERTPACK_FETCH_TIMEOUT or 30).
    verify : bool, optional
        Enable SSL certificate verification (default: True).
    proxy_template : str, optional
        Template with a ``{url}`` placeholder, or None to disable the retry.

    Returns
    -------
    bytes or None
        Raw DER or PEM bytes, or None if both attempts fail.
    """
    if not isinstance(url, str):
        return None
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        return None

    attempts = [url]
    if proxy_template:
        attempts.append(proxy_template.format(url=quote(url, safe="")))

    with requests.Session() as session:
        for attempt in attempts:
            try:
                with session.get(attempt, timeout=timeout, verify=verify) as r:
                    r.raise_for_status()
                    content = r.content
                load_certificate(content)
                return content
            except requests.RequestException as e:
                logger.warning("Failed to fetch %s: %s", attempt, e)
            except CertificateFormatError:
                logger.warning("Response from %s is not a certificate", attempt)
    return None
