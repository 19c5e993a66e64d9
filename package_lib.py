"""Assemble certificate packages and check packages built elsewhere.

A package is a tar archive holding ``{basename}.crt`` (leaf certificate),
``{basename}.prv`` (private key), ``{basename}.ca`` (issuer bundle, root
last) and optionally ``README.txt``.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from cert_lib import (
    CertificateFormatError,
    CertificateRecord,
    check_key_pair,
    parse_certificate,
    split_pem_bundle,
    validity_status,
)
from chain_lib import Chain, is_self_signed, verify_link
from tar_lib import ArchiveEntry, pack, unpack

__all__ = [
    "ROLE_SUFFIXES",
    "ValidationReport",
    "suggest_basename",
    "build_package",
    "find_roles",
    "validate_package",
]

ROLE_SUFFIXES = {
    "cert": (".crt", ".cer", ".pem"),
    "key": (".key", ".prv"),
    "ca": (".ca", ".bundle"),
}


@dataclass(frozen=True)
class ValidationReport:
    has_cert: bool
    has_key: bool
    has_ca: bool
    key_pair_match: Optional[bool]
    chain_complete: Optional[bool]
    validity_status: str
    cert_record: Optional[CertificateRecord]
    findings: Tuple[str, ...]

    @property
    def ok(self) -> bool:
        return (
            self.has_cert
            and self.has_key
            and self.key_pair_match is not False
            and self.chain_complete is not False
            and self.validity_status == "valid"
        )


def suggest_basename(record: CertificateRecord) -> str:
    """File-system safe base name derived from the certificate's common name."""
    name = record.common_name.strip().replace("*", "wildcard")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "certificate"


def build_package(
    basename: str,
    cert_pem: str,
    key_pem: str,
    chain: Chain,
    readme: Optional[str] = None,
    mtime: Optional[int] = None,
) -> bytes:
    files: List[Tuple[str, Union[str, bytes]]] = [
        (f"{basename}.crt", cert_pem),
        (f"{basename}.prv", key_pem),
        (f"{basename}.ca", chain.to_bundle()),
    ]
    if readme is not None:
        files.append(("README.txt", readme))
    return pack(files, mtime=mtime)


def find_roles(entries: Sequence[ArchiveEntry]) -> Dict[str, ArchiveEntry]:
    """Map 'cert', 'key' and 'ca' to the first entry carrying a matching suffix."""
    roles: Dict[str, ArchiveEntry] = {}
    for entry in entries:
        lower = entry.name.lower()
        for role, suffixes in ROLE_SUFFIXES.items():
            if role not in roles and lower.endswith(suffixes):
                roles[role] = entry
                break
    return roles


def _check_chain(leaf: Optional[CertificateRecord], bundle: str, findings: List[str]) -> bool:
    records = []
    for index, block in enumerate(split_pem_bundle(bundle)):
        try:
            records.append(parse_certificate(block))
        except CertificateFormatError:
            findings.append(f"CA bundle: block {index + 1} is not a valid certificate")
    if not records:
        findings.append("CA bundle contains no certificates")
        return False
    if leaf is None:
        findings.append("CA bundle cannot be checked without a valid certificate")
        return False

    complete = True
    child = leaf
    for record in records:
        if not verify_link(child.certificate, record.certificate):
            findings.append(f"Broken link: '{record.common_name}' did not issue '{child.common_name}'")
            complete = False
        child = record

    if is_self_signed(records[-1].certificate):
        findings.append(f"Chain ends at root '{records[-1].common_name}'")
    else:
        findings.append(f"Chain does not end at a self-signed root (last: '{records[-1].common_name}')")
        complete = False
    return complete


def validate_package(data: bytes, now: Optional[datetime.datetime] = None) -> ValidationReport:
    """Unpack an archive and report on its certificate, key and CA bundle."""
    findings: List[str] = []
    entries = unpack(data)
    findings.append(f"Archive contains {len(entries)} file(s): {', '.join(e.name for e in entries) or '-'}")
    roles = find_roles(entries)
    cert_entry, key_entry, ca_entry = roles.get("cert"), roles.get("key"), roles.get("ca")

    for role, label in (("cert", "certificate"), ("key", "private key"), ("ca", "CA bundle")):
        if role in roles:
            findings.append(f"Found {label}: {roles[role].name}")
        else:
            findings.append(f"Missing {label}")

    record = None
    status = "unknown"
    if cert_entry is not None:
        try:
            record = parse_certificate(cert_entry.content)
        except CertificateFormatError:
            findings.append(f"{cert_entry.name} is not a valid certificate")
        else:
            status = validity_status(record.certificate, now)
            findings.append(f"Certificate '{record.common_name}' valid until {record.valid_to.isoformat()} ({status})")

    key_match = None
    if cert_entry is not None and key_entry is not None:
        key_match = check_key_pair(record.pem if record is not None else cert_entry.content, key_entry.text)
        if key_match is True:
            findings.append("Private key matches the certificate")
        elif key_match is False:
            findings.append("Private key does not match the certificate")
        else:
            findings.append("Key pair could not be compared (encrypted or non-RSA key)")

    chain_complete = None
    if ca_entry is not None:
        chain_complete = _check_chain(record, ca_entry.text, findings)

    return ValidationReport(
        has_cert=cert_entry is not None,
        has_key=key_entry is not None,
        has_ca=ca_entry is not None,
        key_pair_match=key_match,
        chain_complete=chain_complete,
        validity_status=status,
        cert_record=record,
        findings=tuple(findings),
    )
