"""Build X.509 certificate chains from a leaf up to a self-signed root.

Chains are immutable values: every operation takes a Chain and returns a
new one (or new links to append). Links that do not verify against their
predecessor are kept and flagged instead of being dropped, so the point
where trust breaks stays visible.

Signature checks fall back to comparing the child's issuer DN with the
parent's subject DN when the signature cannot be evaluated at all
(unsupported algorithm or key type, malformed structure). This is a much
weaker guarantee than a signature check. It is on by default for
packaging purposes and controlled by LOOSE_DN_FALLBACK or the ``loose``
argument. Links accepted this way carry ``LinkVerdict.DN_MATCH``.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm

from cert_lib import (
    CertificateFormatError,
    CertificateRecord,
    download_with_retry,
    format_dn_sorted,
    parse_certificate,
    split_pem_bundle,
)

__all__ = [
    "LOOSE_DN_FALLBACK",
    "MAX_DEPTH",
    "LinkStatus",
    "LinkSource",
    "LinkVerdict",
    "ChainLink",
    "Chain",
    "Diagnostic",
    "advance_status",
    "check_link",
    "verify_link",
    "is_self_signed",
    "resolve_automatic",
    "extend_manual",
    "add_issuers",
    "remove_link",
]

logger = logging.getLogger(__name__)

LOOSE_DN_FALLBACK = True
MAX_DEPTH = 5


class LinkStatus(str, enum.Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    SUCCESS = "success"
    FAILED = "failed"
    UPLOADED = "uploaded"


class LinkSource(str, enum.Enum):
    UPLOADED = "uploaded"
    FETCHED = "fetched"
    ROOT = "root"


class LinkVerdict(str, enum.Enum):
    SIGNATURE = "signature"
    DN_MATCH = "dn_match"
    MISMATCH = "mismatch"


_TRANSITIONS = {
    LinkStatus.PENDING: {LinkStatus.DOWNLOADING},
    LinkStatus.DOWNLOADING: {LinkStatus.SUCCESS, LinkStatus.FAILED},
    LinkStatus.SUCCESS: set(),
    LinkStatus.FAILED: set(),
    LinkStatus.UPLOADED: set(),
}


def advance_status(current: LinkStatus, target: LinkStatus) -> LinkStatus:
    """Move a link status forward, rejecting transitions the lifecycle does not allow."""
    if target not in _TRANSITIONS[current]:
        raise ValueError(f"Illegal link status transition: {current.value} -> {target.value}")
    return target


@dataclass(frozen=True)
class ChainLink:
    id: str
    record: CertificateRecord
    status: LinkStatus
    source: LinkSource
    is_root: bool
    signs_child: bool
    verdict: LinkVerdict = LinkVerdict.SIGNATURE

    @property
    def pem(self) -> str:
        return self.record.pem

    @property
    def fingerprint(self) -> str:
        return self.record.fingerprint


@dataclass(frozen=True)
class Chain:
    """Issuer links of a leaf, closest issuer first and root last. The leaf is not included."""

    links: Tuple[ChainLink, ...] = ()

    def __len__(self):
        return len(self.links)

    def __iter__(self):
        return iter(self.links)

    def __getitem__(self, index):
        return self.links[index]

    @property
    def tail(self) -> Optional[ChainLink]:
        return self.links[-1] if self.links else None

    @property
    def complete(self) -> bool:
        return bool(self.links) and self.links[-1].is_root

    def fingerprints(self) -> set:
        return {link.fingerprint for link in self.links}

    def to_bundle(self) -> str:
        """CA bundle text: every link's PEM joined by newlines, root last."""
        return "\n".join(link.pem for link in self.links)

    def extended(self, links: Iterable[ChainLink]) -> "Chain":
        return Chain(self.links + tuple(links))

    def without(self, index: int) -> "Chain":
        if not -len(self.links) <= index < len(self.links):
            raise IndexError(f"Chain has no link at index {index}")
        index %= len(self.links)
        return Chain(self.links[:index] + self.links[index + 1:])


@dataclass(frozen=True)
class Diagnostic:
    """A non-fatal finding while ingesting a bundle; ``index`` is the block position."""

    kind: str  # parse_error, duplicate, no_new_certificates
    index: Optional[int]
    message: str


def _use_loose(loose: Optional[bool]) -> bool:
    return LOOSE_DN_FALLBACK if loose is None else loose


def check_link(child: x509.Certificate, parent: x509.Certificate, loose: Optional[bool] = None) -> LinkVerdict:
    """Decide whether ``parent`` issued ``child``.

    The signature is checked with the parent's public key first. A
    signature that evaluates to invalid is a mismatch. If the check
    cannot be evaluated and the loose fallback is enabled, the sorted
    issuer DN of the child is compared with the sorted subject DN of the
    parent instead.
    """
    try:
        child.verify_directly_issued_by(parent)
        return LinkVerdict.SIGNATURE
    except InvalidSignature:
        return LinkVerdict.MISMATCH
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        if not _use_loose(loose):
            logger.debug("Signature check not possible and loose fallback disabled: %s", e)
            return LinkVerdict.MISMATCH
        if format_dn_sorted(child.issuer) == format_dn_sorted(parent.subject):
            logger.info(
                "Signature of '%s' could not be evaluated (%s); accepted on DN match with '%s'",
                child.subject.rfc4514_string(), e, parent.subject.rfc4514_string(),
            )
            return LinkVerdict.DN_MATCH
        return LinkVerdict.MISMATCH


def verify_link(child: x509.Certificate, parent: x509.Certificate, loose: Optional[bool] = None) -> bool:
    return check_link(child, parent, loose) is not LinkVerdict.MISMATCH


def is_self_signed(cert: x509.Certificate, loose: Optional[bool] = None) -> bool:
    return verify_link(cert, cert, loose)


def resolve_automatic(
    leaf: CertificateRecord,
    fetch_fn: Callable[[str], Optional[bytes]] = download_with_retry,
    max_depth: int = MAX_DEPTH,
    loose: Optional[bool] = None,
) -> Tuple[Chain, str]:
    """Follow AIA issuer URLs from the leaf towards a root.

    Fetches are sequential: the next URL is only known once the previous
    certificate has been parsed. Resolution stops at a self-signed
    certificate, after ``max_depth`` links, when a fetched certificate is
    already known (cycle), when a certificate has no usable AIA URL, or
    when a fetch or parse fails. Whatever was resolved before stopping is
    returned.

    Returns
    -------
    tuple
        (Chain, stop reason). The reason is one of ``root``,
        ``max_depth``, ``cycle``, ``no_aia``, ``fetch_failed`` or
        ``parse_failed``.
    """
    if is_self_signed(leaf.certificate, loose):
        return Chain(), "root"

    links: List[ChainLink] = []
    seen = {leaf.fingerprint}
    tail = leaf
    url = leaf.aia_url

    while True:
        if len(links) >= max_depth:
            reason = "max_depth"
            break
        if not url:
            reason = "no_aia"
            break

        status = advance_status(LinkStatus.PENDING, LinkStatus.DOWNLOADING)
        logger.info("Fetching issuer of '%s' from %s", tail.common_name, url)
        try:
            data = fetch_fn(url)
        except Exception as e:
            logger.warning("Fetching %s failed: %s", url, e)
            data = None
        if data is None:
            status = advance_status(status, LinkStatus.FAILED)
            logger.debug("Link auto-%d is %s: nothing fetched from %s", len(links), status.value, url)
            reason = "fetch_failed"
            break

        try:
            record = parse_certificate(data)
        except CertificateFormatError as e:
            status = advance_status(status, LinkStatus.FAILED)
            logger.warning("Certificate from %s does not parse: %s", url, e)
            logger.debug("Link auto-%d is %s: unparseable data from %s", len(links), status.value, url)
            reason = "parse_failed"
            break

        if record.fingerprint in seen:
            logger.warning("Certificate from %s is already in the chain, stopping", url)
            reason = "cycle"
            break

        verdict = check_link(tail.certificate, record.certificate, loose)
        is_root = is_self_signed(record.certificate, loose)
        links.append(ChainLink(
            id=f"auto-{len(links)}",
            record=record,
            status=advance_status(status, LinkStatus.SUCCESS),
            source=LinkSource.ROOT if is_root else LinkSource.FETCHED,
            is_root=is_root,
            signs_child=verdict is not LinkVerdict.MISMATCH,
            verdict=verdict,
        ))
        if is_root:
            reason = "root"
            break

        seen.add(record.fingerprint)
        tail = record
        url = record.aia_url

    logger.debug("Automatic resolution of '%s' stopped (%s) with %d link(s)", leaf.common_name, reason, len(links))
    return Chain(tuple(links)), reason


def _uploaded_link(record: CertificateRecord, verdict: LinkVerdict, loose: Optional[bool]) -> ChainLink:
    return ChainLink(
        id=f"manual-{uuid.uuid4().hex[:12]}",
        record=record,
        status=LinkStatus.UPLOADED,
        source=LinkSource.UPLOADED,
        is_root=is_self_signed(record.certificate, loose),
        signs_child=verdict is not LinkVerdict.MISMATCH,
        verdict=verdict,
    )


def extend_manual(
    chain: Chain,
    candidate_pems: Iterable[str],
    leaf: CertificateRecord,
    diagnostics: Optional[List[Diagnostic]] = None,
    loose: Optional[bool] = None,
) -> List[ChainLink]:
    """Turn a batch of uploaded certificates into links appended after ``chain``.

    Blocks that do not parse and certificates already present (leaf, chain
    or earlier in the batch) are dropped and reported to ``diagnostics``.
    The remaining candidates are consumed greedily: whichever signs the
    current tail becomes the next link. Candidates that never sign the
    tail are appended afterwards in their original order, each checked
    against the link before it, so broken links remain visible.
    """
    if diagnostics is None:
        diagnostics = []

    known = chain.fingerprints() | {leaf.fingerprint}
    pool: List[CertificateRecord] = []
    batch = set()
    for index, block in enumerate(candidate_pems):
        try:
            record = parse_certificate(block)
        except CertificateFormatError as e:
            diagnostics.append(Diagnostic("parse_error", index, str(e)))
            continue
        if record.fingerprint in known:
            diagnostics.append(Diagnostic("duplicate", index, f"'{record.common_name}' is already in the chain"))
            continue
        if record.fingerprint in batch:
            diagnostics.append(Diagnostic("duplicate", index, f"'{record.common_name}' appears more than once"))
            continue
        batch.add(record.fingerprint)
        pool.append(record)

    tail = chain.tail.record if chain.tail else leaf
    new_links: List[ChainLink] = []

    while pool:
        issuer = None
        for candidate in pool:
            verdict = check_link(tail.certificate, candidate.certificate, loose)
            if verdict is not LinkVerdict.MISMATCH:
                issuer = candidate
                break
        if issuer is None:
            break
        pool.remove(issuer)
        new_links.append(_uploaded_link(issuer, verdict, loose))
        tail = issuer

    for record in pool:
        verdict = check_link(tail.certificate, record.certificate, loose)
        logger.debug("'%s' does not chain to '%s', appended as broken link", record.common_name, tail.common_name)
        new_links.append(_uploaded_link(record, verdict, loose))
        tail = record

    return new_links


def add_issuers(
    chain: Chain,
    bundle_text: str,
    leaf: CertificateRecord,
    loose: Optional[bool] = None,
) -> Tuple[Chain, List[Diagnostic]]:
    """Add every certificate of a pasted or uploaded bundle to the chain.

    Raises
    ------
    CertificateFormatError
        If the bundle holds no parseable certificate at all.
    """
    blocks = split_pem_bundle(bundle_text)
    diagnostics: List[Diagnostic] = []
    links = extend_manual(chain, blocks, leaf, diagnostics, loose)
    if links:
        return chain.extended(links), diagnostics

    if all(d.kind == "parse_error" for d in diagnostics):
        raise CertificateFormatError("Failed to parse certificate. Please check the format.")
    diagnostics.append(Diagnostic("no_new_certificates", None, "No new certificates: all are already in the chain"))
    return chain, diagnostics


def remove_link(chain: Chain, index: int) -> Chain:
    """Remove one link. Neighbouring links keep their signs_child flags."""
    return chain.without(index)
