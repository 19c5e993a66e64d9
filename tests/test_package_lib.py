import datetime

from cryptography.hazmat.primitives.asymmetric import rsa

from chain_lib import Chain, add_issuers
from conftest import issue
from package_lib import build_package, find_roles, suggest_basename, validate_package
from tar_lib import ArchiveEntry, pack, unpack


def full_chain(pki):
    chain, _ = add_issuers(Chain(), pki.intermediate.pem + pki.root.pem, pki.leaf.record)
    return chain


def test_build_package_entries(pki):
    data = build_package("www_example", pki.leaf.pem, pki.leaf.key_pem, full_chain(pki), readme="hello")
    entries = unpack(data)
    assert [e.name for e in entries] == ["www_example.crt", "www_example.prv", "www_example.ca", "README.txt"]
    assert entries[2].text == pki.intermediate.pem + "\n" + pki.root.pem
    assert entries[3].text == "hello"


def test_validate_complete_package(pki):
    data = build_package("site", pki.leaf.pem, pki.leaf.key_pem, full_chain(pki))
    report = validate_package(data)
    assert (report.has_cert, report.has_key, report.has_ca) == (True, True, True)
    assert report.key_pair_match is True
    assert report.chain_complete is True
    assert report.validity_status == "valid"
    assert report.cert_record.common_name == "www.example.test"
    assert report.ok
    assert any("root 'Test Root CA'" in line for line in report.findings)


def test_validate_expired_certificate_without_bundle(pki):
    expired = issue("old.example.test", issuer=pki.intermediate, ca=False, valid_days=(-400, -10))
    report = validate_package(pack([("old.crt", expired.pem), ("old.key", expired.key_pem)]))
    assert report.validity_status == "expired"
    assert report.chain_complete is None
    assert report.has_ca is False
    assert not report.ok
    assert "Missing CA bundle" in report.findings


def test_validate_reports_mismatched_key(pki):
    data = build_package("site", pki.leaf.pem, pki.leaf.key_pem, full_chain(pki))
    entries = [e for e in unpack(data) if not e.name.endswith(".prv")]
    entries.append(ArchiveEntry("site.prv", 0, pki.intermediate.key_pem.encode()))
    report = validate_package(pack(entries))
    # intermediate key is EC, so it cannot be compared by modulus
    assert report.key_pair_match is None

    other = issue("other.example.test", issuer=pki.intermediate, ca=False,
                  key=rsa.generate_private_key(public_exponent=65537, key_size=2048))
    report = validate_package(pack([("site.crt", pki.leaf.pem), ("site.prv", other.key_pem)]))
    assert report.key_pair_match is False
    assert "Private key does not match the certificate" in report.findings


def test_validate_incomplete_bundle(pki):
    report = validate_package(pack([
        ("site.crt", pki.leaf.pem),
        ("site.prv", pki.leaf.key_pem),
        ("site.ca", pki.intermediate.pem),
    ]))
    assert report.chain_complete is False
    assert report.key_pair_match is True
    assert not report.ok


def test_validate_broken_link_in_bundle(pki):
    report = validate_package(pack([
        ("site.crt", pki.leaf.pem),
        ("site.ca", pki.other_root.pem),
    ]))
    assert report.chain_complete is False
    assert report.has_key is False
    assert report.key_pair_match is None
    assert any(line.startswith("Broken link") for line in report.findings)


def test_validate_bundle_without_certificates(pki):
    report = validate_package(pack([("site.crt", pki.leaf.pem), ("site.bundle", "garbage")]))
    assert report.has_ca is True
    assert report.chain_complete is False


def test_validate_unparseable_certificate():
    report = validate_package(pack([("site.crt", "garbage"), ("site.key", "garbage")]))
    assert report.has_cert is True
    assert report.validity_status == "unknown"
    assert report.cert_record is None
    assert report.key_pair_match is False


def test_validate_uses_given_time(pki):
    data = build_package("site", pki.leaf.pem, pki.leaf.key_pem, full_chain(pki))
    future = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=1000)
    assert validate_package(data, now=future).validity_status == "expired"


def test_validate_empty_archive():
    report = validate_package(b"")
    assert (report.has_cert, report.has_key, report.has_ca) == (False, False, False)
    assert report.chain_complete is None
    assert report.validity_status == "unknown"


def test_find_roles_recognises_suffixes():
    entries = [ArchiveEntry(name, 0, b"") for name in ("README.txt", "a.PEM", "a.key", "a.bundle", "b.crt")]
    roles = find_roles(entries)
    assert {role: entry.name for role, entry in roles.items()} == {"cert": "a.PEM", "key": "a.key", "ca": "a.bundle"}


def test_suggest_basename(pki):
    assert suggest_basename(pki.leaf.record) == "www.example.test"
    wildcard = issue("*.example.test", issuer=pki.intermediate, ca=False)
    assert suggest_basename(wildcard.record) == "wildcard.example.test"
    odd = issue("Some Service / Prod", issuer=pki.intermediate, ca=False)
    assert suggest_basename(odd.record) == "Some_Service_Prod"


def test_validate_der_certificate_entry(pki):
    report = validate_package(pack([
        ("site.cer", pki.leaf.der),
        ("site.key", pki.leaf.key_pem),
        ("site.ca", pki.intermediate.pem + pki.root.pem),
    ]))
    assert report.cert_record.common_name == "www.example.test"
    assert report.validity_status == "valid"
    assert report.key_pair_match is True
    assert report.chain_complete is True
    assert report.ok


def test_validate_bundle_without_valid_certificate(pki):
    report = validate_package(pack([
        ("site.crt", "garbage"),
        ("site.ca", pki.intermediate.pem + pki.root.pem),
    ]))
    assert report.cert_record is None
    assert report.chain_complete is False
    assert "CA bundle cannot be checked without a valid certificate" in report.findings
