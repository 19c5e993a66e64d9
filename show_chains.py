#!/usr/bin/env python3
"""
Show how a leaf certificate chains through one or more issuer bundles.

Issuers may be given in any order; they are ordered from the leaf upwards.
Certificates that do not sign their predecessor are listed as broken links
instead of being dropped. All certificates use the SHA1 fingerprint as ID.
"""
import argparse
import sys

from cert_lib import CertificateFormatError, parse_certificate, read_certificate_file
from chain_lib import Chain, LinkVerdict, add_issuers


def describe(record):
    return f"ID={record.fingerprint} | CN={record.common_name} | ISSUER={record.issuer}"


def main():
    parser = argparse.ArgumentParser(description="Build and show the chain of a leaf certificate.")
    parser.add_argument("leaf", help="Leaf certificate (PEM, base64 or DER)")
    parser.add_argument("chain_certs", nargs="*", help="Files containing issuer certificates")
    parser.add_argument("--strict", action="store_true", help="Disable the issuer/subject DN fallback")
    args = parser.parse_args()
    loose = False if args.strict else None

    try:
        leaf = parse_certificate(read_certificate_file(args.leaf))
    except (OSError, CertificateFormatError) as e:
        print(f"Cannot read leaf certificate {args.leaf}: {e}", file=sys.stderr)
        sys.exit(1)

    chain = Chain()
    for file in args.chain_certs:
        try:
            chain, diagnostics = add_issuers(chain, read_certificate_file(file), leaf, loose=loose)
        except CertificateFormatError as e:
            print(f"{file}: {e}", file=sys.stderr)
            continue
        for d in diagnostics:
            print(f"{file}: {d.message}", file=sys.stderr)

    print(f"LEAF {describe(leaf)}")
    for link in chain:
        pos = "ROOT" if link.is_root else "INTERMEDIATE"
        indent = "    " if link.is_root else ""
        if not link.signs_child:
            print("  -- broken link --")
        note = " (DN match only)" if link.verdict is LinkVerdict.DN_MATCH else ""
        print(f"{indent}{pos} {describe(link.record)}{note}")

    if chain.complete:
        print(f"  Chain length: {len(chain) + 1}")
    else:
        print("  Chain not complete")
        sys.exit(1)


if __name__ == "__main__":
    main()
