#!/usr/bin/env python3
"""
Check a certificate package (.tar): certificate, private key and CA bundle
presence, key pair match, chain completeness and certificate validity.
Prints the findings and exits non-zero when the package is not usable.
"""

import logging
import sys

from package_lib import validate_package


def tri(value, yes, no, unknown):
    if value is True:
        return yes
    if value is False:
        return no
    return unknown


def main():
    if len(sys.argv) != 2:
        print(f"Usage: {sys.argv[0]} <package.tar>")
        sys.exit(1)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s", stream=sys.stderr)
    archive = sys.argv[1]
    try:
        with open(archive, "rb") as f:
            data = f.read()
    except OSError as e:
        print(f"Error: cannot read {archive}: {e}", file=sys.stderr)
        sys.exit(1)

    report = validate_package(data)

    print(f"Package: {archive}")
    print(f"  Certificate & key : {'present' if report.has_cert and report.has_key else 'missing .crt or .key'}")
    print(f"  Key pair          : {tri(report.key_pair_match, 'modulus matches', 'keys do not match', 'cannot verify')}")
    print(f"  Chain             : {tri(report.chain_complete, 'links to root', 'broken or incomplete', 'no bundle found')}")
    if report.cert_record is not None:
        print(f"  Validity          : {report.validity_status} (until {report.cert_record.valid_to.isoformat()})")
    else:
        print(f"  Validity          : {report.validity_status}")
    print()
    for line in report.findings:
        print(f"  > {line}")

    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
