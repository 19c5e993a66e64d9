#!/usr/bin/env python3
"""
Package a certificate, its private key and its CA bundle into a tar archive.

The issuer chain is resolved through AIA first; issuer files given with --ca
are added afterwards in any order. The archive holds NAME.crt, NAME.prv,
NAME.ca and optionally README.txt.
"""
import argparse
import logging
import sys

import urllib3

from cert_lib import FETCH_TIMEOUT, CertificateFormatError, check_key_pair, parse_certificate, read_certificate_file
from chain_lib import MAX_DEPTH
from download_chain import build_chain
from package_lib import build_package, suggest_basename


def main():
    parser = argparse.ArgumentParser(description="Build a certificate package (.tar) with key and CA bundle.")
    parser.add_argument("cert", help="Leaf certificate (PEM, base64 or DER)")
    parser.add_argument("key", help="Private key (PEM)")
    parser.add_argument("--ca", nargs="+", default=[], help="Issuer certificate files, in any order")
    parser.add_argument("--name", help="Base name of the files in the archive (default: from the CN)")
    parser.add_argument("--readme", help="Text file stored as README.txt")
    parser.add_argument("--no-aia", action="store_true", help="Disable AIA certificate downloading")
    parser.add_argument("--max-depth", type=int, default=MAX_DEPTH, help="Maximum number of AIA downloads")
    parser.add_argument("--timeout", type=int, default=FETCH_TIMEOUT, help="Download timeout in seconds")
    parser.add_argument("--no-verify", action="store_true", help="Disable TLS verification for downloads")
    parser.add_argument("--force", action="store_true", help="Write the archive even if the chain is incomplete")
    parser.add_argument("-o", "--output", required=True, help="Output filename (no default)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s: %(message)s", stream=sys.stderr)
    if args.no_verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    try:
        leaf = parse_certificate(read_certificate_file(args.cert))
    except (OSError, CertificateFormatError) as e:
        print(f"Cannot read certificate {args.cert}: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        with open(args.key, "r", encoding="utf-8") as f:
            key_pem = f.read()
    except OSError as e:
        print(f"Cannot read private key {args.key}: {e}", file=sys.stderr)
        sys.exit(1)

    if check_key_pair(leaf.pem, key_pem) is False:
        print(f"Private key {args.key} does not match {args.cert}", file=sys.stderr)
        sys.exit(1)

    chain, reason, aia_total, pool_total = build_chain(
        leaf, args.ca,
        disable_aia=args.no_aia,
        max_depth=args.max_depth,
        timeout=args.timeout,
        verify=not args.no_verify,
    )
    if not chain.complete and not args.force:
        print(f"Chain for {leaf.common_name} is incomplete (AIA: {reason}); "
              f"add issuers with --ca or use --force.", file=sys.stderr)
        sys.exit(1)

    readme = None
    if args.readme:
        with open(args.readme, "r", encoding="utf-8") as f:
            readme = f.read()

    basename = args.name or suggest_basename(leaf)
    with open(args.output, "wb") as f:
        f.write(build_package(basename, leaf.pem, key_pem, chain, readme=readme))

    print(f"Packaged {basename}.crt, {basename}.prv and {basename}.ca "
          f"({len(chain)} certificates: {aia_total} from AIA, {pool_total} from files) into {args.output}")


if __name__ == "__main__":
    main()
