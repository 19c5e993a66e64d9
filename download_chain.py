#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Build a complete X.509 certificate chain for one leaf certificate using:
- Authority Information Access (AIA), directly or through the CORS proxy
- Local issuer bundles, added in any order
The resulting CA bundle (closest issuer first, root last) is written to a file.
"""

import argparse
import logging
import sys

import urllib3

from cert_lib import FETCH_TIMEOUT, CertificateFormatError, download_with_retry, parse_certificate, read_certificate_file
from chain_lib import MAX_DEPTH, Chain, add_issuers, resolve_automatic


def build_chain(leaf, pool_files, disable_aia=False, max_depth=MAX_DEPTH, timeout=FETCH_TIMEOUT, verify=True, loose=None):
    chain = Chain()
    reason = "disabled"
    if not disable_aia:
        chain, reason = resolve_automatic(
            leaf,
            fetch_fn=lambda url: download_with_retry(url, timeout=timeout, verify=verify),
            max_depth=max_depth,
            loose=loose,
        )
    aia_total = len(chain)

    for filename in pool_files:
        try:
            chain, diagnostics = add_issuers(chain, read_certificate_file(filename), leaf, loose=loose)
        except CertificateFormatError as e:
            print(f"{filename}: {e}", file=sys.stderr)
            continue
        for d in diagnostics:
            print(f"{filename}: {d.message}", file=sys.stderr)

    return chain, reason, aia_total, len(chain) - aia_total


def main():
    parser = argparse.ArgumentParser(
        description="Build a certificate chain with AIA resolution and local issuer bundles."
    )
    parser.add_argument('leaf', help="Leaf certificate (PEM, base64 or DER)")
    parser.add_argument('pool_certs', nargs='*', help="Files containing issuer certificates")
    parser.add_argument('-o', '--output', required=True, help="Output file for the CA bundle")
    parser.add_argument('--no-aia', action='store_true', help="Disable AIA certificate downloading")
    parser.add_argument('--max-depth', type=int, default=MAX_DEPTH, help="Maximum number of AIA downloads")
    parser.add_argument('--timeout', type=int, default=FETCH_TIMEOUT, help="Download timeout in seconds")
    parser.add_argument('--no-verify', action='store_true', help="Disable TLS verification for downloads")
    parser.add_argument('--strict', action='store_true', help="Disable the issuer/subject DN fallback")
    parser.add_argument('--verbose', action='store_true', help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s: %(message)s", stream=sys.stderr)
    if args.no_verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    try:
        leaf = parse_certificate(read_certificate_file(args.leaf))
    except (OSError, CertificateFormatError) as e:
        print(f"Cannot read leaf certificate {args.leaf}: {e}", file=sys.stderr)
        sys.exit(1)

    chain, reason, aia_total, pool_total = build_chain(
        leaf, args.pool_certs,
        disable_aia=args.no_aia,
        max_depth=args.max_depth,
        timeout=args.timeout,
        verify=not args.no_verify,
        loose=False if args.strict else None,
    )

    if not len(chain):
        print(f"No issuer certificates found for {leaf.common_name} (AIA: {reason}).")
        sys.exit(1)

    with open(args.output, "w", encoding="ascii") as f:
        f.write(chain.to_bundle())

    broken = sum(1 for link in chain if not link.signs_child)
    print(f"Downloaded {aia_total} certificates from AIA ({reason}), "
          f"{pool_total} from pool. "
          f"Saved {'complete' if chain.complete else 'incomplete'} chain to {args.output}"
          + (f" ({broken} broken link(s))." if broken else "."))


if __name__ == "__main__":
    main()
