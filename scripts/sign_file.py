# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""A command line script authenticode signing a file with a certificate from the certificate store.

The certificate is picked by thumbprint, or interactively when several code signing
certificates match. When the certificate was issued by an intermediate CA, the
intermediate certificate is exported and added to the signature. The signature is
timestamped by an RFC 3161 server.

Examples:
    # Sign with the only code signing certificate installed
    python sign_file.py driver.cab

    # Sign with a specific certificate
    python sign_file.py driver.cab --thumbprint 0123456789ABCDEF0123456789ABCDEF01234567
"""
import argparse
import logging
import pathlib
import string
import sys
from typing import Callable, List, NoReturn, Optional, Sequence

from cert_store import CertificateRecord, CertificateStore, PowerShellCertificateStore
from sdk_tools import UNSAFE_CHARACTERS, require_windows, resolve_kit_tools, run_tool

logger = logging.getLogger(__name__)

EXIT_BAD_ARGUMENTS = 1
EXIT_NO_CERTIFICATE = 2
EXIT_SIGNING_FAILED = 3
EXIT_VERIFY_FAILED = 4

SUPPORTED_HASH_ALGORITHMS = ["sha256"]
DEFAULT_TIMESTAMP_URL = "http://timestamp.digicert.com"
INTERMEDIATE_CERTIFICATE_FILE = "intermediate.cer"

Selector = Callable[[Sequence[CertificateRecord]], CertificateRecord]
Runner = Callable[[pathlib.Path, Sequence[str], Optional[pathlib.Path]], int]


def normalize_thumbprint(thumbprint: str) -> str:
    """Returns the thumbprint as upper case hex.

    Thumbprints copied from the certificate dialog contain spaces and an invisible
    left-to-right mark, everything but the hex digits is dropped.
    """
    return "".join(c for c in thumbprint if c in string.hexdigits).upper()


def prompt_for_certificate(certificates: Sequence[CertificateRecord]) -> CertificateRecord:
    """Asks the operator to pick one of the certificates from a numbered list."""
    print("Multiple code signing certificates found:")
    for index, certificate in enumerate(certificates, start=1):
        print(f"  [{index}] {certificate.subject}")
        print(f"      Issuer: {certificate.issuer}")
        print(f"      Thumbprint: {certificate.thumbprint}  Store: {certificate.store_path}")
        print(f"      Expires: {certificate.not_after:%Y-%m-%d}")

    while True:
        choice = input(f"Select a certificate [1-{len(certificates)}]: ").strip()
        if choice.isdigit() and 1 <= int(choice) <= len(certificates):
            return certificates[int(choice) - 1]
        print(f"'{choice}' is not a valid selection.")


def select_certificate(
    store: CertificateStore,
    thumbprint: Optional[str] = None,
    selector: Selector = prompt_for_certificate
) -> Optional[CertificateRecord]:
    """Picks the signing certificate.

    Args:
        store (CertificateStore): The store to search.
        thumbprint (str): Optionally, only consider certificates with this thumbprint.
        selector (Selector): Called to choose when more than one certificate matches.

    Returns:
        Optional[CertificateRecord]: The certificate, None if nothing matches.
    """
    certificates: List[CertificateRecord] = store.code_signing_certificates()
    if thumbprint:
        wanted = normalize_thumbprint(thumbprint)
        certificates = [c for c in certificates if c.thumbprint == wanted]

    if not certificates:
        return None
    if len(certificates) == 1:
        return certificates[0]
    return selector(certificates)


def export_intermediate(
    store: CertificateStore,
    certificate: CertificateRecord,
    path: pathlib.Path
) -> Optional[pathlib.Path]:
    """Exports the certificate that issued certificate to path.

    Returns:
        Optional[pathlib.Path]: The exported file, None for a self issued certificate
        or when the issuer is not in the store.
    """
    if certificate.is_self_issued:
        logger.debug(f"{certificate.subject} is self issued, no intermediate certificate needed")
        return None

    issuers = store.find_by_subject(certificate.issuer)
    if not issuers:
        logger.warning(f"Issuer '{certificate.issuer}' not found in the certificate store, signing without it")
        return None

    return issuers[0].export(path)


def signtool_sign_arguments(
    target: pathlib.Path,
    certificate: CertificateRecord,
    hash_algorithm: str,
    timestamp_url: str,
    intermediate: Optional[pathlib.Path] = None
) -> List[str]:
    """Returns the signtool.exe arguments signing target with certificate."""
    arguments = ["sign", "/v", "/fd", hash_algorithm]
    if certificate.is_machine_store:
        arguments.append("/sm")
    arguments += ["/s", certificate.store_name]
    arguments += ["/sha1", certificate.thumbprint]
    if intermediate:
        arguments += ["/ac", str(intermediate)]
    arguments += ["/tr", timestamp_url, "/td", hash_algorithm]
    arguments.append(str(target))
    return arguments


def sign_file(
    target: pathlib.Path,
    store: CertificateStore,
    signtool: pathlib.Path,
    thumbprint: Optional[str] = None,
    hash_algorithm: str = "sha256",
    timestamp_url: str = DEFAULT_TIMESTAMP_URL,
    selector: Selector = prompt_for_certificate,
    runner: Runner = run_tool,
    intermediate_path: pathlib.Path = pathlib.Path(INTERMEDIATE_CERTIFICATE_FILE),
    verify: bool = False
) -> int:
    """Signs target with a certificate from the store.

    Returns:
        int: 0 on success, otherwise one of the EXIT_* codes.
    """
    if not target.is_file():
        logger.error(f"File to sign not found: {target}")
        return EXIT_BAD_ARGUMENTS

    if hash_algorithm not in SUPPORTED_HASH_ALGORITHMS:
        logger.error(f"Unsupported hash algorithm: {hash_algorithm}")
        return EXIT_BAD_ARGUMENTS

    for argument in (str(target), timestamp_url):
        if UNSAFE_CHARACTERS.intersection(argument):
            logger.error(f"Unable to pass {argument} to signtool.exe, it contains a character cmd.exe expands.")
            return EXIT_BAD_ARGUMENTS

    certificate = select_certificate(store, thumbprint, selector)
    if certificate is None:
        if thumbprint:
            logger.error(f"No code signing certificate with thumbprint {normalize_thumbprint(thumbprint)} found.")
        else:
            logger.error("No code signing certificate found.")
        return EXIT_NO_CERTIFICATE

    logger.info(f"Signing {target} with {certificate.subject} ({certificate.thumbprint})")

    intermediate = export_intermediate(store, certificate, intermediate_path)
    try:
        arguments = signtool_sign_arguments(target, certificate, hash_algorithm, timestamp_url, intermediate)
        ret = runner(signtool, arguments, None)
    finally:
        if intermediate:
            intermediate.unlink()

    if ret != 0:
        logger.error(f"Signtool.exe returned with error: {ret}!")
        return EXIT_SIGNING_FAILED

    if verify:
        ret = runner(signtool, ["verify", "/pa", "/v", str(target)], None)
        if ret != 0:
            logger.error(f"Signature verification of {target} failed with error: {ret}")
            return EXIT_VERIFY_FAILED

    logger.info(f"Signed {target}")
    return 0


class ArgumentParser(argparse.ArgumentParser):
    """Reports command line errors with EXIT_BAD_ARGUMENTS instead of argparse's 2."""

    def error(self, message: str) -> NoReturn:
        """Prints the usage and exits with EXIT_BAD_ARGUMENTS."""
        self.print_usage(sys.stderr)
        self.exit(EXIT_BAD_ARGUMENTS, f"{self.prog}: error: {message}\n")


def main() -> int:
    """Entry point for the script."""
    parser = ArgumentParser(description="Authenticode signs a file with a certificate from the store.")
    parser.add_argument("file", nargs="?", type=pathlib.Path, default=None, help="The file to sign.")
    parser.add_argument("--hash-algorithm", default="sha256",
                        help=f"File and timestamp digest algorithm, one of: {', '.join(SUPPORTED_HASH_ALGORITHMS)}.")
    parser.add_argument("--timestamp-url", default=DEFAULT_TIMESTAMP_URL,
                        help=f"RFC 3161 timestamp server (default: {DEFAULT_TIMESTAMP_URL}).")
    parser.add_argument("--thumbprint", default=None, help="SHA-1 thumbprint of the certificate to use.")
    parser.add_argument("--arch", default="x64",
                        help="Which signtool.exe of the Windows Kit to run.")
    parser.add_argument("--verify", action="store_true", help="Verify the signature after signing.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    if args.file is None:
        logger.error("No file to sign given.")
        return EXIT_BAD_ARGUMENTS
    if not args.file.is_file():
        logger.error(f"File to sign not found: {args.file}")
        return EXIT_BAD_ARGUMENTS
    if args.hash_algorithm not in SUPPORTED_HASH_ALGORITHMS:
        logger.error(f"Unsupported hash algorithm: {args.hash_algorithm}")
        return EXIT_BAD_ARGUMENTS

    kit = resolve_kit_tools(["signtool.exe"], arch=args.arch)

    require_windows()

    return sign_file(
        args.file.resolve(),
        PowerShellCertificateStore(),
        kit.tool("signtool.exe", args.arch),
        thumbprint=args.thumbprint,
        hash_algorithm=args.hash_algorithm,
        timestamp_url=args.timestamp_url,
        verify=args.verify,
    )


if __name__ == "__main__":
    sys.exit(main())
