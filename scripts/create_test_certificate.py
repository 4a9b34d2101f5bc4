# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""A command line script creating a self signed code signing certificate for test signing.

The certificate (RSA key, SHA-256 digest) is created in Cert:\\CurrentUser\\My. It is
only meant for test machines; drivers for release go through attestation signing.
"""
import argparse
import logging
import pathlib
import sys
from typing import Optional

from cert_store import CertificateRecord, CertificateStore, PowerShellCertificateStore
from sdk_tools import require_windows

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "CN=Driver Test Signing"


def normalize_subject(subject: str) -> str:
    """Returns the distinguished name for subject, a bare name becomes the common name."""
    subject = subject.strip()
    if subject and "=" not in subject:
        subject = f"CN={subject}"
    return subject


def create_test_certificate(
    store: CertificateStore,
    subject: str = DEFAULT_SUBJECT,
    export_path: Optional[pathlib.Path] = None
) -> CertificateRecord:
    """Creates a self signed code signing certificate and logs its details.

    Args:
        store (CertificateStore): The store to create the certificate in.
        subject (str): The subject of the certificate.
        export_path (pathlib.Path): Optionally, a file to write the public certificate to.

    Returns:
        CertificateRecord: The created certificate.
    """
    logger.info(f"Creating self signed code signing certificate '{subject}'")
    certificate = store.create_self_signed(subject)

    for key, value in certificate.describe().items():
        logger.info(f"  {key}: {value}")

    if export_path:
        certificate.export(export_path)

    return certificate


def main() -> int:
    """Entry point for the script."""
    parser = argparse.ArgumentParser(
        description="Creates a self signed code signing certificate in the current user's personal store.")
    parser.add_argument("subject", nargs="?", default=DEFAULT_SUBJECT,
                        help=f"Subject of the certificate (default: {DEFAULT_SUBJECT}).")
    parser.add_argument("--export", type=pathlib.Path, default=None,
                        help="Also write the public certificate (DER) to this file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    subject = normalize_subject(args.subject)
    if not subject:
        logger.error("The certificate subject must not be empty.")
        return 1

    require_windows()

    create_test_certificate(PowerShellCertificateStore(), subject, args.export)
    return 0


if __name__ == "__main__":
    sys.exit(main())
