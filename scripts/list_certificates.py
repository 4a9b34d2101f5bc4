# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""A command line script listing the code signing certificates installed on this machine.

Both the CurrentUser and LocalMachine stores are searched.
"""
import argparse
import json
import logging
import pathlib
import sys
from typing import List, Optional

from cert_store import CertificateRecord, CertificateStore, PowerShellCertificateStore
from sdk_tools import require_windows

logger = logging.getLogger(__name__)

DELIMITER = "-" * 80


def list_certificates(store: CertificateStore, json_output: Optional[pathlib.Path] = None) -> List[CertificateRecord]:
    """Logs every code signing certificate of the store followed by the total count.

    Args:
        store (CertificateStore): The store to query.
        json_output (pathlib.Path): Optionally, a file to write the descriptions to as JSON.

    Returns:
        List[CertificateRecord]: The certificates found.
    """
    certificates = store.code_signing_certificates()

    descriptions = []
    for certificate in certificates:
        description = certificate.describe()
        descriptions.append(description)

        width = max(len(key) for key in description)
        for key, value in description.items():
            logger.info(f"{key:<{width}} : {value}")
        logger.info(DELIMITER)

    logger.info(f"Found {len(certificates)} code signing certificate(s).")

    if json_output:
        with open(json_output, "w", encoding="utf-8") as f:
            json.dump(descriptions, f, indent=2, ensure_ascii=False)
        logger.info(f"Results saved to: {json_output}")

    return certificates


def main() -> int:
    """Entry point for the script."""
    parser = argparse.ArgumentParser(description="Lists the code signing certificates in the certificate store.")
    parser.add_argument("--json-output", type=pathlib.Path, default=None,
                        help="Also write the certificate details to this JSON file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")

    require_windows()

    list_certificates(PowerShellCertificateStore(), args.json_output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
