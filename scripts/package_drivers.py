# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""A command line script packaging a directory of drivers into a cabinet for attestation signing.

The source directory must hold one subdirectory per driver package:

    source/
        driver_a/
            driver_a.inf
            driver_a.sys
            driver_a.cat      (generated with Inf2Cat.exe when missing or older than the INF)
        driver_b/
            ...

Each subdirectory becomes a directory of the cabinet; no file is placed at the cabinet root.
"""
import argparse
import logging
import pathlib
import shutil
import sys
from typing import Callable, List, Optional, Sequence, Tuple

from sdk_tools import require_windows, resolve_kit_tools, run_tool, system_tool

logger = logging.getLogger(__name__)

EXIT_INVALID_SOURCE = 2
EXIT_BAD_INF = 3
EXIT_CABINET_FAILED = 4

# makecab writes its output below this directory of the source root
RESERVED_DIRECTORY = "disk1"
CABINET_NAME = "data1.cab"
DEFINITION_FILE = "drivers.ddf"
DEFAULT_CATALOG_OS = "10_X64"

DEFINITION_HEADER = f""".OPTION EXPLICIT
.Set CabinetFileCountThreshold=0
.Set FolderFileCountThreshold=0
.Set FolderSizeThreshold=0
.Set MaxCabinetSize=0
.Set MaxDiskFileCount=0
.Set MaxDiskSize=0
.Set CompressionType=MSZIP
.Set Cabinet=on
.Set Compress=on
.Set CabinetNameTemplate={CABINET_NAME}
.Set DiskDirectoryTemplate={RESERVED_DIRECTORY}
.Set InfFileName=nul
.Set RptFileName=nul"""

Runner = Callable[[pathlib.Path, Sequence[str], Optional[pathlib.Path]], int]


class PackagingError(Exception):
    """Raised when the drivers cannot be packaged, carries the exit code of the script."""

    def __init__(self, message: str, exit_code: int) -> None:
        """Initialize the error with a message and the exit code to report."""
        super().__init__(message)
        self.exit_code = exit_code


def _files_with_suffix(directory: pathlib.Path, suffix: str) -> List[pathlib.Path]:
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() == suffix)


def find_driver_directories(source: pathlib.Path) -> List[pathlib.Path]:
    """Returns the driver subdirectories of source, without makecab's output directory.

    Raises:
        PackagingError: If source is not a directory or holds no driver subdirectory.
    """
    if not source.is_dir():
        raise PackagingError(f"Source directory does not exist: {source}", EXIT_INVALID_SOURCE)

    directories = sorted(
        p for p in source.iterdir() if p.is_dir() and p.name.lower() != RESERVED_DIRECTORY
    )
    if not directories:
        raise PackagingError(f"No driver subdirectories found in {source}", EXIT_INVALID_SOURCE)

    return directories


def validate_driver_directory(driver_dir: pathlib.Path) -> Tuple[pathlib.Path, Optional[pathlib.Path]]:
    """Checks a driver directory holds one INF and at most one matching CAT.

    A CAT older than the INF is stale and gets deleted.

    Returns:
        Tuple[pathlib.Path, Optional[pathlib.Path]]: The INF and the current CAT, if any.

    Raises:
        PackagingError: If the directory does not hold a valid driver package.
    """
    infs = _files_with_suffix(driver_dir, ".inf")
    if len(infs) != 1:
        raise PackagingError(
            f"{driver_dir.name} must contain exactly one INF file, found {len(infs)}", EXIT_INVALID_SOURCE
        )
    inf = infs[0]

    cats = _files_with_suffix(driver_dir, ".cat")
    if len(cats) > 1:
        raise PackagingError(
            f"{driver_dir.name} must contain at most one CAT file, found {len(cats)}", EXIT_INVALID_SOURCE
        )
    if not cats:
        return inf, None

    cat = cats[0]
    if cat.stem.lower() != inf.stem.lower():
        raise PackagingError(
            f"{driver_dir.name}: catalog {cat.name} does not match {inf.name}", EXIT_INVALID_SOURCE
        )

    if cat.stat().st_mtime < inf.stat().st_mtime:
        logger.info(f"Removing stale catalog {cat.relative_to(driver_dir.parent)}")
        cat.unlink()
        return inf, None

    return inf, cat


def ensure_catalog(
    driver_dir: pathlib.Path,
    inf2cat: pathlib.Path,
    catalog_os: str = DEFAULT_CATALOG_OS,
    runner: Runner = run_tool
) -> None:
    """Validates a driver directory and generates its catalog when there is no current one.

    Raises:
        PackagingError: If the directory is invalid or Inf2Cat fails.
    """
    inf, cat = validate_driver_directory(driver_dir)
    if cat is not None:
        logger.info(f"{driver_dir.name}: using existing catalog {cat.name}")
        return

    logger.info(f"{driver_dir.name}: generating catalog for {inf.name}")
    ret = runner(inf2cat, [f"/driver:{driver_dir}", f"/os:{catalog_os}"], None)
    if ret != 0:
        raise PackagingError(f"Inf2Cat.exe failed for {inf} with error: {ret}", EXIT_BAD_INF)


def build_cabinet_definition(source: pathlib.Path, driver_dirs: Sequence[pathlib.Path]) -> str:
    """Returns the makecab directive file placing each driver directory in its own cabinet directory.

    File paths are relative to source, makecab has to be run from there.
    """
    lines = [DEFINITION_HEADER]
    for driver_dir in driver_dirs:
        lines.append(f'.Set DestinationDir="{driver_dir.name}"')
        for file_path in sorted(p for p in driver_dir.rglob("*") if p.is_file()):
            relative = pathlib.PureWindowsPath(*file_path.relative_to(source).parts)
            lines.append(f'"{relative}"')

    return "\n".join(lines) + "\n"


def make_cabinet(
    source: pathlib.Path,
    destination: pathlib.Path,
    definition: str,
    makecab: pathlib.Path,
    runner: Runner = run_tool
) -> pathlib.Path:
    """Runs makecab on definition and moves the resulting cabinet to destination.

    A destination that is an existing directory receives the cabinet as data1.cab.

    Raises:
        PackagingError: If makecab fails or the destination is a directory holding a data1.cab directory.
    """
    if destination.is_dir():
        destination = destination / CABINET_NAME
        if destination.is_dir():
            raise PackagingError(f"Cannot replace the directory {destination} with the cabinet", EXIT_CABINET_FAILED)

    definition_path = source / DEFINITION_FILE
    definition_path.write_text(definition)
    try:
        ret = runner(makecab, ["/f", DEFINITION_FILE], source)
    finally:
        definition_path.unlink()

    if ret != 0:
        raise PackagingError(f"makecab.exe failed with error: {ret}", EXIT_CABINET_FAILED)

    output_dir = source / RESERVED_DIRECTORY
    cabinet = output_dir / CABINET_NAME
    if not cabinet.is_file():
        raise PackagingError(f"makecab.exe did not produce {cabinet}", EXIT_CABINET_FAILED)

    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists():
        destination.unlink()
    shutil.move(str(cabinet), str(destination))
    shutil.rmtree(output_dir)

    return destination


def package_drivers(
    source: pathlib.Path,
    destination: pathlib.Path,
    inf2cat: pathlib.Path,
    makecab: pathlib.Path,
    catalog_os: str = DEFAULT_CATALOG_OS,
    runner: Runner = run_tool
) -> pathlib.Path:
    """Packages every driver directory of source into the cabinet destination.

    Catalogs generated before a failure stay in place.

    Returns:
        pathlib.Path: The cabinet.

    Raises:
        PackagingError: If the source is invalid or a tool fails.
    """
    driver_dirs = find_driver_directories(source)
    for driver_dir in driver_dirs:
        ensure_catalog(driver_dir, inf2cat, catalog_os, runner)

    definition = build_cabinet_definition(source, driver_dirs)
    cabinet = make_cabinet(source, destination, definition, makecab, runner)
    logger.info(f"Packaged {len(driver_dirs)} driver(s) into {cabinet}")
    return cabinet


def main() -> int:
    """Entry point for the script."""
    parser = argparse.ArgumentParser(description="Packages a directory of drivers into a cabinet for submission.")
    parser.add_argument("source", type=pathlib.Path,
                        help="Directory containing one subdirectory per driver package.")
    parser.add_argument("destination", nargs="?", type=pathlib.Path, default=pathlib.Path(CABINET_NAME),
                        help=f"The cabinet to create (default: {CABINET_NAME}).")
    parser.add_argument("--os", dest="catalog_os", default=DEFAULT_CATALOG_OS,
                        help=f"Operating systems passed to Inf2Cat.exe /os: (default: {DEFAULT_CATALOG_OS}).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s: %(message)s")

    if not args.source.is_dir():
        logger.error(f"Source directory does not exist: {args.source}")
        return EXIT_INVALID_SOURCE

    kit = resolve_kit_tools(["Inf2Cat.exe"], arch="x86")
    makecab = system_tool("makecab.exe")

    require_windows()

    try:
        package_drivers(
            args.source.resolve(),
            args.destination.resolve(),
            kit.tool("Inf2Cat.exe", "x86"),
            makecab,
            args.catalog_os,
        )
    except PackagingError as e:
        logger.error(str(e))
        return e.exit_code

    return 0


if __name__ == "__main__":
    sys.exit(main())
