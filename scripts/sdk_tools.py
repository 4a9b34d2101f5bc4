# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Helpers shared by the driver signing scripts.

Locates tools shipped with the Windows SDK / WDK (signtool.exe, Inf2Cat.exe),
tools shipped with Windows itself (makecab.exe), and runs them.
"""
import logging
import os
import pathlib
import shutil
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from edk2toollib.utility_functions import RunCmd

logger = logging.getLogger(__name__)

# Environment variables pointing at an installed kit, in order of preference
KIT_ENVIRONMENT_VARIABLES = ("WindowsSdkDir", "WDKContentRoot")

DEFAULT_PROGRAM_FILES_X86 = r"C:\Program Files (x86)"
DEFAULT_SYSTEM_ROOT = r"C:\Windows"


@dataclass
class KitTools:
    """A versioned Windows Kit tool directory, e.g. `Windows Kits\\10\\bin\\10.0.22621.0`.

    Attributes:
        bin_dir (pathlib.Path): The versioned bin directory.
        version (str): The kit version the directory belongs to.
    """

    bin_dir: pathlib.Path
    version: str

    def tool(self, name: str, arch: str = "x64") -> pathlib.Path:
        """Returns the path of a tool for the given architecture."""
        return self.bin_dir / arch / name


def require_windows() -> None:
    """Raises RuntimeError unless running on Windows."""
    if sys.platform != "win32":
        raise RuntimeError(f"This script requires Windows, not {sys.platform}.")


def _parse_version(name: str) -> Optional[Tuple[int, ...]]:
    try:
        return tuple(int(part) for part in name.split("."))
    except ValueError:
        return None


def kit_roots(environ: Optional[Mapping[str, str]] = None) -> List[pathlib.Path]:
    """Returns the candidate kit roots, environment variables first, then the default install location."""
    if environ is None:
        environ = os.environ

    roots = []
    for variable in KIT_ENVIRONMENT_VARIABLES:
        value = environ.get(variable)
        if value:
            roots.append(pathlib.Path(value))

    program_files = environ.get("ProgramFiles(x86)", DEFAULT_PROGRAM_FILES_X86)
    roots.append(pathlib.Path(program_files, "Windows Kits", "10"))
    return roots


def resolve_kit_tools(
    tools: Sequence[str],
    arch: str = "x64",
    environ: Optional[Mapping[str, str]] = None
) -> KitTools:
    """Finds the highest versioned kit bin directory containing every requested tool.

    Args:
        tools (Sequence[str]): Tool file names that must be present, e.g. ["signtool.exe"].
        arch (str): The architecture subdirectory to look in.
        environ (Mapping[str, str]): Environment to read, defaults to os.environ.

    Returns:
        KitTools: The selected tool directory.

    Raises:
        FileNotFoundError: If no kit directory contains all of the tools.
    """
    roots = kit_roots(environ)

    candidates = []
    for root in roots:
        bin_root = root / "bin"
        if not bin_root.is_dir():
            logger.debug(f"No kit bin directory at {bin_root}")
            continue

        for version_dir in bin_root.iterdir():
            version = _parse_version(version_dir.name)
            if version is None or not version_dir.is_dir():
                continue
            if all((version_dir / arch / tool).is_file() for tool in tools):
                candidates.append((version, version_dir))

    if not candidates:
        probed = ", ".join(str(root) for root in roots)
        raise FileNotFoundError(f"Unable to locate {', '.join(tools)} ({arch}) in a Windows Kit. Probed: {probed}")

    _, bin_dir = max(candidates, key=lambda candidate: candidate[0])
    logger.debug(f"Using Windows Kit tools from {bin_dir}")
    return KitTools(bin_dir=bin_dir, version=bin_dir.name)


def system_tool(name: str, environ: Optional[Mapping[str, str]] = None) -> pathlib.Path:
    """Locates a tool that ships with Windows itself, such as makecab.exe.

    Raises:
        FileNotFoundError: If the tool is neither on PATH nor in System32.
    """
    if environ is None:
        environ = os.environ

    found = shutil.which(name, path=environ.get("PATH", os.defpath))
    if found:
        return pathlib.Path(found)

    system32 = pathlib.Path(environ.get("SystemRoot", DEFAULT_SYSTEM_ROOT), "System32", name)
    if system32.is_file():
        return system32

    raise FileNotFoundError(f"Unable to locate {name} on PATH or in {system32.parent}")


# cmd.exe treats these as operators unless they are inside double quotes
SHELL_SPECIAL_CHARACTERS = frozenset(" \t&|<>^()")
# Expanded or split by cmd.exe even inside double quotes
UNSAFE_CHARACTERS = frozenset('%"\r\n')


def quote_argument(argument: str) -> str:
    """Quotes an argument for a command line that RunCmd passes through cmd.exe.

    Raises:
        ValueError: If the argument contains a character cmd.exe cannot be kept from interpreting.
    """
    unsafe = sorted(UNSAFE_CHARACTERS.intersection(argument))
    if unsafe:
        raise ValueError(f"Unsupported character(s) {''.join(unsafe)!r} in command line argument: {argument}")

    if argument and not SHELL_SPECIAL_CHARACTERS.intersection(argument):
        return argument

    # Backslashes before the closing quote are doubled so they stay literal
    trailing = len(argument) - len(argument.rstrip("\\"))
    return '"' + argument + "\\" * trailing + '"'


def run_tool(tool: pathlib.Path, arguments: Sequence[str], workingdir: Optional[pathlib.Path] = None) -> int:
    """Runs an external tool to completion and returns its exit code.

    The tool's output is streamed into the log.

    Raises:
        ValueError: If an argument cannot be passed through cmd.exe unchanged.
    """
    parameters = " ".join(quote_argument(str(argument)) for argument in arguments)
    logger.debug(f"Running {tool} {parameters}")
    return RunCmd(str(tool), parameters, workingdir=str(workingdir) if workingdir else None)
