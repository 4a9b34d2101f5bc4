# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Access to the Windows certificate store for the driver signing scripts.

The store is reached through the `Cert:` drive of Windows PowerShell. Every query
returns JSON which is validated against CERTIFICATE_LIST_SCHEMA and turned into
CertificateRecord objects; the DER encoded certificate is parsed with cryptography
to describe it.
"""
import base64
import hashlib
import io
import json
import logging
import pathlib
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from cryptography import x509
from edk2toollib.utility_functions import RunCmd
from jsonschema import validate

logger = logging.getLogger(__name__)

USER_STORE = "CurrentUser"
MACHINE_STORE = "LocalMachine"

CERTIFICATE_ENTRY_SCHEMA = {
    "type": "object",
    "properties": {
        "Thumbprint": {"type": "string", "pattern": "^[0-9A-Fa-f]{40}$"},
        "Subject": {"type": "string"},
        "Issuer": {"type": "string"},
        "FriendlyName": {"type": ["string", "null"]},
        "PSParentPath": {"type": "string", "pattern": "::"},
        "RawData": {"type": "string", "minLength": 1},
    },
    "required": ["Thumbprint", "Subject", "Issuer", "PSParentPath", "RawData"],
}

CERTIFICATE_LIST_SCHEMA = {
    "type": "array",
    "items": CERTIFICATE_ENTRY_SCHEMA,
}

# Shared by every query, turns a certificate from the Cert: drive into a flat object
_PS_PRELUDE = r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
function ConvertTo-CertificateRecord($cert) {
    [pscustomobject]@{
        Thumbprint   = $cert.Thumbprint
        Subject      = $cert.Subject
        Issuer       = $cert.Issuer
        FriendlyName = $cert.FriendlyName
        PSParentPath = $cert.PSParentPath
        RawData      = [Convert]::ToBase64String($cert.RawData)
    }
}
"""

_PS_EMIT = r"""
ConvertTo-Json -Compress -InputObject @($found | ForEach-Object { ConvertTo-CertificateRecord $_ })
"""


def _ps_quote(value: str) -> str:
    """Quotes a value as a PowerShell single quoted string."""
    return "'" + value.replace("'", "''") + "'"


def code_signing_script() -> str:
    """PowerShell listing every code signing certificate of every store."""
    return _PS_PRELUDE + r"$found = @(Get-ChildItem -Path Cert:\ -Recurse -CodeSigningCert)" + _PS_EMIT


def subject_script(subject: str) -> str:
    """PowerShell listing every certificate of every store with the given subject."""
    return (
        _PS_PRELUDE
        + r"$found = @(Get-ChildItem -Path Cert:\ -Recurse | Where-Object { "
        + r"$_ -is [System.Security.Cryptography.X509Certificates.X509Certificate2] -and "
        + f"$_.Subject -eq {_ps_quote(subject)} }})"
        + _PS_EMIT
    )


def self_signed_script(subject: str) -> str:
    """PowerShell creating a self signed code signing certificate in the user's personal store."""
    return (
        _PS_PRELUDE
        + f"$created = New-SelfSignedCertificate -Type CodeSigningCert -Subject {_ps_quote(subject)} "
        + r"-KeyAlgorithm RSA -KeyLength 2048 -HashAlgorithm SHA256 -CertStoreLocation 'Cert:\CurrentUser\My'"
        + "\n"
        + r"$found = @(Get-Item -Path ('Cert:\CurrentUser\My\' + $created.Thumbprint))"
        + _PS_EMIT
    )


def run_powershell(script: str) -> str:
    """Runs a script with Windows PowerShell and returns its output.

    Raises:
        RuntimeError: If PowerShell exits with a non-zero code.
    """
    encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    output = io.StringIO()
    ret = RunCmd(
        "powershell.exe",
        f"-NoProfile -NonInteractive -ExecutionPolicy Bypass -EncodedCommand {encoded}",
        outstream=output,
        logging_level=logging.DEBUG,
    )
    if ret != 0:
        raise RuntimeError(f"powershell.exe returned with error: {ret}!")
    return output.getvalue()


@dataclass
class CertificateRecord:
    """A certificate as found in the Windows certificate store.

    Attributes:
        thumbprint (str): SHA-1 thumbprint, upper case hex.
        subject (str): Subject name as formatted by Windows.
        issuer (str): Issuer name as formatted by Windows.
        friendly_name (str): Friendly name, may be empty.
        store_location (str): `CurrentUser` or `LocalMachine`.
        store_name (str): The store within the location, e.g. `My` or `Root`.
        der (bytes): The DER encoded certificate.
    """

    thumbprint: str
    subject: str
    issuer: str
    friendly_name: str
    store_location: str
    store_name: str
    der: bytes

    @classmethod
    def from_store_entry(cls, entry: dict) -> "CertificateRecord":
        """Creates a record from one validated entry of the PowerShell output."""
        # Microsoft.PowerShell.Security\Certificate::CurrentUser\My
        store_path = entry["PSParentPath"].split("::", 1)[-1]
        store_location, _, store_name = store_path.partition("\\")
        return cls(
            thumbprint=entry["Thumbprint"].upper(),
            subject=entry["Subject"],
            issuer=entry["Issuer"],
            friendly_name=entry.get("FriendlyName") or "",
            store_location=store_location,
            store_name=store_name,
            der=base64.b64decode(entry["RawData"]),
        )

    @property
    def certificate(self) -> x509.Certificate:
        """The parsed certificate."""
        return x509.load_der_x509_certificate(self.der)

    @property
    def not_after(self) -> datetime:
        """The expiry of the certificate."""
        return self.certificate.not_valid_after_utc

    @property
    def is_self_issued(self) -> bool:
        """True if the certificate was issued by its own subject."""
        return self.issuer == self.subject

    @property
    def is_machine_store(self) -> bool:
        """True if the certificate lives in the per machine store."""
        return self.store_location.lower() == MACHINE_STORE.lower()

    @property
    def store_path(self) -> str:
        """The location of the certificate as a `Cert:` drive path."""
        return f"Cert:\\{self.store_location}\\{self.store_name}\\{self.thumbprint}"

    def describe(self) -> Dict[str, str]:
        """Returns every property of the certificate in display order.

        A certificate cryptography cannot parse is described by its store properties only.
        """
        description = {
            "Subject": self.subject,
            "Issuer": self.issuer,
            "Thumbprint": self.thumbprint,
            "Thumbprint (SHA-256)": hashlib.sha256(self.der).hexdigest().upper(),
            "Friendly Name": self.friendly_name,
            "Store": self.store_path,
        }
        try:
            cert = self.certificate
            public_key = cert.public_key()
        except ValueError as e:
            logger.warning(f"Unable to parse certificate {self.thumbprint}: {e}")
            return description

        key_size = getattr(public_key, "key_size", None)
        key_description = type(public_key).__name__.lstrip("_")
        if key_size:
            key_description += f" ({key_size} bits)"

        hash_algorithm = cert.signature_hash_algorithm
        description.update({
            "Serial Number": format(cert.serial_number, "X"),
            "Not Before": cert.not_valid_before_utc.isoformat(),
            "Not After": cert.not_valid_after_utc.isoformat(),
            "Signature Hash Algorithm": hash_algorithm.name if hash_algorithm else "none",
            "Public Key": key_description,
        })
        return description

    def export(self, path: pathlib.Path) -> pathlib.Path:
        """Writes the DER encoded certificate to path."""
        path = pathlib.Path(path)
        path.write_bytes(self.der)
        logger.info(f"Exported {self.subject} to {path}")
        return path


@runtime_checkable
class CertificateStore(Protocol):
    """Protocol for certificate store operations to enable dependency injection for testing."""

    def code_signing_certificates(self) -> List[CertificateRecord]:
        """Returns every code signing certificate of every accessible store."""
        ...

    def find_by_subject(self, subject: str) -> List[CertificateRecord]:
        """Returns every certificate of every accessible store with the given subject."""
        ...

    def create_self_signed(self, subject: str) -> CertificateRecord:
        """Creates a self signed code signing certificate in the user's personal store."""
        ...


def parse_certificate_list(output: str) -> List[CertificateRecord]:
    """Parses the JSON emitted by the store scripts.

    Raises:
        json.JSONDecodeError: If the output does not contain JSON.
        jsonschema.exceptions.ValidationError: If the JSON is not a list of certificates.
    """
    payload = ""
    for line in output.splitlines():
        line = line.strip()
        if line.startswith(("[", "{")):
            payload = line

    if not payload:
        return []

    entries = json.loads(payload)
    if isinstance(entries, dict):
        entries = [entries]

    validate(instance=entries, schema=CERTIFICATE_LIST_SCHEMA)
    return [CertificateRecord.from_store_entry(entry) for entry in entries]


class PowerShellCertificateStore:
    """The Windows certificate store, queried through Windows PowerShell."""

    def __init__(self, powershell: Optional[Callable[[str], str]] = None) -> None:
        """Initialize the store.

        Args:
            powershell: Callable running a PowerShell script and returning its output.
        """
        self._powershell = powershell or run_powershell

    def _query(self, script: str) -> List[CertificateRecord]:
        return parse_certificate_list(self._powershell(script))

    def code_signing_certificates(self) -> List[CertificateRecord]:
        """Returns every code signing certificate of every accessible store."""
        return self._query(code_signing_script())

    def find_by_subject(self, subject: str) -> List[CertificateRecord]:
        """Returns every certificate of every accessible store with the given subject."""
        return self._query(subject_script(subject))

    def create_self_signed(self, subject: str) -> CertificateRecord:
        """Creates a self signed code signing certificate in the user's personal store.

        Raises:
            RuntimeError: If the store did not return the new certificate.
        """
        records = self._query(self_signed_script(subject))
        if not records:
            raise RuntimeError(f"New-SelfSignedCertificate did not return a certificate for {subject}")
        return records[0]
