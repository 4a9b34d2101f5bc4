# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Shared fixtures for the driver signing script tests."""
import base64
import datetime
import functools
import hashlib
import pathlib
from typing import Callable, Dict, List, Optional, Sequence

import pytest
from cert_store import CertificateRecord
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


@functools.lru_cache(maxsize=None)
def _test_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _name(distinguished_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, distinguished_name.split("=", 1)[-1])])


def make_der(subject: str, issuer: Optional[str] = None) -> bytes:
    """Returns a DER encoded code signing certificate."""
    now = datetime.datetime.now(datetime.timezone.utc)
    key = _test_key()
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer or subject))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


def make_record(
    subject: str = "CN=Test Signer",
    issuer: Optional[str] = None,
    store_location: str = "CurrentUser",
    store_name: str = "My",
    friendly_name: str = ""
) -> CertificateRecord:
    """Returns a certificate record backed by a freshly minted certificate."""
    der = make_der(subject, issuer)
    return CertificateRecord(
        thumbprint=hashlib.sha1(der).hexdigest().upper(),
        subject=subject,
        issuer=issuer or subject,
        friendly_name=friendly_name,
        store_location=store_location,
        store_name=store_name,
        der=der,
    )


def store_entry(record: CertificateRecord) -> dict:
    """Returns the record the way the PowerShell store scripts emit it."""
    return {
        "Thumbprint": record.thumbprint,
        "Subject": record.subject,
        "Issuer": record.issuer,
        "FriendlyName": record.friendly_name,
        "PSParentPath": f"Microsoft.PowerShell.Security\\Certificate::{record.store_location}\\{record.store_name}",
        "RawData": base64.b64encode(record.der).decode("ascii"),
    }


class FakeStore:
    """In memory certificate store."""

    def __init__(
        self,
        certificates: Sequence[CertificateRecord] = (),
        others: Sequence[CertificateRecord] = ()
    ) -> None:
        """Code signing certificates and other certificates, such as CAs."""
        self.certificates = list(certificates)
        self.others = list(others)
        self.subject_queries: List[str] = []
        self.created: List[str] = []

    def code_signing_certificates(self) -> List[CertificateRecord]:
        """Returns the code signing certificates."""
        return list(self.certificates)

    def find_by_subject(self, subject: str) -> List[CertificateRecord]:
        """Returns all certificates with subject."""
        self.subject_queries.append(subject)
        return [c for c in self.certificates + self.others if c.subject == subject]

    def create_self_signed(self, subject: str) -> CertificateRecord:
        """Creates a self signed certificate in CurrentUser\\My."""
        self.created.append(subject)
        record = make_record(subject)
        self.certificates.append(record)
        return record


class RecordingRunner:
    """Stands in for sdk_tools.run_tool, recording each invocation.

    Results and side effects are looked up by the tool's file name.
    """

    def __init__(
        self,
        results: Optional[Dict[str, int]] = None,
        actions: Optional[Dict[str, Callable[[List[str], Optional[pathlib.Path]], None]]] = None
    ) -> None:
        """Initialize with exit codes and side effects per tool name."""
        self.results = results or {}
        self.actions = actions or {}
        self.calls = []

    def __call__(self, tool: pathlib.Path, arguments: Sequence[str], workingdir: Optional[pathlib.Path] = None) -> int:
        """Records the call, runs the tool's side effect and returns its exit code."""
        self.calls.append((tool, list(arguments), workingdir))
        action = self.actions.get(tool.name)
        if action:
            action(list(arguments), workingdir)
        return self.results.get(tool.name, 0)

    def called(self, name: str) -> list:
        """Returns the calls made to the tool with file name name."""
        return [call for call in self.calls if call[0].name == name]


@pytest.fixture
def record_factory() -> Callable[..., CertificateRecord]:
    """Fixture returning make_record."""
    return make_record


@pytest.fixture
def entry_factory() -> Callable[[CertificateRecord], dict]:
    """Fixture returning store_entry."""
    return store_entry


@pytest.fixture
def store_factory() -> type:
    """Fixture returning the FakeStore class."""
    return FakeStore


@pytest.fixture
def runner_factory() -> type:
    """Fixture returning the RecordingRunner class."""
    return RecordingRunner
