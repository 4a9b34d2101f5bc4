# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""Unit tests for cert_store.py."""
import base64
import dataclasses
import json
import logging
import pathlib
from unittest.mock import patch

import jsonschema
import pytest
from cert_store import (
    CertificateStore,
    PowerShellCertificateStore,
    parse_certificate_list,
    run_powershell,
    subject_script,
)


def test_parse_certificate_list(record_factory, entry_factory) -> None:
    """Entries are turned into records with their store location split out."""
    user = record_factory("CN=User Signer")
    machine = record_factory("CN=Machine Signer", issuer="CN=Issuing CA", store_location="LocalMachine")
    entries = [entry_factory(user), entry_factory(machine)]
    entries[0]["Thumbprint"] = entries[0]["Thumbprint"].lower()

    records = parse_certificate_list(json.dumps(entries))

    assert [r.subject for r in records] == ["CN=User Signer", "CN=Machine Signer"]
    assert records[0].thumbprint == user.thumbprint
    assert records[0].store_location == "CurrentUser"
    assert records[0].store_name == "My"
    assert records[0].der == user.der
    assert not records[0].is_machine_store
    assert records[0].is_self_issued
    assert records[1].is_machine_store
    assert not records[1].is_self_issued
    assert records[1].issuer == "CN=Issuing CA"


def test_parse_certificate_list_single_object(record_factory, entry_factory) -> None:
    """A single certificate serialized as an object rather than a list is accepted."""
    record = record_factory()
    entry = entry_factory(record)
    entry["FriendlyName"] = None

    records = parse_certificate_list(json.dumps(entry))

    assert len(records) == 1
    assert records[0].friendly_name == ""


def test_parse_certificate_list_ignores_noise(record_factory, entry_factory) -> None:
    """Lines printed before the JSON are skipped, empty output means no certificates."""
    record = record_factory()
    output = "WARNING: something\r\n" + json.dumps([entry_factory(record)]) + "\r\n"

    assert len(parse_certificate_list(output)) == 1
    assert parse_certificate_list("") == []
    assert parse_certificate_list("[]") == []


def test_parse_certificate_list_rejects_malformed_entries(record_factory, entry_factory) -> None:
    """Entries missing required properties fail schema validation."""
    entry = entry_factory(record_factory())
    del entry["RawData"]

    with pytest.raises(jsonschema.exceptions.ValidationError):
        parse_certificate_list(json.dumps([entry]))

    entry = entry_factory(record_factory())
    entry["Thumbprint"] = "not a thumbprint"

    with pytest.raises(jsonschema.exceptions.ValidationError):
        parse_certificate_list(json.dumps([entry]))


def test_describe(record_factory) -> None:
    """The description covers the store properties and the parsed certificate."""
    record = record_factory("CN=Contoso Driver Signing", friendly_name="Contoso", store_name="Root")

    description = record.describe()

    assert description["Subject"] == "CN=Contoso Driver Signing"
    assert description["Thumbprint"] == record.thumbprint
    assert description["Friendly Name"] == "Contoso"
    assert description["Store"] == f"Cert:\\CurrentUser\\Root\\{record.thumbprint}"
    assert description["Not After"] == record.not_after.isoformat()
    assert description["Signature Hash Algorithm"] == "sha256"
    assert "2048" in description["Public Key"]
    assert len(description["Thumbprint (SHA-256)"]) == 64


def test_describe_unparsable_certificate(caplog, record_factory) -> None:
    """A certificate that cannot be parsed is described by its store properties."""
    record = dataclasses.replace(record_factory("CN=Broken Signer"), der=b"not a certificate")

    with caplog.at_level(logging.WARNING):
        description = record.describe()

    assert description["Subject"] == "CN=Broken Signer"
    assert description["Thumbprint"] == record.thumbprint
    assert "Not After" not in description
    assert f"Unable to parse certificate {record.thumbprint}" in caplog.text


def test_export(tmp_path: pathlib.Path, record_factory) -> None:
    """Export writes the DER encoded certificate."""
    record = record_factory()

    path = record.export(tmp_path / "cert.cer")

    assert path.read_bytes() == record.der


def test_powershell_store_queries(record_factory, entry_factory) -> None:
    """Each store operation runs its own script and parses the result."""
    record = record_factory("CN=Test Signer")
    scripts = []

    def powershell(script: str) -> str:
        scripts.append(script)
        return json.dumps([entry_factory(record)])

    store = PowerShellCertificateStore(powershell)
    assert isinstance(store, CertificateStore)

    assert store.code_signing_certificates()[0].thumbprint == record.thumbprint
    assert "Get-ChildItem -Path Cert:\\ -Recurse -CodeSigningCert" in scripts[-1]

    assert store.find_by_subject("CN=Test Signer")[0].subject == "CN=Test Signer"
    assert "$_.Subject -eq 'CN=Test Signer'" in scripts[-1]

    assert store.create_self_signed("CN=Test Signer").subject == "CN=Test Signer"
    assert "New-SelfSignedCertificate -Type CodeSigningCert -Subject 'CN=Test Signer'" in scripts[-1]
    assert "-KeyAlgorithm RSA" in scripts[-1]
    assert "-HashAlgorithm SHA256" in scripts[-1]
    assert "Cert:\\CurrentUser\\My" in scripts[-1]

    for script in scripts:
        assert "ConvertTo-Json" in script


def test_powershell_store_create_without_result() -> None:
    """Creating a certificate fails when the store returns nothing."""
    store = PowerShellCertificateStore(lambda script: "[]")

    with pytest.raises(RuntimeError):
        store.create_self_signed("CN=Test Signer")


def test_subject_script_quotes_subject() -> None:
    """Single quotes in a subject are escaped for PowerShell."""
    assert "$_.Subject -eq 'CN=O''Brien, O=Contoso' }" in subject_script("CN=O'Brien, O=Contoso")


def test_run_powershell() -> None:
    """The script is passed encoded and the captured output returned."""
    seen = {}

    def run_cmd(cmd, parameters, outstream=None, logging_level=None):
        seen["cmd"] = cmd
        seen["script"] = base64.b64decode(parameters.split()[-1]).decode("utf-16-le")
        outstream.write("[]\n")
        return 0

    with patch("cert_store.RunCmd", side_effect=run_cmd):
        output = run_powershell("Get-ChildItem Cert:\\")

    assert output == "[]\n"
    assert seen["cmd"] == "powershell.exe"
    assert seen["script"] == "Get-ChildItem Cert:\\"


def test_run_powershell_failure() -> None:
    """A non-zero exit code from PowerShell is fatal."""
    with patch("cert_store.RunCmd", return_value=1):
        with pytest.raises(RuntimeError):
            run_powershell("exit 1")
