"""
Tests for the credential doctor report.
"""

import keyring
import pytest
from keyring.errors import KeyringError

from stax.utils.credentials import CredentialResolver, CredentialsFileSource, EnvironmentSource
from stax.utils.diagnostics import diagnose, print_report
from tests.conftest import FAKE_PEM


class MemoryKeyring:
    pass


@pytest.fixture
def working_keychain(monkeypatch):
    monkeypatch.setattr(keyring, "get_keyring", lambda: MemoryKeyring())
    monkeypatch.setattr(keyring, "get_password", lambda service, user: None)


def by_name(results):
    return {result.name: result for result in results}


def test_everything_found(working_keychain, tmp_path, capsys):
    environ = {"WPENGINE_API_USER": "u", "WPENGINE_API_PASSWORD": "s3cret", "STAX_SSH_PRIVATE_KEY": FAKE_PEM}
    resolver = CredentialResolver([EnvironmentSource(environ)], ssh_dir=tmp_path)

    results = by_name(diagnose(resolver, install="example", environ=environ))

    assert results["Keychain"].details == ["Backend: MemoryKeyring"]
    assert results["Environment"].message == "3 credential variable(s) set"
    assert results["WP Engine API credentials"].status == "ok"
    assert "Source: environment" in results["WP Engine API credentials"].details
    assert results["SSH key"].status == "ok"
    assert print_report(list(results.values()))
    assert "s3cret" not in capsys.readouterr().out


def test_nothing_found(working_keychain, tmp_path):
    resolver = CredentialResolver([EnvironmentSource({})], ssh_dir=tmp_path)
    results = diagnose(resolver, install="example", environ={})

    named = by_name(results)
    assert named["WP Engine API credentials"].status == "error"
    assert named["SSH key"].status == "error"
    assert any(str(tmp_path / "id_rsa") in detail for detail in named["SSH key"].details)
    assert not print_report(results)


def test_unavailable_keychain_is_a_warning(monkeypatch, tmp_path):
    def broken():
        raise KeyringError("no backend")

    monkeypatch.setattr(keyring, "get_keyring", broken)
    results = by_name(diagnose(CredentialResolver([EnvironmentSource({})], ssh_dir=tmp_path), environ={}))
    assert results["Keychain"].status == "warning"


def test_insecure_credentials_file(working_keychain, tmp_path):
    path = tmp_path / "credentials.yml"
    path.write_text("wpengine:\n  api_user: u\n  api_password: p\n")
    path.chmod(0o644)
    resolver = CredentialResolver([CredentialsFileSource(path)], ssh_dir=tmp_path)

    results = by_name(diagnose(resolver, install="example", environ={}))

    assert results["Credentials file"].status == "warning"
    assert results["WP Engine API credentials"].status == "warning"
