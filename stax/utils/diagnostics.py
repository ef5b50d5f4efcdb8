"""
Credential diagnostics for the doctor command
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

import keyring
from keyring.errors import KeyringError

from stax.errors import CredentialsNotFound, SSHKeyNotFound
from stax.utils.credentials import (
    CredentialResolver,
    CredentialsFileSource,
    KEYCHAIN_SERVICE,
)

STATUS_ICONS = {"ok": "✅", "warning": "⚠️", "error": "❌"}

ENV_VARS = ("WPENGINE_API_USER", "WPENGINE_API_PASSWORD", "WPENGINE_SSH_GATEWAY", "STAX_SSH_PRIVATE_KEY")


@dataclass
class DiagnosticResult:
    name: str
    status: str
    message: str
    details: List[str] = field(default_factory=list)


def _check_keychain() -> DiagnosticResult:
    try:
        backend = keyring.get_keyring()
        keyring.get_password(KEYCHAIN_SERVICE, "global")
    except KeyringError as e:
        return DiagnosticResult("Keychain", "warning", "Keychain not available", [str(e)])
    return DiagnosticResult("Keychain", "ok", "Keychain available",
                            [f"Backend: {type(backend).__name__}"])


def _check_env_vars(environ) -> DiagnosticResult:
    present = [name for name in ENV_VARS if environ.get(name)]
    if not present:
        return DiagnosticResult("Environment", "ok", "No credential environment variables set")
    return DiagnosticResult("Environment", "ok",
                            f"{len(present)} credential variable(s) set",
                            [f"{name} is set" for name in present])


def _check_credentials_file(source: CredentialsFileSource) -> DiagnosticResult:
    if not source.path.exists():
        return DiagnosticResult("Credentials file", "ok", f"{source.path} not present")
    warning = source.mode_warning()
    if warning:
        return DiagnosticResult("Credentials file", "warning", "Insecure permissions", [warning])
    return DiagnosticResult("Credentials file", "ok", f"{source.path} (mode 0600)")


def diagnose(resolver: Optional[CredentialResolver] = None, install: str = "",
             key_name: Optional[str] = None, environ=None) -> List[DiagnosticResult]:
    """
    Reports on every credential location without changing anything

    Args:
        resolver: Resolver to query (default source chain when omitted)
        install: Install name used for the API credential lookup
        key_name: SSH key name
        environ: Environment mapping (process environment when omitted)

    Returns:
        List[DiagnosticResult]: One entry per check
    """
    resolver = resolver or CredentialResolver()
    environ = os.environ if environ is None else environ
    results = [_check_keychain(), _check_env_vars(environ)]

    file_sources = [s for s in resolver.sources if isinstance(s, CredentialsFileSource)]
    if file_sources:
        results.append(_check_credentials_file(file_sources[0]))

    try:
        resolved = resolver.resolve(install or "global")
        details = [f"Source: {resolved.source}", f"API user: {resolved.credentials.api_user}"]
        details += [f"Also available (lower precedence): {name}" for name in resolved.shadowed]
        details += resolved.warnings
        status = "warning" if resolved.warnings else "ok"
        results.append(DiagnosticResult("WP Engine API credentials", status, "Found", details))
    except CredentialsNotFound as e:
        results.append(DiagnosticResult("WP Engine API credentials", "error", "Not found",
                                        [f"Tried: {location}" for location in e.tried]))

    try:
        resolver.resolve_ssh_key(key_name)
        results.append(DiagnosticResult("SSH key", "ok", "Private key found"))
    except SSHKeyNotFound as e:
        results.append(DiagnosticResult("SSH key", "error", "Not found",
                                        [f"Tried: {location}" for location in e.tried]))

    return results


def print_report(results: List[DiagnosticResult]) -> bool:
    """
    Prints a diagnostics report

    Returns:
        bool: True if no check reported an error
    """
    print("\n🔍 Credential diagnostics:")
    for result in results:
        print(f"   {STATUS_ICONS.get(result.status, '•')} {result.name}: {result.message}")
        for detail in result.details:
            print(f"      - {detail}")
    print()
    return all(result.status != "error" for result in results)
