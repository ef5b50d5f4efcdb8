"""
Layered lookup of provider credentials and SSH private keys

Sources are consulted in precedence order:
    1. Process environment (WPENGINE_API_USER, WPENGINE_API_PASSWORD,
       WPENGINE_SSH_GATEWAY, STAX_SSH_PRIVATE_KEY)
    2. Platform keychain through keyring
    3. ~/.stax/credentials.yml
SSH keys may additionally be read from ~/.ssh.
"""

import json
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import keyring
import yaml
from keyring.errors import KeyringError

from stax.errors import CredentialsNotFound, SSHKeyNotFound
from stax.models import Credentials

DEFAULT_SSH_GATEWAY = "ssh.wpengine.net"
DEFAULT_SSH_PORT = 22

KEYCHAIN_SERVICE = "stax.wpengine"
KEYCHAIN_SSH_SERVICE = "stax.ssh"

DEFAULT_KEY_NAMES = ("id_ed25519", "id_rsa", "id_ecdsa")

PEM_MARKERS = (
    "BEGIN OPENSSH PRIVATE KEY",
    "BEGIN RSA PRIVATE KEY",
    "BEGIN EC PRIVATE KEY",
    "BEGIN DSA PRIVATE KEY",
    "BEGIN PRIVATE KEY",
)

API_FIELDS = ("api_user", "api_password")


class SourceUnavailable(Exception):
    """
    The backend of a secret source cannot be used on this host.
    Recoverable: the resolver moves on to the next source.
    """


def default_credentials_file() -> Path:
    return Path(os.environ.get("STAX_HOME", Path.home() / ".stax")) / "credentials.yml"


def looks_like_pem(text: Optional[str]) -> bool:
    if not text:
        return False
    head = text.lstrip()[:100]
    return head.startswith("-----") and any(marker in head for marker in PEM_MARKERS)


def read_key_file(path: Path) -> Optional[str]:
    """
    Reads a private key file if it exists and carries a PEM header

    Returns:
        Optional[str]: Key content, or None if the file is absent or not a key
    """
    path = Path(os.path.expanduser(str(path)))
    if not path.is_file():
        return None
    with open(path, "r", errors="replace") as f:
        content = f.read()
    return content if looks_like_pem(content) else None


def _split_gateway(value: Optional[str]):
    """
    Splits 'host[:port]' into its parts
    """
    if not value:
        return None, None
    host, sep, port = value.rpartition(":")
    if sep and port.isdigit():
        return host, int(port)
    return value, None


class SecretSource:
    """
    A single place credentials may come from
    """

    name = "source"

    def describe(self) -> str:
        return self.name

    def lookup(self, install: str) -> Optional[Dict[str, object]]:
        """
        Returns the credential fields this source holds for the install

        Raises:
            SourceUnavailable: If the backend cannot be used
        """
        raise NotImplementedError

    def lookup_ssh_key(self, name: str) -> Optional[str]:
        """
        Returns a PEM private key, or None
        """
        return None

    def check_warnings(self) -> List[str]:
        """
        Returns problems with the source worth reporting, computed on each call
        """
        return []


class EnvironmentSource(SecretSource):
    name = "environment"

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def describe(self) -> str:
        return "Environment variables (WPENGINE_API_USER, WPENGINE_API_PASSWORD)"

    def lookup(self, install: str) -> Optional[Dict[str, object]]:
        host, port = _split_gateway(self.environ.get("WPENGINE_SSH_GATEWAY"))
        values = {
            "api_user": self.environ.get("WPENGINE_API_USER"),
            "api_password": self.environ.get("WPENGINE_API_PASSWORD"),
            "ssh_user": self.environ.get("WPENGINE_SSH_USER"),
            "ssh_gateway_host": host,
            "ssh_gateway_port": port,
        }
        values = {k: v for k, v in values.items() if v}
        return values or None

    def lookup_ssh_key(self, name: str) -> Optional[str]:
        value = self.environ.get("STAX_SSH_PRIVATE_KEY")
        if not value:
            return None
        if looks_like_pem(value):
            return value
        return read_key_file(Path(value))


class KeychainSource(SecretSource):
    """
    Platform secret service, keyed by (service, install or "global").
    Entries hold a JSON object with the credential fields.
    """

    name = "keychain"

    def __init__(self, service: str = KEYCHAIN_SERVICE, ssh_service: str = KEYCHAIN_SSH_SERVICE):
        self.service = service
        self.ssh_service = ssh_service

    def describe(self) -> str:
        return f"System keychain (service {self.service})"

    def _get(self, service: str, account: str) -> Optional[str]:
        try:
            return keyring.get_password(service, account)
        except KeyringError as e:
            raise SourceUnavailable(str(e)) from e

    def lookup(self, install: str) -> Optional[Dict[str, object]]:
        for account in (install, "global"):
            if not account:
                continue
            raw = self._get(self.service, account)
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                # A bare secret is taken as the API password
                data = {"api_password": raw}
            if not isinstance(data, dict):
                continue
            host, port = _split_gateway(data.get("ssh_gateway"))
            values = {
                "api_user": data.get("api_user"),
                "api_password": data.get("api_password"),
                "ssh_user": data.get("ssh_user"),
                "ssh_gateway_host": host,
                "ssh_gateway_port": data.get("ssh_port") or port,
            }
            values = {k: v for k, v in values.items() if v}
            if values:
                return values
        return None

    def lookup_ssh_key(self, name: str) -> Optional[str]:
        for account in (name, "global"):
            if not account:
                continue
            raw = self._get(self.ssh_service, account)
            if not raw:
                continue
            if looks_like_pem(raw):
                return raw
            try:
                data = json.loads(raw)
            except ValueError:
                continue
            if isinstance(data, dict) and looks_like_pem(data.get("private_key")):
                return data["private_key"]
        return None


class CredentialsFileSource(SecretSource):
    """
    YAML file, expected to be readable by its owner only

        wpengine:
          api_user: ...
          api_password: ...
          ssh_user: ...
          ssh_gateway: ssh.wpengine.net
        installs:
          <install>:
            api_user: ...
        ssh:
          private_key_path: ~/.ssh/wpengine
    """

    name = "credentials_file"

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_credentials_file()

    def describe(self) -> str:
        return f"Credentials file {self.path}"

    def mode_warning(self) -> Optional[str]:
        """
        Returns a warning if group or others can access the file
        """
        if not self.path.exists():
            return None
        mode = stat.S_IMODE(self.path.stat().st_mode)
        if mode & 0o077:
            return (f"Credentials file {self.path} has permissions {oct(mode)}; "
                    f"run 'chmod 600 {self.path}'")
        return None

    def check_warnings(self) -> List[str]:
        warning = self.mode_warning()
        return [warning] if warning else []

    def _load(self) -> Dict[str, object]:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def lookup(self, install: str) -> Optional[Dict[str, object]]:
        data = self._load()
        section = dict(data.get("wpengine") or {})
        per_install = (data.get("installs") or {}).get(install) or {}
        section.update({k: v for k, v in per_install.items() if v})

        host, port = _split_gateway(section.get("ssh_gateway"))
        values = {
            "api_user": section.get("api_user"),
            "api_password": section.get("api_password"),
            "ssh_user": section.get("ssh_user"),
            "ssh_gateway_host": host,
            "ssh_gateway_port": section.get("ssh_port") or port,
        }
        values = {k: v for k, v in values.items() if v}
        return values or None

    def lookup_ssh_key(self, name: str) -> Optional[str]:
        data = self._load()
        key_path = (data.get("ssh") or {}).get("private_key_path")
        if not key_path:
            return None
        return read_key_file(Path(key_path))


def default_sources() -> List[SecretSource]:
    return [EnvironmentSource(), KeychainSource(), CredentialsFileSource()]


@dataclass
class ResolvedCredentials:
    """
    Outcome of a successful resolve()
    """

    credentials: Credentials
    source: str
    shadowed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class CredentialCache:
    """
    Holds resolved credentials for one invocation only
    """

    def __init__(self):
        self._entries: Dict[str, ResolvedCredentials] = {}
        self._keys: Dict[str, str] = {}

    def get(self, install: str) -> Optional[ResolvedCredentials]:
        return self._entries.get(install)

    def put(self, install: str, resolved: ResolvedCredentials) -> None:
        self._entries[install] = resolved

    def get_key(self, name: str) -> Optional[str]:
        return self._keys.get(name)

    def put_key(self, name: str, pem: str) -> None:
        self._keys[name] = pem

    def clear(self) -> None:
        self._entries.clear()
        self._keys.clear()


class CredentialResolver:
    """
    Resolves credentials from an ordered list of secret sources
    """

    def __init__(self, sources: Optional[Sequence[SecretSource]] = None,
                 ssh_dir: Optional[Path] = None, verbose: bool = False):
        self.sources = list(sources) if sources is not None else default_sources()
        self.ssh_dir = Path(ssh_dir) if ssh_dir else Path.home() / ".ssh"
        self.verbose = verbose

    def resolve(self, install: str, require: Iterable[str] = API_FIELDS) -> ResolvedCredentials:
        """
        Returns credentials from the highest-precedence source holding a complete set

        Args:
            install: Provider install name
            require: Credential fields the caller needs

        Returns:
            ResolvedCredentials: The winning record plus the lower-precedence
                sources that also had credentials

        Raises:
            CredentialsNotFound: If no source provides the required fields
        """
        required = tuple(require)
        tried: List[str] = []
        warnings: List[str] = []
        last_error: Optional[BaseException] = None
        winner: Optional[ResolvedCredentials] = None
        shadowed: List[str] = []

        for source in self.sources:
            tried.append(source.describe())
            try:
                values = source.lookup(install)
            except SourceUnavailable as e:
                if self.verbose:
                    print(f"ℹ️ {source.describe()} unavailable: {e}")
                continue
            except (OSError, ValueError, yaml.YAMLError) as e:
                last_error = e
                continue
            finally:
                for warning in source.check_warnings():
                    if warning not in warnings:
                        warnings.append(warning)

            if not values:
                continue

            credentials = Credentials(**values)
            complete = not credentials.missing(*required)

            if winner is None:
                if complete:
                    winner = ResolvedCredentials(credentials, source.name)
                else:
                    warnings.append(
                        f"{source.describe()} is missing {', '.join(credentials.missing(*required))}; ignored"
                    )
            elif complete:
                shadowed.append(source.name)

        if winner is None:
            raise CredentialsNotFound(install, tried, last_error)

        winner.credentials = self._with_defaults(winner.credentials, install)
        winner.shadowed = shadowed
        winner.warnings = warnings
        return winner

    def _with_defaults(self, credentials: Credentials, install: str) -> Credentials:
        return credentials.merged_with(Credentials(
            ssh_user=f"{install}@{install}" if install else None,
            ssh_gateway_host=DEFAULT_SSH_GATEWAY,
            ssh_gateway_port=DEFAULT_SSH_PORT,
        ))

    def resolve_ssh_key(self, name: Optional[str] = None) -> str:
        """
        Returns the PEM content of the SSH private key

        Args:
            name: Key name used for keychain lookup and ~/.ssh/<name>

        Returns:
            str: PEM text, kept in memory only

        Raises:
            SSHKeyNotFound: If no location provides a key
        """
        tried: List[str] = []
        last_error: Optional[BaseException] = None

        for source in self.sources:
            tried.append(f"{source.describe()} (SSH key)")
            try:
                pem = source.lookup_ssh_key(name or "")
            except SourceUnavailable:
                continue
            except (OSError, ValueError, yaml.YAMLError) as e:
                last_error = e
                continue
            if pem:
                return pem

        candidates = [name] if name else []
        candidates.extend(n for n in DEFAULT_KEY_NAMES if n != name)
        for key_name in candidates:
            path = self.ssh_dir / key_name
            tried.append(f"SSH key file {path}")
            try:
                pem = read_key_file(path)
            except OSError as e:
                last_error = e
                continue
            if pem:
                return pem

        raise SSHKeyNotFound(name or "default", tried, last_error)

    def resolve_all(self, install: str, key_name: Optional[str] = None,
                    cache: Optional[CredentialCache] = None) -> ResolvedCredentials:
        """
        Resolves API/SSH fields and the private key, memoized in the given cache
        """
        if cache is not None and cache.get(install):
            return cache.get(install)

        try:
            resolved = self.resolve(install)
        except CredentialsNotFound:
            # SSH access alone is enough to pull; the API only enriches site data
            try:
                resolved = self.resolve(install, require=())
            except CredentialsNotFound:
                resolved = ResolvedCredentials(self._with_defaults(Credentials(), install), "defaults")
            resolved.warnings.append("No API credentials found; provider API lookups are disabled")

        pem = cache.get_key(key_name or "") if cache is not None else None
        if not pem:
            pem = self.resolve_ssh_key(key_name)
            if cache is not None:
                cache.put_key(key_name or "", pem)
        resolved.credentials.ssh_private_key_pem = pem

        if cache is not None:
            cache.put(install, resolved)
        return resolved
