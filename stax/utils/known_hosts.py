"""
Managed known-hosts file with first-contact pinning

The file lives under the tool's own directory (~/.stax/known_hosts) so the
user's ~/.ssh/known_hosts is never touched. Reads take a shared lock and
the first-contact write takes an exclusive lock.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional

import paramiko

from stax.errors import HostKeyMismatch


def default_known_hosts_file() -> Path:
    return Path(os.environ.get("STAX_HOME", Path.home() / ".stax")) / "known_hosts"


def fingerprint(key: paramiko.PKey) -> str:
    """
    Returns the OpenSSH-style SHA256 fingerprint of a host key
    """
    return key.fingerprint if hasattr(key, "fingerprint") else key.get_base64()


class KnownHostsStore:
    """
    Pinned host keys in OpenSSH known-hosts format
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_known_hosts_file()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.messages: List[str] = []

    @contextmanager
    def _locked(self, exclusive: bool):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> paramiko.HostKeys:
        host_keys = paramiko.HostKeys()
        if self.path.exists():
            host_keys.load(str(self.path))
        return host_keys

    def lookup(self, hostname: str, key_type: str) -> Optional[paramiko.PKey]:
        with self._locked(exclusive=False):
            entry = self._load().lookup(hostname)
        if entry is None:
            return None
        return entry.get(key_type)

    def verify(self, hostname: str, key: paramiko.PKey) -> bool:
        """
        Checks a presented host key against the pinned one, pinning on first contact

        Args:
            hostname: Host as paramiko names it ('[host]:port' for non-default ports)
            key: Key presented by the server

        Returns:
            bool: True if the key was newly pinned, False if it matched

        Raises:
            HostKeyMismatch: If a different key is pinned for this host
        """
        pinned = self.lookup(hostname, key.get_name())
        if pinned is not None:
            if pinned == key:
                return False
            raise HostKeyMismatch(hostname, fingerprint(pinned), fingerprint(key))

        with self._locked(exclusive=True):
            # Re-read under the write lock in case another process pinned meanwhile
            host_keys = self._load()
            entry = host_keys.lookup(hostname)
            existing = entry.get(key.get_name()) if entry else None
            if existing is not None:
                if existing == key:
                    return False
                raise HostKeyMismatch(hostname, fingerprint(existing), fingerprint(key))
            host_keys.add(hostname, key.get_name(), key)
            host_keys.save(str(self.path))
            os.chmod(self.path, 0o600)

        message = f"Pinned host key for {hostname}: {key.get_name()} {fingerprint(key)}"
        self.messages.append(message)
        return True


class PinningPolicy(paramiko.MissingHostKeyPolicy):
    """
    paramiko policy that delegates every host key decision to a KnownHostsStore.
    The client is given no host keys of its own, so this runs on every connection.
    """

    def __init__(self, store: KnownHostsStore, on_pin: Optional[Callable[[str], None]] = None):
        self.store = store
        self.on_pin = on_pin

    def missing_host_key(self, client, hostname, key):
        if self.store.verify(hostname, key) and self.on_pin:
            self.on_pin(self.store.messages[-1])
