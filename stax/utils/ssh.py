"""
Utilities for SSH operations with the provider gateway
"""

import io
import queue
import socket
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Sequence, Tuple

import paramiko
from tqdm import tqdm

from stax.errors import (
    CredentialsRejected,
    HostKeyMismatch,
    RemoteCommandFailed,
    TransportUnavailable,
)
from stax.utils.cancellation import CancellationToken
from stax.utils.known_hosts import KnownHostsStore, PinningPolicy
from stax.utils.security import validate_argv, validate_remote_path

CONNECT_TIMEOUT = 30
KEEPALIVE_INTERVAL = 30
MAX_SESSION_LIFETIME = 2 * 60 * 60
CHUNK_SIZE = 32768
POLL_INTERVAL = 0.1

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(pem: str) -> paramiko.PKey:
    """
    Builds a paramiko key object from PEM text without touching the disk

    Raises:
        CredentialsRejected: If the text is not a supported private key
    """
    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(pem))
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise CredentialsRejected(f"SSH private key could not be loaded: {last_error}")


class SSHSession:
    """
    SSH session to the provider gateway, authenticated with an in-memory key
    """

    def __init__(self, host: str, username: str, private_key_pem: str, port: int = 22,
                 known_hosts: Optional[KnownHostsStore] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 keepalive: int = KEEPALIVE_INTERVAL,
                 max_lifetime: float = MAX_SESSION_LIFETIME,
                 client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
                 verbose: bool = False):
        """
        Initializes the SSH session

        Args:
            host: Gateway host name
            username: Login name ('<install>@<install>' on WP Engine)
            private_key_pem: PEM private key content
            port: Gateway port
            known_hosts: Managed known-hosts store
            cancel_token: Cancellation handle checked while waiting on channels
            connect_timeout: Seconds allowed for TCP connect and handshake
            keepalive: Keepalive interval in seconds
            max_lifetime: Seconds after which the session is re-established
            client_factory: Builds the underlying paramiko client
            verbose: Print every remote command
        """
        self.host = host
        self.port = port
        self.username = username
        self._pem = private_key_pem
        self.known_hosts = known_hosts or KnownHostsStore()
        self.cancel_token = cancel_token or CancellationToken()
        self.connect_timeout = connect_timeout
        self.keepalive = keepalive
        self.max_lifetime = max_lifetime
        self.client_factory = client_factory
        self.verbose = verbose
        self.client: Optional[paramiko.SSHClient] = None
        self.connected_at: Optional[float] = None
        self.messages: List[str] = []

    def connect(self) -> "SSHSession":
        """
        Establishes the SSH connection

        Raises:
            CredentialsRejected: If authentication fails or the host key does not match
            TransportUnavailable: On network-level failures
        """
        client = self.client_factory()
        client.set_missing_host_key_policy(PinningPolicy(self.known_hosts, on_pin=self._on_pin))
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=load_private_key(self._pem),
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except HostKeyMismatch:
            client.close()
            raise
        except paramiko.AuthenticationException as e:
            client.close()
            raise CredentialsRejected(f"SSH authentication failed for {self.username}@{self.host}: {e}") from e
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            client.close()
            raise TransportUnavailable(f"Could not connect to {self.host}:{self.port}: {e}") from e

        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.keepalive)
        self.client = client
        self.connected_at = time.monotonic()
        print(f"✅ SSH connection established with {self.host}")
        return self

    def _on_pin(self, message: str):
        self.messages.append(message)
        print(f"ℹ️ {message}")

    def _ensure_connected(self):
        expired = (
            self.connected_at is not None
            and time.monotonic() - self.connected_at > self.max_lifetime
        )
        if expired:
            if self.verbose:
                print("🔄 SSH session reached its maximum lifetime, reconnecting...")
            self.close(quiet=True)
        if self.client is None:
            self.connect()
            return
        transport = self.client.get_transport()
        if transport is None or not transport.is_active():
            self.close(quiet=True)
            self.connect()

    def close(self, quiet: bool = False):
        """
        Closes the SSH connection
        """
        if self.client:
            self.client.close()
            self.client = None
            self.connected_at = None
            if not quiet:
                print(f"✅ SSH connection closed with {self.host}")

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def exec_stream(self, argv: Sequence[str], stdout: BinaryIO, stderr: BinaryIO,
                    timeout: Optional[float] = None) -> int:
        """
        Executes a remote command, streaming its output to writers

        Args:
            argv: Command and arguments, each checked against the allow-list
            stdout: Writer for standard output bytes
            stderr: Writer for error output bytes
            timeout: Seconds before the command is abandoned

        Returns:
            int: Remote exit code

        Raises:
            InvalidArgument: If an argument fails validation (no channel is opened)
            TransportUnavailable: On timeout or channel failure
            Cancelled: If the cancellation token fires
        """
        command = " ".join(validate_argv(argv))
        self.cancel_token.raise_if_cancelled("remote command")
        self._ensure_connected()

        if self.verbose:
            print(f"🔄 Executing remote command: {command}")

        deadline = time.monotonic() + timeout if timeout else None
        try:
            channel = self.client.get_transport().open_session(timeout=self.connect_timeout)
            channel.settimeout(POLL_INTERVAL)
            channel.exec_command(command)

            while True:
                drained = False
                while channel.recv_ready():
                    stdout.write(channel.recv(CHUNK_SIZE))
                    drained = True
                while channel.recv_stderr_ready():
                    stderr.write(channel.recv_stderr(CHUNK_SIZE))
                    drained = True
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if self.cancel_token.cancelled:
                    channel.close()
                    self.cancel_token.raise_if_cancelled("remote command")
                if deadline and time.monotonic() > deadline:
                    channel.close()
                    raise TransportUnavailable(f"Remote command timed out after {timeout}s: {command}")
                if not drained:
                    self.cancel_token.wait(POLL_INTERVAL)

            exit_code = channel.recv_exit_status()
            channel.close()
            return exit_code
        except (paramiko.SSHException, socket.timeout, EOFError, OSError) as e:
            raise TransportUnavailable(f"SSH channel failed for '{command}': {e}") from e

    def exec(self, argv: Sequence[str], timeout: Optional[float] = None) -> Tuple[str, str, int]:
        """
        Executes a remote command and buffers its output

        Returns:
            Tuple[str, str, int]: Standard output, error output, exit code
        """
        out, err = io.BytesIO(), io.BytesIO()
        exit_code = self.exec_stream(argv, out, err, timeout=timeout)
        return (
            out.getvalue().decode("utf-8", errors="replace"),
            err.getvalue().decode("utf-8", errors="replace"),
            exit_code,
        )

    def run(self, argv: Sequence[str], timeout: Optional[float] = None) -> str:
        """
        Executes a remote command that must succeed

        Returns:
            str: Standard output

        Raises:
            RemoteCommandFailed: If the command exits non-zero
        """
        stdout, stderr, exit_code = self.exec(argv, timeout=timeout)
        if exit_code != 0:
            raise RemoteCommandFailed(" ".join(argv), exit_code, stderr)
        return stdout

    def open_sftp(self) -> paramiko.SFTPClient:
        self.cancel_token.raise_if_cancelled("file transfer")
        self._ensure_connected()
        try:
            return self.client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise TransportUnavailable(f"Could not open SFTP channel: {e}") from e

    def download(self, remote_path: str, local_path: Path, progress: bool = True,
                 timeout: Optional[float] = None) -> int:
        """
        Downloads a single file, handing chunks to a dedicated writer thread

        Args:
            remote_path: Absolute remote path
            local_path: Destination file
            progress: Show a progress bar
            timeout: Seconds before the transfer is abandoned

        Returns:
            int: Bytes written
        """
        validate_remote_path(remote_path)
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        sftp = self.open_sftp()
        chunks: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=64)
        writer_error: List[BaseException] = []

        def _writer():
            # Keeps draining after a write error so the reader never blocks on a full queue
            f = None
            try:
                f = open(local_path, "wb")
            except OSError as e:
                writer_error.append(e)
            while True:
                chunk = chunks.get()
                if chunk is None:
                    break
                if f is not None and not writer_error:
                    try:
                        f.write(chunk)
                    except OSError as e:
                        writer_error.append(e)
            if f is not None:
                f.close()

        writer = threading.Thread(target=_writer, name="stax-download-writer", daemon=True)
        writer.start()

        deadline = time.monotonic() + timeout if timeout else None
        written = 0
        try:
            size = sftp.stat(remote_path).st_size or 0
            print(f"📥 Downloading file {remote_path} -> {local_path}")
            with sftp.open(remote_path, "rb") as remote_file, \
                    tqdm(total=size, unit="B", unit_scale=True, disable=not progress) as bar:
                remote_file.prefetch(size)
                while True:
                    self.cancel_token.raise_if_cancelled("download")
                    if deadline and time.monotonic() > deadline:
                        raise TransportUnavailable(f"Download of {remote_path} timed out after {timeout}s")
                    if writer_error:
                        break
                    chunk = remote_file.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.put(chunk)
                    written += len(chunk)
                    bar.update(len(chunk))
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise TransportUnavailable(f"Download of {remote_path} failed: {e}") from e
        finally:
            chunks.put(None)
            writer.join()
            sftp.close()

        if writer_error:
            raise writer_error[0]
        return written

    def remove(self, remote_path: str):
        """
        Removes a remote file, ignoring a file that is already gone
        """
        validate_remote_path(remote_path)
        sftp = self.open_sftp()
        try:
            sftp.remove(remote_path)
        except FileNotFoundError:
            pass
        finally:
            sftp.close()
