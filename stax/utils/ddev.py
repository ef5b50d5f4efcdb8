"""
Utilities for interacting with the local DDEV environment

Every call uses an explicit argument vector; nothing goes through a local shell.
"""

import json
import subprocess
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple, Union

from stax.errors import Cancelled, SnapshotIOError
from stax.utils.cancellation import CancellationToken
from stax.utils.security import validate_argv

WP_CLI_PATH = "/usr/local/bin/wp"
CHUNK_SIZE = 65536


class DDEV:
    """
    Thin wrapper over the ddev commands the pipeline needs
    """

    def __init__(self, project_dir: Union[str, Path], wp_path: str = "/var/www/html",
                 memory_limit: Optional[str] = "512M",
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 popen: Callable[..., subprocess.Popen] = subprocess.Popen,
                 verbose: bool = False):
        """
        Args:
            project_dir: Host directory of the DDEV project
            wp_path: WordPress path inside the container
            memory_limit: PHP memory limit for WP-CLI
            runner: Function used for buffered commands
            popen: Function used for streaming commands
            verbose: Print every command
        """
        self.project_dir = Path(project_dir)
        self.wp_path = wp_path
        self.memory_limit = memory_limit
        self.runner = runner
        self.popen = popen
        self.verbose = verbose

    def _run(self, args: List[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
        if self.verbose:
            print(f"🔄 Executing: {' '.join(args)}")
        try:
            result = self.runner(
                args,
                cwd=str(self.project_dir),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError:
            return 127, "", "ddev executable not found in PATH"
        except subprocess.TimeoutExpired:
            return 124, "", f"Command timed out after {timeout}s: {' '.join(args)}"
        return result.returncode, result.stdout, result.stderr

    def describe(self) -> Dict[str, Any]:
        """
        Gets the project description from 'ddev describe -j'

        Returns:
            Dict: The 'raw' section of the description, empty if unavailable
        """
        code, stdout, _ = self._run(["ddev", "describe", "-j"], timeout=60)
        if code != 0 or not stdout.strip():
            return {}
        try:
            data = json.loads(stdout)
        except ValueError:
            return {}
        return data.get("raw", data) if isinstance(data, dict) else {}

    def is_running(self) -> bool:
        return self.describe().get("status") == "running"

    def db_info(self) -> Dict[str, Any]:
        """
        Gets connection details for the local database as published on the host
        """
        raw = self.describe()
        info = raw.get("dbinfo") or {}
        return {
            "host": "127.0.0.1",
            "port": info.get("published_port") or info.get("host_port"),
            "database": info.get("dbname", "db"),
            "username": info.get("username", "db"),
            "password": info.get("password", "db"),
            "type": info.get("database_type", "mariadb"),
        }

    def primary_url(self) -> Optional[str]:
        return self.describe().get("primary_url")

    def run_wp_cli(self, command: List[str], timeout: Optional[float] = 300) -> Tuple[int, str, str]:
        """
        Executes a WP-CLI command inside the web container

        Args:
            command: WP-CLI arguments without the leading 'wp'
            timeout: Seconds before the command is abandoned

        Returns:
            Tuple[int, str, str]: Exit code, standard output, standard error
        """
        # ddev exec hands its arguments to a shell inside the container
        validate_argv(command)
        args = ["ddev", "exec", "--dir", self.wp_path]
        if self.memory_limit:
            args += ["php", "-d", f"memory_limit={self.memory_limit}", WP_CLI_PATH]
        else:
            args += [WP_CLI_PATH]
        return self._run(args + command, timeout=timeout)

    def export_db(self, destination: BinaryIO, cancel_token: Optional[CancellationToken] = None,
                  timeout: Optional[float] = 600) -> int:
        """
        Streams an uncompressed SQL dump of the local database into a writer

        Args:
            destination: Binary writer receiving the dump
            cancel_token: Cancellation handle
            timeout: Seconds before the export is abandoned

        Returns:
            int: Bytes written

        Raises:
            SnapshotIOError: If ddev exits non-zero or times out
            Cancelled: If the token fires; the subprocess is killed
        """
        cancel_token = cancel_token or CancellationToken()
        args = ["ddev", "export-db", "--gzip=false"]
        if self.verbose:
            print(f"🔄 Executing: {' '.join(args)}")
        try:
            process = self.popen(args, cwd=str(self.project_dir),
                                 stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError as e:
            raise SnapshotIOError("ddev executable not found in PATH") from e

        deadline = time.monotonic() + timeout if timeout else None
        written = 0
        try:
            while True:
                if cancel_token.cancelled:
                    process.kill()
                    raise Cancelled("database export")
                if deadline and time.monotonic() > deadline:
                    process.kill()
                    raise SnapshotIOError(f"ddev export-db timed out after {timeout}s")
                chunk = process.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                destination.write(chunk)
                written += len(chunk)
            stderr = process.stderr.read() if process.stderr else b""
            exit_code = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

        if exit_code != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise SnapshotIOError(f"ddev export-db failed with exit code {exit_code}: {message}")
        return written
