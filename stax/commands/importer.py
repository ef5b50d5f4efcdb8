"""
Imports SQL dumps into the local DDEV database
"""

import gzip
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional

from stax.errors import Cancelled, ExportEmpty, ImportFailed
from stax.models import ImportJob, ImportStats
from stax.utils.cancellation import CancellationToken
from stax.utils.ddev import DDEV

CHUNK_SIZE = 1024 * 1024
IMPORT_TIMEOUT = 600
GZIP_MAGIC = b"\x1f\x8b"

# stderr lines that do not indicate a failed import
BENIGN_STDERR_PATTERNS = [
    re.compile(r"Using a password on the command line interface can be insecure", re.IGNORECASE),
    re.compile(r"^mysql: \[Warning\]"),
    re.compile(r"^(PHP )?(Deprecated|Notice|Warning):"),
    re.compile(r"WP_DEBUG"),
    re.compile(r"^Import (database|db) complete", re.IGNORECASE),
    re.compile(r"^\s*$"),
]

POST_IMPORT_HOOKS = [
    ["cache", "flush"],
    ["transient", "delete", "--all"],
    ["rewrite", "flush"],
]


def is_benign(line: str) -> bool:
    return any(pattern.search(line) for pattern in BENIGN_STDERR_PATTERNS)


def filter_stderr(stderr: str, suppress_debug: bool) -> str:
    """
    Removes known-benign lines from an error surface when suppress_debug is set
    """
    if not suppress_debug:
        return stderr
    return "\n".join(line for line in stderr.splitlines() if not is_benign(line))


def open_dump(path: Path) -> BinaryIO:
    """
    Opens a dump for streaming, transparently decompressing gzip files
    """
    with open(path, "rb") as f:
        magic = f.read(2)
    if magic == GZIP_MAGIC:
        return gzip.open(path, "rb")
    return open(path, "rb")


class StatementCounter:
    """
    Counts CREATE TABLE and INSERT INTO statements in a streamed dump.
    Only the first bytes of each line are retained between chunks.
    """

    HEAD = 16

    def __init__(self):
        self.tables = 0
        self.inserts = 0
        self._carry = b""
        self._classified = False

    def _classify(self, head: bytes):
        if head.startswith(b"CREATE TABLE"):
            self.tables += 1
        elif head.startswith(b"INSERT INTO"):
            self.inserts += 1

    def feed(self, chunk: bytes):
        buf = self._carry + chunk
        start = 0
        while True:
            newline = buf.find(b"\n", start)
            if newline < 0:
                break
            if not self._classified:
                self._classify(buf[start:newline])
            self._classified = False
            start = newline + 1
        rest = buf[start:]
        if not self._classified and len(rest) >= self.HEAD:
            self._classify(rest)
            self._classified = True
        self._carry = b"" if self._classified else rest

    def finish(self):
        if self._carry and not self._classified:
            self._classify(self._carry)
        self._carry = b""


class DatabaseImporter:
    """
    Streams dumps into 'ddev import-db' and runs the post-import hooks
    """

    def __init__(self, ddev: DDEV, cancel_token: Optional[CancellationToken] = None,
                 timeout: float = IMPORT_TIMEOUT,
                 popen: Optional[Callable[..., subprocess.Popen]] = None,
                 verbose: bool = False):
        self.ddev = ddev
        self.cancel_token = cancel_token or CancellationToken()
        self.timeout = timeout
        self.popen = popen or ddev.popen
        self.verbose = verbose

    def import_dump(self, job: ImportJob) -> ImportStats:
        """
        Imports a dump file into the local database

        Args:
            job: Source file, target database and hook settings

        Returns:
            ImportStats: Tables created, INSERT statements and duration

        Raises:
            ExportEmpty: If the source file is missing or empty
            ImportFailed: If ddev exits non-zero or the import times out
            Cancelled: If the cancellation token fires (the subprocess is killed)
        """
        source = Path(job.source_file)
        if not source.exists() or source.stat().st_size == 0:
            raise ExportEmpty(str(source), "file is missing or empty")

        args = ["ddev", "import-db", f"--database={job.target_database}"]
        print(f"🔄 Importing {source.name} into the local database...")
        if self.verbose:
            print(f"🔄 Executing: {' '.join(args)}")

        started = time.monotonic()
        deadline = started + self.timeout if self.timeout else None
        counter = StatementCounter()

        process = self.popen(args, cwd=str(self.ddev.project_dir), stdin=subprocess.PIPE,
                             stdout=subprocess.PIPE, stderr=subprocess.PIPE)

        # Drain both pipes in the background so the child never blocks on a full buffer
        captured = {"stdout": b"", "stderr": b""}

        def _drain(name: str, stream):
            if stream is not None:
                captured[name] = stream.read()

        drains = [
            threading.Thread(target=_drain, args=("stdout", process.stdout), daemon=True),
            threading.Thread(target=_drain, args=("stderr", process.stderr), daemon=True),
        ]
        for thread in drains:
            thread.start()

        timed_out = False
        try:
            try:
                with open_dump(source) as dump:
                    while True:
                        if self.cancel_token.cancelled:
                            raise Cancelled("database import")
                        if deadline and time.monotonic() > deadline:
                            timed_out = True
                            break
                        chunk = dump.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        counter.feed(chunk)
                        process.stdin.write(chunk)
                counter.finish()
            except (BrokenPipeError, ConnectionResetError):
                # The child exited early; its exit code and stderr tell why
                pass
            except (OSError, EOFError) as e:
                process.kill()
                raise ImportFailed(None, f"Could not read {source}: {e}") from e
            finally:
                try:
                    process.stdin.close()
                except (BrokenPipeError, OSError):
                    pass

            if not timed_out:
                remaining = max(1.0, deadline - time.monotonic()) if deadline else None
                try:
                    process.wait(timeout=remaining)
                except subprocess.TimeoutExpired:
                    timed_out = True
        except Cancelled:
            process.kill()
            process.wait()
            raise
        finally:
            if timed_out or process.poll() is None:
                process.kill()
                process.wait()
            for thread in drains:
                thread.join(timeout=5)

        stderr = captured["stderr"].decode("utf-8", errors="replace")
        if self.verbose and stderr.strip():
            print(stderr.rstrip())

        if timed_out:
            raise ImportFailed(None, f"Import timed out after {self.timeout}s\n{stderr}")
        if process.returncode != 0:
            raise ImportFailed(process.returncode, filter_stderr(stderr, job.suppress_debug))

        stats = ImportStats(
            tables=counter.tables,
            rows=counter.inserts,
            duration=time.monotonic() - started,
        )
        leftover = [line for line in stderr.splitlines() if line.strip()]
        if job.suppress_debug:
            leftover = [line for line in leftover if not is_benign(line)]
        stats.warnings.extend(f"import: {line}" for line in leftover)

        print(f"✅ Database imported ({stats.tables} tables) in {stats.duration:.1f}s")

        if not job.skip_post_hooks:
            stats.warnings.extend(self.run_post_hooks())
        return stats

    def run_post_hooks(self, dry_run: bool = False) -> List[str]:
        """
        Flushes caches after an import

        Returns:
            List[str]: One warning per failed hook
        """
        warnings = []
        for hook in POST_IMPORT_HOOKS:
            self.cancel_token.raise_if_cancelled("post-import hooks")
            label = "wp " + " ".join(hook)
            if dry_run:
                print(f"ℹ️ Would run {label}")
                continue
            code, stdout, stderr = self.ddev.run_wp_cli(hook)
            if code != 0:
                message = (stderr or stdout).strip().splitlines()
                detail = message[-1] if message else f"exit code {code}"
                warnings.append(f"Post-import hook '{label}' failed: {detail}")
                print(f"⚠️ {label} failed: {detail}")
            elif self.verbose:
                print(f"✅ {label}")
        return warnings
