"""
Module for file synchronization from the provider to the local environment

Files are pulled over SFTP on the already-authenticated SSH session, so
the private key never has to be written anywhere for an external rsync.
Transfers are restartable per file: data lands in a '.<name>.stax-part'
sibling that is renamed into place once complete.
"""

import os
import posixpath
import queue
import stat
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko
from tqdm import tqdm

from stax.errors import Cancelled, InvalidArgument, TransportUnavailable
from stax.models import TransferOptions, TransferStats, VerifyReport
from stax.sync.filters import PathFilter
from stax.utils.cancellation import CancellationToken
from stax.utils.filesystem import ensure_dir_exists, remove_quietly
from stax.utils.security import safe_join, validate_remote_path

CHUNK_SIZE = 65536
PART_SUFFIX = ".stax-part"


@dataclass(frozen=True)
class RemoteEntry:
    rel_path: str
    size: int
    mtime: int
    mode: int


class TokenBucket:
    """
    Rate limiter shared by every transfer worker
    """

    def __init__(self, rate_bytes_per_sec: int, cancel_token: Optional[CancellationToken] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.rate = rate_bytes_per_sec
        self.capacity = max(rate_bytes_per_sec, CHUNK_SIZE)
        self.tokens = float(self.capacity)
        self.clock = clock
        self.updated = clock()
        self.cancel_token = cancel_token or CancellationToken()
        self._lock = threading.Lock()

    def consume(self, amount: int):
        if self.rate <= 0:
            return
        while True:
            with self._lock:
                now = self.clock()
                self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
                self.updated = now
                if self.tokens >= amount:
                    self.tokens -= amount
                    return
                wait = (amount - self.tokens) / self.rate
            if self.cancel_token.wait(wait):
                raise Cancelled("file transfer")


def part_path(local_path: Path) -> Path:
    return local_path.with_name(f".{local_path.name}{PART_SUFFIX}")


class FileSync:
    """
    Pulls a remote directory tree into a local directory
    """

    def __init__(self, session, cancel_token: Optional[CancellationToken] = None,
                 progress: bool = True, verbose: bool = False):
        """
        Args:
            session: Object with an open_sftp() method (an SSHSession)
            cancel_token: Cancellation handle checked between chunks
            progress: Show a progress bar
            verbose: Print every file decision
        """
        self.session = session
        self.cancel_token = cancel_token or CancellationToken()
        self.progress = progress
        self.verbose = verbose

    def list_remote(self, sftp: paramiko.SFTPClient, remote_root: str, path_filter: PathFilter,
                    warnings: List[str]) -> List[RemoteEntry]:
        """
        Walks the remote tree, pruning excluded directories and skipping symlinks
        """
        entries: List[RemoteEntry] = []
        pending = [""]
        while pending:
            self.cancel_token.raise_if_cancelled("file listing")
            rel_dir = pending.pop()
            remote_dir = posixpath.join(remote_root, rel_dir) if rel_dir else remote_root
            try:
                listing = sftp.listdir_attr(remote_dir)
            except IOError as e:
                raise TransportUnavailable(f"Cannot list remote directory {remote_dir}: {e}") from e

            for attr in sorted(listing, key=lambda a: a.filename):
                rel_path = posixpath.join(rel_dir, attr.filename) if rel_dir else attr.filename
                mode = attr.st_mode or 0
                if stat.S_ISLNK(mode):
                    warnings.append(f"Skipped symbolic link {rel_path}")
                    continue
                if stat.S_ISDIR(mode):
                    if path_filter.allows(rel_path, is_dir=True):
                        pending.append(rel_path)
                    continue
                if not stat.S_ISREG(mode):
                    continue
                if not path_filter.allows(rel_path):
                    continue
                entries.append(RemoteEntry(rel_path, attr.st_size or 0, int(attr.st_mtime or 0), mode))
        return entries

    def _is_current(self, entry: RemoteEntry, local_path: Path) -> bool:
        try:
            st = local_path.stat()
        except FileNotFoundError:
            return False
        return st.st_size == entry.size and int(st.st_mtime) == entry.mtime

    def _fetch(self, sftp: paramiko.SFTPClient, remote_root: str, entry: RemoteEntry,
               local_path: Path, options: TransferOptions, bucket: TokenBucket,
               bar: tqdm, deadline: Optional[float]) -> int:
        """
        Downloads one file, resuming an earlier partial transfer if present
        """
        part = part_path(local_path)
        ensure_dir_exists(local_path.parent)
        offset = part.stat().st_size if part.exists() else 0
        if offset > entry.size:
            remove_quietly(part)
            offset = 0

        remote_path = posixpath.join(remote_root, entry.rel_path)
        written = 0
        try:
            with sftp.open(remote_path, "rb") as remote_file, open(part, "ab" if offset else "wb") as out:
                if offset:
                    remote_file.seek(offset)
                remote_file.prefetch(entry.size - offset)
                while True:
                    if self.cancel_token.cancelled:
                        raise Cancelled("file transfer")
                    if deadline and time.monotonic() > deadline:
                        raise TransportUnavailable("File sync timed out")
                    chunk = remote_file.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    bucket.consume(len(chunk))
                    out.write(chunk)
                    written += len(chunk)
                    bar.update(len(chunk))
        except Cancelled:
            remove_quietly(part)
            raise

        os.replace(part, local_path)
        if options.preserve_attributes:
            os.utime(local_path, (entry.mtime, entry.mtime))
            os.chmod(local_path, stat.S_IMODE(entry.mode) or 0o644)
        return written

    def sync(self, remote_root: str, local_root: Path, options: TransferOptions,
             path_filter: Optional[PathFilter] = None, protected_subpath: Optional[str] = "uploads",
             timeout: Optional[float] = None) -> TransferStats:
        """
        Synchronizes a remote directory into a local directory

        Args:
            remote_root: Absolute remote directory
            local_root: Local destination directory
            options: Transfer options
            path_filter: Include/exclude rules (built from options when omitted)
            protected_subpath: Relative directory never deleted unless uploads are synced
            timeout: Seconds allowed for the whole transfer

        Returns:
            TransferStats: Bytes and files transferred, skipped, deleted and failed
        """
        validate_remote_path(remote_root)
        local_root = Path(local_root)
        path_filter = path_filter or PathFilter(options.include_globs, options.exclude_globs)
        stats = TransferStats()
        deadline = time.monotonic() + timeout if timeout else None

        if options.follow_symlinks:
            stats.warnings.append("Following symbolic links is not supported; links are skipped")

        sftp = self.session.open_sftp()
        try:
            entries = self.list_remote(sftp, remote_root, path_filter, stats.warnings)
        finally:
            sftp.close()

        if not options.dry_run:
            ensure_dir_exists(local_root)

        skip_identical = not options.delete_extraneous
        pending: List[Tuple[RemoteEntry, Path]] = []
        for entry in entries:
            try:
                local_path = safe_join(local_root, entry.rel_path)
            except InvalidArgument as e:
                stats.warnings.append(str(e))
                continue
            if skip_identical and self._is_current(entry, local_path):
                stats.skipped += 1
                continue
            pending.append((entry, local_path))

        total = sum(entry.size for entry, _ in pending)
        print(f"📥 {len(pending)} file(s) to transfer ({total} bytes), {stats.skipped} already up to date")

        if options.dry_run:
            for entry, _ in pending:
                if self.verbose:
                    print(f"   would transfer {entry.rel_path} ({entry.size} bytes)")
            stats.files = len(pending)
            stats.bytes = total
        elif pending:
            self._transfer(remote_root, pending, options, stats, total, deadline)

        if options.delete_extraneous:
            remote_set = {entry.rel_path for entry in entries}
            self._delete_extraneous(local_root, remote_set, path_filter, options, stats, protected_subpath)

        for warning in stats.warnings:
            if self.verbose:
                print(f"⚠️ {warning}")
        return stats

    def _transfer(self, remote_root: str, pending: List[Tuple[RemoteEntry, Path]],
                  options: TransferOptions, stats: TransferStats, total: int,
                  deadline: Optional[float]):
        workers = max(1, min(options.workers, len(pending)))
        bucket = TokenBucket(options.bandwidth_limit_kibibytes_per_sec * 1024, self.cancel_token)

        # One SFTP channel per worker, multiplexed over the same SSH transport
        channels: "queue.Queue[paramiko.SFTPClient]" = queue.Queue()
        opened = [self.session.open_sftp() for _ in range(workers)]
        for channel in opened:
            channels.put(channel)

        def _job(entry: RemoteEntry, local_path: Path) -> int:
            sftp = channels.get()
            try:
                return self._fetch(sftp, remote_root, entry, local_path, options, bucket, bar, deadline)
            finally:
                channels.put(sftp)

        try:
            with tqdm(total=total, unit="B", unit_scale=True, disable=not self.progress) as bar, \
                    ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stax-sync") as pool:
                futures = {pool.submit(_job, entry, local_path): entry for entry, local_path in pending}
                first_error: Optional[BaseException] = None
                for future in as_completed(futures):
                    entry = futures[future]
                    try:
                        written = future.result()
                    except (Cancelled, TransportUnavailable) as e:
                        if first_error is None:
                            first_error = e
                            for other in futures:
                                other.cancel()
                        continue
                    except (IOError, paramiko.SSHException) as e:
                        stats.failed.append(entry.rel_path)
                        stats.warnings.append(f"Failed to transfer {entry.rel_path}: {e}")
                        continue
                    stats.files += 1
                    stats.bytes += written
                if first_error is not None:
                    raise first_error
        finally:
            for channel in opened:
                channel.close()

    def _delete_extraneous(self, local_root: Path, remote_set, path_filter: PathFilter,
                           options: TransferOptions, stats: TransferStats,
                           protected_subpath: Optional[str]):
        """
        Removes local files that no longer exist remotely.
        Excluded paths and, unless uploads are synced, the uploads tree are left alone.
        """
        if not local_root.exists():
            return
        for dirpath, dirnames, filenames in os.walk(local_root, followlinks=False):
            rel_dir = Path(dirpath).relative_to(local_root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            kept_dirs = []
            for name in dirnames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if protected_subpath and not options.sync_uploads and rel == protected_subpath:
                    continue
                if path_filter.allows(rel, is_dir=True):
                    kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if rel in remote_set or name.endswith(PART_SUFFIX) or not path_filter.allows(rel):
                    continue
                if options.dry_run:
                    if self.verbose:
                        print(f"   would delete {rel}")
                else:
                    remove_quietly(Path(dirpath) / name)
                stats.deleted += 1

    def verify(self, remote_root: str, local_root: Path,
               path_filter: Optional[PathFilter] = None) -> VerifyReport:
        """
        Compares file counts and total sizes of the remote and local trees
        """
        validate_remote_path(remote_root)
        path_filter = path_filter or PathFilter()
        sftp = self.session.open_sftp()
        try:
            entries = self.list_remote(sftp, remote_root, path_filter, [])
        finally:
            sftp.close()

        local_files = 0
        local_bytes = 0
        local_root = Path(local_root)
        for dirpath, dirnames, filenames in os.walk(local_root, followlinks=False):
            rel_dir = Path(dirpath).relative_to(local_root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            dirnames[:] = [
                d for d in dirnames
                if path_filter.allows(f"{rel_dir}/{d}" if rel_dir else d, is_dir=True)
            ]
            for name in filenames:
                rel = f"{rel_dir}/{name}" if rel_dir else name
                full = Path(dirpath) / name
                if full.is_symlink() or not path_filter.allows(rel):
                    continue
                local_files += 1
                local_bytes += full.stat().st_size

        return VerifyReport(
            remote_files=len(entries),
            remote_bytes=sum(entry.size for entry in entries),
            local_files=local_files,
            local_bytes=local_bytes,
        )
