"""
Local database snapshots: create, list, restore, delete and prune

Snapshots are gzipped SQL dumps named <project>-<YYYYMMDD-HHMMSS>-<kind>.sql.gz
with a shared metadata sidecar (.metadata.yaml) in the snapshot directory.
"""

import fcntl
import gzip
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from stax.commands.importer import DatabaseImporter
from stax.errors import InvalidArgument, SnapshotIOError
from stax.models import (
    SNAPSHOT_KINDS,
    SNAPSHOT_NAME_RE,
    SNAPSHOT_TIME_FORMAT,
    ImportJob,
    ImportStats,
    RetentionPolicy,
    Snapshot,
)
from stax.utils.cancellation import CancellationToken
from stax.utils.ddev import DDEV
from stax.utils.filesystem import ProjectLock, atomic_write_text, ensure_dir_exists, remove_quietly
from stax.utils.security import safe_join

METADATA_FILE = ".metadata.yaml"
PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_project_id(project_id: str) -> str:
    if not project_id or not PROJECT_ID_RE.fullmatch(project_id):
        raise InvalidArgument("project", repr(project_id))
    return project_id


def format_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} GB"


@dataclass
class PruneResult:
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class SnapshotStore:
    """
    Snapshot directory manager
    """

    def __init__(self, directory: Path, ddev: Optional[DDEV] = None,
                 importer: Optional[DatabaseImporter] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 clock: Callable[[], datetime] = _utcnow,
                 export_timeout: Optional[float] = 600,
                 verbose: bool = False):
        """
        Args:
            directory: Snapshot directory
            ddev: DDEV collaborator used to export the database
            importer: Importer used by restore()
            cancel_token: Cancellation handle
            clock: Source of the current UTC time
            export_timeout: Seconds allowed for the export
            verbose: Enable detailed output
        """
        self.directory = Path(directory)
        self.ddev = ddev
        self.importer = importer
        self.cancel_token = cancel_token or CancellationToken()
        self.clock = clock
        self.export_timeout = export_timeout
        self.verbose = verbose
        self.warnings: List[str] = []

    # Metadata sidecar

    @property
    def metadata_path(self) -> Path:
        return self.directory / METADATA_FILE

    @contextmanager
    def _metadata_lock(self):
        ensure_dir_exists(self.directory)
        with open(self.directory / ".metadata.lock", "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read_metadata(self) -> List[Dict]:
        if not self.metadata_path.exists():
            return []
        try:
            with open(self.metadata_path, "r") as f:
                data = yaml.safe_load(f) or []
        except (OSError, yaml.YAMLError) as e:
            raise SnapshotIOError(f"Cannot read snapshot metadata: {e}", str(self.metadata_path)) from e
        if not isinstance(data, list):
            raise SnapshotIOError("Snapshot metadata is not a list", str(self.metadata_path))
        return [record for record in data if isinstance(record, dict) and record.get("file_name")]

    def _append_metadata(self, record: Dict):
        with self._metadata_lock():
            try:
                with open(self.metadata_path, "a") as f:
                    yaml.safe_dump([record], f, default_flow_style=False, sort_keys=False)
            except OSError as e:
                raise SnapshotIOError(f"Cannot write snapshot metadata: {e}", str(self.metadata_path)) from e

    def _remove_metadata(self, file_names: List[str]):
        with self._metadata_lock():
            records = [r for r in self._read_metadata() if r.get("file_name") not in set(file_names)]
            try:
                atomic_write_text(
                    self.metadata_path,
                    yaml.safe_dump(records, default_flow_style=False, sort_keys=False) if records else "",
                )
            except OSError as e:
                raise SnapshotIOError(f"Cannot write snapshot metadata: {e}", str(self.metadata_path)) from e

    def _to_snapshot(self, record: Dict) -> Snapshot:
        created = record.get("created_at")
        if isinstance(created, str):
            created = datetime.fromisoformat(created)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return Snapshot(
            file_name=record["file_name"],
            absolute_path=self.directory / record["file_name"],
            kind=record.get("kind", "manual"),
            created_at=created,
            size_bytes=int(record.get("size_bytes", 0)),
            project_id=record.get("project", ""),
            description=record.get("description"),
        )

    # Naming

    def _next_name(self, project_id: str, kind: str, now: datetime) -> str:
        stamp = now.strftime(SNAPSHOT_TIME_FORMAT)
        known = {r["file_name"] for r in self._read_metadata()}
        name = f"{project_id}-{stamp}-{kind}.sql.gz"
        counter = 0
        while name in known or (self.directory / name).exists():
            counter += 1
            name = f"{project_id}-{stamp}-{kind}-{counter}.sql.gz"
        return name

    # Operations

    def create(self, project_id: str, kind: str = "manual", description: Optional[str] = None) -> Snapshot:
        """
        Dumps the local database into a new compressed snapshot

        Args:
            project_id: Project the snapshot belongs to
            kind: auto or manual
            description: Free text stored in the metadata

        Returns:
            Snapshot: The created snapshot

        Raises:
            BusyError: If another operation holds the project lock
            SnapshotIOError: If the dump cannot be written
            Cancelled: If the cancellation token fires
        """
        validate_project_id(project_id)
        if kind not in SNAPSHOT_KINDS:
            raise InvalidArgument("snapshot kind", repr(kind))
        if self.ddev is None:
            raise SnapshotIOError("No database exporter configured")

        ensure_dir_exists(self.directory)
        with ProjectLock(self.directory, project_id, operation="snapshot"):
            now = self.clock()
            name = self._next_name(project_id, kind, now)
            path = self.directory / name
            print(f"📦 Creating {kind} snapshot {name}...")

            try:
                with open(path, "xb") as raw, gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
                    written = self.ddev.export_db(gz, cancel_token=self.cancel_token, timeout=self.export_timeout)
                if not written:
                    raise SnapshotIOError(f"Database export for {name} produced no data", str(path))
                size = path.stat().st_size
            except FileExistsError as e:
                raise SnapshotIOError(f"Snapshot {name} already exists", str(path)) from e
            except OSError as e:
                remove_quietly(path)
                raise SnapshotIOError(f"Cannot write snapshot {name}: {e}", str(path)) from e
            except BaseException:
                remove_quietly(path)
                raise

            record = {
                "file_name": name,
                "project": project_id,
                "kind": kind,
                "created_at": now.isoformat(),
                "size_bytes": size,
            }
            if description:
                record["description"] = description
            self._append_metadata(record)

        print(f"✅ Snapshot created: {name} ({format_size(size)})")
        return self._to_snapshot(record)

    def list(self, project_id: Optional[str] = None) -> List[Snapshot]:
        """
        Lists snapshots with metadata whose files exist, oldest first
        """
        snapshots = []
        for record in self._read_metadata():
            if project_id and record.get("project") != project_id:
                continue
            snapshot = self._to_snapshot(record)
            if snapshot.absolute_path.exists():
                snapshots.append(snapshot)
        return sorted(snapshots, key=lambda s: (s.created_at, s.file_name))

    def get(self, name: str) -> Optional[Snapshot]:
        for record in self._read_metadata():
            if record["file_name"] == name:
                return self._to_snapshot(record)
        return None

    def latest(self, project_id: str) -> Optional[Snapshot]:
        snapshots = self.list(project_id)
        return snapshots[-1] if snapshots else None

    def orphans(self, project_id: Optional[str] = None) -> List[str]:
        """
        Lists snapshot files that have no metadata record. They are never deleted.
        """
        if not self.directory.exists():
            return []
        known = {r["file_name"] for r in self._read_metadata()}
        found = []
        for path in sorted(self.directory.iterdir()):
            match = SNAPSHOT_NAME_RE.fullmatch(path.name)
            if not match or path.name in known:
                continue
            if project_id and match.group("project") != project_id:
                continue
            found.append(path.name)
        return found

    def resolve(self, path_or_name: str) -> Path:
        """
        Resolves a snapshot name or path to a file inside the snapshot directory

        Raises:
            InvalidArgument: If the result would be outside the directory
        """
        if not path_or_name:
            raise InvalidArgument("snapshot", "empty name")
        candidate = Path(path_or_name)
        if candidate.is_absolute():
            base = self.directory.resolve()
            resolved = candidate.resolve()
            if resolved.parent != base:
                raise InvalidArgument("snapshot", f"{path_or_name!r} is outside {self.directory}")
            return resolved
        if len(candidate.parts) != 1:
            raise InvalidArgument("snapshot", f"{path_or_name!r} is not a snapshot name")
        return safe_join(self.directory, path_or_name)

    def restore(self, path_or_name: str, suppress_debug: bool = True) -> ImportStats:
        """
        Imports a snapshot into the local database

        Raises:
            InvalidArgument: If the name escapes the snapshot directory
            SnapshotIOError: If the snapshot does not exist
            ImportFailed: If the import fails
        """
        path = self.resolve(path_or_name)
        if not path.is_file():
            raise SnapshotIOError(f"Snapshot not found: {path.name}", str(path))
        if self.importer is None:
            raise SnapshotIOError("No importer configured")

        print(f"🔄 Restoring snapshot {path.name}...")
        stats = self.importer.import_dump(ImportJob(source_file=path, suppress_debug=suppress_debug))
        print(f"✅ Snapshot restored: {path.name}")
        return stats

    def delete(self, name: str) -> bool:
        """
        Removes a snapshot file and its metadata record. Deleting a missing
        snapshot only records a warning.

        Returns:
            bool: True if something was removed
        """
        path = self.resolve(name)
        has_record = self.get(path.name) is not None
        removed_file = False
        try:
            removed_file = remove_quietly(path)
        except OSError as e:
            raise SnapshotIOError(f"Cannot delete snapshot {path.name}: {e}", str(path)) from e
        if has_record:
            self._remove_metadata([path.name])

        if not removed_file and not has_record:
            warning = f"Snapshot {path.name} does not exist"
            self.warnings.append(warning)
            print(f"⚠️ {warning}")
            return False
        print(f"🧹 Deleted snapshot {path.name}")
        return True

    def prune(self, retention: RetentionPolicy, project_id: str,
              now: Optional[datetime] = None, dry_run: bool = False) -> PruneResult:
        """
        Deletes the project's snapshots older than the retention policy allows

        Args:
            retention: Maximum ages per kind, in days
            project_id: Only this project's snapshots are considered
            now: Reference time (current time when omitted)
            dry_run: Report without deleting

        Returns:
            PruneResult: Deleted, kept and failed snapshot names
        """
        validate_project_id(project_id)
        now = now or self.clock()
        result = PruneResult()
        expired = []

        for snapshot in self.list(project_id):
            if snapshot.age_days(now) > retention.max_age(snapshot.kind):
                expired.append(snapshot)
            else:
                result.kept.append(snapshot.file_name)

        removed = []
        for snapshot in expired:
            if dry_run:
                print(f"ℹ️ Would delete {snapshot.file_name}")
                result.deleted.append(snapshot.file_name)
                continue
            try:
                remove_quietly(snapshot.absolute_path)
            except OSError as e:
                result.failed[snapshot.file_name] = str(e)
                self.warnings.append(f"Could not prune {snapshot.file_name}: {e}")
                continue
            removed.append(snapshot.file_name)
            result.deleted.append(snapshot.file_name)

        if removed:
            self._remove_metadata(removed)
            print(f"🧹 Pruned {len(removed)} snapshot(s)")

        for orphan in self.orphans(project_id):
            self.warnings.append(f"Snapshot file without metadata: {orphan}")
        return result
