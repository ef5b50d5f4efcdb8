"""
Data model shared by the pull pipeline components
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

ENVIRONMENTS = ("production", "staging", "development")
SNAPSHOT_KINDS = ("auto", "manual")

# <project>-<YYYYMMDD-HHMMSS>-<kind>[-<n>].sql.gz
SNAPSHOT_NAME_RE = re.compile(
    r"^(?P<project>.+)-(?P<stamp>\d{8}-\d{6})-(?P<kind>auto|manual)(?:-(?P<seq>\d+))?\.sql\.gz$"
)
SNAPSHOT_TIME_FORMAT = "%Y%m%d-%H%M%S"


@dataclass
class Credentials:
    """
    Provider credentials. Partial records are legal; consumers check the
    fields they need with require().
    """

    api_user: Optional[str] = None
    api_password: Optional[str] = None
    ssh_user: Optional[str] = None
    ssh_gateway_host: Optional[str] = None
    ssh_gateway_port: Optional[int] = None
    ssh_private_key_pem: Optional[str] = field(default=None, repr=False)

    def has_api(self) -> bool:
        return bool(self.api_user and self.api_password)

    def missing(self, *fields: str) -> List[str]:
        return [name for name in fields if not getattr(self, name)]

    def merged_with(self, other: "Credentials") -> "Credentials":
        """
        Fills empty fields from another record without overriding set ones
        """
        values = {}
        for name in self.__dataclass_fields__:
            values[name] = getattr(self, name) or getattr(other, name)
        return Credentials(**values)

    def __repr__(self) -> str:
        password = "********" if self.api_password else None
        key = "<pem>" if self.ssh_private_key_pem else None
        return (
            f"Credentials(api_user={self.api_user!r}, api_password={password!r}, "
            f"ssh_user={self.ssh_user!r}, ssh_gateway_host={self.ssh_gateway_host!r}, "
            f"ssh_gateway_port={self.ssh_gateway_port!r}, ssh_private_key_pem={key!r})"
        )


@dataclass(frozen=True)
class ProviderSite:
    install_name: str
    environment: str
    primary_domain: str
    additional_domains: List[str] = field(default_factory=list)
    php_version: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict) -> "ProviderSite":
        """
        Builds a site record from a provider API payload
        """
        name = data.get("name") or data.get("install_name") or ""
        environment = data.get("environment") or "production"
        primary = data.get("primary_domain") or data.get("cname") or f"{name}.wpengine.com"
        domains = data.get("additional_domains") or data.get("domains") or []
        if domains and isinstance(domains[0], dict):
            domains = [d.get("name", "") for d in domains if d.get("name")]
        return cls(
            install_name=name,
            environment=environment,
            primary_domain=primary,
            additional_domains=[d for d in domains if d != primary],
            php_version=data.get("php_version"),
        )


@dataclass(frozen=True)
class RemotePaths:
    """
    Paths on the provider side for one install
    """

    install_name: str
    site_root: str
    content_root: str
    uploads_subpath: str
    db_export_path: str

    @classmethod
    def for_install(cls, install_name: str) -> "RemotePaths":
        site_root = f"/sites/{install_name}"
        return cls(
            install_name=install_name,
            site_root=site_root,
            content_root=f"{site_root}/wp-content",
            uploads_subpath="wp-content/uploads",
            db_export_path=f"{site_root}/_wpeprivate/stax-db-export.sql",
        )


@dataclass(frozen=True)
class Snapshot:
    file_name: str
    absolute_path: Path
    kind: str
    created_at: datetime
    size_bytes: int
    project_id: str
    description: Optional[str] = None

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds() / 86400.0


@dataclass(frozen=True)
class RetentionPolicy:
    auto_days: int = 7
    manual_days: int = 30

    def max_age(self, kind: str) -> int:
        return self.auto_days if kind == "auto" else self.manual_days


@dataclass(frozen=True)
class ReplacementPair:
    """
    A from -> to substitution. site_url_constraint restricts the pair to a
    single site of a multisite network.
    """

    from_value: str
    to_value: str
    site_url_constraint: Optional[str] = None

    def __post_init__(self):
        if not self.from_value:
            raise ValueError("Replacement source cannot be empty")


@dataclass
class ImportJob:
    source_file: Path
    target_database: str = "db"
    suppress_debug: bool = False
    skip_post_hooks: bool = False


@dataclass
class TransferOptions:
    dry_run: bool = False
    delete_extraneous: bool = False
    bandwidth_limit_kibibytes_per_sec: int = 0
    include_globs: List[str] = field(default_factory=list)
    exclude_globs: List[str] = field(default_factory=list)
    preserve_attributes: bool = True
    follow_symlinks: bool = False
    verify_after: bool = False
    workers: int = 4
    sync_uploads: bool = True


@dataclass
class TransferStats:
    bytes: int = 0
    files: int = 0
    skipped: int = 0
    deleted: int = 0
    failed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add(self, other: "TransferStats") -> None:
        self.bytes += other.bytes
        self.files += other.files
        self.skipped += other.skipped
        self.deleted += other.deleted
        self.failed.extend(other.failed)
        self.warnings.extend(other.warnings)


@dataclass(frozen=True)
class VerifyReport:
    remote_files: int
    remote_bytes: int
    local_files: int
    local_bytes: int

    @property
    def matches(self) -> bool:
        return self.remote_files == self.local_files and self.remote_bytes == self.local_bytes


@dataclass
class ImportStats:
    tables: int = 0
    rows: Optional[int] = None
    duration: float = 0.0
    warnings: List[str] = field(default_factory=list)


@dataclass
class RewriteReport:
    """
    Outcome of a URL rewrite run. Counts are keyed by 'table.column'.
    """

    per_column: Dict[str, int] = field(default_factory=dict)
    rows_changed: int = 0
    tables_scanned: int = 0
    warnings: List[str] = field(default_factory=list)
    failed_tables: Dict[str, str] = field(default_factory=dict)

    def count(self, table: str, column: str, amount: int = 1) -> None:
        key = f"{table}.{column}"
        self.per_column[key] = self.per_column.get(key, 0) + amount

    def merge(self, other: "RewriteReport") -> None:
        for key, amount in other.per_column.items():
            self.per_column[key] = self.per_column.get(key, 0) + amount
        self.rows_changed += other.rows_changed
        self.tables_scanned += other.tables_scanned
        self.warnings.extend(other.warnings)
        self.failed_tables.update(other.failed_tables)

    @property
    def total(self) -> int:
        return sum(self.per_column.values())


@dataclass
class PullOptions:
    """
    Flags of the pull command
    """

    environment: Optional[str] = None
    snapshot: bool = True
    skip_replace: bool = False
    exclude_tables: List[str] = field(default_factory=list)
    skip_logs: bool = True
    skip_transients: bool = True
    skip_spam: bool = True
    sanitize: bool = False
    dry_run: bool = False
    bandwidth_limit: int = 0
    files: bool = True
    files_scope: str = "all"
    delete_extraneous: bool = False
    skip_hooks: bool = False
    from_url: Optional[str] = None
    to_url: Optional[str] = None
    verbose: bool = False


@dataclass
class StageResult:
    name: str
    status: str
    detail: str = ""


@dataclass
class PullResult:
    stages: List[StageResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    snapshot: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return 1
        return 2 if self.warnings else 0

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None
