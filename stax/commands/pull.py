"""
Pull pipeline: brings a WP Engine environment into the local DDEV project

Stages run in a fixed order. A failing stage stops the pipeline, but the
teardown stage always runs and the pre-pull snapshot is always kept.
"""

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from sqlalchemy.engine import Engine

from stax.commands.importer import DatabaseImporter
from stax.commands.sanitize import sanitize_users
from stax.commands.search_replace import SkipOptions, URLRewriter, plan_pairs
from stax.commands.snapshot import SnapshotStore
from stax.config_yaml import YAMLConfig, get_yaml_config
from stax.errors import (
    ExportEmpty,
    InternalError,
    InvalidArgument,
    LocalEnvironmentNotReady,
    StaxError,
    TransportUnavailable,
)
from stax.models import (
    Credentials,
    ImportJob,
    ProviderSite,
    PullOptions,
    PullResult,
    RemotePaths,
    StageResult,
    TransferOptions,
)
from stax.sync.files import FileSync
from stax.sync.filters import PathFilter, load_ignore_file, scope_rules
from stax.utils.api import WPEngineAPI
from stax.utils.cancellation import CancellationToken
from stax.utils.credentials import CredentialCache, CredentialResolver
from stax.utils.database import create_local_engine
from stax.utils.ddev import DDEV
from stax.utils.filesystem import ProjectLock, remove_quietly
from stax.utils.known_hosts import KnownHostsStore
from stax.utils.security import redact, validate_arg, validate_table_name
from stax.utils.ssh import SSHSession

STAGES = (
    "resolve_credentials",
    "ensure_local_env_ready",
    "pre_pull_snapshot",
    "open_transport",
    "export_remote_db",
    "import_db",
    "file_sync",
    "rewrite_urls",
    "post_import_hooks",
    "teardown",
)

FALLBACK_HOSTS = {
    "production": "{install}.wpengine.com",
    "staging": "{install}.wpengineurl.com",
    "development": "{install}-dev.wpengineurl.com",
}


def _as_url(domain: str) -> str:
    domain = domain.strip().rstrip("/")
    return domain if "://" in domain else f"https://{domain}"


def derive_remote_url(config: YAMLConfig, environment: str, install: str,
                      site: Optional[ProviderSite] = None) -> str:
    """
    Determines the public URL of the remote environment

    Args:
        config: Project configuration
        environment: production, staging or development
        install: Provider install name
        site: Install details from the provider API, if available

    Returns:
        str: URL without trailing slash
    """
    configured = config.get("urls", "remote")
    if configured:
        return _as_url(configured)
    domain = config.get("wpengine", "domains", environment, "primary")
    if domain:
        return _as_url(domain)
    if site is not None and site.primary_domain:
        return _as_url(site.primary_domain)
    return _as_url(FALLBACK_HOSTS.get(environment, FALLBACK_HOSTS["production"]).format(install=install))


def derive_local_url(config: YAMLConfig, ddev: Optional[DDEV] = None) -> str:
    """
    Determines the URL of the local DDEV site
    """
    configured = config.get("urls", "local")
    if configured:
        return _as_url(configured)
    if ddev is not None:
        primary = ddev.primary_url()
        if primary:
            return _as_url(primary)
    return f"https://{config.project_name}.ddev.site"


class WarningCollector:
    """
    Accumulates non-fatal problems reported by the stages
    """

    def __init__(self):
        self._items: List[str] = []

    def add(self, message: str, stage: Optional[str] = None):
        text = f"[{stage}] {message}" if stage else message
        if text not in self._items:
            self._items.append(text)

    def extend(self, messages, stage: Optional[str] = None):
        for message in messages:
            self.add(message, stage)

    @property
    def items(self) -> List[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)


@dataclass
class PullContext:
    """
    State shared by the stages of one pull
    """

    options: PullOptions
    project: str
    install: str
    environment: str
    paths: RemotePaths
    credentials: Optional[Credentials] = None
    site: Optional[ProviderSite] = None
    session: Optional[SSHSession] = None
    engine: Optional[Engine] = None
    temp_dir: Optional[Path] = None
    dump_path: Optional[Path] = None
    remote_dump: Optional[str] = None
    local_ready: bool = False
    imported: bool = False
    lock: Optional[ProjectLock] = None


class SyncCoordinator:
    """
    Runs the pull stages against the configured project
    """

    def __init__(self, config: Optional[YAMLConfig] = None,
                 resolver: Optional[CredentialResolver] = None,
                 ddev: Optional[DDEV] = None,
                 snapshot_store: Optional[SnapshotStore] = None,
                 importer: Optional[DatabaseImporter] = None,
                 session_factory: Callable[..., SSHSession] = SSHSession,
                 api_factory: Callable[..., WPEngineAPI] = WPEngineAPI,
                 engine_factory: Callable[[DDEV], Engine] = create_local_engine,
                 file_sync_factory: Callable[..., FileSync] = FileSync,
                 known_hosts: Optional[KnownHostsStore] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 credential_cache: Optional[CredentialCache] = None,
                 verbose: bool = False):
        self.config = config or get_yaml_config(verbose)
        self.verbose = verbose
        self.cancel_token = cancel_token or CancellationToken()
        self.resolver = resolver or CredentialResolver(verbose=verbose)
        self.credential_cache = credential_cache or CredentialCache()
        self.ddev = ddev or DDEV(
            self.config.project_root,
            wp_path=self.config.get("ddev", "base_path", default="/var/www/html"),
            memory_limit=self.config.get_wp_memory_limit(),
            verbose=verbose,
        )
        self.importer = importer or DatabaseImporter(
            self.ddev, self.cancel_token,
            timeout=self.config.get("timeouts", "import", default=600),
            verbose=verbose,
        )
        self.snapshot_store = snapshot_store or SnapshotStore(
            self.config.get_snapshot_dir(), ddev=self.ddev, importer=self.importer,
            cancel_token=self.cancel_token,
            export_timeout=self.config.get("timeouts", "export", default=600),
            verbose=verbose,
        )
        self.session_factory = session_factory
        self.api_factory = api_factory
        self.engine_factory = engine_factory
        self.file_sync_factory = file_sync_factory
        self.known_hosts = known_hosts
        self.warnings = WarningCollector()

    def pull(self, options: PullOptions) -> PullResult:
        """
        Runs the pull pipeline

        Args:
            options: Command flags

        Returns:
            PullResult: Stage outcomes, warnings and the terminal error if any
        """
        self.warnings = WarningCollector()
        result = PullResult()

        try:
            environment = self.config.get_environment(options.environment)
            install = self.config.get_install(environment)
        except ValueError as e:
            raise InvalidArgument("configuration", str(e)) from e
        validate_arg(install, "install")
        ctx = PullContext(
            options=options,
            project=self.config.project_name,
            install=install,
            environment=environment,
            paths=RemotePaths.for_install(install),
        )

        mode = " (dry run)" if options.dry_run else ""
        print(f"🔄 Pulling {install} ({environment}) into {ctx.project}{mode}")

        plan = [
            ("resolve_credentials", self._resolve_credentials, None),
            ("ensure_local_env_ready", self._ensure_local_env_ready, None),
            ("pre_pull_snapshot", self._pre_pull_snapshot,
             None if options.snapshot else "disabled with --no-snapshot"),
            ("open_transport", self._open_transport, None),
            ("export_remote_db", self._export_remote_db, None),
            ("import_db", self._import_db, None),
            ("file_sync", self._file_sync, None if options.files else "disabled with --no-files"),
            ("rewrite_urls", self._rewrite_urls, "disabled with --skip-replace" if options.skip_replace else None),
            ("post_import_hooks", self._post_import_hooks,
             "disabled with --skip-hooks" if options.skip_hooks else None),
        ]

        current = "resolve_credentials"
        try:
            ctx.lock = ProjectLock(self.config.get_snapshot_dir(), ctx.project, operation="pull")
            ctx.lock.acquire()
            for index, (name, stage, skip_reason) in enumerate(plan, start=1):
                current = name
                self.cancel_token.raise_if_cancelled(name)
                if skip_reason:
                    print(f"ℹ️ [{index}/{len(STAGES)}] Skipping {name}: {skip_reason}")
                    result.stages.append(StageResult(name, "skipped", skip_reason))
                    continue
                print(f"🔄 [{index}/{len(STAGES)}] {name}")
                detail = stage(ctx, result) or ""
                result.stages.append(StageResult(name, "ok", detail))
        except StaxError as e:
            result.error = e
            result.stages.append(StageResult(current, "failed", str(e)))
        except Exception as e:
            result.error = InternalError(current, e)
            result.stages.append(StageResult(current, "failed", str(e)))
        finally:
            self._teardown(ctx, result)

        result.warnings = self.warnings.items
        self._report(result)
        return result

    # Stages

    def _resolve_credentials(self, ctx: PullContext, result: PullResult) -> str:
        key_name = self.config.get("ssh", "key_name")
        resolved = self.resolver.resolve_all(ctx.install, key_name=key_name, cache=self.credential_cache)
        ctx.credentials = resolved.credentials
        self.warnings.extend(resolved.warnings, "resolve_credentials")
        for name in resolved.shadowed:
            print(f"ℹ️ Credentials also available from {name} (lower precedence)")

        if ctx.credentials.has_api():
            api = self.api_factory(
                ctx.credentials.api_user,
                ctx.credentials.api_password,
                base_url=self.config.get("wpengine", "api_base_url"),
                cancel_token=self.cancel_token,
                verbose=self.verbose,
            )
            try:
                ctx.site = api.get_install(ctx.install)
            except TransportUnavailable as e:
                self.warnings.add(f"Provider API unavailable, using configured domains: {e}", "resolve_credentials")
            finally:
                api.close()
        return f"source: {resolved.source}"

    def _ensure_local_env_ready(self, ctx: PullContext, result: PullResult) -> str:
        ctx.local_ready = self.ddev.is_running()
        if ctx.local_ready:
            return "running"
        if ctx.options.dry_run:
            self.warnings.add("DDEV project is not running", "ensure_local_env_ready")
            return "not running"
        raise LocalEnvironmentNotReady(str(self.ddev.project_dir))

    def _pre_pull_snapshot(self, ctx: PullContext, result: PullResult) -> str:
        if ctx.options.dry_run:
            print(f"ℹ️ Would create an automatic snapshot of {ctx.project}")
            return "dry run"
        if not ctx.local_ready:
            raise LocalEnvironmentNotReady(str(self.ddev.project_dir))

        snapshot = self.snapshot_store.create(
            ctx.project, kind="auto",
            description=f"Before pull from {ctx.install} ({ctx.environment})",
        )
        result.snapshot = snapshot.file_name

        if self.config.get("snapshots", "auto_prune", default=True):
            try:
                self.snapshot_store.prune(self.config.get_retention(), ctx.project)
            except StaxError as e:
                self.warnings.add(f"Automatic prune failed: {e}", "pre_pull_snapshot")
        self.warnings.extend(self.snapshot_store.warnings, "pre_pull_snapshot")
        self.snapshot_store.warnings.clear()
        return snapshot.file_name

    def _open_transport(self, ctx: PullContext, result: PullResult) -> str:
        credentials = ctx.credentials
        ctx.session = self.session_factory(
            host=credentials.ssh_gateway_host,
            username=credentials.ssh_user,
            private_key_pem=credentials.ssh_private_key_pem,
            port=credentials.ssh_gateway_port or 22,
            known_hosts=self.known_hosts,
            cancel_token=self.cancel_token,
            verbose=self.verbose,
        )
        ctx.session.connect()
        detail = f"{credentials.ssh_user}@{credentials.ssh_gateway_host}"
        if ctx.session.messages:
            detail += "; " + "; ".join(ctx.session.messages)
        return detail

    def _export_remote_db(self, ctx: PullContext, result: PullResult) -> str:
        site_root = ctx.paths.site_root
        export_path = ctx.paths.db_export_path
        timeout = self.config.get("timeouts", "export", default=600)

        argv = ["wp", "db", "export", export_path, f"--path={site_root}",
                "--single-transaction", "--add-drop-table"]
        if ctx.options.exclude_tables:
            db_name = ctx.session.run(["wp", "config", "get", "DB_NAME", f"--path={site_root}"]).strip()
            validate_arg(db_name, "database name")
            for table in ctx.options.exclude_tables:
                argv.append(f"--ignore-table={db_name}.{validate_table_name(table)}")

        if ctx.options.dry_run:
            print(f"ℹ️ Would run: {' '.join(argv)}")
            return "dry run"

        print(f"🔄 Exporting remote database of {ctx.install}...")
        ctx.remote_dump = export_path
        ctx.session.run(argv, timeout=timeout)

        ctx.temp_dir = Path(tempfile.mkdtemp(prefix="stax-pull-"))
        ctx.dump_path = ctx.temp_dir / f"{ctx.install}-{ctx.environment}.sql"
        size = ctx.session.download(export_path, ctx.dump_path, progress=not self.verbose, timeout=timeout)
        if size == 0 or not ctx.dump_path.exists() or ctx.dump_path.stat().st_size == 0:
            raise ExportEmpty(str(ctx.dump_path), "downloaded file is empty")

        self._remove_remote_dump(ctx)
        print(f"✅ Remote database downloaded ({size} bytes)")
        return f"{size} bytes"

    def _import_db(self, ctx: PullContext, result: PullResult) -> str:
        if ctx.options.dry_run:
            print(f"ℹ️ Would import the remote database into {ctx.project}")
            if ctx.options.sanitize:
                print("ℹ️ Would sanitize user data")
            return "dry run"
        if not ctx.local_ready:
            raise LocalEnvironmentNotReady(str(self.ddev.project_dir))

        job = ImportJob(ctx.dump_path, suppress_debug=True, skip_post_hooks=True)
        stats = self.importer.import_dump(job)
        ctx.imported = True
        self.warnings.extend(stats.warnings, "import_db")

        if ctx.options.sanitize:
            sanitize_users(self._engine(ctx), self.config.table_prefix)
        return f"{stats.tables} tables in {stats.duration:.1f}s"

    def _file_sync(self, ctx: PullContext, result: PullResult) -> str:
        scope_includes, scope_excludes = scope_rules(ctx.options.files_scope)
        includes = scope_includes + list(self.config.get("transfer", "include", default=[]) or [])
        excludes = (scope_excludes + list(self.config.get("transfer", "exclude", default=[]) or [])
                    + load_ignore_file(self.config.project_root))
        path_filter = PathFilter(includes, excludes)

        bandwidth = ctx.options.bandwidth_limit or self.config.get("transfer", "bandwidth_limit", default=0)
        transfer_options = TransferOptions(
            dry_run=ctx.options.dry_run,
            delete_extraneous=ctx.options.delete_extraneous,
            bandwidth_limit_kibibytes_per_sec=int(bandwidth or 0),
            include_globs=includes,
            exclude_globs=excludes,
            verify_after=bool(self.config.get("transfer", "verify", default=False)),
            workers=int(self.config.get("transfer", "workers", default=4)),
            sync_uploads=ctx.options.files_scope != "no-uploads",
        )

        docroot = self.config.get("ddev", "docroot", default="") or ""
        local_content = self.config.project_root / docroot / "wp-content"
        syncer = self.file_sync_factory(ctx.session, cancel_token=self.cancel_token,
                                        progress=not self.verbose, verbose=self.verbose)
        stats = syncer.sync(
            ctx.paths.content_root, local_content, transfer_options,
            path_filter=path_filter,
            timeout=self.config.get("timeouts", "file_sync", default=1800),
        )
        self.warnings.extend(stats.warnings, "file_sync")
        for failed in stats.failed:
            self.warnings.add(f"Could not transfer {failed}", "file_sync")

        if transfer_options.verify_after and not transfer_options.dry_run:
            report = syncer.verify(ctx.paths.content_root, local_content, path_filter)
            if not report.matches:
                self.warnings.add(
                    f"Verification mismatch: remote {report.remote_files} files/{report.remote_bytes} bytes, "
                    f"local {report.local_files} files/{report.local_bytes} bytes",
                    "file_sync",
                )
        return f"{stats.files} transferred, {stats.skipped} up to date, {stats.deleted} deleted"

    def _rewrite_urls(self, ctx: PullContext, result: PullResult) -> str:
        options = ctx.options
        user_pair = bool(options.from_url and options.to_url)
        remote_url = options.from_url or derive_remote_url(self.config, ctx.environment, ctx.install, ctx.site)
        local_url = options.to_url or derive_local_url(self.config, self.ddev if ctx.local_ready else None)

        if options.dry_run:
            print(f"ℹ️ Would replace URLs: {remote_url} -> {local_url}")
            for pair in plan_pairs(remote_url, local_url):
                print(f"   - {pair.from_value} -> {pair.to_value}")
            return "dry run"
        if not ctx.imported and not user_pair:
            raise InvalidArgument("rewrite_urls", "no database was imported in this run; pass --from and --to")

        rewriter = URLRewriter(
            self._engine(ctx),
            table_prefix=self.config.table_prefix,
            batch_size=int(self.config.get("replace", "batch_size", default=500)),
            cancel_token=self.cancel_token,
            skip_columns=self.config.get("replace", "skip_columns", default=[]) or [],
            skip_tables=self.config.get("replace", "skip_tables", default=[]) or [],
            verbose=self.verbose,
        )
        skip = SkipOptions(
            logs=options.skip_logs,
            transients=options.skip_transients,
            spam=options.skip_spam,
            exclude_tables=options.exclude_tables,
        )
        report = rewriter.run(remote_url, local_url, self.config.get_network_sites(), skip=skip)
        self.warnings.extend(report.warnings, "rewrite_urls")
        return f"{report.total} values in {report.rows_changed} rows"

    def _post_import_hooks(self, ctx: PullContext, result: PullResult) -> str:
        warnings = self.importer.run_post_hooks(dry_run=ctx.options.dry_run)
        self.warnings.extend(warnings, "post_import_hooks")
        return "dry run" if ctx.options.dry_run else f"{len(warnings)} failed"

    # Teardown

    def _engine(self, ctx: PullContext) -> Engine:
        if ctx.engine is None:
            ctx.engine = self.engine_factory(self.ddev)
        return ctx.engine

    def _remove_remote_dump(self, ctx: PullContext):
        if not ctx.remote_dump or ctx.session is None:
            return
        try:
            ctx.session.remove(ctx.remote_dump)
            ctx.remote_dump = None
        except StaxError as e:
            self.warnings.add(f"Could not remove remote export {ctx.remote_dump}: {e}", "teardown")

    def _teardown(self, ctx: PullContext, result: PullResult):
        print(f"🧹 [{len(STAGES)}/{len(STAGES)}] teardown")
        self._remove_remote_dump(ctx)
        if ctx.temp_dir is not None:
            shutil.rmtree(ctx.temp_dir, ignore_errors=True)
        elif ctx.dump_path is not None:
            remove_quietly(ctx.dump_path)
        if ctx.session is not None:
            ctx.session.close(quiet=True)
        if ctx.engine is not None:
            ctx.engine.dispose()
        if ctx.lock is not None:
            ctx.lock.release()
        result.stages.append(StageResult("teardown", "ok"))

    def _report(self, result: PullResult):
        if result.warnings:
            print(f"\n⚠️ {len(result.warnings)} warning(s):")
            for warning in result.warnings:
                print(f"   - {redact(warning)}")
        if result.error is not None:
            print(f"\n❌ Pull failed: {redact(str(result.error))}")
            if result.snapshot:
                print(f"ℹ️ The pre-pull snapshot {result.snapshot} is preserved; "
                      f"restore it with 'stax snapshot restore {result.snapshot}'")
        elif result.warnings:
            print("\n✅ Pull completed with warnings")
        else:
            print("\n✅ Pull completed")
