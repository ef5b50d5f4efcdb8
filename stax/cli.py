#!/usr/bin/env python3
"""
CLI for stax

Pulls WP Engine environments into local DDEV projects and manages the
database snapshots taken along the way.
"""

import functools
import sys

import click

from stax import __version__
from stax.commands.importer import DatabaseImporter
from stax.commands.pull import SyncCoordinator
from stax.commands.snapshot import SnapshotStore, format_size
from stax.config_yaml import get_yaml_config
from stax.errors import StaxError
from stax.models import ENVIRONMENTS, PullOptions
from stax.utils.cancellation import CancellationToken, cancel_on_interrupt
from stax.utils.credentials import CredentialResolver
from stax.utils.ddev import DDEV
from stax.utils.diagnostics import diagnose, print_report
from stax.utils.security import redact

verbose_option = click.option("--verbose", "-v", is_flag=True, help="Show detailed information during execution")


def handle_errors(func):
    """
    Prints pipeline errors the same way everywhere and exits with code 1
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StaxError as e:
            print(f"❌ {redact(str(e))}")
            sys.exit(1)
    return wrapper


def _split_tables(values):
    tables = []
    for value in values:
        tables.extend(name.strip() for name in value.split(",") if name.strip())
    return tables


def _snapshot_store(config, cancel_token: CancellationToken, verbose: bool) -> SnapshotStore:
    ddev = DDEV(
        config.project_root,
        wp_path=config.get("ddev", "base_path", default="/var/www/html"),
        memory_limit=config.get_wp_memory_limit(),
        verbose=verbose,
    )
    importer = DatabaseImporter(ddev, cancel_token, timeout=config.get("timeouts", "import", default=600),
                                verbose=verbose)
    return SnapshotStore(config.get_snapshot_dir(), ddev=ddev, importer=importer, cancel_token=cancel_token,
                         export_timeout=config.get("timeouts", "export", default=600), verbose=verbose)


# Main command group
@click.group()
@click.version_option(__version__)
def cli():
    """
    Pull WordPress sites from WP Engine into local DDEV environments.

    The pull command exports the remote database, imports it locally,
    synchronizes wp-content and rewrites URLs, taking a snapshot of the
    local database first so any pull can be undone.
    """
    pass


@cli.command("pull")
@click.option("--environment", "-e", type=click.Choice(ENVIRONMENTS), help="Remote environment to pull from")
@click.option("--snapshot", type=click.BOOL, default=True, show_default=True,
              help="Snapshot the local database before importing")
@click.option("--no-snapshot", is_flag=True, help="Shorthand for --snapshot=false")
@click.option("--skip-replace", is_flag=True, help="Do not rewrite URLs after the import")
@click.option("--exclude-tables", multiple=True, help="Tables to leave out (comma separated, repeatable)")
@click.option("--skip-logs/--no-skip-logs", default=True, show_default=True, help="Do not rewrite log tables")
@click.option("--skip-transients/--no-skip-transients", default=True, show_default=True,
              help="Do not rewrite transient options")
@click.option("--skip-spam/--no-skip-spam", default=True, show_default=True,
              help="Do not rewrite spam and trashed comments")
@click.option("--sanitize", is_flag=True, help="Replace user emails and passwords after the import")
@click.option("--dry-run", is_flag=True, help="Simulate operation without making changes")
@click.option("--bandwidth-limit", type=click.IntRange(min=0), default=0,
              help="File transfer limit in KiB/s (0 = unlimited)")
@click.option("--files/--no-files", default=True, help="Synchronize wp-content")
@click.option("--files-scope", type=click.Choice(["all", "themes", "plugins", "mu-plugins", "no-uploads"]),
              default="all",
              help="Part of wp-content to synchronize")
@click.option("--delete", "delete_extraneous", is_flag=True,
              help="Delete local files that do not exist remotely (uploads are kept unless synchronized)")
@click.option("--skip-hooks", is_flag=True, help="Do not flush caches after the import")
@click.option("--from", "from_url", help="Source URL for the rewrite (defaults to the remote site URL)")
@click.option("--to", "to_url", help="Target URL for the rewrite (defaults to the local site URL)")
@verbose_option
@handle_errors
def pull_command(environment, snapshot, no_snapshot, skip_replace, exclude_tables, skip_logs, skip_transients,
                 skip_spam, sanitize, dry_run, bandwidth_limit, files, files_scope, delete_extraneous,
                 skip_hooks, from_url, to_url, verbose):
    """
    Pulls the remote database and files into the local environment.

    Exit code is 0 on success, 1 on failure and 2 when the pull completed
    with warnings.
    """
    options = PullOptions(
        environment=environment,
        snapshot=snapshot and not no_snapshot,
        skip_replace=skip_replace,
        exclude_tables=_split_tables(exclude_tables),
        skip_logs=skip_logs,
        skip_transients=skip_transients,
        skip_spam=skip_spam,
        sanitize=sanitize,
        dry_run=dry_run,
        bandwidth_limit=bandwidth_limit,
        files=files,
        files_scope=files_scope,
        delete_extraneous=delete_extraneous,
        skip_hooks=skip_hooks,
        from_url=from_url,
        to_url=to_url,
        verbose=verbose,
    )
    token = CancellationToken()
    with cancel_on_interrupt(token):
        coordinator = SyncCoordinator(get_yaml_config(verbose=verbose), cancel_token=token, verbose=verbose)
        result = coordinator.pull(options)
    sys.exit(result.exit_code)


@cli.group("snapshot")
def snapshot_group():
    """
    Manages local database snapshots.
    """
    pass


@snapshot_group.command("create")
@click.option("--description", "-d", help="Note stored with the snapshot")
@verbose_option
@handle_errors
def snapshot_create(description, verbose):
    """
    Creates a manual snapshot of the local database.
    """
    config = get_yaml_config(verbose=verbose)
    token = CancellationToken()
    with cancel_on_interrupt(token):
        _snapshot_store(config, token, verbose).create(config.project_name, "manual", description)


@snapshot_group.command("list")
@click.option("--all", "all_projects", is_flag=True, help="Include snapshots of other projects")
@verbose_option
@handle_errors
def snapshot_list(all_projects, verbose):
    """
    Lists snapshots, oldest first.
    """
    config = get_yaml_config(verbose=verbose)
    store = _snapshot_store(config, CancellationToken(), verbose)
    snapshots = store.list(None if all_projects else config.project_name)
    if not snapshots:
        print("ℹ️ No snapshots found")
        return
    print(f"\n📦 Snapshots in {store.directory}:")
    for snapshot in snapshots:
        created = snapshot.created_at.strftime("%Y-%m-%d %H:%M")
        line = f"   - {snapshot.file_name}  {snapshot.kind:<6}  {created}  {format_size(snapshot.size_bytes)}"
        if snapshot.description:
            line += f"  {snapshot.description}"
        print(line)
    for orphan in store.orphans(None if all_projects else config.project_name):
        print(f"⚠️ {orphan} has no metadata and is ignored")


@snapshot_group.command("restore")
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@verbose_option
@handle_errors
def snapshot_restore(name, yes, verbose):
    """
    Restores a snapshot into the local database, replacing its contents.
    """
    config = get_yaml_config(verbose=verbose)
    if not yes and not click.confirm(f"Replace the local database with {name}?"):
        print("ℹ️ Restore cancelled")
        return
    token = CancellationToken()
    with cancel_on_interrupt(token):
        _snapshot_store(config, token, verbose).restore(name, suppress_debug=not verbose)


@snapshot_group.command("delete")
@click.argument("name")
@verbose_option
@handle_errors
def snapshot_delete(name, verbose):
    """
    Deletes a snapshot and its metadata.
    """
    config = get_yaml_config(verbose=verbose)
    _snapshot_store(config, CancellationToken(), verbose).delete(name)


@snapshot_group.command("prune")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@verbose_option
@handle_errors
def snapshot_prune(dry_run, verbose):
    """
    Deletes snapshots older than the configured retention.
    """
    config = get_yaml_config(verbose=verbose)
    store = _snapshot_store(config, CancellationToken(), verbose)
    result = store.prune(config.get_retention(), config.project_name, dry_run=dry_run)
    print(f"✅ {len(result.deleted)} deleted, {len(result.kept)} kept")
    for warning in store.warnings:
        print(f"⚠️ {warning}")
    if result.failed:
        sys.exit(2)


@cli.command("doctor")
@verbose_option
def doctor_command(verbose):
    """
    Checks where credentials and SSH keys are found, without changing anything.
    """
    config = get_yaml_config(verbose=verbose)
    install = config.get("wpengine", "install", default="") or ""
    results = diagnose(CredentialResolver(verbose=verbose), install=install,
                       key_name=config.get("ssh", "key_name"))
    if not print_report(results):
        sys.exit(1)


@cli.command("config")
@verbose_option
def config_command(verbose):
    """
    Shows the current configuration with secrets masked.
    """
    get_yaml_config(verbose=verbose).display()


def main():
    cli()


if __name__ == "__main__":
    main()
