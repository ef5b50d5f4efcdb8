"""
Tests for SFTP file synchronization against a local directory acting as the remote.
"""

import os

import pytest

from stax.errors import Cancelled
from stax.models import TransferOptions
from stax.sync.files import FileSync, TokenBucket, part_path
from stax.sync.filters import PathFilter, scope_rules
from stax.utils.cancellation import CancellationToken
from tests.conftest import FakeSession, LocalSFTP

CONTENT_ROOT = "/sites/example/wp-content"


@pytest.fixture
def remote_content(remote_root):
    root = remote_root / CONTENT_ROOT.lstrip("/")
    files = {
        "themes/site/style.css": b"body { color: red; }\n",
        "plugins/akismet/akismet.php": b"<?php // plugin\n",
        "plugins/akismet/.git/config": b"[core]\n",
        "uploads/2024/01/photo.jpg": b"\xff\xd8" + b"x" * 5000,
        "debug.log": b"PHP Notice\n",
    }
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        os.utime(path, (1700000000, 1700000000))
    return root


@pytest.fixture
def session(remote_root):
    return FakeSession(remote_root)


@pytest.fixture
def local_content(tmp_path):
    return tmp_path / "local" / "wp-content"


def sync(session, local_content, token=None, **options):
    syncer = FileSync(session, cancel_token=token, progress=False)
    return syncer.sync(CONTENT_ROOT, local_content, TransferOptions(**options))


def test_pulls_allowed_files(session, local_content, remote_content):
    stats = sync(session, local_content)

    assert stats.files == 3
    assert stats.bytes == sum((remote_content / rel).stat().st_size for rel in (
        "themes/site/style.css", "plugins/akismet/akismet.php", "uploads/2024/01/photo.jpg"))
    assert (local_content / "themes/site/style.css").read_bytes() == b"body { color: red; }\n"
    assert (local_content / "uploads/2024/01/photo.jpg").read_bytes() == (
        remote_content / "uploads/2024/01/photo.jpg").read_bytes()
    assert not (local_content / "debug.log").exists()
    assert not (local_content / "plugins/akismet/.git").exists()
    assert int((local_content / "themes/site/style.css").stat().st_mtime) == 1700000000


def test_unchanged_files_are_skipped(session, local_content, remote_content):
    sync(session, local_content)
    again = sync(session, local_content)
    assert again.files == 0
    assert again.skipped == 3


def test_partial_download_is_resumed(session, local_content, remote_content):
    target = local_content / "uploads/2024/01/photo.jpg"
    target.parent.mkdir(parents=True)
    data = (remote_content / "uploads/2024/01/photo.jpg").read_bytes()
    part_path(target).write_bytes(data[:1000])

    stats = sync(session, local_content)

    assert target.read_bytes() == data
    assert not part_path(target).exists()
    assert stats.bytes == sum(
        (remote_content / rel).stat().st_size for rel in ("themes/site/style.css", "plugins/akismet/akismet.php")
    ) + len(data) - 1000


def test_dry_run_writes_nothing(session, local_content, remote_content):
    stats = sync(session, local_content, dry_run=True)
    assert stats.files == 3
    assert not local_content.exists()


def test_delete_extraneous_is_scoped(session, local_content, remote_content):
    (local_content / "themes").mkdir(parents=True)
    (local_content / "themes/old.css").write_text("old")
    (local_content / "uploads").mkdir()
    (local_content / "uploads/local-only.jpg").write_text("mine")
    (local_content / "notes.log").write_text("excluded from transfer")

    includes, excludes = scope_rules("no-uploads")
    syncer = FileSync(session, progress=False)
    options = TransferOptions(delete_extraneous=True, sync_uploads=False, exclude_globs=excludes)
    stats = syncer.sync(CONTENT_ROOT, local_content, options, path_filter=PathFilter(includes, excludes))

    assert stats.deleted == 1
    assert not (local_content / "themes/old.css").exists()
    assert (local_content / "uploads/local-only.jpg").exists()
    assert (local_content / "notes.log").exists()
    assert not (local_content / "uploads/2024").exists()


def test_delete_is_off_by_default(session, local_content, remote_content):
    (local_content / "themes").mkdir(parents=True)
    (local_content / "themes/old.css").write_text("old")
    stats = sync(session, local_content)
    assert stats.deleted == 0
    assert (local_content / "themes/old.css").exists()


def test_remote_symlinks_are_skipped(session, local_content, remote_content):
    os.symlink(remote_content / "debug.log", remote_content / "themes/link.log.txt")
    stats = sync(session, local_content)
    assert "Skipped symbolic link themes/link.log.txt" in stats.warnings
    assert not (local_content / "themes/link.log.txt").exists()


class FailingSFTP(LocalSFTP):
    def open(self, path, mode="rb"):
        if path.endswith("akismet.php"):
            raise IOError("Permission denied")
        return super().open(path, mode)


class FailingSession(FakeSession):
    def open_sftp(self):
        client = FailingSFTP(self.remote_root)
        self.sftp_clients.append(client)
        return client


def test_single_file_failure_is_reported(remote_root, local_content, remote_content):
    session = FailingSession(remote_root)
    stats = sync(session, local_content)

    assert stats.failed == ["plugins/akismet/akismet.php"]
    assert any("Permission denied" in w for w in stats.warnings)
    assert stats.files == 2
    assert all(client.closed for client in session.sftp_clients)


def test_cancelled_sync(session, local_content, remote_content):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(Cancelled):
        sync(session, local_content, token=token)


def test_workers_get_their_own_channels(session, local_content, remote_content):
    sync(session, local_content, workers=2)
    # one channel for the listing plus one per worker
    assert len(session.sftp_clients) == 3


def test_verify_after_sync(session, local_content, remote_content):
    sync(session, local_content)
    report = FileSync(session, progress=False).verify(CONTENT_ROOT, local_content)
    assert report.matches
    assert report.remote_files == 3


def test_verify_detects_missing_file(session, local_content, remote_content):
    sync(session, local_content)
    (local_content / "themes/site/style.css").unlink()
    assert not FileSync(session, progress=False).verify(CONTENT_ROOT, local_content).matches


def test_token_bucket_refills_over_time():
    now = [0.0]
    bucket = TokenBucket(100, clock=lambda: now[0])
    bucket.consume(65536)
    now[0] = 10.0
    bucket.consume(1000)

    token = CancellationToken()
    token.cancel()
    bucket.cancel_token = token
    with pytest.raises(Cancelled):
        bucket.consume(1000)


def test_unlimited_bucket_never_waits():
    token = CancellationToken()
    token.cancel()
    TokenBucket(0, cancel_token=token).consume(10 ** 9)
