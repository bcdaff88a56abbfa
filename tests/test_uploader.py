"""Tests for the upload sweep and its lock."""

import fcntl
import json
import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

from streamvault import uploader
from streamvault.config import UploadConfig
from streamvault.errors import LockHeld, TransferFailed
from streamvault.process import ProcessToken
from streamvault.uploader import (
    RcloneMover,
    SweepLock,
    SweepState,
    UploadSweeper,
    open_for_writing,
)


class FakeMover:
    """Moves files into a local 'remote' directory."""

    def __init__(self, remote_root: Path, fail: set[str] = frozenset()):
        self.remote_root = remote_root
        self.fail = set(fail)
        self.calls = []

    def move(self, path, remote_dir):
        self.calls.append((path, remote_dir))
        if path.name in self.fail:
            raise TransferFailed(path, 'permission denied')
        dest = self.remote_root / remote_dir.split(':', 1)[1]
        dest.mkdir(parents=True, exist_ok=True)
        shutil.move(str(path), str(dest / path.name))


@pytest.fixture
def root(tmp_path):
    root = tmp_path / 'recordings'
    root.mkdir()
    return root


@pytest.fixture
def remote(tmp_path):
    return tmp_path / 'remote'


@pytest.fixture
def lock_path(tmp_path):
    return tmp_path / 'state' / 'upload.lock'


def make_sweeper(root, lock_path, mover):
    return UploadSweeper(
        root, 'bucket:recordings', SweepLock(lock_path), mover,
        video_extensions=['mp4', 'mkv'], image_extensions=['jpg'],
    )


def write(path: Path, data=b'data') -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


class TestSweep:
    def test_skips_file_open_for_writing(self, root, remote, lock_path):
        a = write(root / 'cam1' / 'a.mp4')
        b = write(root / 'cam1' / 'b.mp4')
        sweeper = make_sweeper(root, lock_path, FakeMover(remote))

        with open(b, 'ab') as fh:
            fh.write(b'more')
            fh.flush()
            report = sweeper.run()

        assert report.lock_acquired
        assert report.moved == [a]
        assert report.skipped_open == [b]
        assert not a.exists()
        assert (remote / 'recordings' / 'cam1' / 'a.mp4').exists()
        assert b.exists()

        # closed now, picked up by the next sweep
        report = sweeper.run()
        assert report.moved == [b]
        assert not b.exists()
        assert (remote / 'recordings' / 'cam1' / 'b.mp4').exists()

    def test_videos_then_images(self, root, remote, lock_path):
        write(root / 'snapshots' / 'cam1' / 'x.jpg')
        write(root / 'cam1' / 'a.mkv')
        write(root / 'cam1' / 'a.log')
        mover = FakeMover(remote)

        report = make_sweeper(root, lock_path, mover).run()

        assert [p.name for p, _ in mover.calls] == ['a.mkv', 'x.jpg']
        assert len(report.moved) == 2
        assert (root / 'cam1' / 'a.log').exists()

    def test_failed_transfer_does_not_stop_others(self, root, remote, lock_path):
        a = write(root / 'a.mp4')
        b = write(root / 'b.mp4')
        c = write(root / 'c.mp4')
        sweeper = make_sweeper(root, lock_path, FakeMover(remote, fail={'b.mp4'}))

        report = sweeper.run()

        assert report.moved == [a, c]
        assert report.failed == [b]
        assert b.exists()
        assert not lock_path.read_text()

    def test_live_holder_means_no_op(self, root, remote, lock_path):
        write(root / 'a.mp4')
        mover = FakeMover(remote)
        lock_path.parent.mkdir(parents=True)
        with open(lock_path, 'a+') as holder:
            fcntl.flock(holder, fcntl.LOCK_EX | fcntl.LOCK_NB)
            holder.write(json.dumps(ProcessToken.current().to_dict()))
            holder.flush()

            sweeper = make_sweeper(root, lock_path, mover)
            report = sweeper.run()

        assert not report.lock_acquired
        assert mover.calls == []
        assert (root / 'a.mp4').exists()
        assert sweeper.state == SweepState.IDLE

    def test_live_token_without_flock_means_no_op(self, root, remote, lock_path):
        """A holder whose flock is gone but whose process runs still owns the sweep."""
        write(root / 'a.mp4')
        mover = FakeMover(remote)
        token = json.dumps(ProcessToken.current().to_dict())
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text(token)

        sweeper = make_sweeper(root, lock_path, mover)
        report = sweeper.run()

        assert not report.lock_acquired
        assert mover.calls == []
        assert (root / 'a.mp4').exists()
        assert lock_path.read_text() == token
        assert not sweeper.lock.held

    def test_stale_lock_is_cleared(self, root, remote, lock_path):
        proc = subprocess.Popen([sys.executable, '-c', 'pass'])
        dead = ProcessToken.of(proc.pid)
        proc.wait()
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text(json.dumps(dead.to_dict()))
        a = write(root / 'a.mp4')
        sweeper = make_sweeper(root, lock_path, FakeMover(remote))

        report = sweeper.run()

        assert report.lock_acquired
        assert sweeper.lock.stale_holder == dead
        assert report.moved == [a]
        assert lock_path.read_text() == ''

    def test_lock_released_on_unexpected_error(self, root, lock_path):
        write(root / 'a.mp4')

        class Broken:
            def move(self, path, remote_dir):
                raise RuntimeError('boom')

        sweeper = make_sweeper(root, lock_path, Broken())
        with pytest.raises(RuntimeError):
            sweeper.run()

        assert not sweeper.lock.held
        assert sweeper.state == SweepState.IDLE
        assert SweepLock(lock_path).acquire()

    def test_empty_tree(self, tmp_path, remote, lock_path):
        sweeper = make_sweeper(tmp_path / 'missing', lock_path, FakeMover(remote))
        report = sweeper.run()
        assert report.lock_acquired
        assert report.moved == []

    def test_remote_dir(self, root, lock_path, remote):
        sweeper = make_sweeper(root, lock_path, FakeMover(remote))
        assert sweeper.remote_dir(root / 'a.mp4') == 'bucket:recordings'
        assert sweeper.remote_dir(root / 'cam1' / 'a.mp4') == 'bucket:recordings/cam1'


class TestSweepLock:
    def test_single_holder(self, lock_path):
        first = SweepLock(lock_path)
        second = SweepLock(lock_path)
        assert first.acquire()
        try:
            assert not second.acquire()
            assert second.holder().pid == os.getpid()
        finally:
            first.release()
        assert second.acquire()
        second.release()

    def test_context_manager_raises_when_held(self, lock_path):
        with SweepLock(lock_path):
            with pytest.raises(LockHeld):
                with SweepLock(lock_path):
                    pass

    def test_garbage_lock_file(self, lock_path):
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text('not json')
        lock = SweepLock(lock_path)
        assert lock.acquire()
        lock.release()


def test_open_for_writing_ignores_readers(tmp_path):
    a = write(tmp_path / 'a.mp4')
    b = write(tmp_path / 'b.mp4')
    with open(a, 'rb'), open(b, 'wb'):
        assert open_for_writing([a, b]) == {b.resolve()}
    assert open_for_writing([a, b]) == set()


class TestRcloneMover:
    def test_command(self):
        mover = RcloneMover(UploadConfig(transfers=2, checkers=3, extra_args=['-q']))
        cmd = mover.build_command(Path('/r/a.mp4'), 'bucket:rec/cam1')
        assert cmd == ['rclone', 'move', '/r/a.mp4', 'bucket:rec/cam1',
                       '--transfers', '2', '--checkers', '3', '-q']

    def test_non_zero_exit_raises(self, monkeypatch):
        def run(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 1, stdout='', stderr='AccessDenied')

        monkeypatch.setattr(uploader.subprocess, 'run', run)
        with pytest.raises(TransferFailed) as exc:
            RcloneMover(UploadConfig()).move(Path('a.mp4'), 'bucket:rec')
        assert exc.value.stderr == 'AccessDenied'

    def test_success(self, monkeypatch):
        monkeypatch.setattr(uploader.subprocess, 'run',
                            lambda cmd, **kw: subprocess.CompletedProcess(cmd, 0, '', ''))
        RcloneMover(UploadConfig()).move(Path('a.mp4'), 'bucket:rec')

    def test_missing_binary(self, tmp_path):
        mover = RcloneMover(UploadConfig(rclone=str(tmp_path / 'no-rclone')))
        with pytest.raises(TransferFailed):
            mover.move(tmp_path / 'a.mp4', 'bucket:rec')
