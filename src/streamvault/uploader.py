"""Upload sweep: move finished recordings to remote storage with rclone.

State: IDLE → ACQUIRING → RUNNING → RELEASING → IDLE

Only one sweep runs per host, guarded by an flock'd lock file that also
records the holder's process token. Files still open for writing (a running
ffmpeg output, a snapshot being written) are left for the next sweep.
"""

import fcntl
import json
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import psutil

from .config import StreamVaultConfig, UploadConfig
from .errors import LockHeld, TransferFailed
from .process import ProcessToken

logger = logging.getLogger(__name__)


class SweepState(Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    RELEASING = "releasing"


@dataclass
class SweepReport:
    lock_acquired: bool = False
    moved: list = field(default_factory=list)
    skipped_open: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    def summary(self) -> str:
        if not self.lock_acquired:
            return 'upload skipped: another sweep is running'
        return (f'upload done: {len(self.moved)} moved, '
                f'{len(self.skipped_open)} still open, {len(self.failed)} failed')


class SweepLock:
    """Host-wide single-holder lock.

    The flock is the mutual exclusion; the token written into the file says
    who holds it. A live token counts as held even without the flock. A file
    left behind with a dead holder's token is stale and gets overwritten by
    the next acquirer.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh = None
        self.stale_holder: ProcessToken | None = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def holder(self) -> ProcessToken | None:
        try:
            text = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        if not text:
            return None
        try:
            return ProcessToken.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError):
            logger.warning('Ignoring unreadable lock file %s', self.path)
            return None

    def acquire(self) -> bool:
        """Take the lock. False if a live holder has it."""
        if self._fh is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, 'a+')
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.close()
            holder = self.holder()
            logger.info('Upload lock held by pid %s', holder.pid if holder else '?')
            return False

        previous = self.holder()
        self.stale_holder = None
        if previous is not None:
            if previous.is_alive():
                fcntl.flock(fh, fcntl.LOCK_UN)
                fh.close()
                logger.info('Upload lock held by pid %d', previous.pid)
                return False
            logger.info('Clearing stale upload lock (pid %d)', previous.pid)
            self.stale_holder = previous

        fh.seek(0)
        fh.truncate()
        fh.write(json.dumps(ProcessToken.current().to_dict()))
        fh.flush()
        self._fh = fh
        return True

    def release(self):
        if self._fh is None:
            return
        try:
            self._fh.seek(0)
            self._fh.truncate()
            self._fh.flush()
            fcntl.flock(self._fh, fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None

    def __enter__(self):
        if not self.acquire():
            holder = self.holder()
            raise LockHeld(holder.pid if holder else None)
        return self

    def __exit__(self, *exc):
        self.release()


def open_for_writing(paths) -> set[Path]:
    """Subset of paths some visible process has open for writing."""
    wanted = {Path(p).resolve() for p in paths}
    if not wanted:
        return set()
    busy = set()
    for proc in psutil.process_iter():
        try:
            files = proc.open_files()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        for f in files:
            if f.mode == 'r':
                continue
            p = Path(f.path)
            if p in wanted:
                busy.add(p)
    return busy


def find_media(root: Path, extensions) -> list[Path]:
    exts = {'.' + e.lower().lstrip('.') for e in extensions}
    if not root.exists():
        return []
    return sorted(
        p for p in root.rglob('*')
        if p.is_file() and p.suffix.lower() in exts
    )


class RcloneMover:
    """Moves one file per call with `rclone move`."""

    def __init__(self, config: UploadConfig):
        self.config = config

    def build_command(self, path: Path, remote_dir: str) -> list[str]:
        return [
            self.config.rclone, 'move', str(path), remote_dir,
            '--transfers', str(self.config.transfers),
            '--checkers', str(self.config.checkers),
            *self.config.extra_args,
        ]

    def move(self, path: Path, remote_dir: str):
        cmd = self.build_command(path, remote_dir)
        try:
            result = subprocess.run(
                cmd, stdin=subprocess.DEVNULL, capture_output=True, text=True,
                timeout=self.config.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransferFailed(path, 'timed out') from e
        except OSError as e:
            raise TransferFailed(path, str(e)) from e
        if result.returncode != 0:
            raise TransferFailed(path, result.stderr or '')


class UploadSweeper:
    def __init__(self, root: str | Path, remote: str, lock: SweepLock, mover,
                 video_extensions, image_extensions):
        self.root = Path(root)
        self.remote = remote.rstrip('/')
        self.lock = lock
        self.mover = mover
        self.video_extensions = list(video_extensions)
        self.image_extensions = list(image_extensions)
        self.state = SweepState.IDLE

    @classmethod
    def from_config(cls, config: StreamVaultConfig) -> 'UploadSweeper':
        upload = config.upload
        return cls(
            root=config.storage.recordings_dir,
            remote=upload.remote,
            lock=SweepLock(Path(config.storage.state_dir) / 'upload.lock'),
            mover=RcloneMover(upload),
            video_extensions=upload.video_extensions,
            image_extensions=upload.image_extensions,
        )

    def remote_dir(self, path: Path) -> str:
        parent = path.parent.relative_to(self.root)
        if parent == Path('.'):
            return self.remote
        return f"{self.remote}/{parent.as_posix()}"

    def run(self) -> SweepReport:
        report = SweepReport()
        self.state = SweepState.ACQUIRING
        if not self.lock.acquire():
            self.state = SweepState.IDLE
            return report

        report.lock_acquired = True
        self.state = SweepState.RUNNING
        try:
            self._pass(self.video_extensions, report)
            self._pass(self.image_extensions, report)
        finally:
            self.state = SweepState.RELEASING
            self.lock.release()
            self.state = SweepState.IDLE

        logger.info(report.summary())
        return report

    def _pass(self, extensions, report: SweepReport):
        files = find_media(self.root, extensions)
        busy = open_for_writing(files)
        for path in files:
            if path.resolve() in busy:
                logger.debug('Skipping %s: open for writing', path)
                report.skipped_open.append(path)
                continue
            try:
                self.mover.move(path, self.remote_dir(path))
            except TransferFailed as e:
                logger.error('Upload of %s failed: %s', path, e.stderr.strip())
                report.failed.append(path)
                continue
            logger.info('Uploaded %s', path)
            report.moved.append(path)
