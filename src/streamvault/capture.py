"""FFmpeg capture: detached stream recording and single-frame snapshots."""

import logging
import subprocess
from datetime import datetime
from pathlib import Path

import psutil

from .config import CaptureConfig
from .errors import CaptureFailed, LaunchFailed
from .process import ProcessToken

logger = logging.getLogger(__name__)

# Slack on top of ffmpeg's own connect timeout for probing + encoding one frame
SNAPSHOT_GRACE_SECONDS = 15.0


def default_trace_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def build_record_command(config: CaptureConfig, url: str, output_path: Path) -> list[str]:
    return [
        config.ffmpeg,
        '-hide_banner', '-loglevel', 'error',
        '-rtsp_transport', config.rtsp_transport,
        '-i', url,
        *config.record_args,
        '-y', str(output_path),
    ]


def build_snapshot_command(config: CaptureConfig, url: str, output_path: Path,
                           timeout_ms: int) -> list[str]:
    return [
        config.ffmpeg,
        '-hide_banner', '-loglevel', 'error',
        '-rtsp_transport', config.rtsp_transport,
        # socket timeout, in microseconds
        '-timeout', str(int(timeout_ms) * 1000),
        '-i', url,
        '-frames:v', '1', '-q:v', '2',
        '-y', str(output_path),
    ]


class CaptureProcess:
    """An ffmpeg recording we launched.

    While owned, the Popen handle is kept so the child can be reaped once it
    exits. ``detach()`` drops the handle; the process keeps running in its own
    session and is only reachable through its token.
    """

    def __init__(self, popen: subprocess.Popen, output_path: Path):
        self._popen: subprocess.Popen | None = popen
        self.output_path = output_path
        self.token = ProcessToken.of(popen.pid)

    @property
    def pid(self) -> int:
        return self.token.pid

    @property
    def owned(self) -> bool:
        return self._popen is not None

    def poll(self) -> int | None:
        """Reap the child if it has exited. None while running or detached."""
        if self._popen is None:
            return None
        return self._popen.poll()

    def detach(self):
        self._popen = None


class CaptureLauncher:
    """Builds output paths and starts ffmpeg processes."""

    def __init__(self, config: CaptureConfig, recordings_dir: str | Path,
                 snapshots_dir: str | Path, log_dir: str | Path | None = None):
        self.config = config
        self.recordings_dir = Path(recordings_dir)
        self.snapshots_dir = Path(snapshots_dir)
        # ffmpeg stderr goes here, outside the swept recordings tree; None discards it
        self.log_dir = Path(log_dir) if log_dir is not None else None

    def recording_path(self, name: str, trace_id: str) -> Path:
        return self.recordings_dir / name / f"{name}_{trace_id}.mp4"

    def snapshot_path(self, name: str, trace_id: str) -> Path:
        return self.snapshots_dir / name / f"{name}_{trace_id}.jpg"

    def launch(self, name: str, url: str, trace_id: str) -> CaptureProcess:
        output_path = self.recording_path(name, trace_id)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_record_command(self.config, url, output_path)
        return self._spawn(cmd, output_path)

    def log_path(self, output_path: Path) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / output_path.parent.name / (output_path.stem + '.log')

    def _spawn(self, cmd: list[str], output_path: Path) -> CaptureProcess:
        log_path = self.log_path(output_path)
        try:
            if log_path is None:
                popen = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            else:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(log_path, 'ab') as log_file:
                    popen = subprocess.Popen(
                        cmd,
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.DEVNULL,
                        stderr=log_file,
                        start_new_session=True,
                    )
        except OSError as e:
            raise LaunchFailed(f"could not start {cmd[0]}: {e}") from e

        logger.info('Launched %s (pid %d) -> %s', cmd[0], popen.pid, output_path)
        try:
            return CaptureProcess(popen, output_path)
        except psutil.NoSuchProcess as e:
            # exited before we could read its start time
            popen.poll()
            raise LaunchFailed(f"{cmd[0]} exited immediately: {e}") from e

    def snapshot(self, url: str, name: str, trace_id: str | None = None,
                 timeout_ms: int | None = None) -> Path:
        """Grab one frame from url. Blocks until ffmpeg exits.

        Raises CaptureFailed with ffmpeg's stderr on failure; the partially
        written file is removed.
        """
        trace_id = trace_id or default_trace_id()
        timeout_ms = timeout_ms if timeout_ms is not None else self.config.snapshot_timeout_ms
        output_path = self.snapshot_path(name, trace_id)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_snapshot_command(self.config, url, output_path, timeout_ms)

        try:
            result = subprocess.run(
                cmd, stdin=subprocess.DEVNULL, capture_output=True, text=True,
                timeout=timeout_ms / 1000 + SNAPSHOT_GRACE_SECONDS,
            )
        except subprocess.TimeoutExpired as e:
            _discard(output_path)
            raise CaptureFailed(f"snapshot of '{name}' timed out",
                                _decode(e.stderr)) from e
        except OSError as e:
            _discard(output_path)
            raise CaptureFailed(f"could not start {cmd[0]}: {e}") from e

        if result.returncode != 0:
            _discard(output_path)
            raise CaptureFailed(
                f"snapshot of '{name}' failed (exit {result.returncode})",
                result.stderr or '',
            )

        logger.info('Snapshot %s -> %s', name, output_path)
        return output_path


def _discard(path: Path):
    if path.exists():
        path.unlink()


def _decode(data) -> str:
    if data is None:
        return ''
    if isinstance(data, bytes):
        return data.decode(errors='replace')
    return data
