"""Session registry: at most one live ffmpeg recording per stream name.

State lives in the SQLite session database so it survives restarts and is
shared by every process (CLI calls, the HTTP shim) on the host. Liveness is
re-checked on every read; records whose process is gone are dropped as soon
as they are seen.
"""

import logging
import re
import signal
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

import psutil

from .capture import CaptureLauncher, CaptureProcess, default_trace_id
from .config import StreamVaultConfig
from .database import SessionDatabase, SessionRecord
from .errors import AlreadyActive, ConfigError, InvalidName, NotFound

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r'^[A-Za-z0-9_.-]+$')


class SessionState(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    NO_RECORD = "no_record"


@dataclass
class StopResult:
    record: SessionRecord
    signalled: bool
    exited: bool


def validate_name(name: str) -> str:
    if not name or not _NAME_RE.match(name) or name in ('.', '..'):
        raise InvalidName(f"invalid session name: {name!r}")
    return name


def parse_signal(name: str) -> signal.Signals:
    try:
        return signal.Signals[str(name).upper()]
    except KeyError:
        raise ConfigError(
            f"capture.stop_signal: unknown signal {name!r} (expected e.g. SIGINT, SIGTERM)"
        ) from None


class SessionRegistry:
    def __init__(
        self,
        db: SessionDatabase,
        launcher: CaptureLauncher,
        stop_signal: int = signal.SIGINT,
        stop_timeout: float = 5.0,
    ):
        self.db = db
        self.launcher = launcher
        self.stop_signal = stop_signal
        self.stop_timeout = stop_timeout
        # children launched by this process, kept so they can be reaped
        self._children: dict[str, CaptureProcess] = {}

    @classmethod
    def from_config(cls, config: StreamVaultConfig) -> 'SessionRegistry':
        storage = config.storage
        stop_signal = parse_signal(config.capture.stop_signal)
        db = SessionDatabase(Path(storage.state_dir) / 'sessions.db')
        launcher = CaptureLauncher(
            config.capture, storage.recordings_dir, storage.snapshots_dir,
            log_dir=Path(storage.state_dir) / 'logs',
        )
        return cls(
            db, launcher,
            stop_signal=stop_signal,
            stop_timeout=config.capture.stop_timeout,
        )

    def start(self, name: str, source_url: str, trace_id: str | None = None) -> SessionRecord:
        """Launch a recording for name.

        Raises AlreadyActive if a live recording exists, LaunchFailed if
        ffmpeg could not be started. A stale record is replaced.
        """
        validate_name(name)
        trace_id = trace_id or default_trace_id()

        with self.db.transaction():
            existing = self.db.get(name)
            if existing is not None:
                if existing.token.is_alive():
                    raise AlreadyActive(name, existing.pid)
                logger.info('Replacing stale session %s (pid %d)', name, existing.pid)
                self.db.delete(name)
                self._forget(name)

            child = self.launcher.launch(name, source_url, trace_id)
            record = SessionRecord(
                name=name,
                pid=child.token.pid,
                create_time=child.token.create_time,
                output_path=str(child.output_path),
                trace_id=trace_id,
                source_url=source_url,
                started_at=datetime.now().isoformat(timespec='seconds'),
            )
            self.db.insert(record)

        self._children[name] = child
        logger.info('Session %s started (pid %d)', name, record.pid)
        return record

    def stop(self, name: str) -> StopResult:
        """Signal the recording and drop its record.

        The record is removed even if the signal could not be delivered.
        """
        with self.db.transaction():
            record = self.db.get(name)
            if record is None:
                raise NotFound(name)
            self.db.delete(name)

        token = record.token
        try:
            signalled = token.send_signal(self.stop_signal)
        except psutil.AccessDenied as e:
            logger.warning('Session %s: could not signal pid %d (%s), record removed anyway',
                           name, record.pid, e)
            signalled = False
            exited = not token.is_alive()
        else:
            if not signalled:
                logger.warning('Session %s: pid %d was not running, record removed anyway',
                               name, record.pid)
                exited = not token.is_alive()

        if signalled:
            exited = token.wait(self.stop_timeout)
            if not exited:
                logger.warning('Session %s: pid %d ignored %s, killing',
                               name, record.pid, signal.Signals(self.stop_signal).name)
                token.send_signal(signal.SIGKILL)
                exited = token.wait(self.stop_timeout)

        self._forget(name)
        logger.info('Session %s stopped', name)
        return StopResult(record=record, signalled=signalled, exited=exited)

    def status(self, name: str) -> tuple[SessionState, SessionRecord | None]:
        with self.db.transaction():
            record = self.db.get(name)
            if record is None:
                return SessionState.NO_RECORD, None
            if record.token.is_alive():
                return SessionState.ACTIVE, record
            self.db.delete(name)

        self._forget(name)
        logger.info('Session %s: pid %d is gone, removed stale record', name, record.pid)
        return SessionState.INACTIVE, record

    def list_sessions(self) -> list[tuple[SessionRecord, bool]]:
        """All records with their current liveness. Does not clean up."""
        return [(r, r.token.is_alive()) for r in self.db.all()]

    def sweep(self) -> int:
        """Drop every record without touching the processes behind them."""
        cleared = self.db.clear()
        for child in self._children.values():
            child.detach()
        self._children.clear()
        logger.info('Cleared %d session record(s)', cleared)
        return cleared

    def _forget(self, name: str):
        child = self._children.pop(name, None)
        if child is not None:
            child.poll()

    def close(self):
        """Release owned children (they keep running) and the database."""
        for child in self._children.values():
            child.detach()
        self._children.clear()
        self.db.close()
