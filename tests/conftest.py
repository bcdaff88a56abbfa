"""Shared fixtures: a registry whose 'ffmpeg' is a sleeping Python child."""

import signal
import sys
import time

import pytest

from streamvault.capture import CaptureLauncher
from streamvault.config import StreamVaultConfig
from streamvault.database import SessionDatabase
from streamvault.process import ProcessToken
from streamvault.registry import SessionRegistry

SLEEPER = [sys.executable, '-c', 'import time; time.sleep(60)']


class SleepLauncher(CaptureLauncher):
    """Launches a long sleep in place of ffmpeg."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.launched: list[ProcessToken] = []
        # seconds to stall before spawning, to widen race windows
        self.delay = 0.0

    def launch(self, name, url, trace_id):
        if self.delay:
            time.sleep(self.delay)
        output_path = self.recording_path(name, trace_id)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        child = self._spawn(SLEEPER, output_path)
        self.launched.append(child.token)
        return child


@pytest.fixture
def config(tmp_path):
    cfg = StreamVaultConfig()
    cfg.storage.state_dir = str(tmp_path / 'state')
    cfg.storage.recordings_dir = str(tmp_path / 'recordings')
    cfg.storage.snapshots_dir = str(tmp_path / 'recordings' / 'snapshots')
    cfg.capture.stop_timeout = 5.0
    return cfg


@pytest.fixture
def launcher(config):
    launcher = SleepLauncher(
        config.capture, config.storage.recordings_dir, config.storage.snapshots_dir,
    )
    yield launcher
    for token in launcher.launched:
        if token.send_signal(signal.SIGKILL):
            token.wait(5)


@pytest.fixture
def db(tmp_path):
    db = SessionDatabase(tmp_path / 'state' / 'sessions.db')
    yield db
    db.close()


@pytest.fixture
def registry(db, launcher):
    return SessionRegistry(db, launcher, stop_timeout=5.0)
