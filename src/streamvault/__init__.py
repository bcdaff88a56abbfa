"""streamvault - RTSP recording sessions and rclone upload sweeps."""

from .errors import (
    StreamVaultError,
    InvalidName,
    AlreadyActive,
    NotFound,
    LaunchFailed,
    CaptureFailed,
    TransferFailed,
    LockHeld,
)
from .config import StreamVaultConfig, StorageConfig, CaptureConfig, UploadConfig, load_config
from .process import ProcessToken
from .database import SessionDatabase, SessionRecord
from .capture import CaptureLauncher, CaptureProcess
from .registry import SessionRegistry, SessionState, StopResult
from .uploader import SweepLock, SweepReport, UploadSweeper, RcloneMover, open_for_writing

__all__ = [
    'StreamVaultError', 'InvalidName', 'AlreadyActive', 'NotFound',
    'LaunchFailed', 'CaptureFailed', 'TransferFailed', 'LockHeld',
    'StreamVaultConfig', 'StorageConfig', 'CaptureConfig', 'UploadConfig', 'load_config',
    'ProcessToken',
    'SessionDatabase', 'SessionRecord',
    'CaptureLauncher', 'CaptureProcess',
    'SessionRegistry', 'SessionState', 'StopResult',
    'SweepLock', 'SweepReport', 'UploadSweeper', 'RcloneMover', 'open_for_writing',
]
