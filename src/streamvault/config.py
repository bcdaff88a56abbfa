"""YAML configuration with environment variable resolution."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_VIDEO_EXTENSIONS = ['mp4', 'mkv', 'ts', 'flv', 'avi', 'mov']
DEFAULT_IMAGE_EXTENSIONS = ['jpg', 'jpeg', 'png']


@dataclass
class StorageConfig:
    state_dir: str = 'state'
    recordings_dir: str = 'recordings'
    snapshots_dir: str = 'recordings/snapshots'


@dataclass
class CaptureConfig:
    ffmpeg: str = 'ffmpeg'
    rtsp_transport: str = 'tcp'
    record_args: list = field(default_factory=lambda: [
        '-c', 'copy', '-movflags', '+faststart',
    ])
    stop_signal: str = 'SIGINT'
    stop_timeout: float = 5.0
    snapshot_timeout_ms: int = 10000


@dataclass
class UploadConfig:
    rclone: str = 'rclone'
    remote: str = ''  # e.g. s3:bucket/recordings
    transfers: int = 4
    checkers: int = 8
    extra_args: list = field(default_factory=list)
    timeout: float = 3600.0  # seconds, per file
    video_extensions: list = field(default_factory=lambda: list(DEFAULT_VIDEO_EXTENSIONS))
    image_extensions: list = field(default_factory=lambda: list(DEFAULT_IMAGE_EXTENSIONS))


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    file: str = ''


@dataclass
class StreamVaultConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, '')
    return re.sub(r'\$\{(\w+)\}', replacer, value)


def _resolve_recursive(obj):
    """Walk a dict/list and resolve env vars in all string values."""
    if isinstance(obj, str):
        return _resolve_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _resolve_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_resolve_recursive(item) for item in obj]
    return obj


def _apply_dict(dc, data: dict):
    """Apply a flat dict to a dataclass, handling nested dataclasses."""
    for key, value in data.items():
        if not hasattr(dc, key):
            continue
        current = getattr(dc, key)
        if hasattr(current, '__dataclass_fields__') and isinstance(value, dict):
            _apply_dict(current, value)
        else:
            setattr(dc, key, value)


def load_config(path: str | Path | None = None) -> StreamVaultConfig:
    """Load configuration from YAML file.

    The path defaults to $STREAMVAULT_CONFIG, then ``config.yml``.
    Resolves ${ENV_VAR} patterns from environment.
    Falls back to defaults for any missing values.
    Returns defaults if the file doesn't exist.
    """
    config = StreamVaultConfig()
    if path is None:
        path = os.environ.get('STREAMVAULT_CONFIG', 'config.yml')
    path = Path(path)

    if not path.exists():
        return config

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not raw:
        return config

    resolved = _resolve_recursive(raw)
    _apply_dict(config, resolved)

    return config
