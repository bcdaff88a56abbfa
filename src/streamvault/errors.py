"""Exception types raised by the registry, capture and uploader."""


class StreamVaultError(Exception):
    """Base class for all streamvault errors."""


class InvalidName(StreamVaultError, ValueError):
    pass


class AlreadyActive(StreamVaultError):
    def __init__(self, name: str, pid: int):
        super().__init__(f"session '{name}' is already recording (pid {pid})")
        self.name = name
        self.pid = pid


class NotFound(StreamVaultError):
    def __init__(self, name: str):
        super().__init__(f"no session named '{name}'")
        self.name = name


class LaunchFailed(StreamVaultError):
    pass


class CaptureFailed(StreamVaultError):
    """ffmpeg exited non-zero (or timed out) while grabbing a frame."""

    def __init__(self, message: str, stderr: str = ''):
        super().__init__(message)
        self.stderr = stderr


class TransferFailed(StreamVaultError):
    def __init__(self, path, stderr: str = ''):
        super().__init__(f"transfer of {path} failed")
        self.path = path
        self.stderr = stderr


class LockHeld(StreamVaultError):
    def __init__(self, pid: int | None):
        super().__init__(f"upload lock held by pid {pid}")
        self.pid = pid


class ConfigError(StreamVaultError):
    pass
