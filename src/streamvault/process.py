"""Process liveness tokens.

A bare pid is not enough to tell whether the process we launched is still
running: the kernel recycles ids. A token pairs the pid with the process
start time, and a token is only alive while both still match.
"""

from dataclasses import dataclass

import psutil


# create_time is a float derived from boot time + clock ticks
_CREATE_TIME_TOLERANCE = 0.5


@dataclass(frozen=True)
class ProcessToken:
    pid: int
    create_time: float

    @classmethod
    def of(cls, pid: int) -> 'ProcessToken':
        """Token for a running pid. Raises psutil.NoSuchProcess if it is gone."""
        return cls(pid=pid, create_time=psutil.Process(pid).create_time())

    @classmethod
    def current(cls) -> 'ProcessToken':
        proc = psutil.Process()
        return cls(pid=proc.pid, create_time=proc.create_time())

    def _process(self) -> psutil.Process | None:
        """Return the matching live process, or None."""
        try:
            proc = psutil.Process(self.pid)
        except psutil.NoSuchProcess:
            return None
        try:
            if abs(proc.create_time() - self.create_time) > _CREATE_TIME_TOLERANCE:
                return None
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            # Unreadable process of another user; the pid is taken, count it live.
            pass
        return proc

    def is_alive(self) -> bool:
        return self._process() is not None

    def send_signal(self, sig: int) -> bool:
        """Deliver sig if the process is still running.

        Returns False if the process is gone. Raises psutil.AccessDenied if it
        is running but we may not signal it.
        """
        proc = self._process()
        if proc is None:
            return False
        try:
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            return False
        return True

    def wait(self, timeout: float) -> bool:
        """Wait up to timeout seconds for exit. True if the process is gone."""
        proc = self._process()
        if proc is None:
            return True
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            return not self.is_alive()
        except psutil.NoSuchProcess:
            pass
        return True

    def to_dict(self) -> dict:
        return {'pid': self.pid, 'create_time': self.create_time}

    @classmethod
    def from_dict(cls, data: dict) -> 'ProcessToken':
        return cls(pid=int(data['pid']), create_time=float(data['create_time']))
