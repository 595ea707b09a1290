"""
Session state owned by the coordinator. Guarded, since `cancel` and `close` may come from another
thread than the one running the session
"""

import threading
from enum import Enum

from runproxy.low.core import ExtensionPath


class SessionPhase(str, Enum):
    # no completed phase, completion is observed by the event sink and never reaches the coordinator
    idle = "idle"
    connecting = "connecting"
    connected = "connected"
    running = "running"
    aborted = "aborted"
    closed = "closed"


class SessionState:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        # set once the worker handle reports a process exists, never reset
        self.launched = threading.Event()
        self._connected = False
        self._phase = SessionPhase.idle
        self._initialized_extensions: set[ExtensionPath] = set()

    @property
    def connected(self) -> bool:
        with self.lock:
            return self._connected

    @connected.setter
    def connected(self, value: bool) -> None:
        with self.lock:
            self._connected = value

    @property
    def phase(self) -> SessionPhase:
        with self.lock:
            return self._phase

    @phase.setter
    def phase(self, value: SessionPhase) -> None:
        with self.lock:
            self._phase = value

    def mark_launched(self) -> None:
        """Invoked from the worker handle's launch context. A fresh process knows no extensions"""
        with self.lock:
            self._initialized_extensions.clear()
        self.launched.set()

    def is_launched(self) -> bool:
        return self.launched.is_set()

    def wait_launched(self, timeout_sec: float | None = None) -> bool:
        return self.launched.wait(timeout_sec)

    def unknown_extensions(self, extensions: list[ExtensionPath]) -> list[ExtensionPath]:
        with self.lock:
            return [e for e in extensions if e not in self._initialized_extensions]

    def add_initialized_extensions(self, extensions: list[ExtensionPath]) -> None:
        with self.lock:
            self._initialized_extensions.update(extensions)
