"""Process shutdown coordination.

States::

    running -> shutdown_requested -> stopped
                        |
                        +--------> force_stopped   (second interrupt)

The first interrupt asks the scheduler to stop admitting jobs and lets
in-flight runs finish. A second interrupt while still waiting runs the
force-stop callbacks, which normally exit the process on the spot.
"""

import logging
import signal
import threading
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("backupd.shutdown")


class ShutdownState(str, Enum):
    RUNNING = "running"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    STOPPED = "stopped"
    FORCE_STOPPED = "force_stopped"


class ShutdownCoordinator:
    def __init__(self):
        self._state = ShutdownState.RUNNING
        self._lock = threading.Lock()
        self._requested = threading.Event()
        self._finished = threading.Event()
        self._force_callbacks: list[Callable[[], None]] = []
        self._listeners: list[Callable[[ShutdownState], None]] = []
        self._original_handlers: dict[int, object] = {}

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            return self._state

    def is_shutdown_requested(self) -> bool:
        return self._requested.is_set()

    def on_force_stop(self, callback: Callable[[], None]) -> None:
        self._force_callbacks.append(callback)

    def add_listener(self, callback: Callable[[ShutdownState], None]) -> None:
        self._listeners.append(callback)

    def _transition(self, new_state: ShutdownState) -> None:
        self._state = new_state
        logger.info("Shutdown state: %s", new_state.value)

    def _notify(self, state: ShutdownState) -> None:
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:  # noqa: BLE001
                logger.exception("Shutdown listener failed")

    def request_shutdown(self) -> ShutdownState:
        with self._lock:
            if self._state == ShutdownState.RUNNING:
                self._transition(ShutdownState.SHUTDOWN_REQUESTED)
                self._requested.set()
            elif self._state == ShutdownState.SHUTDOWN_REQUESTED:
                self._transition(ShutdownState.FORCE_STOPPED)
                self._finished.set()
            else:
                return self._state
            state = self._state
        self._notify(state)
        if state == ShutdownState.FORCE_STOPPED:
            for callback in list(self._force_callbacks):
                callback()
        return state

    def mark_stopped(self) -> ShutdownState:
        with self._lock:
            if self._state == ShutdownState.FORCE_STOPPED:
                return self._state
            self._requested.set()
            self._transition(ShutdownState.STOPPED)
            self._finished.set()
        self._notify(ShutdownState.STOPPED)
        return ShutdownState.STOPPED

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a shutdown has been requested."""
        return self._requested.wait(timeout)

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def _handle_signal(self, signum, frame) -> None:
        logger.warning("Received signal %s", signal.Signals(signum).name)
        state = self.request_shutdown()
        if state == ShutdownState.SHUTDOWN_REQUESTED:
            print("\n\nShutdown signal received. Press Ctrl+C again to force exit...", flush=True)
        elif state == ShutdownState.FORCE_STOPPED:
            print("\nForce exiting...", flush=True)

    def install_signal_handlers(self, signals=(signal.SIGINT, signal.SIGTERM)) -> None:
        for signum in signals:
            self._original_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()
