"""
Interrupt handling for ab-av1.

- First Ctrl+C: request cancellation. Running pipelines notice at their next
  poll point, kill their child processes and raise ``Cancelled``.
- Second Ctrl+C: immediate ``KeyboardInterrupt``.

Registered cleanup callbacks (temporary registry drain) run once on
cancellation before control returns to the caller.
"""

import signal
import threading
from typing import Callable, List, Optional

from ...errors import Cancelled
from ....utils.logging import get_logger

logger = get_logger("interrupt")


class InterruptManager:
    """Turns SIGINT into cooperative cancellation."""

    def __init__(self, install_handler: bool = True):
        self._cancelled = threading.Event()
        self._interrupt_count = 0
        self._cleanup_callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._original_handler = None
        if install_handler:
            self._setup_signal_handlers()

    def _setup_signal_handlers(self):
        # signal handlers can only be installed from the main thread
        if threading.current_thread() is threading.main_thread():
            self._original_handler = signal.signal(signal.SIGINT, self._handle_interrupt)

    def _handle_interrupt(self, signum, frame):
        with self._lock:
            self._interrupt_count += 1
            count = self._interrupt_count

        if count == 1:
            logger.warn("Interrupt received, stopping. Press Ctrl+C again to exit immediately.")
            self._cancelled.set()
        else:
            self.restore()
            raise KeyboardInterrupt("Immediate exit requested")

    def register_cleanup_callback(self, callback: Callable[[], None]):
        """Register a cleanup callback to run when cancellation is handled."""
        with self._lock:
            self._cleanup_callbacks.append(callback)

    def run_cleanup_callbacks(self):
        with self._lock:
            callbacks = list(self._cleanup_callbacks)
            self._cleanup_callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except OSError as e:
                logger.error(f"Error in cleanup callback: {e}")

    def request_cancel(self):
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check(self):
        """Raise ``Cancelled`` if an interrupt arrived. Call at safe poll points."""
        if self._cancelled.is_set():
            raise Cancelled()

    def restore(self):
        """Restore the original SIGINT handler."""
        if self._original_handler is not None:
            signal.signal(signal.SIGINT, self._original_handler)
            self._original_handler = None


# Global instance
_manager: Optional[InterruptManager] = None
_manager_lock = threading.Lock()


def get_interrupt_manager() -> InterruptManager:
    """Get (installing on first use) the global interrupt manager."""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = InterruptManager()
        return _manager


def reset_interrupt_manager():
    """Drop the global manager and restore the default handler."""
    global _manager
    with _manager_lock:
        if _manager is not None:
            _manager.restore()
        _manager = None


def is_cancelled() -> bool:
    with _manager_lock:
        return _manager is not None and _manager.is_cancelled()


def check_cancelled():
    """Raise ``Cancelled`` if a global interrupt was received; no-op otherwise."""
    with _manager_lock:
        manager = _manager
    if manager is not None:
        manager.check()
