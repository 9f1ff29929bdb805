import signal
import threading

import structlog

logger = structlog.get_logger()


class ShutdownSignal:
    """Process-wide cancellation flag shared by workers and back-off waits."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if shutdown was requested."""
        return self._event.wait(timeout)

    def install_handlers(self) -> None:
        """Route SIGTERM and SIGINT to this signal. Main thread only."""

        def _handle(signum, frame) -> None:
            logger.warning("Shutdown requested", signal=signal.Signals(signum).name)
            self.set()

        signal.signal(signal.SIGTERM, _handle)
        signal.signal(signal.SIGINT, _handle)
