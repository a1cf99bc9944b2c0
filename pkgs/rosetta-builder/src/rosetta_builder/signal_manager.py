"""Shutdown signalling for the daemon."""

import asyncio
import logging
import signal

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class SignalManager:
    """Turns SIGTERM and SIGINT into an event the lifecycle controller waits on.

    Unloading the launchd job sends SIGTERM; the controller answers by stopping the VM process,
    which the guest sees as a shutdown request.
    """

    def __init__(self):
        self._shutdown_event = asyncio.Event()
        self._previous_handlers: dict[int, object] = {}

    @property
    def installed(self) -> bool:
        return bool(self._previous_handlers)

    def setup_signal_handlers(self) -> None:
        if self.installed:
            logger.debug("Signal handlers already installed")
            return

        def on_signal(signum, frame):
            logger.info(f"Received {signal.Signals(signum).name}, shutting down")
            self._shutdown_event.set()

        for sig in SHUTDOWN_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, on_signal)
        logger.debug("Installed handlers for SIGTERM and SIGINT")

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def is_shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def cleanup(self) -> None:
        """Put back whatever handlers were installed before ours."""
        while self._previous_handlers:
            sig, handler = self._previous_handlers.popitem()
            signal.signal(sig, handler)
        logger.debug("Restored previous signal handlers")
