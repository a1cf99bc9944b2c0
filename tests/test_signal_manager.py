"""Tests for rosetta_builder.signal_manager."""

from __future__ import annotations

import signal

from rosetta_builder.signal_manager import SignalManager


class TestSignalManager:
    def test_request_shutdown(self):
        manager = SignalManager()
        assert not manager.is_shutdown_requested()
        manager.request_shutdown()
        assert manager.is_shutdown_requested()
        assert manager.shutdown_event.is_set()

    def test_signal_sets_event_and_cleanup_restores(self):
        original = signal.getsignal(signal.SIGTERM)
        manager = SignalManager()
        manager.setup_signal_handlers()
        try:
            handler = signal.getsignal(signal.SIGTERM)
            assert handler is not original
            handler(signal.SIGTERM, None)
            assert manager.is_shutdown_requested()
        finally:
            manager.cleanup()
        assert signal.getsignal(signal.SIGTERM) is original
