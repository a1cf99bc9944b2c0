"""Tests for rosetta_builder.socket_activation."""

from __future__ import annotations

import socket
from unittest.mock import patch

import pytest

from rosetta_builder.exceptions import VMStartupError
from rosetta_builder.socket_activation import SocketActivation


@pytest.fixture
def listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    yield sock
    sock.close()


class TestSocketActivation:
    def test_launchd_socket_on_port(self, listener):
        port = listener.getsockname()[1]
        activation = SocketActivation(port)

        with patch.object(
            activation, "_call_launch_activate_socket", return_value=[listener.fileno()]
        ):
            sock = activation.get_activation_socket()

        try:
            assert sock.getsockname()[1] == port
            assert sock.fileno() != listener.fileno()
        finally:
            sock.close()

    def test_ignores_socket_on_other_port(self, listener):
        port = listener.getsockname()[1]
        activation = SocketActivation(port + 1 if port < 65535 else port - 1)

        with patch.object(
            activation, "_call_launch_activate_socket", return_value=[listener.fileno()]
        ), patch("rosetta_builder.socket_activation.FALLBACK_FD_RANGE", range(0)):
            with pytest.raises(VMStartupError, match="No activation socket"):
                activation.get_activation_socket()
