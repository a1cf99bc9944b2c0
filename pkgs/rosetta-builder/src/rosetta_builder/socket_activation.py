"""Launchd socket activation for the on-demand listener."""

import ctypes
import ctypes.util
import logging
import os
import socket
import stat

from .constants import DAEMON_SOCKET_NAME
from .exceptions import VMStartupError

logger = logging.getLogger(__name__)

# launchd hands sockets over starting at fd 3; anything past 10 is not ours
FALLBACK_FD_RANGE = range(3, 11)


class SocketActivation:
    """Finds the listening socket launchd created for the daemon."""

    def __init__(self, port: int, socket_name: str = DAEMON_SOCKET_NAME):
        """Initialize socket activation manager.

        Args:
            port: Port the launchd socket is expected to be bound to
            socket_name: Key of the socket in the daemon's ``Sockets`` dictionary
        """
        self.port = port
        self.socket_name = socket_name

    def _call_launch_activate_socket(self) -> list[int]:
        """Use launch_activate_socket to get socket file descriptors."""
        library = ctypes.util.find_library("System")
        if not library:
            logger.debug("libSystem not found, not running under launchd")
            return []

        try:
            libsystem = ctypes.CDLL(library)
            # int launch_activate_socket(const char *name, int **fds, size_t *cnt);
            launch_activate_socket = libsystem.launch_activate_socket
        except (OSError, AttributeError) as e:
            logger.debug(f"Failed to load launch_activate_socket: {e}")
            return []

        launch_activate_socket.argtypes = [
            ctypes.c_char_p,
            ctypes.POINTER(ctypes.POINTER(ctypes.c_int)),
            ctypes.POINTER(ctypes.c_size_t),
        ]
        launch_activate_socket.restype = ctypes.c_int

        fds_ptr = ctypes.POINTER(ctypes.c_int)()
        count = ctypes.c_size_t()
        result = launch_activate_socket(
            self.socket_name.encode("utf-8"), ctypes.byref(fds_ptr), ctypes.byref(count)
        )

        if result != 0:
            logger.debug(f"launch_activate_socket returned error: {result}")
            return []

        fds = [fds_ptr[i] for i in range(count.value)]
        logger.debug(f"launch_activate_socket returned {count.value} file descriptors: {fds}")
        return fds

    def _socket_on_port(self, fd: int) -> socket.socket | None:
        """Return a duplicate of ``fd`` as a socket if it is bound to our port."""
        candidate = socket.fromfd(fd, socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock_name = candidate.getsockname()
            logger.debug(f"FD {fd}: Socket bound to {sock_name}")
            if sock_name[1] != self.port:
                return None
        finally:
            candidate.close()

        logger.info(f"Found activation socket on FD {fd}, bound to {sock_name}")
        return socket.fromfd(os.dup(fd), socket.AF_INET, socket.SOCK_STREAM)

    def get_activation_socket(self) -> socket.socket:
        """Get the socket passed by launchd for activation."""
        logger.debug("Attempting to find activation socket...")

        for fd in self._call_launch_activate_socket():
            try:
                sock = self._socket_on_port(fd)
            except OSError as e:
                logger.debug(f"Failed to process FD {fd}: {e}")
                continue
            if sock:
                return sock

        return self._fallback_socket_scan()

    def _fallback_socket_scan(self) -> socket.socket:
        """Scan the low file descriptors for an inherited listening socket."""
        logger.debug("Falling back to manual file descriptor scanning...")

        for fd in FALLBACK_FD_RANGE:
            try:
                if not stat.S_ISSOCK(os.fstat(fd).st_mode):
                    continue
                sock = self._socket_on_port(fd)
            except OSError:
                continue
            if sock:
                return sock

        raise VMStartupError(f"No activation socket found on port {self.port}")
