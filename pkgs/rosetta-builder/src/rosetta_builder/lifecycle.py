"""Lifecycle controller: keeps the VM running, or starts it when a connection arrives."""

import asyncio
import logging
import socket

from .bootstrap import HostBootstrap
from .circuit_breaker import CircuitBreaker
from .config import BuilderConfig, LifecycleMode
from .exceptions import ColdStartTimeoutError, RosettaBuilderError, VMStartupError
from .hostagent import HostAgentClient
from .lima import LimaVMProcess
from .signal_manager import SignalManager
from .socket_activation import SocketActivation
from .ssh import SSHConnectivityTester

logger = logging.getLogger(__name__)

RESTART_FAILURE_THRESHOLD = 3
RESTART_BREAKER_TIMEOUT = 300.0
PROXY_BUFFER_SIZE = 65536


class LifecycleController:
    """Supervises the VM in always-on or on-demand mode.

    Always-on: the VM is started immediately and restarted whenever it exits.

    On-demand: nothing runs until a client connects to the launchd socket. The first connection
    converges and boots the VM, then every connection is proxied to the port Lima forwards to the
    guest's sshd. The guest powers itself off once idle; the controller notices the exit and the
    next connection boots it again.
    """

    def __init__(
        self,
        config: BuilderConfig,
        signal_manager: SignalManager,
        bootstrap: HostBootstrap,
        activation_socket: socket.socket | None = None,
    ):
        self.config = config
        self.signal_manager = signal_manager
        self.bootstrap = bootstrap

        self.ssh_tester = SSHConnectivityTester(config.working_directory, config.vm_ssh_port)
        self.host_agent = HostAgentClient(bootstrap.lima.instance_dir(bootstrap.vm_name))
        self._restart_breaker = CircuitBreaker(
            "VM restarts",
            failure_threshold=RESTART_FAILURE_THRESHOLD,
            timeout=RESTART_BREAKER_TIMEOUT,
        )

        self._activation_socket = activation_socket
        self._vm: LimaVMProcess | None = None
        self._vm_task: asyncio.Task | None = None
        self._ready = False
        self._start_lock = asyncio.Lock()
        self._connections: set[asyncio.StreamWriter] = set()

    @property
    def vm(self) -> LimaVMProcess | None:
        return self._vm

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def run(self) -> None:
        """Main run loop; returns once shutdown is requested."""
        if self.signal_manager.is_shutdown_requested():
            logger.info("Shutdown already requested, exiting immediately")
            return

        if self.config.lifecycle_mode is LifecycleMode.ON_DEMAND:
            main = asyncio.create_task(self._run_on_demand())
        else:
            main = asyncio.create_task(self._run_always_on())
        shutdown = asyncio.create_task(self.signal_manager.shutdown_event.wait())

        try:
            done, _ = await asyncio.wait([main, shutdown], return_when=asyncio.FIRST_COMPLETED)

            # the listener winds down its own sessions; cancelling it would cut that short
            if shutdown in done and self.config.lifecycle_mode is LifecycleMode.ON_DEMAND:
                await asyncio.wait([main])

            for task in (main, shutdown):
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

            if main.done() and not main.cancelled():
                main.result()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the VM process and release the host agent client."""
        await self._stop_vm()
        await self.host_agent.close()

    async def _stop_vm(self) -> None:
        """Stop the VM process; the guest sees this as a termination request."""
        vm = self._vm
        if vm is not None:
            await vm.stop(self.config.vm_stop_timeout)

        if self._vm_task and not self._vm_task.done():
            self._vm_task.cancel()
            try:
                await self._vm_task
            except asyncio.CancelledError:
                pass

        self._vm = None
        self._vm_task = None
        self._ready = False

    async def _run_always_on(self) -> None:
        while not self.signal_manager.is_shutdown_requested():
            self._restart_breaker.ensure_closed()

            reporter = None
            try:
                await self.bootstrap.converge()
                vm = self._vm = await self.bootstrap.start_vm()
                reporter = asyncio.create_task(self._report_ready(self.config.ssh_ready_timeout))
                returncode = await vm.wait()
            except RosettaBuilderError as e:
                logger.error(f"VM activation failed: {e}")
                self._restart_breaker.record_failure()
            else:
                if returncode == 0:
                    self._restart_breaker.record_success()
                else:
                    self._restart_breaker.record_failure()
            finally:
                if reporter and not reporter.done():
                    reporter.cancel()

            # not reached on cancellation, so stop() still sees the running VM
            self._vm = None
            self._ready = False

            if self.signal_manager.is_shutdown_requested():
                break

            logger.info(f"VM exited, restarting in {self.config.restart_delay} seconds")
            await asyncio.sleep(self.config.restart_delay)

    async def _report_ready(self, timeout: int) -> None:
        try:
            await asyncio.wait_for(self.wait_until_ready(), timeout=timeout)
            logger.info(f"VM is reachable over SSH on port {self.config.vm_ssh_port}")
        except asyncio.TimeoutError:
            logger.warning(f"SSH not ready within {timeout} seconds")
        except VMStartupError as e:
            logger.warning(str(e))

    async def _run_on_demand(self) -> None:
        sock = self._activation_socket
        if sock is None:
            sock = SocketActivation(self.config.port).get_activation_socket()

        server = await asyncio.start_server(self._handle_client, sock=sock)
        logger.info(f"Waiting for connections on port {self.config.port}")

        try:
            await self.signal_manager.shutdown_event.wait()
        finally:
            # wait_closed() blocks on open sessions, so the VM goes first and then the clients
            server.close()
            await self._stop_vm()
            self._abort_connections()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=self.config.vm_stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for proxied connections to close")

    def _abort_connections(self) -> None:
        if self._connections:
            logger.info(f"Closing {len(self._connections)} proxied connections")
        for writer in list(self._connections):
            writer.transport.abort()

    async def ensure_vm_started(self) -> None:
        """Converge and boot the VM unless it is already running."""
        async with self._start_lock:
            if self._vm is not None and self._vm.is_running:
                return

            logger.info("Connection received, starting VM")
            await self.bootstrap.converge()
            vm = await self.bootstrap.start_vm()
            self._vm = vm
            self._ready = False
            self._vm_task = asyncio.create_task(self._watch_vm(vm))

    async def _watch_vm(self, vm: LimaVMProcess) -> None:
        returncode = await vm.wait()
        logger.info(f"VM exited with code {returncode}, waiting for the next connection")
        if self._vm is vm:
            self._vm = None
            self._ready = False

    async def wait_until_ready(self) -> None:
        """Block until the guest's sshd answers with the pinned host key."""
        interval = 0.5
        while not self._ready:
            vm = self._vm
            if vm is None or not vm.is_running:
                raise VMStartupError("VM exited before becoming reachable")

            if await self.host_agent.is_serving() and await self.ssh_tester.test_connectivity(
                timeout=5
            ):
                self._ready = True
                break

            await asyncio.sleep(interval)
            interval = min(interval * 1.5, 2.0)

    async def activate(self) -> None:
        """Make the VM reachable for an incoming connection, within the cold start window."""
        await self.ensure_vm_started()
        timeout = self.config.cold_start_timeout
        try:
            await asyncio.wait_for(self.wait_until_ready(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ColdStartTimeoutError(f"VM did not become reachable within {timeout} seconds")

    async def _handle_client(
        self, client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter
    ) -> None:
        """Proxy a client connection to the VM's SSH port."""
        self._connections.add(client_writer)
        try:
            if self.signal_manager.is_shutdown_requested():
                logger.info("Shutdown requested, rejecting connection")
                return

            await self.activate()

            vm_reader, vm_writer = await asyncio.open_connection(
                "127.0.0.1", self.config.vm_ssh_port
            )
            logger.debug(
                f"Proxying connection to port {self.config.vm_ssh_port} "
                f"(active connections: {self.active_connections})"
            )

            await asyncio.gather(
                pipe_data(client_reader, vm_writer),
                pipe_data(vm_reader, client_writer),
            )
        except (RosettaBuilderError, OSError) as e:
            logger.error(f"Connection failed: {e}")
        finally:
            self._connections.discard(client_writer)
            logger.debug(f"Connection closed (active connections: {self.active_connections})")
            await close_writer(client_writer)


async def close_writer(writer: asyncio.StreamWriter) -> None:
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


async def pipe_data(src_reader: asyncio.StreamReader, dst_writer: asyncio.StreamWriter) -> None:
    """Pipe data from source to destination until either side closes."""
    try:
        while True:
            data = await src_reader.read(PROXY_BUFFER_SIZE)
            if not data:
                break
            dst_writer.write(data)
            await dst_writer.drain()
    except ConnectionError:
        pass
    finally:
        await close_writer(dst_writer)
