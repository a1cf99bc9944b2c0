"""Lima VM registration and process lifecycle for rosetta-builder."""

import asyncio
import fcntl
import logging
import os
import signal
import tempfile
from pathlib import Path

from .constants import LIMA_HOME_DIR_NAME, PID_FILE_NAME
from .exceptions import RegistrationError, VMStartupError

logger = logging.getLogger(__name__)


async def cleanup_orphaned_vm_processes(working_dir: Path) -> None:
    """Kill a ``limactl start`` left behind by an unclean shutdown.

    The PID file is written by `LimaVMProcess` and removed when the process exits normally, so
    any PID still recorded here belongs to a previous run of the daemon.
    """
    pid_file = working_dir / PID_FILE_NAME

    try:
        with open(pid_file, "r") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
            pid_str = f.read().strip()

            try:
                pid = int(pid_str)
            except ValueError:
                logger.warning(f"Invalid PID in file {pid_file}: {pid_str}")
                pid_file.unlink(missing_ok=True)
                return

            if pid <= 0:
                logger.warning(f"Invalid PID value: {pid}")
                pid_file.unlink(missing_ok=True)
                return

            try:
                os.kill(pid, 0)
                logger.info(f"Found orphaned limactl process with PID {pid}")

                os.kill(pid, signal.SIGTERM)
                await asyncio.sleep(0.5)

                try:
                    os.kill(pid, 0)
                    os.kill(pid, signal.SIGKILL)
                    logger.info(f"Force killed orphaned limactl process {pid}")
                except ProcessLookupError:
                    logger.info(f"Orphaned limactl process {pid} terminated gracefully")

            except ProcessLookupError:
                logger.debug(f"Orphaned limactl process {pid} no longer exists")

            pid_file.unlink(missing_ok=True)
            logger.info("Cleaned up orphaned limactl process")

    except (FileNotFoundError, BlockingIOError):
        return


class LimaVMProcess:
    """A running ``limactl start --foreground``."""

    def __init__(self, process: asyncio.subprocess.Process, pid_file: Path, debug: bool = False):
        self.process = process
        self.pid_file = pid_file
        self._output_task: asyncio.Task | None = None

        self._write_pid_file(process.pid)

        if debug and process.stdout and process.stderr:
            self._output_task = asyncio.create_task(self._consume_output())

    def _write_pid_file(self, pid: int) -> None:
        """Write process PID to file atomically."""
        with tempfile.NamedTemporaryFile(
            mode="w", dir=self.pid_file.parent, prefix=f"{self.pid_file.name}.tmp.", delete=False
        ) as tmp_file:
            tmp_file.write(str(pid))
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = tmp_file.name

        os.rename(tmp_path, self.pid_file)
        logger.debug(f"Wrote PID {pid} to {self.pid_file}")

    async def _consume_output(self) -> None:
        """Consume limactl stdout/stderr to prevent buffer overflow."""

        async def read_stream(stream, name):
            while True:
                line = await stream.readline()
                if not line:
                    break
                logger.debug(f"limactl {name}: {line.decode(errors='replace').rstrip()}")

        await asyncio.gather(
            read_stream(self.process.stdout, "stdout"),
            read_stream(self.process.stderr, "stderr"),
        )

    def _cleanup(self) -> None:
        if self._output_task and not self._output_task.done():
            self._output_task.cancel()
        self._output_task = None
        self.pid_file.unlink(missing_ok=True)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    async def wait(self) -> int:
        """Block until the VM exits and return limactl's exit code."""
        returncode = await self.process.wait()
        if returncode == 0:
            logger.info("VM shut down normally")
        else:
            logger.warning(f"VM process exited with code {returncode}")
        self._cleanup()
        return returncode

    async def stop(self, timeout: int = 30) -> None:
        """Stop the VM, escalating to SIGKILL after ``timeout`` seconds."""
        if self.is_running:
            logger.info("Stopping VM...")
            self.process.terminate()
            logger.info(f"Sent SIGTERM to VM process {self.process.pid}")

            try:
                await asyncio.wait_for(self.process.wait(), timeout=timeout)
                logger.info("VM stopped gracefully")
            except asyncio.TimeoutError:
                logger.warning("VM did not stop gracefully, killing...")
                self.process.kill()
                await self.process.wait()
                logger.info("VM killed")

        self._cleanup()


class LimaClient:
    """Thin async wrapper around ``limactl``."""

    def __init__(self, working_dir: Path, debug: bool = False):
        self.working_dir = working_dir
        self.lima_home = working_dir / LIMA_HOME_DIR_NAME
        self.debug = debug

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["LIMA_HOME"] = str(self.lima_home)
        return env

    async def _run(self, *args: str) -> str:
        cmd = ["limactl", *args]
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.working_dir,
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise RegistrationError(f"Failed to run limactl: {e}")

        if process.returncode != 0:
            raise RegistrationError(
                f"limactl {args[0]} failed (exit {process.returncode}): "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode()

    def instance_dir(self, name: str) -> Path:
        return self.lima_home / name

    async def list_instances(self) -> list[str]:
        output = await self._run("list", "--quiet")
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def is_registered(self, name: str) -> bool:
        return name in await self.list_instances()

    def applied_definition(self, name: str) -> bytes | None:
        """Return the definition Lima stored when ``name`` was created."""
        try:
            return (self.instance_dir(name) / "lima.yaml").read_bytes()
        except FileNotFoundError:
            return None

    async def delete(self, name: str) -> None:
        logger.info(f"Deleting VM registration {name}")
        await self._run("delete", "--force", name)

    async def create(self, name: str, definition_path: Path) -> None:
        logger.info(f"Registering VM {name} from {definition_path}")
        await self._run("create", "--tty=false", f"--name={name}", str(definition_path))

    async def start_foreground(self, name: str) -> LimaVMProcess:
        cmd = ["limactl", "start"]
        if self.debug:
            cmd.append("--debug")
        cmd.extend(["--foreground", name])
        logger.info(f"Starting VM with command: {' '.join(cmd)}")

        output = asyncio.subprocess.PIPE if self.debug else asyncio.subprocess.DEVNULL
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.working_dir,
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output,
                stderr=output,
            )
        except OSError as e:
            raise VMStartupError(f"Failed to start VM process: {e}")

        logger.info(f"VM started with PID {process.pid}")
        return LimaVMProcess(process, self.working_dir / PID_FILE_NAME, self.debug)
