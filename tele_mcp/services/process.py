"""Child process lifecycle: spawn with piped stdio, graceful-then-forced stop."""

import asyncio
import shlex
from contextlib import suppress
from typing import List, Optional

from tele_mcp.core.errors import SpawnError, transport_error
from tele_mcp.core.logging import logger


class ChildProcess:
    """One running instance of the wrapped command.

    Whoever holds the instance owns it; ownership is never shared and the
    owner is responsible for handing it to ``ProcessManager.terminate``.
    """

    def __init__(self, argv: List[str], proc: asyncio.subprocess.Process) -> None:
        self.argv = argv
        self.proc = proc
        self.stdin = proc.stdin
        self.stdout = proc.stdout
        self.stderr = proc.stderr
        self.terminated = False
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode

    @property
    def alive(self) -> bool:
        return not self.terminated and self.proc.returncode is None

    @property
    def command(self) -> str:
        return shlex.join(self.argv)

    async def write_line(self, data: bytes) -> None:
        if self.stdin is None or self.stdin.is_closing():
            raise transport_error(f"write to pid {self.pid} failed: broken pipe")
        try:
            self.stdin.write(data + b"\n")
            await self.stdin.drain()
        except OSError as exc:
            raise transport_error(f"write to pid {self.pid} failed: {exc}") from exc

    async def read_line(self) -> Optional[bytes]:
        """Next stdout line without its newline, or None at EOF."""
        try:
            line = await self.stdout.readline()
        except (asyncio.LimitOverrunError, ValueError) as exc:
            raise transport_error(f"oversized line from pid {self.pid}: {exc}") from exc
        except OSError as exc:
            raise transport_error(f"read from pid {self.pid} failed: {exc}") from exc
        if not line:
            return None
        return line.rstrip(b"\r\n")

    async def _drain_stderr(self) -> None:
        while True:
            try:
                line = await self.stderr.readline()
            except (asyncio.LimitOverrunError, ValueError):
                # Drop the oversized chunk and keep the pipe flowing.
                await self.stderr.read(64 * 1024)
                continue
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.info(f"[pid {self.pid}] stderr: {text}")


class ProcessManager:
    """Spawns and reaps child processes."""

    def __init__(
        self,
        grace_sec: float = 2.0,
        secondary_sec: float = 1.0,
        stream_limit: int = 16 * 1024 * 1024,
    ) -> None:
        self.grace_sec = grace_sec
        self.secondary_sec = secondary_sec
        self.stream_limit = stream_limit

    async def spawn(self, command: str) -> ChildProcess:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            raise SpawnError(f"invalid command {command!r}: {exc}") from exc
        if not argv:
            raise SpawnError("empty command")

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.stream_limit,
            )
        except OSError as exc:
            raise SpawnError(f"failed to start {command!r}: {exc}") from exc

        process = ChildProcess(argv, proc)
        process._stderr_task = asyncio.create_task(process._drain_stderr())
        logger.info(f"Started process: {process.command} (pid {process.pid})")
        return process

    async def terminate(self, process: ChildProcess) -> None:
        """Stop ``process``; later calls on the same instance do nothing."""
        if process.terminated:
            return
        process.terminated = True
        proc = process.proc

        if process.stdin is not None and not process.stdin.is_closing():
            with suppress(OSError):
                process.stdin.close()

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_sec)
            logger.info(f"Process exited gracefully: pid {process.pid}")
        except asyncio.TimeoutError:
            with suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.secondary_sec)
                logger.info(f"Process terminated: pid {process.pid}")
            except asyncio.TimeoutError:
                with suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
                logger.info(f"Process killed: pid {process.pid}")
        finally:
            if proc.returncode is None:
                # Cancelled mid-sequence; the event loop's child watcher reaps it.
                with suppress(ProcessLookupError):
                    proc.kill()
            await self._close_streams(process)

    async def _close_streams(self, process: ChildProcess) -> None:
        task = process._stderr_task
        if task is not None and not task.done():
            # stderr hits EOF once the process is gone; give it a moment
            # to flush the tail into the log before cancelling.
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=0.5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if process.stdin is not None and not process.stdin.is_closing():
            with suppress(OSError):
                process.stdin.close()
