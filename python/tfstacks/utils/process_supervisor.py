"""
tfstacks/utils/process_supervisor.py

Supervises the terraform processes started by one tfstacks command, so that a
terraform run is never left orphaned in the background when we are asked to
exit (leaving terraform running is confusing, and dangerous without state
locking).

One ProcessSupervisor is created per command and shared by everything that
starts terraform. It runs at most one child at a time and owns:
  - the "currently running" process reference, guarded by an asyncio.Lock;
  - a small queue of termination signals (at most 2 are kept).

Termination protocol (see `watch`):
  1) First SIGINT/SIGTERM with nothing running => INTERRUPTED at once.
  2) First signal while terraform runs => terraform got the signal too (the
     whole process group is signalled), so wait for it to exit => INTERRUPTED.
  3) Second signal before it exits => give it a moment to react, then kill
     it => KILLED.
Once a termination has been decided the lock is never released, so no new
terraform process can start before the program exits.

Usage example:
    supervisor = ProcessSupervisor()
    supervisor.install_signal_handlers()
    await supervisor.supervise(handler(), timeout=600)
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import signal
import sys
from typing import (
    Awaitable,
    Callable,
    Dict,
    Optional,
    Sequence,
    Set,
    TypeVar,
)

from tfstacks.models.errors import ErrorKind, StackError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Sink = Callable[[str], object]

KILL_GRACE_SECONDS = 0.5
_CHUNK_SIZE = 4096
_STDERR_FD = 2


def write_stderr(text: str) -> None:
    """Default output sink: everything human-readable goes to stderr."""
    sys.stderr.write(text)
    sys.stderr.flush()


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


async def _pump(stream: Optional[asyncio.StreamReader], sink: Optional[Sink]) -> None:
    """Copy a child's pipe to a sink as data arrives (prompts have no newline)."""
    if stream is None or sink is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            sink(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        sink(tail)


class ProcessSupervisor:
    """Runs one external process at a time and handles termination signals."""

    def __init__(self, kill_grace: float = KILL_GRACE_SECONDS) -> None:
        """
        Args:
            kill_grace (float): Seconds to wait after a second signal before
                killing the running process.
        """
        self.kill_grace = kill_grace
        self._lock = asyncio.Lock()
        self._running: Optional[asyncio.subprocess.Process] = None
        self._signals: "asyncio.Queue[int]" = asyncio.Queue(maxsize=2)
        self._terminating = False

    @property
    def running(self) -> Optional[asyncio.subprocess.Process]:
        """The process currently being supervised, if any."""
        return self._running

    def notify(self, signum: int) -> None:
        """Record a termination signal; signals beyond the second are dropped."""
        try:
            self._signals.put_nowait(signum)
        except asyncio.QueueFull:
            logger.debug("Dropping extra signal %s", _signal_name(signum))

    def install_signal_handlers(
        self, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)
    ) -> None:
        """Route termination signals of this process into `notify`."""
        loop = asyncio.get_running_loop()
        for signum in signals:
            loop.add_signal_handler(signum, self.notify, signum)

    async def run(
        self,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Optional[Dict[str, str]] = None,
        stdout: Optional[Sink] = None,
        stderr: Optional[Sink] = None,
        interactive: bool = False,
    ) -> int:
        """Start a process, stream its output, and wait for it to exit.

        Args:
            argv: The command and its arguments.
            cwd: Working directory for the process.
            env: Full environment for the process (None inherits ours).
            stdout: Sink for the child's stdout; defaults to our stderr.
            stderr: Sink for the child's stderr; defaults to our stderr.
            interactive: If True the child reads our stdin, else /dev/null.
                Output without a sink then goes straight to our stderr
                instead of through a pipe, so terraform sees the terminal.

        Returns:
            int: The child's exit status.
        """
        logger.info("Running in %s:", cwd)
        logger.info(" ".join(argv))

        stdout_target: Optional[int] = asyncio.subprocess.PIPE
        stderr_target: Optional[int] = asyncio.subprocess.PIPE
        if interactive:
            sys.stderr.flush()
            if stdout is None:
                stdout_target = _STDERR_FD
            if stderr is None:
                stderr_target = None
        else:
            stdout = stdout or write_stderr
            stderr = stderr or write_stderr

        # Hold the lock while starting, so a termination being decided by
        # `watch` cannot miss a process that is just coming up.
        async with self._lock:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=None if interactive else asyncio.subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=stderr_target,
            )
            self._running = proc

        try:
            await asyncio.gather(
                _pump(proc.stdout, stdout),
                _pump(proc.stderr, stderr),
            )
            return_code = await proc.wait()
        finally:
            # The next start has to take the lock, which `watch` keeps once
            # it has decided to terminate.
            self._running = None

        if return_code == 0:
            logger.info("Terraform exited success.")
        else:
            logger.info("Terraform exited failure.")
        return return_code

    async def watch(self) -> StackError:
        """Wait for a termination signal and settle the running process.

        Returns:
            StackError: INTERRUPTED or KILLED, describing how we must exit.
            The lock stays held, so no further process can be started.
        """
        signum = await self._signals.get()
        self._terminating = True
        await self._lock.acquire()
        try:
            return await self._settle(signum)
        except asyncio.CancelledError:
            self._lock.release()
            raise

    async def _settle(self, signum: int) -> StackError:
        proc = self._running
        if proc is None:
            return StackError(ErrorKind.INTERRUPTED, _signal_name(signum))

        logger.warning(
            "Received first signal; waiting to see if terraform exits cleanly. "
            "Signal again to kill."
        )
        exited = asyncio.ensure_future(proc.wait())
        second = asyncio.ensure_future(self._signals.get())
        try:
            done, _ = await asyncio.wait(
                {exited, second}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for pending in (exited, second):
                if not pending.done():
                    pending.cancel()

        if exited in done:
            return StackError(
                ErrorKind.INTERRUPTED,
                f"{_signal_name(signum)}; terraform exited with code {proc.returncode}",
                return_code=proc.returncode,
            )

        signum = second.result()
        logger.warning("Received 2nd signal; killing terraform.")
        await asyncio.sleep(self.kill_grace)
        self._kill(proc)
        await proc.wait()
        return StackError(
            ErrorKind.KILLED, _signal_name(signum), return_code=proc.returncode
        )

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            # Exited between the check and the kill.
            pass

    async def _deadline(self, timeout: float) -> StackError:
        await asyncio.sleep(timeout)
        return StackError(ErrorKind.TIMEOUT, f"after {timeout:g}s")

    async def supervise(self, main: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Run a command coroutine under signal watch and an optional deadline.

        Args:
            main: The command to run.
            timeout: Seconds before giving up with TIMEOUT. None or 0 waits
                forever.

        Returns:
            Whatever `main` returns.

        Raises:
            StackError: INTERRUPTED/KILLED on signals, TIMEOUT on the deadline.
                Exceptions raised by `main` propagate unchanged.
        """
        main_task = asyncio.ensure_future(main)
        watcher = asyncio.ensure_future(self.watch())
        racers: Set["asyncio.Future[object]"] = {main_task, watcher}
        deadline: Optional["asyncio.Future[StackError]"] = None
        if timeout is not None and timeout > 0:
            deadline = asyncio.ensure_future(self._deadline(timeout))
            racers.add(deadline)

        try:
            done, _ = await asyncio.wait(racers, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in racers:
                task.cancel()
            raise

        if main_task in done and not self._terminating:
            for task in racers - {main_task}:
                task.cancel()
            return main_task.result()

        # Once a signal has been taken, it decides how we exit, even if the
        # command finished in the meantime.
        winner = watcher if watcher in done or main_task in done else deadline
        assert winner is not None, "deadline unexpectedly None"
        for task in racers - {winner, main_task}:
            task.cancel()
        if winner is deadline and self._running is not None:
            logger.warning("Timed out; killing terraform.")
            self._kill(self._running)
        main_task.cancel()
        await asyncio.gather(main_task, return_exceptions=True)
        error = await winner
        assert isinstance(error, StackError)
        raise error
