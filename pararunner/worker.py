"""
Worker
======

Supervises one long-lived worker subprocess and its pipe protocol.

The supervisor writes one command per line to the worker's stdin. The worker
answers on stdout with free-form output plus two markers:
- "FINISHED": one previously sent command has completed
- "EXITED": the worker is shutting down cleanly

State queries (is_free, is_running, is_crashed) never block: they drain the
available stdout without waiting and update the state from complete lines.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Union
import logging
import os
import subprocess

from pararunner.executable import CommandBuilder, ExecutableTest

logger = logging.getLogger(__name__)

FINISHED_MARKER = "FINISHED\n"
EXITED_MARKER = "EXITED\n"
EXIT_COMMAND = "EXIT"

PARALLEL_MODE_ENV = "PARARUNNER"
TOKEN_ENV = "TEST_TOKEN"
UNIQUE_TOKEN_ENV = "UNIQUE_TEST_TOKEN"
RUNNER_ID_ENV = "UNIQUE_RUNNER_ID"

READ_CHUNK_SIZE = 4096


class WorkerError(Exception):
    """Base class for worker failures."""
    pass


class WorkerNotStartedError(WorkerError):
    """Raised when an operation needs a running worker process."""
    pass


class WorkerSpawnError(WorkerNotStartedError):
    """Raised when the worker process or its pipes cannot be created."""
    pass


class WorkerAlreadyAssignedError(WorkerError):
    """Raised when assigning a test to a worker that still holds one."""
    pass


class WorkerCrashedError(WorkerError):
    """Raised when the worker process died without announcing its exit."""

    def __init__(
        self,
        token: Optional[Union[int, str]],
        exit_code: Optional[int],
        last_command: Optional[str],
        output: str,
        stderr: str
    ):
        self.token = token
        self.exit_code = exit_code
        self.last_command = last_command
        self.output = output
        self.stderr = stderr
        super().__init__(
            f"Worker {token} has crashed (exit code {exit_code}). "
            f"Last executed command: {last_command}\n"
            f"Output:\n"
            f"----------------------\n"
            f"{output}\n"
            f"----------------------\n"
            f"{stderr}"
        )


class WorkerProtocolError(WorkerError):
    """Raised when the worker output ends before an expected marker."""
    pass


class WorkerExitedError(WorkerProtocolError):
    """Raised when the worker process exited with commands still outstanding."""

    def __init__(
        self,
        token: Optional[Union[int, str]],
        exit_code: Optional[int],
        last_command: Optional[str],
        in_execution: int,
        output: str,
        stderr: str
    ):
        self.token = token
        self.exit_code = exit_code
        self.last_command = last_command
        self.in_execution = in_execution
        self.output = output
        self.stderr = stderr
        super().__init__(
            f"Worker {token} exited (exit code {exit_code}) with {in_execution} "
            f"unfinished commands. Last executed command: {last_command}\n"
            f"Output:\n"
            f"----------------------\n"
            f"{output}\n"
            f"----------------------\n"
            f"{stderr}"
        )


@dataclass(frozen=True)
class PipeSpec:
    """
    How the three standard streams of a worker process are connected.

    Attributes:
        stdin: Command stream (supervisor writes)
        stdout: Protocol and progress stream (supervisor reads)
        stderr: Diagnostic stream (read when a crash is reported)
    """
    stdin: int = subprocess.PIPE
    stdout: int = subprocess.PIPE
    stderr: int = subprocess.PIPE


DEFAULT_PIPES = PipeSpec()


@contextmanager
def non_blocking(fd: int) -> Iterator[None]:
    """Switch a file descriptor to non-blocking mode for the duration of the block."""
    os.set_blocking(fd, False)
    try:
        yield
    finally:
        os.set_blocking(fd, True)


class Worker:
    """
    One worker subprocess plus the state of its control protocol.

    Lifecycle: start() -> assign()/reset() cycles -> stop(). A worker holds at
    most one assigned test at a time; the caller resets it once is_free()
    reports the test done.
    """

    def __init__(self, pipes: PipeSpec = DEFAULT_PIPES, chunk_size: int = READ_CHUNK_SIZE):
        self.pipes = pipes
        self.chunk_size = chunk_size
        self.token: Optional[Union[int, str]] = None

        self._process: Optional[subprocess.Popen] = None
        self._in_execution = 0
        self._is_running = False
        self._exit_code: Optional[int] = None
        self._commands: List[str] = []
        self._chunks = b""
        self._already_read_output = bytearray()
        self._currently_executing: Optional[ExecutableTest] = None

    def start(
        self,
        wrapper: str,
        token: Optional[Union[int, str]] = 1,
        unique_token: Optional[str] = None,
        runner_id: Optional[str] = None,
        interpreter: Optional[str] = None
    ) -> None:
        """
        Spawn the worker process.

        Args:
            wrapper: Worker harness to run
            token: Worker number, exported when numeric
            unique_token: Token shared by all workers of this run
            runner_id: Identifier of the runner instance
            interpreter: Program used to run the wrapper (runs it directly if None)

        Raises:
            WorkerSpawnError: If the process or its pipes cannot be created
        """
        env: Dict[str, str] = dict(os.environ)
        env[PARALLEL_MODE_ENV] = "1"
        if _is_numeric(token):
            env[TOKEN_ENV] = str(token)
        if unique_token:
            env[UNIQUE_TOKEN_ENV] = str(unique_token)
        if runner_id:
            env[RUNNER_ID_ENV] = str(runner_id)

        args = [interpreter, wrapper] if interpreter else [wrapper]
        try:
            self._process = subprocess.Popen(
                args,
                stdin=self.pipes.stdin,
                stdout=self.pipes.stdout,
                stderr=self.pipes.stderr,
                env=env
            )
        except OSError as e:
            raise WorkerSpawnError(f"Could not start worker {token} ({' '.join(args)}): {e}")

        if self._process.stdin is None or self._process.stdout is None:
            raise WorkerSpawnError(f"Worker {token} was started without command/output pipes")

        self.token = token
        self._is_running = True
        logger.info(f"Worker {token} started (pid {self._process.pid})")

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def in_execution(self) -> int:
        """Commands sent but not yet reported finished."""
        return self._in_execution

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def commands(self) -> List[str]:
        return list(self._commands)

    @property
    def output(self) -> str:
        """Everything read from the worker's stdout so far."""
        return self._already_read_output.decode('utf-8', errors='replace')

    @property
    def currently_executing(self) -> Optional[ExecutableTest]:
        return self._currently_executing

    @property
    def coverage_file_name(self) -> Optional[str]:
        if self._currently_executing is not None:
            return self._currently_executing.coverage_file_name
        return None

    def is_started(self) -> bool:
        return self._process is not None

    def _check_started(self) -> None:
        if not self.is_started():
            raise WorkerNotStartedError("You have to start the Worker first!")
        if self._process.stdin.closed:
            raise WorkerNotStartedError(f"Worker {self.token} has been stopped")

    def execute(self, command: str) -> None:
        """
        Send one command to the worker.

        Raises:
            WorkerNotStartedError: If the worker is not started or already stopped
        """
        self._check_started()
        try:
            self._process.stdin.write(f"{command}\n".encode('utf-8'))
            self._process.stdin.flush()
        except OSError as e:
            raise WorkerNotStartedError(
                f"Worker {self.token} closed its command pipe before {command!r}: {e}"
            )
        # only commands that reached the worker are tracked
        self._commands.append(command)
        self._in_execution += 1
        logger.debug(f"Worker {self.token} <- {command}")

    def assign(
        self,
        test: ExecutableTest,
        command_builder: Union[CommandBuilder, Callable[[ExecutableTest], str]]
    ) -> None:
        """
        Run a test on this worker.

        Args:
            test: Test to run
            command_builder: Builds the command line for the test

        Raises:
            WorkerAlreadyAssignedError: If a test is still assigned
            WorkerNotStartedError: If the command cannot be sent; the test stays unassigned
        """
        if self._currently_executing is not None:
            raise WorkerAlreadyAssignedError(
                f"Worker {self.token} already has a test assigned - did you forget to call reset()?"
            )
        self.execute(command_builder(test))
        self._currently_executing = test

    def print_feedback(self, callback: Callable[[ExecutableTest], None]) -> None:
        if self._currently_executing is not None:
            callback(self._currently_executing)

    def reset(self) -> None:
        self._currently_executing = None

    def stop(self) -> None:
        """Ask the worker to exit and close the command pipe. Does not wait."""
        self._check_started()
        try:
            self._process.stdin.write(f"{EXIT_COMMAND}\n".encode('utf-8'))
            self._process.stdin.flush()
        except OSError:
            logger.warning(f"Worker {self.token} was already gone when asked to exit")
        finally:
            try:
                self._process.stdin.close()
            except OSError:
                pass
        logger.info(f"Worker {self.token} asked to stop")

    def wait_for_stop(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Block until the process exits and record its exit code.

        Only meant for tests and shutdown; the dispatch loop never waits.
        """
        if not self.is_started():
            return None
        returncode = self._process.wait(timeout=timeout)
        self._update_state_from_available_output()
        self._set_exit_code(returncode)
        return self._exit_code

    def wait_for_finished_job(self) -> None:
        """
        Block until the worker reports one finished command.

        Only meant for tests.

        Raises:
            WorkerProtocolError: If the output ends before a finished marker
        """
        if self._in_execution == 0:
            return
        self._check_started()

        fd = self._process.stdout.fileno()
        os.set_blocking(fd, True)
        while True:
            line = self._next_line()
            if line is None:
                chunk = os.read(fd, self.chunk_size)
                if not chunk:
                    raise WorkerProtocolError(
                        f"Worker {self.token} terminated without finishing the job. "
                        f"Last executed command: {self._last_command()}"
                    )
                self._chunks += chunk
                self._already_read_output.extend(chunk)
                continue
            if FINISHED_MARKER in line:
                self._decrement()
                return
            self._handle_line(line)

    def is_free(self) -> bool:
        """
        Whether every sent command has finished.

        Raises:
            WorkerCrashedError: If the worker has crashed
            WorkerExitedError: If the worker exited with commands still outstanding
        """
        self._check_not_crashed()
        # sampled before draining: once exited, all of its output is in the pipe
        returncode = self._process.poll() if self._process else None
        self._update_state_from_available_output()
        if self._in_execution and returncode is not None:
            self._set_exit_code(returncode)
            logger.error(
                f"Worker {self.token} exited with {self._in_execution} unfinished commands, "
                f"last: {self._last_command()}"
            )
            raise WorkerExitedError(
                token=self.token,
                exit_code=self._exit_code,
                last_command=self._last_command(),
                in_execution=self._in_execution,
                output=self.output,
                stderr=self._read_all_stderr()
            )
        return self._in_execution == 0

    def is_running(self) -> bool:
        """
        Whether the worker has not announced its exit yet.

        Raises:
            WorkerCrashedError: If the worker has crashed
        """
        self._check_not_crashed()
        self._update_state_from_available_output()
        return self._is_running

    def is_crashed(self) -> bool:
        """
        Whether the process died with a nonzero exit code without first
        announcing a clean exit.
        """
        if not self.is_started():
            return False
        # status must be sampled before draining, the exit marker wins any race
        returncode = self._process.poll()

        self._update_state_from_available_output()
        if not self._is_running:
            return False

        self._set_exit_code(returncode)
        if self._exit_code is None:
            return False
        return self._exit_code != 0

    def _check_not_crashed(self) -> None:
        if self.is_crashed():
            logger.error(
                f"Worker {self.token} crashed with exit code {self._exit_code} "
                f"while running: {self._last_command()}"
            )
            raise WorkerCrashedError(
                token=self.token,
                exit_code=self._exit_code,
                last_command=self._last_command(),
                output=self.output,
                stderr=self._read_all_stderr()
            )

    def _set_exit_code(self, returncode: Optional[int]) -> None:
        if returncode is not None and self._exit_code is None:
            self._exit_code = returncode

    def _last_command(self) -> Optional[str]:
        return self._commands[-1] if self._commands else None

    def _read_all_stderr(self) -> str:
        """Read the stderr available now, without waiting for EOF."""
        stderr = self._process.stderr if self._process else None
        if stderr is None or stderr.closed:
            return ""

        data = bytearray()
        fd = stderr.fileno()
        with non_blocking(fd):
            while True:
                try:
                    chunk = os.read(fd, self.chunk_size)
                except BlockingIOError:
                    break
                if not chunk:
                    break
                data.extend(chunk)
        return data.decode('utf-8', errors='replace')

    def _update_state_from_available_output(self) -> None:
        """
        Read whatever stdout has available and process the complete lines.

        Incomplete trailing data is kept until a later read completes the line,
        so a marker split across reads fires exactly once.
        """
        if self._process is None or self._process.stdout is None:
            return

        fd = self._process.stdout.fileno()
        with non_blocking(fd):
            while True:
                try:
                    chunk = os.read(fd, self.chunk_size)
                except BlockingIOError:
                    break
                if not chunk:
                    break
                self._chunks += chunk
                self._already_read_output.extend(chunk)

        self._process_complete_lines()

    def _receive(self, data: bytes) -> None:
        """Feed raw stdout bytes, as if read from the pipe."""
        self._chunks += data
        self._already_read_output.extend(data)
        self._process_complete_lines()

    def _process_complete_lines(self) -> None:
        while True:
            line = self._next_line()
            if line is None:
                break
            self._handle_line(line)

    def _next_line(self) -> Optional[str]:
        """Pop the next complete line (with its newline) from the carry-over buffer."""
        head, sep, rest = self._chunks.partition(b"\n")
        if not sep:
            return None
        self._chunks = rest
        return head.decode('utf-8', errors='replace') + "\n"

    def _handle_line(self, line: str) -> None:
        if FINISHED_MARKER in line:
            self._decrement()
        if EXITED_MARKER in line:
            logger.debug(f"Worker {self.token} announced exit")
            self._is_running = False

    def _decrement(self) -> None:
        if self._in_execution == 0:
            logger.warning(f"Worker {self.token} reported a finished command nobody was waiting for")
            return
        self._in_execution -= 1


def _is_numeric(value: Optional[Union[int, str]]) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(value)
    except ValueError:
        return False
    return True
