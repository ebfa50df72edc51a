"""
Tests for Worker process supervision.

Tests cover:
- Start, environment and spawn failures
- In-execution counting and finished markers
- Clean exit vs crash detection
- Assignment rules
- Partial line handling
"""

import os
import sys
import time
import shlex
import textwrap
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pararunner.executable import TestMethod
from pararunner.worker import (
    Worker,
    WorkerNotStartedError,
    WorkerSpawnError,
    WorkerAlreadyAssignedError,
    WorkerCrashedError,
    WorkerExitedError,
    WorkerProtocolError,
    non_blocking,
)


FAKE_WORKER = textwrap.dedent('''
    import os
    import sys
    import time

    for line in sys.stdin:
        cmd = line.rstrip("\\n")
        if cmd == "EXIT":
            print("EXITED", flush=True)
            sys.exit(0)
        op, _, arg = cmd.partition(" ")
        if op == "wait":
            while not os.path.exists(arg):
                time.sleep(0.01)
            print("done waiting for " + arg, flush=True)
            print("FINISHED", flush=True)
        elif op == "echo":
            print(arg, flush=True)
            print("FINISHED", flush=True)
        elif op == "env":
            print(arg + "=" + os.environ.get(arg, "<unset>"), flush=True)
            print("FINISHED", flush=True)
        elif op == "crash":
            sys.stderr.write("boom\\n")
            sys.stderr.flush()
            os._exit(int(arg))
        elif op == "dirty-exit":
            print("EXITED", flush=True)
            os._exit(int(arg))
        elif op == "quit":
            os._exit(0)
        elif op == "warn":
            sys.stderr.write(arg + "\\n")
            sys.stderr.flush()
            print("FINISHED", flush=True)
        # anything else never finishes
''')


def wait_until(predicate, timeout=10.0):
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def fake_worker_script(tmp_path):
    script = tmp_path / "fake_worker.py"
    script.write_text(FAKE_WORKER)
    return str(script)


@pytest.fixture
def worker(fake_worker_script):
    w = Worker()
    w.start(fake_worker_script, 1, interpreter=sys.executable)
    yield w
    process = w._process
    if process.poll() is None:
        if not process.stdin.closed:
            w.stop()
        try:
            process.wait(timeout=5)
        except Exception:
            process.kill()
            process.wait()
    for stream in (process.stdout, process.stderr):
        if stream and not stream.closed:
            stream.close()


class TestStart:
    """Tests for starting a worker."""

    def test_free_and_running_after_start(self, worker):
        """A freshly started worker is free and running."""
        assert worker.is_started()
        assert worker.is_free() is True
        assert worker.is_running() is True
        assert worker.is_crashed() is False
        assert worker.in_execution == 0

    def test_environment(self, fake_worker_script):
        """Worker exports parallel mode, token, unique token and runner id."""
        w = Worker()
        w.start(fake_worker_script, 3, "run-abc", "runner-7", interpreter=sys.executable)
        try:
            for name in ("PARARUNNER", "TEST_TOKEN", "UNIQUE_TEST_TOKEN", "UNIQUE_RUNNER_ID"):
                w.execute(f"env {name}")
                w.wait_for_finished_job()

            assert "PARARUNNER=1" in w.output
            assert "TEST_TOKEN=3" in w.output
            assert "UNIQUE_TEST_TOKEN=run-abc" in w.output
            assert "UNIQUE_RUNNER_ID=runner-7" in w.output
        finally:
            w.stop()
            w.wait_for_stop(timeout=5)

    def test_non_numeric_token_not_exported(self, fake_worker_script, monkeypatch):
        """A non-numeric token does not set TEST_TOKEN."""
        monkeypatch.delenv("TEST_TOKEN", raising=False)
        w = Worker()
        w.start(fake_worker_script, "abc", interpreter=sys.executable)
        try:
            w.execute("env TEST_TOKEN")
            w.wait_for_finished_job()
            assert "TEST_TOKEN=<unset>" in w.output
        finally:
            w.stop()
            w.wait_for_stop(timeout=5)

    def test_spawn_failure(self, tmp_path):
        """A missing executable surfaces as a spawn error."""
        w = Worker()
        with pytest.raises(WorkerSpawnError):
            w.start(str(tmp_path / "wrapper.py"), 1, interpreter=str(tmp_path / "no-such-interpreter"))
        assert isinstance(WorkerSpawnError("x"), WorkerNotStartedError)
        assert w.is_started() is False

    def test_execute_before_start(self):
        """Commands cannot be sent before start."""
        w = Worker()
        with pytest.raises(WorkerNotStartedError):
            w.execute("echo hello")
        assert w.is_crashed() is False


class TestExecution:
    """Tests for command dispatch and finished markers."""

    def test_counter_counts_unfinished_commands(self, worker):
        """k commands without finished markers leave k in execution."""
        for _ in range(3):
            worker.execute("hang")

        assert worker.in_execution == 3
        assert worker.is_free() is False
        assert worker.commands == ["hang", "hang", "hang"]

    def test_two_commands_one_finished(self, worker, tmp_path):
        """Worker is busy until every command reported finished."""
        first = tmp_path / "first"
        second = tmp_path / "second"
        worker.execute(f"wait {first}")
        worker.execute(f"wait {second}")
        assert worker.in_execution == 2

        first.touch()
        assert wait_until(lambda: not worker.is_free() and worker.in_execution == 1)
        time.sleep(0.05)
        assert worker.is_free() is False
        assert worker.in_execution == 1

        second.touch()
        assert wait_until(worker.is_free)
        assert worker.in_execution == 0

        print("[PASS] two commands, two finished markers")

    def test_wait_for_finished_job(self, worker):
        """Blocking wait consumes exactly one finished marker."""
        worker.execute("echo hello")
        worker.execute("echo world")

        worker.wait_for_finished_job()
        assert worker.in_execution == 1
        worker.wait_for_finished_job()
        assert worker.in_execution == 0
        assert "hello\n" in worker.output
        assert "world\n" in worker.output

        # nothing outstanding returns immediately
        worker.wait_for_finished_job()
        assert worker.is_free() is True

    def test_wait_for_finished_job_protocol_error(self, worker):
        """Output ending without a finished marker is a protocol error."""
        worker.execute("crash 0")
        with pytest.raises(WorkerProtocolError):
            worker.wait_for_finished_job()

    def test_execute_after_stop(self, worker):
        """Commands cannot be sent once the command pipe is closed."""
        worker.stop()
        with pytest.raises(WorkerNotStartedError):
            worker.execute("echo late")


class TestAssignment:
    """Tests for assign/reset."""

    def test_assign_builds_command(self, worker):
        test = TestMethod("tests/UserTest.php", ["testCreate"], "UserTest")
        worker.assign(test, lambda t: f"echo {t.name}")

        assert worker.currently_executing is test
        assert worker.commands == ["echo testCreate"]
        assert worker.in_execution == 1

    def test_assign_twice_fails(self, worker):
        """A second assign without reset is a caller error."""
        first = TestMethod("a.php", ["testA"])
        second = TestMethod("b.php", ["testB"])
        worker.assign(first, lambda t: "echo a")

        with pytest.raises(WorkerAlreadyAssignedError):
            worker.assign(second, lambda t: "echo b")
        assert worker.currently_executing is first

        worker.wait_for_finished_job()
        worker.reset()
        worker.assign(second, lambda t: "echo b")
        assert worker.currently_executing is second

    def test_assign_to_exited_process(self, worker):
        """A command that cannot be written leaves the worker unassigned."""
        worker.execute("echo before")
        worker.wait_for_finished_job()
        worker.execute("quit")
        worker._process.wait(timeout=5)

        test = TestMethod("a.php", ["testA"])
        with pytest.raises(WorkerNotStartedError):
            worker.assign(test, lambda t: "echo a")

        assert worker.currently_executing is None
        assert worker.commands == ["echo before", "quit"]
        assert worker.in_execution == 1

    def test_print_feedback(self, worker):
        seen = []
        worker.print_feedback(seen.append)
        assert seen == []

        test = TestMethod("a.php", ["testA"])
        worker.assign(test, lambda t: "echo a")
        worker.print_feedback(seen.append)
        assert seen == [test]

    def test_coverage_file_name(self, worker):
        assert worker.coverage_file_name is None
        test = TestMethod("a.php", ["testA"])
        worker.assign(test, lambda t: "echo a")
        try:
            assert worker.coverage_file_name == test.coverage_file_name
            assert os.path.basename(worker.coverage_file_name).startswith("CV_")
        finally:
            test.delete_files()


class TestExitAndCrash:
    """Tests for clean exit and crash detection."""

    def test_stop_sets_not_running(self, worker):
        """The exited marker permanently clears the running flag."""
        worker.stop()
        assert wait_until(lambda: not worker.is_running())

        assert worker.wait_for_stop(timeout=5) == 0
        assert worker.is_running() is False
        assert worker.is_crashed() is False

    def test_exit_marker_wins_over_exit_code(self, worker):
        """A worker that announced its exit is never crashed."""
        worker.execute("dirty-exit 5")
        worker._process.wait(timeout=5)

        assert worker.is_crashed() is False
        assert worker.is_running() is False
        with pytest.raises(WorkerExitedError):
            worker.is_free()

    def test_exit_with_unfinished_command(self, worker):
        """Exit code zero mid-command is reported instead of staying busy forever."""
        worker.execute("crash 0")
        worker._process.wait(timeout=5)

        assert worker.is_crashed() is False
        with pytest.raises(WorkerExitedError) as exc_info:
            worker.is_free()

        error = exc_info.value
        assert isinstance(error, WorkerProtocolError)
        assert error.token == 1
        assert error.exit_code == 0
        assert error.in_execution == 1
        assert error.last_command == "crash 0"
        assert "boom" in error.stderr

    def test_idle_exit_is_free(self, worker):
        """Exiting with nothing outstanding is not an error."""
        worker.execute("echo bye")
        worker.wait_for_finished_job()
        worker._process.stdin.close()
        worker._process.wait(timeout=5)

        assert worker.is_free() is True
        assert worker.exit_code == 0

    def test_crash_detected(self, worker):
        """Nonzero exit without exit marker is a crash."""
        worker.execute("echo before")
        worker.wait_for_finished_job()
        worker.execute("crash 3")
        worker._process.wait(timeout=5)

        assert worker.is_crashed() is True
        assert worker.exit_code == 3

        with pytest.raises(WorkerCrashedError) as exc_info:
            worker.is_free()

        error = exc_info.value
        assert error.token == 1
        assert error.exit_code == 3
        assert error.last_command == "crash 3"
        assert "before" in error.output
        assert "boom" in error.stderr
        assert "Last executed command: crash 3" in str(error)

    def test_clean_exit_code_zero_not_crashed(self, worker):
        """Exit code zero without marker is not a crash."""
        worker.execute("crash 0")
        worker._process.wait(timeout=5)

        assert worker.is_crashed() is False
        assert worker.exit_code == 0

    def test_stderr_read_while_running(self, worker):
        """Reading stderr returns what is buffered without waiting for EOF."""
        assert worker._read_all_stderr() == ""

        worker.execute("warn careful")
        worker.wait_for_finished_job()

        assert worker._read_all_stderr() == "careful\n"
        assert worker._process.poll() is None
        assert os.get_blocking(worker._process.stderr.fileno()) is True

    def test_first_exit_code_wins(self):
        w = Worker()
        w._set_exit_code(None)
        assert w.exit_code is None
        w._set_exit_code(3)
        w._set_exit_code(0)
        assert w.exit_code == 3


class TestOutputParsing:
    """Tests for line assembly from raw output chunks."""

    def test_marker_split_across_reads(self):
        """A marker only fires once its line is complete."""
        w = Worker()
        w._in_execution = 2

        w._receive(b"progress...\nFINI")
        assert w.in_execution == 2

        w._receive(b"SHED\n")
        assert w.in_execution == 1

        w._receive(b"FINISHED\nFINISHED\n")
        assert w.in_execution == 0
        assert w.output == "progress...\nFINISHED\nFINISHED\nFINISHED\n"

    def test_counter_never_negative(self):
        w = Worker()
        w._receive(b"FINISHED\n")
        assert w.in_execution == 0

    def test_marker_must_end_line(self):
        """Markers are matched at the end of a complete line."""
        w = Worker()
        w._in_execution = 1
        w._receive(b"FINISHED but not really\n")
        assert w.in_execution == 1
        w._receive(b"test FINISHED\n")
        assert w.in_execution == 0

    def test_exited_marker(self):
        w = Worker()
        w._is_running = True
        w._receive(b"EXITED")
        assert w._is_running is True
        w._receive(b"\n")
        assert w._is_running is False

    def test_non_blocking_restores_mode(self):
        """Blocking mode is restored even when the block raises."""
        read_fd, write_fd = os.pipe()
        try:
            with pytest.raises(RuntimeError):
                with non_blocking(read_fd):
                    assert os.get_blocking(read_fd) is False
                    raise RuntimeError("fail inside")
            assert os.get_blocking(read_fd) is True
        finally:
            os.close(read_fd)
            os.close(write_fd)


class TestBundledWrapper:
    """Worker driving the bundled wrapper harness."""

    def test_run_command_and_stop(self):
        from pararunner.options import DEFAULT_WRAPPER

        w = Worker()
        w.start(DEFAULT_WRAPPER, 1, interpreter=sys.executable)
        try:
            w.execute(shlex.join([sys.executable, "-c", "print('hello from batch')"]))
            assert wait_until(w.is_free)
            assert "hello from batch\n" in w.output
        finally:
            w.stop()
            assert w.wait_for_stop(timeout=10) == 0
        assert w.is_running() is False
