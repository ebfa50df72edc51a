"""
Worker Pool
===========

Dispatches method batches to a fixed set of workers.

Key Features:
- Starts N workers with distinct numeric tokens and a shared run token
- Assigns the next pending test to the first free worker
- Reports each completed test through a feedback callback
- Takes crashed or vanished workers out of rotation and reports their test as failed
- Requeues a test whose command could not be sent to its worker
- Stops all workers once every test has been dispatched and finished
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Sequence
import logging
import time

from pararunner.executable import CommandBuilder, ExecutableTest
from pararunner.options import RunnerOptions
from pararunner.worker import (
    Worker,
    WorkerCrashedError,
    WorkerError,
    WorkerExitedError,
    WorkerNotStartedError,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkerCrash:
    """
    A worker taken out of rotation.

    Attributes:
        token: Token of the crashed worker
        test: Test that was running (None if idle)
        error: Why the worker left, with last command and captured output
    """
    token: Optional[int]
    test: Optional[ExecutableTest]
    error: WorkerError


@dataclass
class PoolResult:
    """
    Outcome of a pool run.

    Attributes:
        completed: Tests whose batch finished, in completion order
        crashes: Workers that crashed, with the test they were running
        unassigned: Tests never dispatched because no worker was left
        duration: Wall time of the run in seconds
    """
    completed: List[ExecutableTest] = field(default_factory=list)
    crashes: List[WorkerCrash] = field(default_factory=list)
    unassigned: List[ExecutableTest] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.crashes and not self.unassigned

    @property
    def failed(self) -> List[ExecutableTest]:
        return [c.test for c in self.crashes if c.test is not None] + self.unassigned


class WorkerPool:
    """
    Fixed-size pool of workers fed from a single pending queue.

    One control flow polls the workers; no test is ever queued twice or
    assigned to two workers.
    """

    def __init__(
        self,
        options: Optional[RunnerOptions] = None,
        feedback_callback: Optional[Callable[[ExecutableTest], None]] = None,
        command_builder: Optional[Callable[[ExecutableTest], str]] = None,
        worker_factory: Callable[[], Worker] = Worker
    ):
        """
        Initialize worker pool.

        Args:
            options: Pool and command options (defaults if omitted)
            feedback_callback: Called once per completed test
            command_builder: Builds worker commands (defaults to the options' test binary)
            worker_factory: Creates the pool's workers
        """
        self.options = options or RunnerOptions()
        self.feedback_callback = feedback_callback
        self.command_builder = command_builder or CommandBuilder(
            binary=self.options.test_binary,
            options=dict(self.options.test_options),
            coverage=self.options.coverage
        )
        self.worker_factory = worker_factory
        self.workers: List[Worker] = []
        logger.info(f"WorkerPool initialized (processes={self.options.processes})")

    def start(self) -> None:
        """Start one worker per configured process, with tokens 1..N."""
        for token in range(1, self.options.processes + 1):
            worker = self.worker_factory()
            worker.start(
                self.options.wrapper,
                token,
                self.options.unique_token,
                self.options.runner_id,
                interpreter=self.options.interpreter
            )
            self.workers.append(worker)

    def run(self, tests: Sequence[ExecutableTest]) -> PoolResult:
        """
        Run all tests and stop the workers.

        Args:
            tests: Tests in dispatch order

        Returns:
            PoolResult with completed, crashed and unassigned tests
        """
        if not self.workers:
            self.start()

        start_time = time.time()
        result = PoolResult()
        pending: Deque[ExecutableTest] = deque(tests)
        active: List[Worker] = list(self.workers)

        logger.info(f"Dispatching {len(pending)} tests to {len(active)} workers")

        while active:
            busy = False
            for worker in list(active):
                try:
                    free = worker.is_free()
                except (WorkerCrashedError, WorkerExitedError) as e:
                    result.crashes.append(WorkerCrash(
                        token=worker.token,
                        test=worker.currently_executing,
                        error=e
                    ))
                    active.remove(worker)
                    continue

                if not free:
                    busy = True
                    continue

                if worker.currently_executing is not None:
                    if self.feedback_callback:
                        worker.print_feedback(self.feedback_callback)
                    result.completed.append(worker.currently_executing)
                    worker.reset()

                if pending:
                    test = pending.popleft()
                    try:
                        worker.assign(test, self.command_builder)
                    except WorkerNotStartedError as e:
                        # the command never reached the worker, another one can run it
                        logger.error(f"Worker {worker.token} is gone, requeueing {test.name}: {e}")
                        pending.appendleft(test)
                        result.crashes.append(WorkerCrash(token=worker.token, test=None, error=e))
                        active.remove(worker)
                        continue
                    busy = True

            if not busy and not pending:
                break
            if self.options.poll_interval:
                time.sleep(self.options.poll_interval)

        if pending:
            logger.error(f"No workers left, {len(pending)} tests were never run")
            result.unassigned.extend(pending)

        for worker in active:
            worker.stop()

        result.duration = time.time() - start_time
        logger.info(
            f"Pool run finished in {result.duration:.2f}s: "
            f"{len(result.completed)} completed, {len(result.crashes)} crashed workers, "
            f"{len(result.unassigned)} unassigned"
        )
        return result

    def wait_for_stop(self, timeout: Optional[float] = None) -> None:
        """Block until every stopped worker process has exited."""
        for worker in self.workers:
            worker.wait_for_stop(timeout=timeout)
