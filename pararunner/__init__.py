"""
Parallel Test Runner
====================

Runs batches of test methods in parallel across long-lived worker processes.

Main Components:
- Batcher: Groups discovered test methods into batches, honoring @depends
- Worker: Supervises one worker subprocess and its line-based pipe protocol
- WorkerPool: Feeds batches to free workers and collects the outcome

Usage:
    from pararunner import Batcher, RunnerOptions, WorkerPool

    options = RunnerOptions(processes=4, functional=True, max_batch_size=10)
    batcher = Batcher(options)
    batcher.load(parsed_classes)
    result = WorkerPool(options).run(batcher.get_test_methods())
"""

from pararunner.options import RunnerOptions
from pararunner.executable import (
    CommandBuilder,
    ExecutableTest,
    ParsedClass,
    ParsedMethod,
    Suite,
    TestMethod,
)
from pararunner.batcher import Batcher, DependencyNotFoundError
from pararunner.worker import (
    Worker,
    WorkerError,
    WorkerNotStartedError,
    WorkerSpawnError,
    WorkerAlreadyAssignedError,
    WorkerCrashedError,
    WorkerProtocolError,
    WorkerExitedError,
)
from pararunner.pool import PoolResult, WorkerPool

__all__ = [
    'RunnerOptions',
    'CommandBuilder',
    'ExecutableTest',
    'ParsedClass',
    'ParsedMethod',
    'Suite',
    'TestMethod',
    'Batcher',
    'DependencyNotFoundError',
    'Worker',
    'WorkerError',
    'WorkerNotStartedError',
    'WorkerSpawnError',
    'WorkerAlreadyAssignedError',
    'WorkerCrashedError',
    'WorkerProtocolError',
    'WorkerExitedError',
    'PoolResult',
    'WorkerPool',
]
