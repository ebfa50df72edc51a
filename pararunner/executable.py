"""
Executable Tests
================

Units of work handed to workers, and the discovery types they are built from.

Discovery (parsing test files into classes and methods) happens outside this
package; it produces ParsedClass / ParsedMethod values. The Batcher turns
those into TestMethod instances, one per method batch, and workers run them
through the command string each one generates.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Sequence
import logging
import os
import re
import shlex
import tempfile

logger = logging.getLogger(__name__)

DATA_SET_MARKER = ' with data set '


@dataclass(frozen=True)
class ParsedMethod:
    """
    A test method as reported by discovery.

    Attributes:
        name: Method name
        doc_block: Raw doc block, source of @group/@depends/@dataProvider
    """
    name: str
    doc_block: str = ""


@dataclass(frozen=True)
class ParsedClass:
    """
    A test class as reported by discovery.

    Attributes:
        name: Fully-qualified class name
        path: Source file containing the class
        methods: Test methods in source order
    """
    name: str
    path: str
    methods: Sequence[ParsedMethod] = ()


class ExecutableTest:
    """
    Something a worker can run with one command.

    Owns the temporary files the test runner writes into: a result log and,
    when coverage is collected, a coverage file.
    """

    def __init__(self, path: str):
        self.path = path
        self._temp_file: Optional[str] = None
        self._coverage_file: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path

    @property
    def temp_file(self) -> str:
        """Result log written by the test runner."""
        if self._temp_file is None:
            self._temp_file = _reserve_temp_file('PT_')
        return self._temp_file

    @property
    def coverage_file_name(self) -> str:
        """Coverage artifact written by the test runner."""
        if self._coverage_file is None:
            self._coverage_file = _reserve_temp_file('CV_')
        return self._coverage_file

    def filter_pattern(self) -> Optional[str]:
        """Filter restricting the run to this test; None runs the whole file."""
        return None

    def command(self, binary: str, options: Optional[Dict[str, str]] = None) -> str:
        """
        Build the command line that runs this test.

        Args:
            binary: Test runner executable
            options: Extra "--name value" options; empty values become flags

        Returns:
            Shell-quoted command string
        """
        args = [binary]
        for name, value in (options or {}).items():
            args.append(f'--{name}')
            if value != '':
                args.append(str(value))

        pattern = self.filter_pattern()
        if pattern is not None:
            args.extend(['--filter', pattern])
        args.append(self.path)

        return ' '.join(shlex.quote(a) for a in args)

    def delete_files(self) -> None:
        """Remove any temporary files allocated for this test."""
        for path in (self._temp_file, self._coverage_file):
            if path and os.path.exists(path):
                os.unlink(path)
        self._temp_file = None
        self._coverage_file = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class TestMethod(ExecutableTest):
    """
    A batch of test names from one class, run together in one command.

    The filter generated for the command matches exactly the names of the
    batch: plain method names also match their data sets, while data set
    names match only themselves.
    """

    # not a pytest test class
    __test__ = False

    def __init__(self, path: str, names: Sequence[str], class_name: str = ""):
        super().__init__(path)
        self.names: List[str] = list(names)
        self.class_name = class_name

    @property
    def name(self) -> str:
        return ', '.join(self.names)

    def filter_pattern(self) -> str:
        alternatives = []
        for test_name in self.names:
            quoted = re.escape(test_name)
            if DATA_SET_MARKER in test_name:
                alternatives.append(quoted + '$')
            else:
                alternatives.append(quoted + r'\b')
        prefix = re.escape(self.class_name) + '::' if self.class_name else ''
        return f"/{prefix}(?:{'|'.join(alternatives)})/"

    def __len__(self) -> int:
        return len(self.names)


@dataclass
class Suite:
    """
    All method batches of one test class file.

    Attributes:
        path: Test file path
        name: Class name
        functions: TestMethod per batch, in batch order
    """
    path: str
    name: str
    functions: List[TestMethod] = field(default_factory=list)


@dataclass(frozen=True)
class CommandBuilder:
    """
    Turns an ExecutableTest into the command line a worker sends.

    Attributes:
        binary: Test runner executable
        options: Extra options passed to every command
        coverage: Whether to ask the runner for a coverage file
        log_results: Whether to ask the runner for a result log
    """
    binary: str
    options: Dict[str, str] = field(default_factory=dict)
    coverage: bool = False
    log_results: bool = True

    def build(self, test: ExecutableTest) -> str:
        options = dict(self.options)
        if self.log_results:
            options['log-junit'] = test.temp_file
        if self.coverage:
            options['coverage-php'] = test.coverage_file_name
        return test.command(self.binary, options)

    __call__ = build


def _reserve_temp_file(prefix: str) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix)
    os.close(fd)
    return path
