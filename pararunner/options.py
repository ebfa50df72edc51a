"""
Runner Options
==============

Immutable configuration for test selection, batching and worker pooling.

Every recognized option is declared on RunnerOptions with its default.
Options can be built directly, or loaded from the environment (and an
optional .env file) with RunnerOptions.from_env().
"""

from pathlib import Path
from typing import Optional, Tuple, Dict, Any, Pattern
import logging
import os
import re
import sys

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "PARARUNNER_"

DEFAULT_WRAPPER = str(Path(__file__).parent / "wrapper.py")

_PATTERN_FLAGS = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
    'x': re.VERBOSE,
    'u': 0,
}


def compile_filter(pattern: str) -> Pattern:
    """
    Compile a name filter.

    A pattern starting with "/" is already delimited ("/expr/flags"),
    anything else is used as a bare expression.

    Raises:
        ValueError: If the pattern is malformed
    """
    if not pattern.startswith('/'):
        return re.compile(pattern)

    end = pattern.rfind('/')
    if end == 0:
        raise ValueError(f"Unterminated filter pattern: {pattern}")

    flags = 0
    for char in pattern[end + 1:]:
        if char not in _PATTERN_FLAGS:
            raise ValueError(f"Unknown filter modifier '{char}' in {pattern}")
        flags |= _PATTERN_FLAGS[char]

    return re.compile(pattern[1:end], flags)


class RunnerOptions(BaseModel):
    """Selection, batching and pool configuration."""

    model_config = ConfigDict(frozen=True)

    processes: int = Field(5, ge=1, description="Number of parallel workers")
    functional: bool = Field(False, description="Batch test methods instead of whole classes")
    max_batch_size: int = Field(0, ge=0, description="Maximum tests per batch (0 = one test per batch)")
    groups: Tuple[str, ...] = Field((), description="Only run tests in one of these groups")
    exclude_groups: Tuple[str, ...] = Field((), description="Never run tests in these groups")
    filter: Optional[str] = Field(None, description="Regex matched against Class::method")
    test_binary: str = Field("phpunit", description="Test runner invoked for every batch")
    test_options: Dict[str, str] = Field(default_factory=dict, description="Extra --name value pairs")
    wrapper: str = Field(DEFAULT_WRAPPER, description="Worker harness started in every subprocess")
    interpreter: str = Field(sys.executable, description="Interpreter used to start the wrapper")
    unique_token: Optional[str] = Field(None, description="Token shared by all workers of one run")
    runner_id: Optional[str] = Field(None, description="Identifier of this runner instance")
    coverage: bool = Field(False, description="Collect a coverage file per batch")
    poll_interval: float = Field(0.01, ge=0, description="Seconds between dispatch loop iterations")
    strict_dependencies: bool = Field(False, description="Fail when a @depends target has no batch")

    @field_validator('filter')
    @classmethod
    def _validate_filter(cls, value: Optional[str]) -> Optional[str]:
        if value:
            try:
                compile_filter(value)
            except re.error as e:
                raise ValueError(f"Invalid filter pattern {value!r}: {e}")
        return value

    @property
    def effective_batch_size(self) -> int:
        """Batch size used by the batcher; only honored in functional mode."""
        return self.max_batch_size if self.functional else 0

    def compiled_filter(self) -> Optional[Pattern]:
        if not self.filter:
            return None
        return compile_filter(self.filter)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides: Any) -> "RunnerOptions":
        """
        Build options from PARARUNNER_* environment variables.

        Args:
            env_file: Optional .env file loaded before reading the environment
            **overrides: Explicit values, taking precedence over the environment

        Returns:
            Validated RunnerOptions
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        values: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name in ('groups', 'exclude_groups'):
                values[name] = tuple(g.strip() for g in raw.split(',') if g.strip())
            elif name == 'test_options':
                values[name] = _parse_pairs(raw)
            elif field.annotation is bool:
                values[name] = raw.strip().lower() in ('1', 'true', 'yes', 'on')
            else:
                values[name] = raw

        values.update(overrides)
        logger.debug(f"Loaded runner options from environment: {sorted(values)}")
        return cls(**values)


def _parse_pairs(raw: str) -> Dict[str, str]:
    """Parse "name=value,name2=value2" into a dict."""
    pairs = {}
    for item in raw.split(','):
        if not item.strip():
            continue
        name, _, value = item.partition('=')
        pairs[name.strip()] = value.strip()
    return pairs
