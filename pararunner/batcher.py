"""
Batcher
=======

Groups discovered test methods into method batches for the worker pool.

Key Features:
- Applies group include/exclude filters and the Class::method name filter
- Expands data provider methods into one test per data set (functional mode)
- Keeps dependent tests in the batch of the method they depend on
- Fills batches up to the configured maximum batch size
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Sequence
import logging

from pararunner.annotations import parse_data_provider, parse_dependency, parse_groups
from pararunner.executable import ParsedClass, ParsedMethod, Suite, TestMethod
from pararunner.options import RunnerOptions

logger = logging.getLogger(__name__)

# (class name, provider method name) -> ordered mapping of data set key -> data
DataProviderResolver = Callable[[str, str], Mapping[Any, Any]]

MethodBatch = List[str]


class DependencyNotFoundError(Exception):
    """Raised when a @depends target has no batch and dependencies are strict."""
    pass


def data_set_name(method_name: str, key: Any) -> str:
    """Render the test name of one data set of a method."""
    if isinstance(key, int) and not isinstance(key, bool):
        return f'{method_name} with data set #{key}'
    return f'{method_name} with data set "{key}"'


class Batcher:
    """
    Converts parsed test classes into ordered method batches.

    Methods are processed in source order. A method declaring @depends joins
    every existing batch that already contains its dependee, regardless of
    batch size; other methods fill the last batch up to the size cap.
    """

    def __init__(
        self,
        options: Optional[RunnerOptions] = None,
        data_provider_resolver: Optional[DataProviderResolver] = None
    ):
        """
        Initialize batcher.

        Args:
            options: Selection and batching options (defaults if omitted)
            data_provider_resolver: Callback returning the data sets of a provider
        """
        self.options = options or RunnerOptions()
        self.data_provider_resolver = data_provider_resolver
        self._filter: Optional[Pattern] = self.options.compiled_filter()
        self._suites: Dict[str, Suite] = {}

    def load(self, classes: Sequence[ParsedClass]) -> Dict[str, Suite]:
        """
        Build one suite per test class path.

        Args:
            classes: Parsed test classes from discovery

        Returns:
            Mapping of path to Suite, in discovery order
        """
        for parsed_class in classes:
            tests = [
                TestMethod(parsed_class.path, batch, parsed_class.name)
                for batch in self.group(parsed_class)
            ]
            self._suites[parsed_class.path] = Suite(
                path=parsed_class.path,
                name=parsed_class.name,
                functions=tests
            )

        logger.info(
            f"Loaded {len(self._suites)} suites, "
            f"{sum(len(s.functions) for s in self._suites.values())} method batches"
        )
        return self._suites

    def get_suites(self) -> Dict[str, Suite]:
        return self._suites

    def get_test_methods(self) -> List[TestMethod]:
        """All TestMethods of all loaded suites, in order."""
        methods: List[TestMethod] = []
        for suite in self._suites.values():
            methods.extend(suite.functions)
        return methods

    def group(self, parsed_class: ParsedClass) -> List[MethodBatch]:
        """
        Compute the method batches of one class.

        Args:
            parsed_class: Class with its methods in source order

        Returns:
            Ordered list of batches, each an ordered list of test names

        Raises:
            DependencyNotFoundError: If strict dependencies are enabled and a
                @depends target is not in any batch yet
        """
        max_batch_size = self.options.effective_batch_size
        batches: List[MethodBatch] = []

        for method in parsed_class.methods:
            tests = self.method_tests(parsed_class, method, use_data_provider=max_batch_size != 0)
            # a filter can legitimately match none of the method's tests
            if not tests:
                continue

            depends_on = parse_dependency(method.doc_block)
            if depends_on is not None:
                self._add_dependent_tests(batches, depends_on, tests, parsed_class.name)
            else:
                self._add_tests(batches, tests, max_batch_size)

        logger.debug(f"{parsed_class.name}: {len(batches)} batches {batches}")
        return batches

    def method_tests(
        self,
        parsed_class: ParsedClass,
        method: ParsedMethod,
        use_data_provider: bool = False
    ) -> List[str]:
        """
        List the test names a method expands to after filtering.

        Args:
            parsed_class: Owning class
            method: Method to expand
            use_data_provider: Expand data provider methods into data sets

        Returns:
            Surviving test names (empty if filtered out)
        """
        groups = parse_groups(method.doc_block)
        if not self.matches(parsed_class.name, method.name, groups):
            return []

        provider = parse_data_provider(method.doc_block)
        if not (use_data_provider and provider):
            return [method.name]

        if self.data_provider_resolver is None:
            raise ValueError(
                f"{parsed_class.name}::{method.name} uses data provider {provider} "
                f"but no data provider resolver is configured"
            )

        result = []
        for key in self.data_provider_resolver(parsed_class.name, provider).keys():
            test = data_set_name(method.name, key)
            if self.matches(parsed_class.name, test, groups):
                result.append(test)
        return result

    def matches(self, class_name: str, name: str, groups: Sequence[str]) -> bool:
        """Whether a test passes both the group and the name filter."""
        return self._match_groups(groups) and self._match_filter(class_name, name)

    def _match_groups(self, groups: Sequence[str]) -> bool:
        # tests without groups are never filtered by group
        if not groups:
            return True

        if self.options.groups and not set(groups) & set(self.options.groups):
            return False

        if self.options.exclude_groups and set(groups) & set(self.options.exclude_groups):
            return False

        return True

    def _match_filter(self, class_name: str, name: str) -> bool:
        if self._filter is None:
            return True
        return self._filter.search(f'{class_name}::{name}') is not None

    def _add_dependent_tests(
        self,
        batches: List[MethodBatch],
        depends_on: str,
        tests: List[str],
        class_name: str
    ) -> None:
        found = False
        for batch in batches:
            if depends_on in batch:
                batch.extend(tests)
                found = True

        if found:
            return

        if self.options.strict_dependencies:
            raise DependencyNotFoundError(
                f"{class_name}: {tests} depend on {depends_on}, which is not in any batch"
            )
        logger.warning(
            f"{class_name}: dropping {tests}, dependency {depends_on} is not in any batch"
        )

    @staticmethod
    def _add_tests(batches: List[MethodBatch], tests: List[str], max_batch_size: int) -> None:
        for test in tests:
            if batches and len(batches[-1]) < max_batch_size:
                batches[-1].append(test)
            else:
                batches.append([test])
