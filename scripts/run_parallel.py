#!/usr/bin/env python3
"""
Run a discovered test suite in parallel.

Reads a JSON manifest produced by test discovery and runs its test methods
across a pool of workers.

Manifest format:
    [
        {
            "name": "Acme\\UserTest",
            "path": "tests/UserTest.php",
            "methods": [{"name": "testCreate", "doc_block": "/** @group db */"}],
            "data_providers": {"userProvider": [0, 1, "admin"]}
        }
    ]

Usage:
    python scripts/run_parallel.py manifest.json --processes 4 --functional --max-batch-size 10

Options not given on the command line are read from PARARUNNER_* variables
(and a .env file in the current directory).
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pararunner.batcher import Batcher
from pararunner.executable import ParsedClass, ParsedMethod
from pararunner.options import RunnerOptions
from pararunner.pool import WorkerPool


def load_manifest(path: Path):
    """Load parsed classes and their data providers from a manifest file."""
    data = json.loads(path.read_text(encoding='utf-8'))
    classes = []
    providers = {}
    for entry in data:
        classes.append(ParsedClass(
            name=entry['name'],
            path=entry['path'],
            methods=tuple(
                ParsedMethod(name=m['name'], doc_block=m.get('doc_block', ''))
                for m in entry.get('methods', [])
            )
        ))
        for provider, keys in entry.get('data_providers', {}).items():
            providers[(entry['name'], provider)] = {key: None for key in keys}
    return classes, providers


def main():
    parser = argparse.ArgumentParser(
        description="Run test method batches in parallel worker processes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_parallel.py manifest.json
  python scripts/run_parallel.py manifest.json --processes 8 --functional --max-batch-size 5
  python scripts/run_parallel.py manifest.json --group db --exclude-group slow
  python scripts/run_parallel.py manifest.json --filter 'UserTest::testCreate'
        """
    )
    parser.add_argument('manifest', type=Path, help='JSON manifest of discovered test classes')
    parser.add_argument('--processes', type=int, help='Number of parallel workers')
    parser.add_argument('--functional', action='store_true', default=None, help='Batch test methods')
    parser.add_argument('--max-batch-size', type=int, help='Maximum tests per batch')
    parser.add_argument('--group', action='append', dest='groups', help='Only run this group')
    parser.add_argument('--exclude-group', action='append', dest='exclude_groups', help='Skip this group')
    parser.add_argument('--filter', help='Regex matched against Class::method')
    parser.add_argument('--test-binary', help='Test runner executable')
    parser.add_argument('--runner-id', help='Identifier exported to the workers')
    parser.add_argument('--coverage', action='store_true', default=None, help='Collect coverage files')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    overrides = {
        name: value for name, value in {
            'processes': args.processes,
            'functional': args.functional,
            'max_batch_size': args.max_batch_size,
            'groups': tuple(args.groups) if args.groups else None,
            'exclude_groups': tuple(args.exclude_groups) if args.exclude_groups else None,
            'filter': args.filter,
            'test_binary': args.test_binary,
            'runner_id': args.runner_id,
            'coverage': args.coverage,
        }.items()
        if value is not None
    }
    options = RunnerOptions.from_env(**overrides)

    classes, providers = load_manifest(args.manifest)
    batcher = Batcher(options, data_provider_resolver=lambda cls, name: providers[(cls, name)])
    batcher.load(classes)
    tests = batcher.get_test_methods()

    def feedback(test):
        print(f"  [DONE] {test.name}")

    pool = WorkerPool(options, feedback_callback=feedback)
    result = pool.run(tests)
    pool.wait_for_stop(timeout=30)

    for crash in result.crashes:
        print(f"\nERROR: {crash.error}", file=sys.stderr)
    if result.unassigned:
        print(f"\nERROR: {len(result.unassigned)} batches were never run", file=sys.stderr)

    print(f"\n{len(result.completed)}/{len(tests)} batches completed in {result.duration:.1f}s")
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
