#!/usr/bin/env python3
"""
Worker harness started in every worker subprocess.

Reads one command per line from stdin and runs it, forwarding its output to
stdout followed by a FINISHED line. The EXIT command makes the harness print
EXITED and terminate.
"""

import shlex
import subprocess
import sys

FINISHED = "FINISHED"
EXITED = "EXITED"
EXIT_COMMAND = "EXIT"


def run_command(command: str, stdout) -> int:
    """Run one command, writing its combined output to stdout. Returns its exit status."""
    try:
        completed = subprocess.run(
            shlex.split(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT
        )
    except (OSError, ValueError) as e:
        stdout.write(f"Could not run {command!r}: {e}\n")
        return 127

    output = completed.stdout.decode('utf-8', errors='replace')
    if output and not output.endswith("\n"):
        output += "\n"
    stdout.write(output)
    return completed.returncode


def main(stdin=None, stdout=None) -> int:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    for raw in stdin:
        command = raw.rstrip("\n")
        if command == EXIT_COMMAND:
            stdout.write(f"{EXITED}\n")
            stdout.flush()
            return 0
        if command.strip():
            run_command(command, stdout)
        stdout.write(f"{FINISHED}\n")
        stdout.flush()

    return 0


if __name__ == "__main__":
    sys.exit(main())
