"""Local deterministic agent for integration tests and smoke runs."""

from __future__ import annotations

import argparse
import os
import sys


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt (argument or stdin) and exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="", help="Text written to stderr.")
    parser.add_argument("--print-env", action="append", default=[], help="Variable to print.")
    parser.add_argument("--print-cwd", action="store_true")
    parser.add_argument("prompt", nargs="?", default=None)
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()
    sys.stdout.write(f"{prompt}\n")
    for name in args.print_env:
        sys.stdout.write(f"{name}={os.environ.get(name, '')}\n")
    if args.print_cwd:
        sys.stdout.write(f"cwd={os.getcwd()}\n")
    if args.stderr:
        sys.stderr.write(args.stderr)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
