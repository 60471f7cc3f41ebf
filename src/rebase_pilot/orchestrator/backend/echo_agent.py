"""Local deterministic agent for CLI generator integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Print a candidate built from the request file."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--request-file", required=True)
    parser.add_argument(
        "--strategy",
        choices=("ours", "theirs", "union", "fenced", "fail", "rate-limited"),
        default="union",
    )
    parser.add_argument("--sleep", type=float, default=0.0)
    args = parser.parse_args(argv)

    if args.sleep:
        time.sleep(args.sleep)

    request = json.loads(Path(args.request_file).read_text("utf-8"))
    ours = str(request.get("ours") or "")
    theirs = str(request.get("theirs") or "")

    if args.strategy == "fail":
        sys.stderr.write("echo agent: refusing to resolve\n")
        return 2
    if args.strategy == "rate-limited":
        sys.stderr.write("429 Too Many Requests\n")
        return 1
    if args.strategy == "ours":
        sys.stdout.write(ours)
    elif args.strategy == "theirs":
        sys.stdout.write(theirs)
    elif args.strategy == "fenced":
        sys.stdout.write(f"Here is the resolution:\n```\n{theirs}```\n")
    else:
        merged = ours.splitlines(keepends=True)
        merged.extend(line for line in theirs.splitlines(keepends=True) if line not in merged)
        sys.stdout.write("".join(merged))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
