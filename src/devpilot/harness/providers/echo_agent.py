"""Local deterministic agent for CLI provider integration tests and demos."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Read the prompt and print a fixed or canned reply."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument("--prompt", required=False)
    parser.add_argument("--reply", default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    args, _ = parser.parse_known_args(argv)

    if args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
    elif args.prompt is not None:
        prompt = args.prompt
    else:
        parser.error("Either --prompt-file or --prompt is required")

    if args.reply is not None:
        print(args.reply)
    else:
        first_line = next((line for line in prompt.splitlines() if line.strip()), "")
        print("Prompt received.")
        print(f"Step: {first_line.strip()}")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
