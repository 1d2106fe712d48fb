"""Local demo analyzer for command backend smoke tests."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Print a deterministic analysis result for one image."""

    parser = argparse.ArgumentParser()
    parser.add_argument("image_path")
    parser.add_argument("--violation", action="append", default=[], help="name=score")
    args = parser.parse_args(argv)

    image_path = Path(args.image_path)
    size = image_path.stat().st_size
    violations: dict[str, float] = {}
    for item in args.violation:
        name, _, score = item.partition("=")
        violations[name] = float(score or 1.0)

    if size == 0:
        violations.setdefault("empty", 1.0)

    json.dump({"violations": violations}, sys.stdout)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
