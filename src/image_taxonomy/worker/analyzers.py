"""Analyzer backends invoked by the worker.

The analysis itself is opaque to this package: an analyzer receives the path
of a staged image and returns a JSON object holding ``violations``. Other keys, including a
proposed title or taxonomy, are dropped so producer metadata stays intact.
"""

from __future__ import annotations

import json
import shlex
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from image_taxonomy.errors import AnalysisError

ANALYZER_RESULT_KEYS = ("violations",)


class Analyzer(Protocol):
    """Protocol implemented by analyzer backends."""

    def analyze(self, image_path: Path) -> dict[str, Any]:
        """Return the analysis result for one image or raise ``AnalysisError``."""


class CommandAnalyzer:
    """Run an external command; its stdout must be one JSON object.

    ``command_template`` may reference ``{image_path}``; when it does not, the
    path is appended as the last argument.
    """

    def __init__(self, command_template: str, *, timeout_seconds: int = 300) -> None:
        if not command_template.strip():
            raise ValueError("Analyzer command template is empty.")
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def analyze(self, image_path: Path) -> dict[str, Any]:
        args = _build_args(self.command_template, image_path)
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise AnalysisError(f"Analyzer command not found: {args[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise AnalysisError(
                f"Analyzer timed out after {self.timeout_seconds}s",
            ) from error
        except OSError as error:
            raise AnalysisError(f"Analyzer failed to start: {error}") from error

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[-500:]
            raise AnalysisError(f"Analyzer exited with code {completed.returncode}: {stderr}")
        return normalize_result(completed.stdout)


class EchoAnalyzer:
    """Deterministic stand-in returning a fixed result."""

    def __init__(self, result: Mapping[str, Any] | None = None) -> None:
        self.result = dict(result) if result is not None else {"violations": {}}
        self.calls: list[Path] = []

    def analyze(self, image_path: Path) -> dict[str, Any]:
        self.calls.append(image_path)
        return normalize_result(json.dumps(self.result))


def normalize_result(raw: str) -> dict[str, Any]:
    """Parse analyzer output into a result payload.

    Output must be a JSON object; unknown keys are dropped and ``violations``
    must itself be an object.
    """

    text = raw.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as error:
        raise AnalysisError(f"JSON parsing error: {error}") from error
    if not isinstance(parsed, dict):
        raise AnalysisError("Analyzer output must be a JSON object.")

    result = {key: parsed[key] for key in ANALYZER_RESULT_KEYS if parsed.get(key) is not None}
    violations = result.setdefault("violations", {})
    if not isinstance(violations, dict):
        raise AnalysisError("Analyzer 'violations' must be a JSON object.")
    return result


def _build_args(command_template: str, image_path: Path) -> list[str]:
    parts = shlex.split(command_template)
    if any("{image_path}" in part for part in parts):
        return [part.replace("{image_path}", str(image_path)) for part in parts]
    return [*parts, str(image_path)]
