"""Error taxonomy shared by the producer, the worker, and the HTTP surface."""

from __future__ import annotations


class ImageTaxonomyError(RuntimeError):
    """Base class for domain errors."""


class ValidationError(ImageTaxonomyError):
    """Bad or missing input at submission time.

    ``field_errors`` maps form field names to human readable messages so the
    caller can re-render the form with inline errors.
    """

    def __init__(self, field_errors: dict[str, str]) -> None:
        self.field_errors = dict(field_errors)
        summary = "; ".join(f"{name}: {message}" for name, message in self.field_errors.items())
        super().__init__(f"Validation failed: {summary}")


class NotFound(ImageTaxonomyError):
    """Unknown work item identifier."""

    def __init__(self, work_item_id: int) -> None:
        self.work_item_id = work_item_id
        super().__init__(f"Work item not found: {work_item_id}")


class InvalidTransition(ImageTaxonomyError):
    """Attempted status change that the state machine does not allow."""

    def __init__(self, current: str, new: str) -> None:
        self.current = current
        self.new = new
        super().__init__(f"Invalid status transition: {current} -> {new}")


class EnqueueError(ImageTaxonomyError):
    """Queue unreachable at publish time; analysis never started."""

    def __init__(self, message: str, *, work_item_id: int | None = None) -> None:
        self.work_item_id = work_item_id
        super().__init__(message)


class DescriptorError(ImageTaxonomyError):
    """Queue payload that does not follow the descriptor wire format."""


class AnalysisError(ImageTaxonomyError):
    """Analyzer could not produce a usable result."""
