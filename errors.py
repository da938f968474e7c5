"""
Error taxonomy for the auto-fill pipeline.

Only InvalidImage and AggregationEmpty are meant to reach interactive callers.
ProviderUnavailable is absorbed by the provider manager (fallback kicks in),
queue failures are recorded on the queue item, and duplicate feedback is
stored but never re-applied to the learned weights.
"""
from __future__ import annotations


class AutofillError(Exception):
    """Base class for all pipeline errors."""


class ProviderUnavailable(AutofillError):
    """The remote vision provider failed, timed out, or returned an unusable body."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"[{provider}] {reason}")
        self.provider = provider
        self.reason = reason


class InvalidImage(AutofillError):
    """Image bytes could not be decoded. Fatal for that one image only."""

    def __init__(self, reason: str, image_ref: str = ""):
        label = f" ({image_ref})" if image_ref else ""
        super().__init__(f"Invalid image{label}: {reason}")
        self.image_ref = image_ref


class QueueItemExhausted(AutofillError):
    """A queue item used up all of its attempts and is now permanently failed."""

    def __init__(self, queue_id: int, attempts: int, last_error: str = ""):
        super().__init__(
            f"Queue item {queue_id} exhausted after {attempts} attempts: {last_error}"
        )
        self.queue_id = queue_id
        self.attempts = attempts


class AggregationEmpty(AutofillError):
    """No usable per-image result was available to aggregate."""

    def __init__(self, message: str = "No images could be processed"):
        super().__init__(message)


class DuplicateFeedback(AutofillError):
    """Feedback for this suggestion was already applied to the learned weights."""

    def __init__(self, suggestion_id: int):
        super().__init__(f"Feedback for suggestion {suggestion_id} was already processed")
        self.suggestion_id = suggestion_id


class SuggestionNotFound(AutofillError):
    def __init__(self, suggestion_id: int):
        super().__init__(f"Suggestion {suggestion_id} not found")
        self.suggestion_id = suggestion_id
