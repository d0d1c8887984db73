"""
Pipeline error taxonomy.

Duplicate input and policy vetoes are not errors: ingestion reports the
former as ``is_new=False`` and the rule engine returns a ``RuleDecision``
for the latter. Transport errors live with the channel senders.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for errors raised by the response pipeline."""


class GenerationError(PipelineError):
    """The generation collaborator failed, timed out or returned garbage."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RateLimited(PipelineError):
    """A send gate is closed; retry after ``retry_after`` seconds without using an attempt."""

    def __init__(self, gate: str, retry_after: float):
        super().__init__(f"{gate} rate limit, retry in {retry_after:.2f}s")
        self.gate = gate
        self.retry_after = retry_after


class QueueInvariantError(PipelineError):
    """An operation would break the outbound queue's state rules."""


class ItemNotFoundError(PipelineError):
    pass
