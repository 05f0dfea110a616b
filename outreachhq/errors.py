"""
Error taxonomy for the campaign engine.

Every error carries a stable ``code`` used by the HTTP layer and an optional
``details`` dict for the caller.
"""
from typing import Any, Dict, Optional


class CampaignError(Exception):
    """Base class for all campaign engine errors."""

    code = "CAMPAIGN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(CampaignError):
    """Bad caller input. Never retried automatically."""

    code = "VALIDATION_ERROR"


class NotFoundError(CampaignError):
    """Unknown campaign, recipient or template."""

    code = "NOT_FOUND"


class ConflictError(CampaignError):
    """Operation is illegal in the current state, or a run is already active."""

    code = "CONFLICT"


class InvariantViolation(CampaignError):
    """Programming or ordering bug. Fatal to the operation that hit it."""

    code = "INVARIANT_VIOLATION"


class GenerationFailure(CampaignError):
    """A single generation call failed."""

    code = "GENERATION_FAILED"
    transient = False

    def __init__(self, message: str, kind: str = "unknown", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.kind = kind


class TransientGenerationFailure(GenerationFailure):
    """Timeout, rate limit or upstream outage. Retried with backoff."""

    transient = True


class PermanentGenerationFailure(GenerationFailure):
    """Validation or content-policy rejection, or missing recipient. Not retried."""


class PublishFailure(CampaignError):
    """The delivery queue did not acknowledge the batch."""

    code = "PUBLISH_FAILED"
