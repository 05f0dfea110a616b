"""
Generation service client.

The orchestrator only depends on ``GenerationService``; the HTTP client below
is the production implementation. Failures are raised as
TransientGenerationFailure (retried) or PermanentGenerationFailure (not).
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import requests

from ..config import Settings
from ..engine.chat_history import ChatTurn
from ..errors import PermanentGenerationFailure, TransientGenerationFailure

logger = logging.getLogger(__name__)

# Status codes worth retrying; everything else in 4xx is a rejection
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass
class GeneratedEmail:
    subject: str
    body: str


@dataclass
class PriorDraft:
    """What the recipient's draft looked like before this regeneration"""
    subject: str
    body: str

    def to_dict(self) -> dict:
        return {"subject": self.subject, "body": self.body}


class GenerationService(ABC):
    """Produces one personalized email from the conversation so far."""

    @abstractmethod
    async def generate(
        self,
        history: Sequence[ChatTurn],
        recipient: Dict[str, Any],
        prior_draft: Optional[PriorDraft] = None,
        template: Optional[Dict[str, Any]] = None,
    ) -> GeneratedEmail:
        ...


class HttpGenerationService(GenerationService):
    """
    Calls the generation service over HTTP.

    ``requests`` is blocking, so each call runs in a worker thread. The
    orchestrator enforces the per-call timeout as well; the HTTP timeout here
    only keeps the worker thread from hanging forever.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpGenerationService":
        return cls(
            base_url=settings.generation_service_url,
            api_key=settings.generation_api_key,
            timeout=settings.generation_timeout_seconds,
        )

    async def generate(self, history, recipient, prior_draft=None, template=None) -> GeneratedEmail:
        payload = {
            "history": [turn.to_dict() for turn in history],
            "recipient": recipient,
            "prior_draft": prior_draft.to_dict() if prior_draft else None,
            "template": template,
        }
        return await asyncio.to_thread(self._post, payload)

    def _post(self, payload: dict) -> GeneratedEmail:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = requests.post(
                f"{self.base_url}/generate",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientGenerationFailure(f"Generation request timed out: {e}", kind="timeout")
        except requests.exceptions.ConnectionError as e:
            raise TransientGenerationFailure(f"Generation service unreachable: {e}", kind="unavailable")

        if response.status_code in TRANSIENT_STATUS_CODES:
            kind = "rate_limit" if response.status_code == 429 else "unavailable"
            raise TransientGenerationFailure(
                f"Generation service returned {response.status_code}", kind=kind
            )
        if response.status_code >= 400:
            kind = "content_policy" if response.status_code == 451 else "validation"
            raise PermanentGenerationFailure(
                f"Generation rejected ({response.status_code}): {response.text[:200]}", kind=kind
            )

        try:
            data = response.json()
        except ValueError:
            raise PermanentGenerationFailure("Generation service returned invalid JSON", kind="validation")

        subject = (data.get("subject") or "").strip()
        body = (data.get("body") or "").strip()
        if not subject or not body:
            raise PermanentGenerationFailure("Generation service returned an empty email", kind="validation")

        logger.debug(f"Generated email for recipient {payload['recipient'].get('id')}")
        return GeneratedEmail(subject=subject, body=body)
