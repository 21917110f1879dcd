"""Pre-publication content classification and the moderation audit trail.

The gate asks an external text classifier whether content should be flagged.
It fails open: when the classifier is disabled, unreachable, slow or returns
something that does not parse, content is treated as not flagged. An audit
row is written only for flagged content, and only after the content exists.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ufresher.core.errors import ClassifierUnavailableError
from ufresher.core.settings import Settings
from ufresher.models.content import ContentItem
from ufresher.models.moderation import ModerationDecision

logger = logging.getLogger(__name__)

HTTP_OK = 200

SOURCE_CLASSIFIER = "classifier"
SOURCE_DISABLED = "disabled"
SOURCE_FAIL_OPEN = "fail-open"
SOURCE_SKIPPED = "skipped"
SOURCE_RECONCILED = "reconciled"

MODERATION_PROMPT = """Analyze the following content for a college community platform. Check for:
- Hate speech or discrimination
- Explicit or inappropriate content
- Violence or threats
- Spam or promotional content
- Academic dishonesty
- Personal attacks or bullying

Content: "{content}"

Respond with JSON only: {{"flagged": boolean, "reason": "brief explanation if flagged", "confidence": 0.0-1.0}}"""

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ClassifierVerdict(BaseModel):
    """Wire format of a classifier answer. Anything else is a parse failure."""

    model_config = ConfigDict(strict=True, extra="forbid")

    flagged: bool
    reason: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


def parse_verdict(raw: str) -> ClassifierVerdict:
    """Parse classifier output, tolerating only a markdown code fence around it.

    Raises:
        ClassifierUnavailableError: If the output is not a valid verdict.
    """
    text = raw.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        return ClassifierVerdict.model_validate_json(text)
    except ValidationError as err:
        raise ClassifierUnavailableError(f"Unparsable classifier output: {raw[:200]!r}") from err


@dataclass(frozen=True)
class Decision:
    """Outcome of a moderation check."""

    flagged: bool
    reason: str | None = None
    confidence: float | None = None
    source: str = SOURCE_CLASSIFIER
    raw: dict[str, Any] | None = None

    @classmethod
    def not_flagged(cls, source: str) -> Decision:
        return cls(flagged=False, source=source)


class ClassifierClient(Protocol):
    async def classify(self, prompt: str) -> str:
        """Return the classifier's raw text answer for ``prompt``."""

    async def close(self) -> None: ...


class GeminiClassifierClient:
    """HTTP client for a generateContent-style text classifier."""

    def __init__(self, base_url: str, api_key: str, model: str, timeout_seconds: float) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> GeminiClassifierClient:
        return cls(
            settings.classifier_base_url,
            settings.classifier_api_key or "",
            settings.classifier_model,
            settings.classifier_timeout_seconds,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=httpx.Timeout(self._timeout),
                )
        return self._client

    async def classify(self, prompt: str) -> str:
        client = await self._ensure_client()
        try:
            response = await client.post(
                f"/models/{self.model}:generateContent",
                params={"key": self._api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
            )
        except httpx.HTTPError as err:
            raise ClassifierUnavailableError(f"Classifier request failed: {err}") from err

        if response.status_code != HTTP_OK:
            raise ClassifierUnavailableError(
                f"Classifier returned HTTP {response.status_code}"
            )
        try:
            payload = response.json()
            return str(payload["candidates"][0]["content"]["parts"][0]["text"])
        except (ValueError, KeyError, IndexError, TypeError) as err:
            raise ClassifierUnavailableError("Classifier response has no text candidate") from err

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class ModerationGate:
    """Classify content before it is stored and record flagged decisions."""

    def __init__(
        self,
        client: ClassifierClient | None,
        *,
        enabled: bool = True,
        timeout_seconds: float = 8.0,
    ) -> None:
        self.client = client
        self.enabled = enabled and client is not None
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> ModerationGate:
        client = GeminiClassifierClient.from_settings(settings) if settings.classifier_configured else None
        return cls(
            client,
            enabled=settings.moderation_enabled,
            timeout_seconds=settings.classifier_timeout_seconds,
        )

    async def evaluate(self, text: str) -> Decision:
        """Return the moderation decision for ``text``; never raises for classifier trouble."""
        if not self.enabled or self.client is None:
            return Decision.not_flagged(SOURCE_DISABLED)

        prompt = MODERATION_PROMPT.format(content=text)
        try:
            raw = await asyncio.wait_for(self.client.classify(prompt), self.timeout_seconds)
            verdict = parse_verdict(raw)
        except TimeoutError:
            logger.warning("Classifier timed out after %.1fs; allowing content", self.timeout_seconds)
            return Decision.not_flagged(SOURCE_FAIL_OPEN)
        except ClassifierUnavailableError as exc:
            logger.warning("Classifier unavailable (%s); allowing content", exc)
            return Decision.not_flagged(SOURCE_FAIL_OPEN)

        return Decision(
            flagged=verdict.flagged,
            reason=verdict.reason,
            confidence=verdict.confidence,
            raw=verdict.model_dump(),
        )

    def record(self, db: Session, item: ContentItem, decision: Decision) -> ModerationDecision | None:
        """Write the audit row for a flagged decision about a stored item.

        Returns None for unflagged decisions. Writing twice for the same item
        returns the existing row. The caller commits.
        """
        if not decision.flagged:
            return None
        if item.id is None:
            raise ValueError("Audit rows can only reference stored content")

        row = ModerationDecision(
            content_id=item.id,
            content_type=item.container.content_type,
            flagged=True,
            reason=decision.reason,
            confidence=decision.confidence,
            classifier_response=decision.raw,
        )
        try:
            with db.begin_nested():
                db.add(row)
        except IntegrityError:
            logger.debug("Audit row for content %s already recorded", item.id)
            return db.query(ModerationDecision).filter_by(content_id=item.id).one()
        return row

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
