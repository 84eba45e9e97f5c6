"""
Classification/drafting capability.

Components depend on the ModelCapability protocol, not on Anthropic. The
production implementation (AnthropicModel) is built once at startup from
an LLMClient and passed in; tests pass a fake.
"""

import logging
from typing import Optional, Protocol

from autopilot.agent.prompts import (
    CLASSIFY_SYSTEM,
    DRAFT_SYSTEM,
    build_classify_user,
    build_draft_user,
    parse_json_object,
)
from autopilot.agent.schemas import ModelUsage, RawClassification, RawDraft
from autopilot.config import settings
from autopilot.errors import LLMError
from autopilot.llm.client import LLMClient, LLMResult

logger = logging.getLogger(__name__)


class ModelCapability(Protocol):
    def classify(self, excerpt: str) -> RawClassification:
        ...

    def generate_draft(self, context: str, tone: str, max_length: int) -> RawDraft:
        ...


def _as_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _usage(result: LLMResult) -> ModelUsage:
    return ModelUsage(
        model=result.model,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        latency_ms=result.latency_ms,
    )


class AnthropicModel:
    """ModelCapability backed by the Anthropic Messages API."""

    def __init__(self, llm: LLMClient):
        self._llm = llm

    def classify(self, excerpt: str) -> RawClassification:
        result = self._llm.complete(
            system=CLASSIFY_SYSTEM,
            user=build_classify_user(excerpt),
            max_tokens=settings.anthropic_max_tokens_classify,
            purpose="classify",
        )
        data = parse_json_object(result.text)

        key_points = data.get("keyPoints") or data.get("key_points") or []
        if not isinstance(key_points, list):
            key_points = [str(key_points)]

        return RawClassification(
            category=data.get("category"),
            priority=data.get("priority"),
            sentiment=data.get("sentiment"),
            actionability=data.get("actionability"),
            confidence_score=_as_float(data.get("confidenceScore", data.get("confidence"))),
            summary=data.get("summary"),
            summary_short=data.get("summaryShort") or data.get("summary_short"),
            key_points=[str(p) for p in key_points],
            usage=_usage(result),
        )

    def generate_draft(self, context: str, tone: str, max_length: int) -> RawDraft:
        result = self._llm.complete(
            system=DRAFT_SYSTEM,
            user=build_draft_user(context, tone, max_length),
            max_tokens=settings.anthropic_max_tokens_draft,
            purpose="draft",
        )
        data = parse_json_object(result.text)

        body = str(data.get("body") or "").strip()
        if not body:
            raise LLMError("Model returned an empty draft body")

        return RawDraft(
            body=body,
            confidence_score=_as_float(data.get("confidenceScore", data.get("confidence"))),
            is_auto_sendable=bool(data.get("isAutoSendable", False)),
            usage=_usage(result),
        )
