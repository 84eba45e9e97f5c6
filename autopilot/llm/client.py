"""
Anthropic API wrapper used by the classifier and draft generator.

- Retries transient failures (rate limits, timeouts, 5xx, connection
  errors) with exponential backoff; 4xx errors fail immediately.
- Logs tokens, cost and latency per call. Never logs prompt or response
  content.
- Raises autopilot.errors.LLMError when the call cannot be completed, so
  callers handle model failures as any other capability error.

Usage:
    from autopilot.llm.client import LLMClient

    llm = LLMClient()
    result = llm.complete(system="...", user="...", max_tokens=500, purpose="classify")
    result.text, result.input_tokens, result.latency_ms
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import anthropic

from autopilot.config import settings
from autopilot.errors import LLMError

logger = logging.getLogger(__name__)

# Per 1M tokens
PRICING = {
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
}
DEFAULT_PRICING = {"input": 3.00, "output": 15.00}

MAX_BACKOFF_SECONDS = 30


@dataclass
class LLMResult:
    """One completed model call."""
    text: str
    input_tokens: int
    output_tokens: int
    cost: float
    latency_ms: int
    model: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMClient:
    """Anthropic Messages API client with retries and usage accounting."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: int = 3,
        timeout_seconds: float = 60.0,
    ):
        self.model = model or settings.anthropic_model
        self._max_retries = max_retries
        self._timeout = timeout_seconds
        self._client = anthropic.Anthropic(
            api_key=api_key or settings.anthropic_api_key,
            timeout=timeout_seconds,
            max_retries=0,  # retried here so every attempt is logged
        )
        self._pricing = PRICING.get(self.model, DEFAULT_PRICING)

        self.total_cost: float = 0.0
        self.call_count: int = 0

    def complete(
        self,
        system: str,
        user: str,
        max_tokens: int,
        purpose: str = "unknown",
    ) -> LLMResult:
        """
        Run one completion.

        Args:
            purpose: Label for logs ("classify", "draft"). Never message content.

        Raises:
            LLMError: Non-retryable API error, or retries exhausted.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            start = time.monotonic()
            try:
                response = self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
            except anthropic.APIStatusError as e:
                if e.status_code < 500 and e.status_code != 429:
                    logger.error(
                        "llm.call.client_error",
                        extra={
                            "action": "llm.call.client_error",
                            "purpose": purpose,
                            "attempt": attempt,
                            "status_code": e.status_code,
                        },
                    )
                    raise LLMError(
                        f"Anthropic API error (HTTP {e.status_code})", status_code=e.status_code
                    ) from e
                last_error = e
                self._backoff(purpose, attempt, f"http_{e.status_code}")
                continue
            except anthropic.APITimeoutError as e:
                # The timeout already cost the wait; retry straight away
                last_error = e
                logger.warning(
                    "llm.call.timeout",
                    extra={"action": "llm.call.timeout", "purpose": purpose, "attempt": attempt},
                )
                continue
            except anthropic.APIConnectionError as e:
                last_error = e
                self._backoff(purpose, attempt, "connection_error")
                continue

            return self._record(response, purpose, attempt, start)

        logger.error(
            "llm.call.failed",
            extra={
                "action": "llm.call.failed",
                "purpose": purpose,
                "max_retries": self._max_retries,
                "error_type": type(last_error).__name__,
            },
        )
        raise LLMError(
            f"LLM call failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    def _backoff(self, purpose: str, attempt: int, reason: str) -> None:
        wait = min(2 ** attempt, MAX_BACKOFF_SECONDS)
        logger.warning(
            "llm.call.retrying",
            extra={
                "action": "llm.call.retrying",
                "purpose": purpose,
                "attempt": attempt,
                "reason": reason,
                "wait_seconds": wait,
            },
        )
        time.sleep(wait)

    def _record(self, response, purpose: str, attempt: int, start: float) -> LLMResult:
        latency_ms = int((time.monotonic() - start) * 1000)
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        cost = (
            input_tokens * self._pricing["input"] + output_tokens * self._pricing["output"]
        ) / 1_000_000

        self.total_cost += cost
        self.call_count += 1

        logger.info(
            "llm.call.success",
            extra={
                "action": "llm.call.success",
                "purpose": purpose,
                "attempt": attempt,
                "model": self.model,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cost_usd": round(cost, 6),
                "latency_ms": latency_ms,
            },
        )

        text = response.content[0].text.strip() if response.content else ""
        return LLMResult(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            latency_ms=latency_ms,
            model=self.model,
        )
