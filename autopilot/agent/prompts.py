"""
Prompt templates for classification and reply drafting.

This is the single file to edit to change what the model is asked.
Both prompts ask for a JSON object; parse_json_object() extracts it.

IMPORTANT:
- Never put actual message content in this file. These are templates.
- The {placeholders} are filled in at runtime by autopilot.agent.model.
"""

import json
import re

from autopilot.agent.schemas import Actionability, Category, Sentiment
from autopilot.errors import LLMError

# =============================================================================
# CLASSIFICATION
# =============================================================================

CLASSIFY_SYSTEM = (
    "You are an email triage assistant. You classify one incoming email at a time. "
    "Respond with a single JSON object and nothing else."
)

CLASSIFY_USER = """\
Classify the following email.

{excerpt}

Return JSON with these keys:
- "category": one of {categories}
- "priority": one of urgent, high, medium, low, noise
- "sentiment": one of {sentiments}
- "actionability": one of {actionabilities}
- "confidenceScore": number between 0 and 1, how sure you are of the category
- "summary": one or two sentences
- "summaryShort": at most 180 characters
- "keyPoints": list of up to 5 short strings"""

# =============================================================================
# DRAFTING
# =============================================================================

DRAFT_SYSTEM = (
    "You draft email replies on behalf of the mailbox owner. "
    "NEVER ask for clarification. ALWAYS produce a ready-to-send reply body. "
    "Respond with a single JSON object and nothing else."
)

DRAFT_USER = """\
Draft a reply to the email below.

Tone: {tone}
Maximum length: {max_length} characters

{context}

Return JSON with these keys:
- "body": the reply text only (no subject line)
- "confidenceScore": number between 0 and 1, how safe it is to send this reply \
without a human reading it first
- "isAutoSendable": true only if the reply fully answers the email and commits \
to nothing the mailbox owner has not already stated"""

THREAD_BLOCK = """\
--- EARLIER MESSAGES IN THIS THREAD (oldest first) ---
{thread}
--- END EARLIER MESSAGES ---
"""


def build_classify_user(excerpt: str) -> str:
    return CLASSIFY_USER.format(
        excerpt=excerpt,
        categories=", ".join(c.value for c in Category),
        sentiments=", ".join(s.value for s in Sentiment),
        actionabilities=", ".join(a.value for a in Actionability),
    )


def build_draft_user(context: str, tone: str, max_length: int) -> str:
    return DRAFT_USER.format(context=context, tone=tone, max_length=max_length)


# =============================================================================
# RESPONSE PARSING
# =============================================================================

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_json_object(raw_response: str) -> dict:
    """
    Extract the JSON object from a model response.

    Tolerates markdown code fences and leading/trailing prose around the
    object.

    Raises:
        LLMError: No JSON object could be parsed.
    """
    text = _FENCE.sub("", raw_response.strip())
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise LLMError("Model response did not contain a JSON object")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise LLMError(f"Model response was not valid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise LLMError("Model response JSON was not an object")
    return data
