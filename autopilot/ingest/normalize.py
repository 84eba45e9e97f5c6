"""
Text normalization shared by the channel parsers.

Provider bodies arrive as HTML more often than not. The pipeline stores
and classifies plain text, so HTML is flattened here: block-level breaks
become newlines, tags are dropped and entities decoded.
"""

import html
import re
from email.utils import getaddresses, parseaddr
from typing import Optional

from autopilot.agent.schemas import Recipient

_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_P_END = re.compile(r"</p\s*>", re.IGNORECASE)
_DIV_END = re.compile(r"</div\s*>", re.IGNORECASE)
_STYLE_SCRIPT = re.compile(r"<(style|script)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_MANY_NEWLINES = re.compile(r"\n{3,}")


def html_to_text(value: Optional[str]) -> str:
    """Convert an HTML fragment to readable plain text."""
    if not value:
        return ""
    text = _STYLE_SCRIPT.sub("", value)
    text = _BR.sub("\n", text)
    text = _P_END.sub("\n\n", text)
    text = _DIV_END.sub("\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = text.replace("\r\n", "\n")
    text = _MANY_NEWLINES.sub("\n\n", text)
    return text.strip()


def parse_address(value: Optional[str]) -> tuple[str, str]:
    """
    Split a 'Name <addr@host>' header into (email, name).

    A bare address returns the address as both values, matching how mail
    clients display senders without a display name.
    """
    name, email = parseaddr(value or "")
    email = email.strip()
    name = name.strip() or email
    return email, name


def parse_recipient_header(value: Optional[str], kind: str) -> list[Recipient]:
    """Parse a To/Cc/Bcc header into Recipient values."""
    if not value:
        return []
    recipients = []
    for name, email in getaddresses([value]):
        if not email:
            continue
        recipients.append(Recipient(email=email.strip(), name=(name or email).strip(), type=kind))
    return recipients
