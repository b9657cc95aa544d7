"""Forwarded email detection.

Internal staff often forward a customer's mail into the claims mailbox. The
thread should then remember the customer as the original sender and the
staff member as the forwarder.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

_FORWARD_SUBJECT_PREFIXES = ("fwd:", "fw:")
_FORWARD_BODY_MARKER = "original message"

_TEXT_FROM_PATTERN = re.compile(r"from:\s*([^\r\n]+)", re.IGNORECASE)
_HTML_FROM_PATTERN = re.compile(r"from:\s*([^\r\n<]+)", re.IGNORECASE)


class ForwardInfo(NamedTuple):
    is_forwarded: bool
    original_sender: Optional[str]


def is_forwarded(subject: str, body_text: Optional[str], body_html: Optional[str]) -> bool:
    """Subject carries a forward prefix or a body quotes an original message."""
    if subject.strip().lower().startswith(_FORWARD_SUBJECT_PREFIXES):
        return True
    for body in (body_text, body_html):
        if body and _FORWARD_BODY_MARKER in body.lower():
            return True
    return False


def extract_original_sender(body_text: Optional[str], body_html: Optional[str]) -> Optional[str]:
    """First quoted ``From:`` line, plain body before HTML body."""
    if body_text:
        match = _TEXT_FROM_PATTERN.search(body_text)
        if match:
            return match.group(1).strip() or None
    if body_html:
        match = _HTML_FROM_PATTERN.search(body_html)
        if match:
            return match.group(1).strip() or None
    return None


def detect_forward(
    subject: str, body_text: Optional[str], body_html: Optional[str]
) -> ForwardInfo:
    if not is_forwarded(subject, body_text, body_html):
        return ForwardInfo(False, None)
    return ForwardInfo(True, extract_original_sender(body_text, body_html))


__all__ = ["ForwardInfo", "detect_forward", "extract_original_sender", "is_forwarded"]
