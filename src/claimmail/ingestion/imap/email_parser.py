"""Email parser for RFC822/MIME messages fetched from the claims mailbox.

Turns a raw message into a ``FetchedMessage``: envelope headers, plain and
HTML bodies, and every attachment part as an in-memory blob ready for the
attachment storage collaborator.

Parsing uses the standard library ``email`` package with the modern
``email.policy.default``; html2text derives a plain-text body when a message
only carries HTML.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email import message_from_bytes
from email.header import decode_header
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional, Tuple

import html2text
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_NAME = "unnamed"
DEFAULT_ATTACHMENT_TYPE = "application/octet-stream"


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(default=None)

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:  # type: ignore[override]
        if "@" not in value or value.count("@") != 1:
            raise ValueError(f"Invalid email address: {value}")
        return value.lower()

    @classmethod
    def from_header(cls, header_value: str) -> List[EmailAddress]:
        """Parse email addresses from header value.

        Args:
            header_value: Raw header value (e.g., "John Doe <john@example.com>, jane@example.com")

        Returns:
            List of parsed EmailAddress objects
        """
        if not header_value or not header_value.strip():
            return []

        result = []
        for display_name, addr in getaddresses([header_value]):
            if not addr or "@" not in addr:
                continue
            result.append(
                cls(
                    address=addr.strip().lower(),
                    display_name=display_name.strip() if display_name else None,
                )
            )
        return result


class AttachmentBlob(BaseModel):
    """Attachment content extracted from a MIME part."""

    filename: str = Field(default=DEFAULT_ATTACHMENT_NAME)
    mime_type: str = Field(default=DEFAULT_ATTACHMENT_TYPE)
    content: bytes = Field(default=b"", repr=False)

    @property
    def size_bytes(self) -> int:
        return len(self.content)


class FetchedMessage(BaseModel):
    """A message as returned by the mailbox fetcher."""

    uid: str = Field(..., description="IMAP UID as a decimal string")
    from_address: str = Field(default="", description="First From address")
    to_address: str = Field(default="", description="To addresses, comma separated")
    cc: Optional[str] = Field(default=None, description="Cc addresses, comma separated")
    subject: str = Field(default="")
    message_id: Optional[str] = Field(default=None, description="Message-ID without angle brackets")
    in_reply_to: Optional[str] = Field(default=None)
    date: datetime
    body_text: Optional[str] = Field(default=None, repr=False)
    body_html: Optional[str] = Field(default=None, repr=False)
    attachments: List[AttachmentBlob] = Field(default_factory=list)

    @property
    def uid_value(self) -> int:
        return int(self.uid)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0


class EmailParser:
    """Parse RFC822/MIME emails into ``FetchedMessage`` objects."""

    def __init__(self) -> None:
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0  # No line wrapping

    def parse_message(self, *, raw_message: bytes, uid: str) -> FetchedMessage:
        """Parse raw RFC822 message bytes.

        Args:
            raw_message: Raw RFC822/MIME message bytes
            uid: IMAP UID of the message

        Returns:
            Parsed FetchedMessage

        Raises:
            ValueError: If message cannot be parsed
        """
        try:
            msg = message_from_bytes(raw_message, policy=email_policy)

            body_text, body_html = self._extract_body(msg)
            if body_text is None and body_html is not None:
                body_text = self._html_to_text(body_html)

            return FetchedMessage(
                uid=str(uid),
                from_address=self._first_address(msg.get("From", "")),
                to_address=self._joined_addresses(msg.get("To", "")) or "",
                cc=self._joined_addresses(msg.get("Cc", "")),
                subject=self._extract_subject(msg),
                message_id=self._extract_id_header(msg, "Message-ID"),
                in_reply_to=self._extract_id_header(msg, "In-Reply-To"),
                date=self._extract_date(msg),
                body_text=body_text,
                body_html=body_html,
                attachments=self._extract_attachments(msg),
            )
        except Exception as e:
            logger.error(f"Failed to parse email message: {e}", extra={"uid": uid})
            raise ValueError(f"Email parsing failed: {e}") from e

    def _extract_subject(self, msg: StdEmailMessage) -> str:
        """Decode the Subject header, including RFC 2047 encoded words."""
        subject = msg.get("Subject", "")
        if not subject:
            return ""

        result = ""
        for part, charset in decode_header(str(subject)):
            if isinstance(part, bytes):
                try:
                    result += part.decode(charset or "utf-8", errors="replace")
                except (UnicodeDecodeError, LookupError):
                    result += part.decode("utf-8", errors="replace")
            else:
                result += part
        return result.strip()

    def _first_address(self, header_value: str) -> str:
        addresses = EmailAddress.from_header(str(header_value))
        if addresses:
            return addresses[0].address
        # Keep a display-only sender rather than dropping it.
        return str(header_value).strip()

    def _joined_addresses(self, header_value: str) -> Optional[str]:
        addresses = EmailAddress.from_header(str(header_value))
        if not addresses:
            return None
        return ", ".join(a.address for a in addresses)

    def _extract_id_header(self, msg: StdEmailMessage, name: str) -> Optional[str]:
        value = str(msg.get(name, "")).strip()
        if not value:
            return None
        # In-Reply-To may list several ids; the first is the parent.
        first = value.split()[0]
        return first.strip("<>").strip() or None

    def _extract_date(self, msg: StdEmailMessage) -> datetime:
        """Parse the Date header, falling back to the current time."""
        date_header = msg.get("Date")
        if date_header:
            try:
                parsed = parsedate_to_datetime(str(date_header))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Failed to parse Date header '{date_header}': {e}, using current time"
                )
        return datetime.now(timezone.utc)

    def _extract_body(
        self, msg: StdEmailMessage
    ) -> Tuple[Optional[str], Optional[str]]:
        """Extract the first text/plain and text/html parts that are not attachments."""
        body_plain = None
        body_html = None

        for part in msg.walk():
            if part.is_multipart():
                continue
            if part.get_content_disposition() == "attachment" or part.get_filename():
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain" and body_plain is None:
                body_plain = self._part_text(part)
            elif content_type == "text/html" and body_html is None:
                body_html = self._part_text(part)

        return body_plain, body_html

    def _part_text(self, part: StdEmailMessage) -> Optional[str]:
        try:
            return part.get_content()
        except (LookupError, UnicodeError, KeyError) as e:
            logger.warning(f"Failed to decode {part.get_content_type()} body: {e}")
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="replace")

    def _html_to_text(self, html: str) -> Optional[str]:
        text = self.html_converter.handle(html).strip()
        return text or None

    def _extract_attachments(self, msg: StdEmailMessage) -> List[AttachmentBlob]:
        """Extract every attachment part with its decoded content."""
        attachments: List[AttachmentBlob] = []

        for part in msg.walk():
            if part.is_multipart():
                continue
            filename = part.get_filename()
            if part.get_content_disposition() != "attachment" and not filename:
                continue

            payload = part.get_payload(decode=True)
            attachments.append(
                AttachmentBlob(
                    filename=filename or DEFAULT_ATTACHMENT_NAME,
                    mime_type=part.get_content_type() or DEFAULT_ATTACHMENT_TYPE,
                    content=payload or b"",
                )
            )

        return attachments


__all__ = [
    "AttachmentBlob",
    "EmailAddress",
    "EmailParser",
    "FetchedMessage",
]
