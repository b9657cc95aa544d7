"""Tests for RFC822 message parsing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from claimmail.ingestion.imap.email_parser import EmailAddress, EmailParser


@pytest.fixture
def parser() -> EmailParser:
    return EmailParser()


def test_parses_envelope_headers(parser, build_message):
    """Test addresses, ids and date are extracted."""
    raw = build_message(
        "Pump failure",
        message_id="<abc@example.com>",
        in_reply_to="<parent@example.com>",
        sender="Jane Customer <Jane@Example.com>",
        to="claims@example.com, service@example.com",
        cc="boss@example.com",
    )

    message = parser.parse_message(raw_message=raw, uid="42")

    assert message.uid == "42"
    assert message.uid_value == 42
    assert message.from_address == "jane@example.com"
    assert message.to_address == "claims@example.com, service@example.com"
    assert message.cc == "boss@example.com"
    assert message.subject == "Pump failure"
    assert message.message_id == "abc@example.com"
    assert message.in_reply_to == "parent@example.com"
    assert message.date == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


def test_parses_plain_and_html_bodies(parser, build_message):
    """Test both alternatives are kept."""
    raw = build_message(text="Plain body", html="<p>HTML body</p>")

    message = parser.parse_message(raw_message=raw, uid="1")

    assert message.body_text.strip() == "Plain body"
    assert "<p>HTML body</p>" in message.body_html


def test_html_only_message_gets_text_body(parser, build_message):
    """Test html2text derives a plain body when none is sent."""
    raw = build_message(text=None, html="<p>Only <b>HTML</b> here</p>")

    message = parser.parse_message(raw_message=raw, uid="1")

    assert message.body_html is not None
    assert "Only" in message.body_text
    assert "<p>" not in message.body_text


def test_extracts_attachments(parser, build_message):
    """Test attachment parts are returned with content and type."""
    raw = build_message(
        attachments=[
            ("invoice.pdf", "application/pdf", b"%PDF-1.4 data"),
            ("photo.jpg", "image/jpeg", b"\xff\xd8\xff"),
        ]
    )

    message = parser.parse_message(raw_message=raw, uid="1")

    assert message.has_attachments
    assert [a.filename for a in message.attachments] == ["invoice.pdf", "photo.jpg"]
    assert message.attachments[0].mime_type == "application/pdf"
    assert message.attachments[0].content == b"%PDF-1.4 data"
    assert message.attachments[1].size_bytes == 3
    assert message.body_text.strip() == "Hello, the pump stopped working."


def test_attachment_without_filename_defaults(parser):
    """Test unnamed attachment parts get default name."""
    raw = (
        b"From: a@example.com\r\n"
        b"To: b@example.com\r\n"
        b"Subject: Scan\r\n"
        b"MIME-Version: 1.0\r\n"
        b'Content-Type: multipart/mixed; boundary="XX"\r\n'
        b"\r\n"
        b"--XX\r\n"
        b"Content-Type: text/plain\r\n"
        b"\r\n"
        b"See attached\r\n"
        b"--XX\r\n"
        b"Content-Type: application/octet-stream\r\n"
        b"Content-Disposition: attachment\r\n"
        b"Content-Transfer-Encoding: base64\r\n"
        b"\r\n"
        b"AAEC\r\n"
        b"--XX--\r\n"
    )

    message = parser.parse_message(raw_message=raw, uid="1")

    assert len(message.attachments) == 1
    assert message.attachments[0].filename == "unnamed"
    assert message.attachments[0].mime_type == "application/octet-stream"
    assert message.attachments[0].content == b"\x00\x01\x02"


def test_encoded_subject_is_decoded(parser):
    """Test RFC 2047 subjects are decoded."""
    raw = (
        b"From: a@example.com\r\n"
        b"Subject: =?utf-8?q?Reklamacja_pompy_=C5=BC?=\r\n"
        b"\r\n"
        b"body\r\n"
    )

    message = parser.parse_message(raw_message=raw, uid="1")

    assert message.subject == "Reklamacja pompy ż"


def test_missing_headers_fall_back(parser):
    """Test a bare message still parses with defaults."""
    raw = b"Subject: hi\r\n\r\nbody\r\n"

    message = parser.parse_message(raw_message=raw, uid="9")

    assert message.from_address == ""
    assert message.to_address == ""
    assert message.cc is None
    assert message.message_id is None
    assert message.date.tzinfo is not None


def test_email_address_from_header():
    """Test header parsing skips invalid entries."""
    addresses = EmailAddress.from_header("John <John@Example.com>, not-an-address, x@y.org")

    assert [a.address for a in addresses] == ["john@example.com", "x@y.org"]
    assert addresses[0].display_name == "John"
