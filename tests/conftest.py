"""Shared fixtures for claimmail tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple

import pytest

from claimmail.configuration.settings import (
    MailSyncSettings,
    MailboxSettings,
    RuntimeSettings,
    Settings,
    StorageSettings,
)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Configured settings with fast timings and tmp_path storage."""
    return Settings(
        sync=MailSyncSettings(
            max_messages_per_run=50,
            max_reconnect_attempts=3,
            reconnect_delay_seconds=0.0,
            keepalive_interval_seconds=60.0,
            idle_timeout_seconds=0.05,
            post_process_delay_seconds=0.0,
        ),
        mailbox=MailboxSettings(
            host="imap.example.com",
            user="claims@example.com",
            password="secret",
        ),
        storage=StorageSettings(
            file_root_path=tmp_path / "files",
            database_path=tmp_path / "claimmail.db",
        ),
    )


@pytest.fixture
def runtime_settings(settings: Settings) -> RuntimeSettings:
    return RuntimeSettings(settings)


Attachment = Tuple[str, str, bytes]


def _build_message(
    subject: str = "Pump failure",
    *,
    message_id: Optional[str] = "<msg-1@example.com>",
    sender: str = "Customer <customer@example.com>",
    to: str = "claims@example.com",
    cc: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    text: Optional[str] = "Hello, the pump stopped working.",
    html: Optional[str] = None,
    attachments: Iterable[Attachment] = (),
    date: Optional[datetime] = None,
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    if message_id:
        msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    msg["Date"] = format_datetime(date or datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc))

    if text is not None:
        msg.set_content(text)
        if html is not None:
            msg.add_alternative(html, subtype="html")
    elif html is not None:
        msg.set_content(html, subtype="html")

    for filename, mime_type, data in attachments:
        maintype, subtype = mime_type.split("/", 1)
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


@pytest.fixture
def build_message() -> Callable[..., bytes]:
    """Builder for raw RFC822 messages."""
    return _build_message


@pytest.fixture
def eventually():
    """Poll an async condition until it holds or the timeout passes."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _eventually
