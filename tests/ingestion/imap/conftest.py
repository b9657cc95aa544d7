"""Fake IMAP server and client for mail sync tests."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest
from imapclient import IMAPClient

from claimmail.configuration.settings import RuntimeSettings, Settings
from claimmail.ingestion.imap.mailbox_fetcher import MailboxFetcher
from claimmail.ingestion.imap.pipeline import IngestionPipeline
from claimmail.ingestion.imap.sync_state import CheckpointStore
from claimmail.ingestion.imap.thread_store import MailRecordStore
from claimmail.storage import AttachmentStorage


# ============================================================================
# Fake IMAP Server
# ============================================================================


class FakeImapServer:
    """In-memory mailbox shared by every client the factory creates."""

    def __init__(self) -> None:
        self.messages: Dict[int, bytes] = {}
        self.capabilities: List[bytes] = [b"IMAP4REV1", b"IDLE"]
        self.fail_uid_search = False
        self.fetch_errors: Set[int] = set()
        self.login_error: Optional[Exception] = None
        self.noop_error: Optional[Exception] = None
        self.idle_delay = 0.01
        self.idle_responses: List[Any] = [(b"1", b"EXISTS")]
        self.clients: List[FakeImapClient] = []
        self.factory_kwargs: List[Dict[str, Any]] = []

    def add_message(self, uid: int, raw: bytes) -> None:
        self.messages[uid] = raw

    def factory(self, **kwargs: Any) -> "FakeImapClient":
        self.factory_kwargs.append(kwargs)
        client = FakeImapClient(self)
        self.clients.append(client)
        return client


class FakeImapClient:
    """Implements the subset of ``IMAPClient`` the sync core uses."""

    def __init__(self, server: FakeImapServer) -> None:
        self.server = server
        self.logged_in = False
        self.logged_out = False
        self.closed = threading.Event()
        self.selected: Optional[str] = None
        self.readonly: Optional[bool] = None
        self.searches: List[List[str]] = []
        self.fetched: List[int] = []
        self.idle_calls = 0
        self.noops = 0

    def login(self, user: str, password: str) -> None:
        if self.server.login_error is not None:
            raise self.server.login_error
        self.logged_in = True

    def logout(self) -> None:
        self.logged_out = True
        self.closed.set()

    def shutdown(self) -> None:
        self.closed.set()

    def capabilities(self) -> tuple:
        return tuple(self.server.capabilities)

    def select_folder(self, folder: str, readonly: bool = False) -> Dict[bytes, Any]:
        self.selected = folder
        self.readonly = readonly
        return {b"EXISTS": len(self.server.messages)}

    def search(self, criteria: List[str]) -> List[int]:
        self.searches.append(list(criteria))
        uids = sorted(self.server.messages)
        if criteria == ["ALL"]:
            return uids
        if criteria[0] == "UID":
            if self.server.fail_uid_search:
                raise IMAPClient.Error("SEARCH command error: BAD")
            start = int(criteria[1].split(":")[0])
            found = [uid for uid in uids if uid >= start]
            # n:* always includes the highest UID
            if not found and uids:
                found = [uids[-1]]
            return found
        raise AssertionError(f"unexpected search {criteria}")

    def fetch(self, uids: List[int], data: List[str]) -> Dict[int, Dict[bytes, Any]]:
        assert data == ["BODY.PEEK[]"]
        uid = uids[0]
        self.fetched.append(uid)
        if uid in self.server.fetch_errors:
            raise IMAPClient.Error(f"FETCH failed for {uid}")
        if uid not in self.server.messages:
            return {}
        return {uid: {b"BODY[]": self.server.messages[uid], b"SEQ": uid}}

    def idle(self) -> None:
        if self.closed.is_set():
            raise OSError("socket closed")
        self.idle_calls += 1

    def idle_check(self, timeout: Optional[float] = None) -> List[Any]:
        if self.closed.wait(min(self.server.idle_delay, timeout or self.server.idle_delay)):
            raise OSError("socket closed")
        return list(self.server.idle_responses)

    def idle_done(self) -> tuple:
        return (b"OK", [])

    def noop(self) -> tuple:
        if self.closed.is_set():
            raise OSError("socket closed")
        if self.server.noop_error is not None:
            raise self.server.noop_error
        self.noops += 1
        return (b"OK", [])


@pytest.fixture
def imap_server() -> FakeImapServer:
    return FakeImapServer()


# ============================================================================
# Pipeline wiring
# ============================================================================


@pytest.fixture
def checkpoint_store(settings: Settings):
    store = CheckpointStore(settings.storage.database_path)
    yield store
    store.close()


@pytest.fixture
def record_store(settings: Settings):
    store = MailRecordStore(settings.storage.database_path)
    yield store
    store.close()


@pytest.fixture
def storage(settings: Settings) -> AttachmentStorage:
    return AttachmentStorage(settings.storage.file_root_path)


@pytest.fixture
def fetcher(runtime_settings: RuntimeSettings, imap_server: FakeImapServer) -> MailboxFetcher:
    return MailboxFetcher(
        mailbox_provider=runtime_settings.mailbox,
        client_factory=imap_server.factory,
    )


@pytest.fixture
def pipeline(
    runtime_settings: RuntimeSettings,
    fetcher: MailboxFetcher,
    checkpoint_store: CheckpointStore,
    record_store: MailRecordStore,
    storage: AttachmentStorage,
) -> IngestionPipeline:
    return IngestionPipeline(
        runtime_settings=runtime_settings,
        fetcher=fetcher,
        checkpoint_store=checkpoint_store,
        record_store=record_store,
        storage=storage,
    )


@pytest.fixture
def db_path(settings: Settings) -> Path:
    return settings.storage.database_path
