"""IMAP mailbox sync: fetch, ingest, push and polling triggers."""

from .connection_manager import ImapConnection, ReconnectPolicy, describe_connection_error
from .email_parser import AttachmentBlob, EmailParser, FetchedMessage
from .forwarding import ForwardInfo, detect_forward
from .idle_monitor import IdleSessionManager, SessionState
from .mailbox_fetcher import FetchBatch, MailboxFetcher
from .pipeline import IngestionPipeline
from .poll_scheduler import FallbackScheduler
from .supervisor import (
    SupervisorStatus,
    SyncMode,
    SyncSupervisor,
    build_supervisor,
    get_supervisor,
    reset_supervisor,
)
from .sync_state import Checkpoint, CheckpointStore, ItemFailure, SyncResult
from .thread_store import MailAttachment, MailMessage, MailRecordStore, MailThread
from .trigger_server import TriggerServer

__all__ = [
    "AttachmentBlob",
    "Checkpoint",
    "CheckpointStore",
    "EmailParser",
    "FallbackScheduler",
    "FetchBatch",
    "FetchedMessage",
    "ForwardInfo",
    "IdleSessionManager",
    "ImapConnection",
    "IngestionPipeline",
    "ItemFailure",
    "MailAttachment",
    "MailMessage",
    "MailRecordStore",
    "MailThread",
    "MailboxFetcher",
    "ReconnectPolicy",
    "SessionState",
    "SupervisorStatus",
    "SyncMode",
    "SyncResult",
    "SyncSupervisor",
    "TriggerServer",
    "build_supervisor",
    "describe_connection_error",
    "detect_forward",
    "get_supervisor",
    "reset_supervisor",
]
