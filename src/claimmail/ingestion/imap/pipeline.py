"""Mail ingestion pipeline.

One pass reads the checkpoint, fetches the next batch, turns every new
message into thread/message/attachment records and advances the checkpoint.
Push notifications, the fallback poller and manual triggers all call the
same ``IngestionPipeline.run`` coroutine.

Records are written on the event loop thread with no ``await`` between the
duplicate check and the insert, so overlapping passes cannot both insert the
same Message-ID. The unique index on ``mail_messages.message_id`` backs that
up, and the checkpoint upsert applies its maximum inside SQLite.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Tuple

from claimmail.configuration.settings import RuntimeSettings
from claimmail.errors import PersistenceError
from claimmail.storage import AttachmentOwner, AttachmentStorage, ClaimRef

from .email_parser import FetchedMessage
from .forwarding import detect_forward
from .mailbox_fetcher import MailboxFetcher
from .sync_state import CheckpointStore, ItemFailure, SyncResult
from .thread_store import (
    AttachmentSource,
    DuplicateMessageError,
    MailMessage,
    MailRecordStore,
    MailThread,
)

logger = logging.getLogger(__name__)

ClaimLookup = Callable[[str], Optional[ClaimRef]]

SKIP_DISABLED = "disabled"
SKIP_NOT_CONFIGURED = "not_configured"


class IngestionPipeline:
    """Fetches new mail and persists it exactly once per Message-ID."""

    def __init__(
        self,
        *,
        runtime_settings: RuntimeSettings,
        fetcher: MailboxFetcher,
        checkpoint_store: CheckpointStore,
        record_store: MailRecordStore,
        storage: AttachmentStorage,
        claim_lookup: Optional[ClaimLookup] = None,
    ):
        """Initialize pipeline.

        Args:
            runtime_settings: Sync settings and the resolved mailbox
            fetcher: Incremental mailbox fetcher
            checkpoint_store: Persistent sync position
            record_store: Thread/message/attachment persistence
            storage: Attachment file storage
            claim_lookup: Resolves a linked entity id to claim details
        """
        self.runtime_settings = runtime_settings
        self.fetcher = fetcher
        self.checkpoint_store = checkpoint_store
        self.record_store = record_store
        self.storage = storage
        self.claim_lookup = claim_lookup

    async def run(self) -> SyncResult:
        """Run one ingestion pass.

        Returns:
            SyncResult with counters and per-message failures. Skipped passes
            carry ``skipped_reason`` and touch nothing.

        Raises:
            MailConnectionError: If the mailbox cannot be reached
            PersistenceError: If a thread or message write fails
            sqlite3.Error: If the checkpoint cannot be written
        """
        start = time.perf_counter()
        sync = self.runtime_settings.sync

        if not sync.enabled:
            logger.debug("Mail sync disabled, skipping pass")
            return SyncResult(skipped_reason=SKIP_DISABLED)
        if not self.runtime_settings.mailbox().is_configured:
            logger.debug("IMAP host or user not configured, skipping pass")
            return SyncResult(skipped_reason=SKIP_NOT_CONFIGURED)

        checkpoint = self.checkpoint_store.read()
        logger.info(
            f"Starting mail sync from checkpoint {checkpoint.last_processed_id or 'none'}",
            extra={"limit": sync.max_messages_per_run},
        )
        batch = await asyncio.to_thread(
            self.fetcher.fetch_since,
            checkpoint.last_processed_id,
            sync.max_messages_per_run,
        )

        result = SyncResult(fetched=len(batch), failures=list(batch.failures))
        highest: Optional[int] = None

        for message in batch.messages:
            try:
                uid = message.uid_value
            except ValueError:
                result.failures.append(
                    ItemFailure(item=message.uid, error="Non-numeric UID", stage="process")
                )
                continue
            if highest is None or uid > highest:
                highest = uid

            try:
                self._ingest(message, result)
            except PersistenceError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Error processing message UID {message.uid}: {exc}",
                    extra={"message_id": message.message_id},
                )
                result.failures.append(
                    ItemFailure(item=message.uid, error=str(exc), stage="process")
                )

        result.highest_id = str(highest) if highest is not None else None
        self.checkpoint_store.advance(result.highest_id)
        result.sync_duration_seconds = time.perf_counter() - start

        logger.info(
            f"Mail sync complete: {result.new_messages} new messages, "
            f"{result.new_threads} new threads",
            extra={
                "fetched": result.fetched,
                "duplicates": result.duplicates,
                "failures": len(result.failures),
                "highest_id": result.highest_id,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Per-message steps
    # ------------------------------------------------------------------

    def _ingest(self, message: FetchedMessage, result: SyncResult) -> None:
        if message.message_id and self.record_store.message_exists(message.message_id):
            logger.debug(f"Skipping already stored message {message.message_id}")
            result.duplicates += 1
            return

        thread, created = self._resolve_thread(message)

        try:
            stored = self.record_store.create_message(
                thread_id=thread.id,
                from_address=message.from_address,
                to_address=message.to_address,
                cc=message.cc,
                subject=message.subject,
                body_text=message.body_text,
                body_html=message.body_html,
                message_id=message.message_id,
                in_reply_to=message.in_reply_to,
                date=message.date,
            )
        except DuplicateMessageError:
            logger.debug(f"Message {message.message_id} stored concurrently, skipping")
            if created:
                self.record_store.delete_thread(thread.id)
            result.duplicates += 1
            return

        if created:
            result.new_threads += 1
        self.record_store.touch_thread(thread.id)
        result.new_messages += 1

        if message.has_attachments:
            self._store_attachments(message, stored, thread, result)

        self._apply_forwarding(message, thread)

    def _resolve_thread(self, message: FetchedMessage) -> Tuple[MailThread, bool]:
        """Find the thread for ``message`` or create one; the flag is True when created."""
        thread = self.record_store.find_thread_by_reference(
            message.message_id, message.in_reply_to
        )
        if thread is None:
            thread = self.record_store.find_thread_by_subject(message.subject)
        if thread is not None:
            return thread, False

        thread = self.record_store.create_thread(message.subject, message.from_address)
        logger.debug(f"Created thread {thread.id} for subject {message.subject!r}")
        return thread, True

    def _attachment_owner(self, thread: MailThread) -> AttachmentOwner:
        claim: Optional[ClaimRef] = None
        if thread.linked_entity_id and self.claim_lookup is not None:
            claim = self.claim_lookup(thread.linked_entity_id)
            if claim is None:
                logger.warning(
                    f"Thread {thread.id} is linked to unknown claim {thread.linked_entity_id}, "
                    "storing attachments as unassigned"
                )
        return AttachmentOwner(thread_id=thread.id, claim=claim)

    def _store_attachments(
        self,
        message: FetchedMessage,
        stored: MailMessage,
        thread: MailThread,
        result: SyncResult,
    ) -> None:
        owner = self._attachment_owner(thread)
        for blob in message.attachments:
            try:
                path = self.storage.save_attachment(
                    owner, blob.content, blob.filename, blob.mime_type
                )
                self.record_store.create_attachment(
                    message_id=stored.id,
                    linked_entity_id=owner.claim.id if owner.claim else None,
                    file_name=blob.filename,
                    mime_type=blob.mime_type,
                    storage_path=path,
                    is_relevant=True,
                    source=AttachmentSource.CLIENT,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error saving attachment {blob.filename}: {exc}")
                result.failures.append(
                    ItemFailure(item=blob.filename, error=str(exc), stage="attachment")
                )

    def _apply_forwarding(self, message: FetchedMessage, thread: MailThread) -> None:
        try:
            info = detect_forward(message.subject, message.body_text, message.body_html)
            if info.is_forwarded and info.original_sender:
                self.record_store.update_forwarding(
                    thread.id, info.original_sender, message.from_address
                )
                logger.info(
                    f"Detected forwarded email from {info.original_sender} "
                    f"via {message.from_address}"
                )
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Could not parse forwarded email: {exc}")


__all__ = ["ClaimLookup", "IngestionPipeline", "SKIP_DISABLED", "SKIP_NOT_CONFIGURED"]
