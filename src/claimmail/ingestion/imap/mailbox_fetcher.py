"""Incremental mailbox fetcher.

Each call opens one connection, selects the folder read-only, picks the
candidate UIDs newer than the checkpoint (or the most recent ones on a cold
start), downloads and parses them, and logs out. Calls block; async callers
run them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

try:
    from imapclient import IMAPClient  # type: ignore
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "imapclient must be installed to use the mailbox fetcher"
    ) from exc

from pydantic import BaseModel, Field

from claimmail.configuration.settings import MailboxSettings

from .connection_manager import ClientFactory, ImapConnection
from .email_parser import EmailParser, FetchedMessage
from .sync_state import ItemFailure


logger = logging.getLogger(__name__)


class FetchBatch(BaseModel):
    """Messages returned by one fetch, plus the ones that were skipped."""

    messages: List[FetchedMessage] = Field(default_factory=list)
    failures: List[ItemFailure] = Field(default_factory=list)
    candidates: int = Field(default=0, ge=0, description="UIDs selected before download")
    duration_seconds: float = Field(default=0.0, ge=0.0)

    def __len__(self) -> int:
        return len(self.messages)


class MailboxFetcher:
    """Fetches messages newer than a checkpoint from the configured mailbox."""

    def __init__(
        self,
        *,
        mailbox_provider: Callable[[], MailboxSettings],
        parser: Optional[EmailParser] = None,
        client_factory: ClientFactory = IMAPClient,
    ):
        """Initialize fetcher.

        Args:
            mailbox_provider: Returns the current mailbox settings; called once per fetch
            parser: Email parser (a default parser is created when omitted)
            client_factory: IMAP client constructor, replaceable in tests
        """
        self.mailbox_provider = mailbox_provider
        self.parser = parser or EmailParser()
        self.client_factory = client_factory

    def _connection(self) -> ImapConnection:
        return ImapConnection(mailbox=self.mailbox_provider(), client_factory=self.client_factory)

    def fetch_since(self, last_id: Optional[str], limit: int) -> FetchBatch:
        """Fetch up to ``limit`` messages with a UID greater than ``last_id``.

        Args:
            last_id: Last processed UID as a string, or None on first run
            limit: Maximum number of messages to return

        Returns:
            FetchBatch with parsed messages and per-message failures

        Raises:
            ConfigurationError: If the mailbox is not fully configured
            MailConnectionError: For translated connection-level failures
        """
        start = time.perf_counter()
        batch = FetchBatch()
        connection = self._connection()
        folder = connection.mailbox.folder

        with connection.connect() as client:
            select_info = client.select_folder(folder, readonly=True)
            logger.info(
                f"{folder} opened with {select_info.get(b'EXISTS', 0)} messages",
                extra={"last_id": last_id, "limit": limit},
            )

            uids = self._select_candidates(client, last_id, limit)
            batch.candidates = len(uids)
            logger.info(f"Found {len(uids)} messages to process")

            for uid in uids:
                try:
                    message = self._fetch_one(client, uid)
                except Exception as exc:  # noqa: BLE001
                    logger.error(f"Error processing message UID {uid}: {exc}")
                    batch.failures.append(
                        ItemFailure(item=str(uid), error=str(exc), stage="fetch")
                    )
                    continue
                if message is not None:
                    batch.messages.append(message)

        batch.duration_seconds = time.perf_counter() - start
        logger.info(
            f"Fetched {len(batch.messages)} messages from IMAP",
            extra={"failures": len(batch.failures), "candidates": batch.candidates},
        )
        return batch

    def test_connection(self) -> Dict[str, Any]:
        """Connect, read capabilities and open the folder.

        Returns:
            ``{"connected", "supports_idle", "exists", "folder", "connect_seconds"}``
        """
        connection = self._connection()
        folder = connection.mailbox.folder
        with connection.connect() as client:
            capabilities = client.capabilities()
            select_info = client.select_folder(folder, readonly=True)
            return {
                "connected": True,
                "supports_idle": b"IDLE" in capabilities,
                "exists": int(select_info.get(b"EXISTS", 0)),
                "folder": folder,
                "connect_seconds": round(connection.metrics.average_connection_time, 3),
            }

    def _select_candidates(self, client: Any, last_id: Optional[str], limit: int) -> List[int]:
        """Pick the UIDs to download, in processing order.

        Incremental runs return the oldest ``limit`` UIDs above the
        checkpoint so the checkpoint never skips over unfetched mail. Cold
        starts return the newest ``limit`` UIDs, highest first.
        """
        last_uid = self._parse_last_id(last_id)

        if last_uid is None:
            logger.info("No checkpoint found, fetching recent messages (first sync)")
            all_uids = self._normalize_uids(client.search(["ALL"]))
            candidates = sorted(all_uids, reverse=True)[: limit * 2]
            selected = candidates[:limit]
            logger.info(
                f"Fetched {len(all_uids)} total UIDs, taking {len(selected)} most recent"
            )
            return selected

        logger.info(f"Fetching messages with UID > {last_uid}")
        try:
            found = self._normalize_uids(client.search(["UID", f"{last_uid + 1}:*"]))
        except IMAPClient.Error as exc:
            logger.error(f"Error searching with UID range: {exc}")
            # Fall back to every UID and filter locally.
            found = self._normalize_uids(client.search(["ALL"]))

        # "n:*" always matches the highest UID, even when it is below n.
        newer = sorted(uid for uid in found if uid > last_uid)
        return newer[:limit]

    def _fetch_one(self, client: Any, uid: int) -> Optional[FetchedMessage]:
        response = client.fetch([uid], ["BODY.PEEK[]"])
        data = response.get(uid)
        if not data or b"BODY[]" not in data:
            logger.info(f"No data for message UID {uid}")
            return None

        message = self.parser.parse_message(raw_message=data[b"BODY[]"], uid=str(uid))
        logger.debug(f"Successfully parsed message UID {uid}: {message.subject}")
        return message

    @staticmethod
    def _parse_last_id(last_id: Optional[str]) -> Optional[int]:
        if last_id is None or str(last_id).strip() == "":
            return None
        try:
            return int(str(last_id).strip())
        except ValueError:
            logger.warning(f"Invalid checkpoint format: {last_id!r}, fetching recent messages")
            return None

    @staticmethod
    def _normalize_uids(raw: Any) -> List[int]:
        uids: List[int] = []
        for value in raw or []:
            try:
                uids.append(int(value))
            except (TypeError, ValueError):
                logger.error(f"Skipping invalid message UID: {value!r}")
        return uids


__all__ = ["FetchBatch", "MailboxFetcher"]
