"""On-disk attachment storage.

Attachments of threads linked to a claim land in the claim's folder
(``<root>/<claim year|unknown>/<claim code|claim id>/03_attachments``);
attachments of unassigned threads land in ``<root>/_unassigned/<thread id>``.
Callers only ever see the path relative to the storage root.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from claimmail.errors import AttachmentStorageError

logger = logging.getLogger(__name__)

CLAIM_ATTACHMENTS_SUBFOLDER = "03_attachments"
UNASSIGNED_DIR = "_unassigned"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_UNSAFE_CLAIM_CODE_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


class ClaimRef(BaseModel):
    """The subset of a claim the storage layout needs."""

    id: str = Field(..., description="Claim primary key")
    claim_code: Optional[str] = Field(default=None, description="Raw claim code, e.g. 2024/0042")
    claim_year: Optional[int] = Field(default=None)


class AttachmentOwner(BaseModel):
    """Where an attachment belongs: a claim when known, else the thread."""

    thread_id: str
    claim: Optional[ClaimRef] = None

    @property
    def is_claim(self) -> bool:
        return self.claim is not None


def sanitize_file_name(file_name: str) -> str:
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", file_name)
    sanitized = _REPEATED_UNDERSCORES.sub("_", sanitized)
    # Dot-only names would escape the target directory.
    if not sanitized.strip("."):
        return "unnamed"
    return sanitized


def sanitize_claim_code(claim_code: str) -> str:
    sanitized = claim_code.replace("/", "-")
    sanitized = _UNSAFE_CLAIM_CODE_CHARS.sub("_", sanitized)
    return _REPEATED_UNDERSCORES.sub("_", sanitized)


class AttachmentStorage:
    """Writes attachment blobs below a single root directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def claim_base_path(self, claim: ClaimRef) -> Path:
        year_dir = str(claim.claim_year) if claim.claim_year else "unknown"
        claim_dir = sanitize_claim_code(claim.claim_code) if claim.claim_code else claim.id
        return self.root / year_dir / claim_dir

    def unassigned_thread_path(self, thread_id: str) -> Path:
        return self.root / UNASSIGNED_DIR / thread_id

    def save_attachment(
        self,
        owner: AttachmentOwner,
        data: bytes,
        file_name: str,
        mime_type: str,
        *,
        subfolder: str = CLAIM_ATTACHMENTS_SUBFOLDER,
    ) -> str:
        """Write ``data`` and return its path relative to the storage root.

        Existing files are never overwritten; a ``_<n>`` suffix is added
        before the extension until the name is free.

        Raises:
            AttachmentStorageError: If the directory or file cannot be written
        """
        if owner.claim is not None:
            target_dir = self.claim_base_path(owner.claim) / subfolder
        else:
            target_dir = self.unassigned_thread_path(owner.thread_id)

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            target = self._unique_path(target_dir, sanitize_file_name(file_name))
            target.write_bytes(data)
        except OSError as exc:
            raise AttachmentStorageError(
                f"Failed to store attachment {file_name!r}: {exc}",
                details={"thread_id": owner.thread_id, "mime_type": mime_type},
            ) from exc

        relative = target.relative_to(self.root).as_posix()
        logger.debug(
            f"Stored attachment {relative}",
            extra={"size_bytes": len(data), "mime_type": mime_type},
        )
        return relative

    def resolve(self, relative_path: str) -> Path:
        """Absolute path for a stored attachment."""
        path = (self.root / relative_path).resolve()
        if path != self.root and self.root not in path.parents:
            raise AttachmentStorageError(f"Path escapes storage root: {relative_path}")
        return path

    @staticmethod
    def _unique_path(directory: Path, file_name: str) -> Path:
        candidate = directory / file_name
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem}_{counter}{suffix}"
            counter += 1
        return candidate


__all__ = [
    "AttachmentOwner",
    "AttachmentStorage",
    "CLAIM_ATTACHMENTS_SUBFOLDER",
    "ClaimRef",
    "sanitize_claim_code",
    "sanitize_file_name",
]
