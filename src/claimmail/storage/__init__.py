"""Attachment storage collaborator."""

from .attachments import (
    AttachmentOwner,
    AttachmentStorage,
    CLAIM_ATTACHMENTS_SUBFOLDER,
    ClaimRef,
    sanitize_claim_code,
    sanitize_file_name,
)

__all__ = [
    "AttachmentOwner",
    "AttachmentStorage",
    "CLAIM_ATTACHMENTS_SUBFOLDER",
    "ClaimRef",
    "sanitize_claim_code",
    "sanitize_file_name",
]
