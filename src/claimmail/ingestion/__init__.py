"""Mailbox ingestion for claimmail."""
