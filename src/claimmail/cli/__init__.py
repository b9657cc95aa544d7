"""Command line entry points for claimmail."""

from typer import Typer

from ..ingestion.imap.cli import mail_app


cli = Typer(help="Claims mailbox sync tools")
cli.add_typer(mail_app, name="mail")

__all__ = ["cli", "mail_app"]
