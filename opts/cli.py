"""
Operational commands, registered under ``flask opts``.

    flask opts seed            # offices, roles, action tags, standard workflows
    flask opts check-overdue   # cron: notify on overdue transactions
"""

import logging

import click
from flask.cli import AppGroup

logger = logging.getLogger(__name__)

opts_cli = AppGroup("opts", help="Procurement routing commands.")


@opts_cli.command("seed")
def seed_cmd():
    """Seed reference data (idempotent)."""
    from opts.services.seed_service import seed_all

    counts = seed_all()
    click.echo(
        f"Seeded {counts['directory']} directory rows, "
        f"{counts['actions_taken']} action tags, {counts['workflows']} workflows."
    )


@opts_cli.command("check-overdue")
def check_overdue_cmd():
    """Notify holders and Administrators about overdue transactions."""
    from opts.services.overdue import check_overdue_transactions

    count = check_overdue_transactions()
    click.echo(f"Overdue notices sent for {count} transaction(s).")
