# SPDX-License-Identifier: Apache-2.0
"""Click CLI entry point: schema setup and offline verification of audit chains and receipts."""
import json
import sys

import click

from consentlab.config import settings
from consentlab.core.exceptions import IntegrityFailure, NotFoundError
from consentlab.database import Store
from consentlab.models import Consent
from consentlab.services.audit_service import verify_chain
from consentlab.services.consent_service import verify_receipt
from consentlab.services.study_service import get_study_by_slug
from sqlmodel import select


@click.group()
@click.option("--database-url", default=settings.database_url, envvar="DATABASE_URL", help="Database URL")
@click.pass_context
def cli(ctx, database_url):
    """consentlab: study consent store administration."""
    ctx.ensure_object(dict)
    store = Store(database_url)
    store.init()
    ctx.obj["store"] = store
    ctx.call_on_close(store.close)


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create all tables (idempotent)."""
    click.echo(f"Tables ready at {ctx.obj['store'].url}")


@cli.command("verify-chain")
@click.argument("slug")
@click.pass_context
def verify_chain_cmd(ctx, slug):
    """Walk a study's audit chain and recompute every hash."""
    with ctx.obj["store"].session() as session:
        try:
            study = get_study_by_slug(session, slug)
        except NotFoundError as e:
            raise click.ClickException(e.message)
        report = verify_chain(session, study.id)
    click.echo(json.dumps(report.as_dict(), indent=2))
    try:
        report.raise_for_failure()
    except IntegrityFailure as e:
        click.echo(e.message, err=True)
        sys.exit(1)


@cli.command("verify-receipts")
@click.argument("slug")
@click.pass_context
def verify_receipts_cmd(ctx, slug):
    """Recompute the receipt hash of every consent version in a study."""
    with ctx.obj["store"].session() as session:
        try:
            study = get_study_by_slug(session, slug)
        except NotFoundError as e:
            raise click.ClickException(e.message)
        consents = list(
            session.exec(
                select(Consent).where(Consent.study_id == study.id).order_by(Consent.participant_id, Consent.version)
            )
        )
        bad = [
            {"participant_id": c.participant_id, "version": c.version}
            for c in consents
            if not verify_receipt(c)
        ]
    click.echo(json.dumps({"study": slug, "checked": len(consents), "failed": bad}, indent=2))
    if bad:
        sys.exit(1)


def main():
    """Entry point for console_scripts."""
    cli(obj={})


if __name__ == "__main__":
    main()
