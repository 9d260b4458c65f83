"""CLI tools for forms and email rules."""

import json

import anyio
import click

from officiant.core.config import settings
from officiant.core.deps import get_email_engine, get_persistence
from officiant.core.structured_logging import configure_logging
from officiant.db.base import Base
from officiant.db.session import engine


@click.group()
def cli():
    """Officiant CLI tools."""
    configure_logging(settings.LOG_LEVEL)


@cli.command()
def init_db():
    """Create all tables in DATABASE_URL."""
    import officiant.db.models  # noqa: F401

    Base.metadata.create_all(engine)
    click.echo("Tables created")


@cli.command()
@click.option("--form-id", required=True, help="Form to evaluate rules for")
@click.option("--data", "data_file", type=click.File("r"), required=True, help="JSON submission payload")
def test_rules(form_id: str, data_file):
    """
    Dry-run a form's email rules against a payload. Nothing is sent.

    Example:
        python -m officiant.cli test-rules --form-id <uuid> --data submission.json
    """
    try:
        data = json.load(data_file)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"Invalid JSON: {exc.msg}", param_hint="--data") from exc

    async def _run():
        return await get_email_engine().dry_run(form_id, data)

    previews = anyio.run(_run)
    if not previews:
        click.echo("No active rules")
        return
    for preview in previews:
        status = "MATCH" if preview.matched else "no match"
        click.echo(f"[{status}] {preview.rule_name} ({preview.rule_id})")
        for detail in preview.details:
            click.echo(f"    {detail['field']} {detail['operator']} -> {detail['result']}: {detail['reason']}")
        if preview.error:
            click.echo(f"    error: {preview.error}")
        if preview.matched and preview.subject is not None:
            click.echo(f"    to: {preview.recipient}  subject: {preview.subject}")
            if preview.unresolved_variables:
                click.echo(f"    unresolved: {', '.join(preview.unresolved_variables)}")


@cli.command()
@click.option("--submission-id", required=True, help="Stored submission to re-run email rules for")
def reprocess_submission(submission_id: str):
    """Run email rules for a stored submission again and send matches."""

    async def _run():
        submission = await get_persistence().get_submission(submission_id)
        if submission is None:
            return None
        return await get_email_engine().process_submission(
            submission["form_id"],
            submission["data"],
            submission_id=submission["id"],
            lead_id=submission["lead_id"],
        )

    summary = anyio.run(_run)
    if summary is None:
        click.echo(f"Submission {submission_id} not found")
        return
    click.echo(
        f"correlation={summary.correlation_id} evaluated={summary.rules_evaluated} "
        f"matched={summary.rules_matched} sent={summary.sent} failed={summary.failed}"
    )
    if summary.error:
        click.echo(f"error: {summary.error}")


if __name__ == "__main__":
    cli()
