"""
Local Automation Engine CLI
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import click
import yaml

from .ai.summarizer import ResilientSummarizer
from .ai.text_generator import MockTextGenerator
from .config import EngineSettings
from .core.engine import AutomationEngine
from .core.parser import WorkflowParser
from .core.validator import WorkflowValidator
from .exceptions import AutomationEngineError, ConfigurationError
from .integrations.mail import InMemoryMailService
from .integrations.messaging import InMemoryMessagingService
from .integrations.users import InMemoryUserDirectory, UserProfile
from .models.workflow import SummaryStyle, Workflow


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

EXAMPLE_WORKFLOW = {
    "workflow": {
        "name": "Summarize important mail",
        "description": "Summarize new mail from the team and forward the summary to chat",
        "owner_id": "me",
        "triggers": [
            {
                "type": "mail_arrival",
                "user_id": "me",
                "condition": {"from_filter": "team@example.com", "unread_only": True},
            }
        ],
        "actions": [
            {"type": "summarize_email", "max_length": 50},
            {
                "type": "send_message",
                "chat_id": "me-chat",
                "text": "{{email_subject}} ({{email_urgency}}): {{email_summary}}",
            },
            {"type": "log", "message": "Forwarded summary of {{email_id}}", "level": "info"},
        ],
    }
}


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to AUTOMATION_LOG_LEVEL)')
@click.option('--env-file', type=click.Path(dir_okay=False), default=None, help='Load settings from a .env file')
@click.pass_context
def cli(ctx, log_level, env_file):
    """Local Automation Engine CLI"""
    try:
        settings = EngineSettings.from_env(env_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    logging.basicConfig(
        level=getattr(logging, (log_level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT
    )
    ctx.obj = settings


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow definition file"""
    try:
        workflow = WorkflowParser().parse_file(Path(workflow_file))
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    report = WorkflowValidator().validate(workflow)
    for issue in report.warnings:
        click.echo(f"Warning: {issue}")
    for issue in report.errors:
        click.echo(f"Error: {issue}", err=True)

    if not report.is_valid:
        raise SystemExit(1)
    click.echo(f"Workflow '{workflow.name}' is valid ({workflow.action_count} actions)")


def _parse_vars(values: Tuple[str, ...]) -> Dict[str, str]:
    variables = {}
    for item in values:
        key, sep, value = item.partition('=')
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got '{item}'", param_hint='--var')
        variables[key.strip()] = value
    return variables


def _demo_directory(workflow: Workflow, user_id: str, settings: EngineSettings) -> InMemoryUserDirectory:
    """为工作流涉及的用户注册内存邮件/消息服务"""
    directory = InMemoryUserDirectory()
    user_ids = [workflow.owner_id, user_id, *workflow.shared_with]
    for uid in dict.fromkeys(u for u in user_ids if u):
        directory.add_user(
            UserProfile(user_id=uid, display_name=uid, email=f"{uid}@localhost", chat_id=f"{uid}-chat"),
            mail=InMemoryMailService(address=f"{uid}@localhost"),
            messaging=InMemoryMessagingService(chunk_limit=settings.message_chunk_limit)
        )
    return directory


async def _run_workflow(
    workflow: Workflow,
    user_id: str,
    variables: Dict[str, str],
    settings: EngineSettings,
    database_url: Optional[str]
):
    directory = _demo_directory(workflow, user_id, settings)
    db = None
    stores = {}
    if database_url:
        from .storage.sqlalchemy_repository import (
            DatabaseManager, SQLAlchemyExecutionHistoryStore, SQLAlchemyProcessedItemStore,
            SQLAlchemyWorkflowRepository
        )
        db = DatabaseManager(database_url)
        await db.initialize()
        stores = {
            "workflow_repository": SQLAlchemyWorkflowRepository(db),
            "history_store": SQLAlchemyExecutionHistoryStore(db),
            "processed_store": SQLAlchemyProcessedItemStore(db),
        }

    try:
        engine = AutomationEngine(
            directory,
            text_generator=MockTextGenerator(),
            settings=settings,
            **stores
        )
        await engine.register_workflow(workflow)
        return await engine.run_now(workflow.id, user_id, variables)
    finally:
        if db is not None:
            await db.close()


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--user', 'user_id', default=None, help='Triggering user (defaults to the owner)')
@click.option('--var', 'variables', multiple=True, help='Trigger payload value as key=value')
@click.option('--sqlite', 'database_url', default=None,
              help='Persist to a database URL, e.g. sqlite+aiosqlite:///automation.db')
@click.pass_obj
def run(settings, workflow_file, user_id, variables, database_url):
    """Run a workflow once with in-memory collaborators"""
    payload = _parse_vars(variables)
    try:
        workflow = WorkflowParser().parse_file(Path(workflow_file))
        result = asyncio.run(
            _run_workflow(workflow, user_id or workflow.owner_id, payload, settings, database_url)
        )
    except AutomationEngineError as e:
        raise click.ClickException(str(e))

    click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    if not result.success:
        raise SystemExit(1)


@cli.command()
@click.argument('text', required=False, default='-')
@click.option('--max-length', default=100, show_default=True, type=click.IntRange(min=1),
              help='Word budget for the summary')
@click.option('--style', type=click.Choice([style.value for style in SummaryStyle]),
              default=SummaryStyle.CONCISE.value, show_default=True)
@click.option('--email', 'as_email', is_flag=True, help='Treat the text as an email body')
@click.option('--subject', default='', help='Email subject (with --email)')
@click.option('--sender', default='', help='Email sender (with --email)')
def summarize(text, max_length, style, as_email, subject, sender):
    """Summarize TEXT (or stdin) without an AI backend"""
    if text == '-':
        text = click.get_text_stream('stdin').read()

    summarizer = ResilientSummarizer()
    if as_email:
        summary = asyncio.run(summarizer.summarize_email(subject, text, sender, max_length))
        click.echo(summary.summary)
        click.echo(f"Urgency: {summary.urgency.value}")
        for point in summary.key_points:
            click.echo(f"- {point}")
    else:
        click.echo(asyncio.run(summarizer.summarize(text, max_length, SummaryStyle(style))))


@cli.command()
@click.argument('workflow_files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--output', '-o', required=True, type=click.Path(dir_okay=False), help='Export document path')
def export(workflow_files, output):
    """Bundle workflow files into an export document"""
    parser = WorkflowParser()
    try:
        workflows = [parser.parse_file(Path(path)) for path in workflow_files]
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    fmt = 'yaml' if Path(output).suffix.lower() in ('.yaml', '.yml') else 'json'
    Path(output).write_text(parser.dump_export(workflows, fmt), encoding='utf-8')
    click.echo(f"Exported {len(workflows)} workflows to {output}")


@cli.command()
def init():
    """Initialize a new workflow project"""
    click.echo("Initializing new workflow project...")

    workflows_dir = Path('workflows')
    workflows_dir.mkdir(exist_ok=True)
    click.echo(f"Created {workflows_dir}/")

    example = workflows_dir / 'example.yaml'
    if example.exists():
        click.echo(f"{example} already exists, leaving it unchanged")
        return

    with open(example, 'w', encoding='utf-8') as f:
        yaml.safe_dump(EXAMPLE_WORKFLOW, f, sort_keys=False, allow_unicode=True)

    click.echo(f"Created {example}")
    click.echo("Project initialized successfully!")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
