import json
import sys
import time

import click
from flask.cli import with_appcontext

from .exceptions import TemplateValidationError
from .manager import get_workflow
from .models import ProcessHistory, ProcessInstance, db
from .schemas import ProcessHistorySchema, ProcessInstanceSchema
from .template import validate_template


def echo_header(title):
    click.echo(click.style(title, fg="green"))
    click.echo(click.style("-" * len(title), fg="green"))


@click.group()
def workflow():
    """Workflow engine commands."""
    pass


@workflow.command()
@with_appcontext
def jobs():
    """List scheduled jobs and their schedules."""
    echo_header("Scheduled Jobs")
    for name, status in get_workflow().scheduler.job_status().items():
        click.echo(f"{name}: {status['schedule']}")


@workflow.command("run-job")
@click.argument("name")
@with_appcontext
def run_job(name):
    """Run one scheduled job now."""
    scheduler = get_workflow().scheduler
    if name not in scheduler.jobs:
        click.echo(click.style(f"Unknown job: {name}", fg="red"))
        sys.exit(1)

    job = scheduler.get_job(name)
    result = job.run_once()
    if job.last_error:
        click.echo(click.style(f"Job {name} failed: {job.last_error}", fg="red"))
        sys.exit(1)
    click.echo(click.style(f"Job {name} finished: {result}", fg="green"))


@workflow.command()
@with_appcontext
def escalate():
    """Escalate overdue tasks once."""
    count = get_workflow().engine.escalate_overdue_tasks()
    click.echo(f"Escalated {count} overdue task(s)")


@workflow.command("drain-outbox")
@click.option("--limit", type=int, default=None, help="Maximum number of events to deliver")
@with_appcontext
def drain_outbox(limit):
    """Deliver pending outbox events."""
    stats = get_workflow().dispatcher.drain(limit)
    click.echo(f"Delivered {stats['delivered']}, failed {stats['failed']}")


@workflow.command("validate-template")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def validate_template_file(path):
    """Validate a JSON process template file."""
    with open(path) as f:
        try:
            payload = json.load(f)
        except ValueError as e:
            click.echo(click.style(f"{path}: invalid JSON: {e}", fg="red"))
            sys.exit(1)

    try:
        graph = validate_template(payload)
    except TemplateValidationError as e:
        click.echo(click.style(f"{path}: {e.message}", fg="red"))
        click.echo(json.dumps(e.messages, indent=2, sort_keys=True))
        sys.exit(1)

    click.echo(click.style(
        f"{path}: valid, {len(graph.steps)} steps, start '{graph.start_step}', "
        f"end {sorted(graph.end_steps)}",
        fg="green",
    ))


@workflow.command()
@with_appcontext
def scheduler():
    """Run every scheduled job in the foreground until interrupted."""
    service = get_workflow().scheduler
    service.start()
    click.echo(f"Scheduler running {len(service.jobs)} jobs, press CTRL+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()


@workflow.command()
@click.argument("instance_id", type=int)
@click.option("--history", is_flag=True, help="Include the audit history")
@with_appcontext
def show(instance_id, history):
    """Print a process instance and its steps as JSON."""
    instance = db.session.get(ProcessInstance, instance_id)
    if instance is None:
        click.echo(click.style(f"Process instance {instance_id} not found", fg="red"))
        sys.exit(1)

    data = ProcessInstanceSchema().dump(instance)
    if history:
        rows = (
            db.session.query(ProcessHistory)
            .filter(ProcessHistory.process_instance_id == instance_id)
            .order_by(ProcessHistory.timestamp, ProcessHistory.id)
            .all()
        )
        data['history'] = ProcessHistorySchema(many=True).dump(rows)
    click.echo(json.dumps(data, indent=2, sort_keys=True))
