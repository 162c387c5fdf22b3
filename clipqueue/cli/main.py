import click
import json
import signal
import threading
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from ..collaborators import load_services
from ..config import load_config, set_value
from ..errors import ClipQueueError
from ..log import configure_logging
from ..models.job import JobPriority, JobStatus
from ..queue import ClipQueue

console = Console()


def _truncate(text, width=50):
    if not text:
        return ""
    text = text[:width] + "..." if len(text) > width else text
    return escape(text)


def _fail(ctx, message):
    console.print(f"[red]{escape(message)}[/red]")
    ctx.exit(1)


def _queue(ctx) -> ClipQueue:
    """Build the queue on first use so `config` commands never touch the database."""
    if ctx.obj.get("queue") is None:
        ctx.obj["queue"] = ClipQueue.from_settings(ctx.obj["settings"])
        ctx.call_on_close(ctx.obj["queue"].close)
    return ctx.obj["queue"]


@click.group()
@click.option('--config', 'config_file', type=click.Path(dir_okay=False), envvar='CLIPQUEUE_CONFIG',
              help='Path to the JSON config file')
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_file, verbose):
    """clipqueue - job orchestration for media processing"""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    try:
        ctx.obj["settings"] = load_config(config_file)
    except (OSError, ValueError) as e:
        _fail(ctx, f"Error loading configuration: {str(e)}")


@cli.command()
@click.argument('job_type')
@click.argument('payload_json')
@click.option('--owner', required=True, help='Submitting principal')
@click.option('--priority', type=click.Choice([p.value for p in JobPriority]), default='normal')
@click.pass_context
def enqueue(ctx, job_type, payload_json, owner, priority):
    """Add a new job to the queue"""
    try:
        payload = json.loads(payload_json)
        job_id = _queue(ctx).add_job(job_type, payload, owner, priority)
        console.print(f"[green]Job {job_id} enqueued successfully[/green]")
    except json.JSONDecodeError as e:
        _fail(ctx, f"Error enqueueing job: payload is not valid JSON ({str(e)})")
    except ClipQueueError as e:
        _fail(ctx, f"Error enqueueing job: {str(e)}")


@cli.command()
@click.argument('job_id')
@click.pass_context
def progress(ctx, job_id):
    """Show progress and estimated time remaining for a job"""
    try:
        info = _queue(ctx).get_job_progress(job_id)
    except ClipQueueError as e:
        _fail(ctx, str(e))
        return

    console.print(f"Job {info.job_id}: [cyan]{info.status.value}[/cyan] {info.progress}%")
    console.print(escape(info.message))
    if info.estimated_seconds_remaining is not None:
        console.print(f"Estimated time remaining: {info.estimated_seconds_remaining}s")


@cli.command()
@click.argument('job_id')
@click.option('--owner', required=True, help='Owner of the job')
@click.pass_context
def cancel(ctx, job_id, owner):
    """Cancel a pending or processing job"""
    if _queue(ctx).cancel_job(job_id, owner):
        console.print(f"[green]Job {job_id} cancelled[/green]")
    else:
        console.print(f"[yellow]Job {job_id} was not cancelled (not found, not yours, or already finished)[/yellow]")


@cli.command('list')
@click.option('--owner', help='Only jobs submitted by this owner, most recent first')
@click.option('--state', type=click.Choice([s.value for s in JobStatus]),
              help='Filter jobs by state')
@click.option('--limit', default=50, show_default=True, help='Maximum number of jobs')
@click.pass_context
def list_jobs(ctx, owner, state, limit):
    """List jobs"""
    queue = _queue(ctx)
    if owner:
        jobs = queue.storage.list_by_owner(owner, limit, status=state)
    else:
        jobs = queue.storage.list_jobs(status=state, limit=limit)

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs {f'in {state} state' if state else ''}")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Priority")
    table.add_column("Progress", justify="right")
    table.add_column("Retries", style="yellow")
    table.add_column("Created At", style="blue")
    table.add_column("Last Error", style="red")

    for job in jobs:
        table.add_row(
            job.id,
            job.type,
            job.status.value,
            job.priority.value,
            f"{job.progress}%",
            f"{job.retry_count}/{job.max_retries}",
            job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            _truncate(job.error_message),
        )

    console.print(table)


@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job states over the last 24 hours"""
    stats = _queue(ctx).stats()

    table = Table(title="Queue Status (last 24h)")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta")
    table.add_row("pending", str(stats.pending_jobs))
    table.add_row("processing", str(stats.processing_jobs))
    table.add_row("completed", str(stats.completed_jobs))
    table.add_row("failed", str(stats.failed_jobs))
    table.add_row("cancelled", str(stats.cancelled_jobs))
    table.add_row("total", str(stats.total_jobs))
    console.print(table)

    if stats.avg_processing_seconds is not None:
        console.print(f"\nAverage processing time: [green]{stats.avg_processing_seconds:.1f}s[/green]")


@cli.command()
@click.pass_context
def cleanup(ctx):
    """Delete finished jobs older than the retention window"""
    deleted = _queue(ctx).cleanup_old_jobs()
    console.print(f"[green]Deleted {deleted} old job(s)[/green]")


@cli.group()
def worker():
    """Run the dispatcher"""
    pass


@worker.command('start')
@click.option('--concurrency', type=int, help='Override max-concurrent-jobs')
@click.pass_context
def worker_start(ctx, concurrency):
    """Run the dispatcher and reaper until interrupted"""
    settings = ctx.obj["settings"]
    if concurrency:
        settings = settings.model_copy(update={"max_concurrent_jobs": concurrency})
    if not settings.collaborators:
        _fail(ctx, "No collaborators configured; run `clipqueue config set collaborators module:factory`")
        return

    try:
        services = load_services(settings.collaborators, settings)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        _fail(ctx, f"Error loading collaborators: {str(e)}")
        return

    queue = ClipQueue.from_settings(settings, services=services)
    stopped = threading.Event()

    def handle_shutdown(signum, frame):
        """Handle shutdown signals gracefully"""
        console.print("\nShutting down dispatcher gracefully...")
        stopped.set()

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    queue.start()
    console.print(f"[green]Dispatcher running with up to {settings.max_concurrent_jobs} concurrent job(s)[/green]")
    try:
        while not stopped.wait(1.0):
            pass
    finally:
        queue.stop(wait=True)
        queue.storage.close()
        console.print("[green]Dispatcher stopped[/green]")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx, key):
    """Get a configuration value"""
    values = ctx.obj["settings"].model_dump(by_alias=True)
    if key not in values:
        console.print(f"[yellow]Configuration key '{key}' not found[/yellow]")
    else:
        console.print(f"{key}: {values[key]}")


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    """Set a configuration value"""
    try:
        settings = set_value(key, value, ctx.obj["config_file"])
    except ValidationError as e:
        _fail(ctx, f"Error setting configuration: {str(e)}")
        return
    console.print(f"[green]Set {key} to {settings.model_dump(by_alias=True)[key]}[/green]")


if __name__ == '__main__':
    cli()
