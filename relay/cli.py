import asyncio
import json
import logging
import signal
from typing import Awaitable, Callable, Optional, TypeVar

import click

from relay.settings import settings
from relay.db.session import Store
from relay.domain.errors import RelayError
from relay.domain.models import Job
from relay.domain.states import JobStatus, Platform
from relay.services.queue import JobQueue
from relay.auth.tokens import CredentialManager

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def _with_store(fn: Callable[[Store], Awaitable[T]]) -> T:
    store = Store(settings.SQLALCHEMY_DATABASE_URI)
    try:
        await store.create_all()
        return await fn(store)
    finally:
        await store.dispose()


def _run(fn: Callable[[Store], Awaitable[T]]) -> T:
    try:
        return asyncio.run(_with_store(fn))
    except RelayError as e:
        raise click.ClickException(str(e))


def _queue(store: Store) -> JobQueue:
    return JobQueue(store, settings.engine_config())


def _format_job(job: Job) -> str:
    scheduled = job.scheduled_at.isoformat() if job.scheduled_at else "-"
    line = (
        f"{job.id} | {job.platform}:{job.action} | status={job.status} | "
        f"retries={job.retry_count} | scheduled_at={scheduled}"
    )
    if job.error_message:
        line += f" | error={job.error_message}"
    return line


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: Optional[str]):
    """relay - publish queue and OAuth credential relay"""
    logging.basicConfig(
        level=(log_level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# ---------------- Processes ----------------
@cli.command()
@click.option("--host", default=None, help="Bind address (default OAUTH_HOST)")
@click.option("--port", default=None, type=int, help="Port (default OAUTH_PORT)")
def serve(host: Optional[str], port: Optional[int]):
    """Run the queue API and OAuth callback server"""
    import uvicorn

    uvicorn.run(
        "relay.main:create_app",
        factory=True,
        host=host or settings.OAUTH_HOST,
        port=port or settings.OAUTH_PORT,
    )


def _executor(command: Optional[str]):
    from relay.scheduler.executor import SubprocessExecutor

    command = command or settings.EXECUTOR_COMMAND
    if not command:
        raise click.UsageError("No executor configured. Set EXECUTOR_COMMAND or pass --executor.")
    return SubprocessExecutor(command, timeout=settings.EXECUTOR_TIMEOUT_SECONDS)


@cli.command()
@click.option("--executor", "command", default=None, help="Publisher command, may contain {platform}")
def scheduler(command: Optional[str]):
    """Run the dispatch loop and the daily retention sweep"""
    from relay.scheduler.service import DispatchLoop
    from relay.scheduler.ticker import RetentionTicker

    executor = _executor(command)

    async def run(store: Store):
        queue = _queue(store)
        stats = await queue.stats()
        logger.info(f"Initial stats: {vars(stats)}")

        dispatch = DispatchLoop(queue, executor)
        retention = RetentionTicker(queue, schedule=settings.RETENTION_CRON)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows support
                pass

        await dispatch.start()
        await retention.start()
        click.echo("Scheduler running. Press Ctrl+C to stop.")
        try:
            await stop.wait()
        finally:
            logger.info("Shutting down...")
            await dispatch.stop()
            await retention.stop()

    _run(run)


@cli.command()
@click.option("--executor", "command", default=None, help="Publisher command, may contain {platform}")
def tick(command: Optional[str]):
    """Process the ready set once and exit"""
    from relay.scheduler.service import DispatchLoop

    executor = _executor(command)

    async def run(store: Store):
        return await DispatchLoop(_queue(store), executor).tick()

    report = _run(run)
    click.echo(
        f"Processed {report.processed} jobs: {report.completed} completed, "
        f"{report.failed} failed, {report.skipped} over the retry ceiling"
    )


# ---------------- Queue ----------------
@cli.command()
@click.option("--platform", required=True, help="youtube | facebook | tiktok")
@click.option("--action", required=True, help="Platform action, e.g. upload")
@click.option("--content", default="{}", help="JSON content passed to the publisher")
@click.option("--at", "scheduled_at", default=None, help="ISO-8601 schedule time (default now)")
@click.option("--file", "file_path", default=None, type=click.Path(), help="Media file to publish")
def add(platform: str, action: str, content: str, scheduled_at: Optional[str], file_path: Optional[str]):
    """Add a post to the queue"""
    try:
        payload = json.loads(content)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON ({e})", param_hint="--content")

    async def run(store: Store):
        return await _queue(store).enqueue(platform, action, payload, scheduled_at, file_path)

    job_id = _run(run)
    click.echo(f"Job {job_id} added to queue")


@cli.command(name="list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), default=None)
@click.option("--platform", default=None)
@click.option("--limit", type=int, default=None)
def list_cmd(status: Optional[str], platform: Optional[str], limit: Optional[int]):
    """List posts, newest first"""
    async def run(store: Store):
        return await _queue(store).list_jobs(
            status=JobStatus(status) if status else None,
            platform=platform,
            limit=limit,
        )

    jobs = _run(run)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(_format_job(job))


@cli.command()
@click.argument("job_id", type=int)
def get(job_id: int):
    """Show one post"""
    async def run(store: Store):
        return await _queue(store).get(job_id)

    job = _run(run)
    if not job:
        raise click.ClickException(f"Job {job_id} not found")
    click.echo(_format_job(job))
    click.echo(f"content={job.content_json}")
    if job.result_json:
        click.echo(f"result={job.result_json}")


@cli.command()
@click.argument("job_id", type=int)
def cancel(job_id: int):
    """Cancel a pending post"""
    async def run(store: Store):
        return await _queue(store).cancel(job_id)

    if _run(run):
        click.echo(f"Job {job_id} cancelled")
    else:
        raise click.ClickException(f"Job {job_id} not found or already processed")


@cli.command()
@click.argument("job_id", type=int)
def retry(job_id: int):
    """Move a failed post back to pending"""
    async def run(store: Store):
        return await _queue(store).retry(job_id)

    if _run(run):
        click.echo(f"Job {job_id} queued for retry")
    else:
        raise click.ClickException(f"Job {job_id} not found or not failed")


@cli.command()
def stats():
    """Show queue counts by status"""
    async def run(store: Store):
        return await _queue(store).stats()

    s = _run(run)
    click.echo(f"Queue stats:\nTotal: {s.total}\nPending: {s.pending}\nCompleted: {s.completed}\nFailed: {s.failed}")


@cli.command()
@click.option("--days", type=int, default=None, help="Retention in days (default RETENTION_DAYS)")
def cleanup(days: Optional[int]):
    """Delete old completed/failed posts"""
    async def run(store: Store):
        return await _queue(store).purge_older_than(days if days is not None else settings.RETENTION_DAYS)

    click.echo(f"Cleaned up {_run(run)} old posts")


# ---------------- Credentials ----------------
@cli.command()
def tokens():
    """Show credential status for every platform"""
    async def run(store: Store):
        manager = CredentialManager(store, settings.engine_config())
        return [(p.value, await manager.status(p.value)) for p in Platform]

    for platform, st in _run(run):
        if not st.exists:
            click.echo(f"{platform}: not authenticated")
            continue
        expires = st.expires_at.isoformat() if st.expires_at else "never"
        flags = "expired" if st.expired else ("refresh due" if st.needs_refresh else "ok")
        click.echo(f"{platform}: {flags} (expires {expires})")


@cli.command()
@click.argument("platform")
def logout(platform: str):
    """Delete the stored credential for a platform"""
    async def run(store: Store):
        tag = Platform.parse(platform)
        return await CredentialManager(store).remove(tag.value)

    if _run(run):
        click.echo(f"Removed {platform} credential")
    else:
        raise click.ClickException(f"No credential stored for {platform}")


if __name__ == "__main__":
    cli()
