import asyncio
from contextlib import asynccontextmanager
import logging

import typer
from gidgethub import aiohttp as gh_aiohttp
from aiolimiter import AsyncLimiter
import aiohttp
import cachetools
import humanize
from tabulate import tabulate

from lifeline.cache import get_rate_limit_state
from lifeline.config import SETTINGS
from lifeline.db_migrations import migrate_db
from lifeline.errors import RequestNotFound
from lifeline.github.api import API
from lifeline.lifecycle.derive import derive_request_status
from lifeline.lifecycle.types import Stage
from lifeline.logger import get_log_handlers
from lifeline.model import utcnow
from lifeline.service import ReconciliationService
from lifeline.storage import RequestStore


logging.basicConfig(
    format="%(asctime)s %(name)s %(levelname)s - %(message)s", level=logging.INFO
)
logger = logging.getLogger("lifeline")


app = typer.Typer()
httpcache = cachetools.LRUCache(maxsize=500)


@app.callback()
def init():
    logging.getLogger().setLevel(SETTINGS.OVERRIDE_LOGGING)
    logger.setLevel(SETTINGS.OVERRIDE_LOGGING)
    get_log_handlers(logger)


def get_store() -> RequestStore:
    store = RequestStore(SETTINGS.LIFELINE_DB_PATH)
    store.initialize()
    return store


@asynccontextmanager
async def github_client():
    async with aiohttp.ClientSession() as session:
        gh = gh_aiohttp.GitHubAPI(
            session,
            "lifeline",
            oauth_token=SETTINGS.GITHUB_TOKEN,
            cache=httpcache,
        )
        yield API(gh, limiter=AsyncLimiter(SETTINGS.GITHUB_API_RATE_PER_MINUTE, 60))


def _ago(value) -> str:
    return humanize.naturaltime(utcnow() - value) if value is not None else "-"


@app.command()
def serve(host: str = "0.0.0.0", port: int = 8000, debug: bool = False):
    from lifeline.web import create_app

    create_app().run(host=host, port=port, debug=debug, single_process=True)


@app.command()
def migrate(revision: str = "head"):
    logger.info("Migrating %s to %s", SETTINGS.LIFELINE_DB_PATH, revision)
    reached = migrate_db(SETTINGS.LIFELINE_DB_PATH, revision=revision)
    typer.echo(f"{SETTINGS.LIFELINE_DB_PATH}: {reached or 'base'}")


@app.command(name="list")
def list_requests(limit: int = 50):
    rows = []
    for request in get_store().list_requests(limit=limit):
        rows.append(
            (
                request.id,
                request.repo_full_name or "-",
                request.pr.number if request.pr is not None else "-",
                derive_request_status(request).value,
                _ago(request.updated_at),
            )
        )
    typer.echo(
        tabulate(rows, headers=["request", "repository", "pr", "status", "updated"])
    )


@app.command()
def show(request_id: str):
    request = get_store().get_request(request_id)
    if request is None:
        typer.echo(f"Request not found: {request_id}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"{request.id}: {derive_request_status(request).value}")
    typer.echo(f"repository: {request.repo_full_name or '-'}")
    typer.echo(f"branch: {request.branch_name or '-'}")
    if request.pr is not None:
        typer.echo(f"pr: #{request.pr.number} {request.pr.url or ''}")
    typer.echo(f"updated: {_ago(request.updated_at)}")

    rows = []
    for stage in Stage:
        for attempt in request.runs.attempts(stage):
            rows.append(
                (
                    stage.value,
                    attempt.attempt,
                    attempt.run_id or "-",
                    attempt.status or "-",
                    attempt.conclusion or "-",
                    _ago(attempt.updated_at),
                )
            )
    if rows:
        typer.echo(
            tabulate(
                rows,
                headers=["stage", "#", "run", "status", "conclusion", "updated"],
            )
        )


@app.command()
def sync(request_id: str, force: bool = False):
    async def handle():
        with get_rate_limit_state() as rate_limits:
            service = ReconciliationService(get_store(), rate_limits=rate_limits)
            async with github_client() as api:
                return await service.sync(request_id, lambda: api, force=force)

    try:
        result = asyncio.run(handle())
    except RequestNotFound:
        typer.echo(f"Request not found: {request_id}", err=True)
        raise typer.Exit(code=1)

    typer.echo(
        f"{request_id}: {result.status.value} "
        f"(repaired={result.repaired}, next poll in "
        f"{humanize.naturaldelta(result.poll_interval_ms / 1000) if result.poll_interval_ms else 'never'})"
    )
    if result.error:
        typer.echo(f"error: {result.error}", err=True)


@app.command()
def stream(since: int = 0):
    seq, events = ReconciliationService(get_store()).read_stream(since)
    rows = [(e.seq, e.request_id, e.type, _ago(e.updated_at)) for e in events]
    typer.echo(tabulate(rows, headers=["seq", "request", "type", "when"]))
    typer.echo(f"current seq: {seq}")
