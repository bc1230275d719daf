import asyncio
import json
import logging
from typing import Optional

from sanic import Sanic, response, Request
from sanic.exceptions import BadRequest
import aiohttp
from aiolimiter import AsyncLimiter
from gidgethub import aiohttp as gh_aiohttp
from sanic.log import logger
import sanic.log
import cachetools
from prometheus_client import core
from prometheus_client.exposition import generate_latest

from lifeline.cache import RateLimitState, get_rate_limit_state
from lifeline.config import SETTINGS, Settings
from lifeline.errors import RequestNotFound
from lifeline.github.api import API
from lifeline.ingest import IngestOutcome, IngestResult
from lifeline.lifecycle.derive import derive_request_status
from lifeline.lifecycle.types import status_meta
from lifeline.logger import get_log_handlers
from lifeline.metric import error_counter, request_counter
from lifeline.service import ReconciliationService
from lifeline.storage import RequestStore
from lifeline.stream import StreamBroadcaster

HEARTBEAT_SECONDS = 15.0


def _flag(request: Request, key: str) -> bool:
    value = request.args.get(key)
    return value is not None and str(value).lower() in ("1", "true", "yes")


def _since(request: Request) -> int:
    raw = request.args.get("since") or request.headers.get("Last-Event-ID")
    try:
        return max(0, int(raw)) if raw is not None else 0
    except ValueError:
        return 0


def github_client(app) -> Optional[API]:
    if app.ctx.settings.GITHUB_TOKEN is None:
        return None
    gh = gh_aiohttp.GitHubAPI(
        app.ctx.aiohttp_session,
        "lifeline",
        oauth_token=app.ctx.settings.GITHUB_TOKEN,
        cache=app.ctx.cache,
    )
    return API(gh, limiter=app.ctx.limiter)


def request_view(request_row) -> dict:
    status = derive_request_status(request_row)
    meta = status_meta(status)
    return {
        "request": request_row.model_dump(mode="json"),
        "status": status.value,
        "label": meta.label,
        "status_class": meta.status_class.value,
        "is_terminal": meta.is_terminal,
    }


async def process_webhook(app, request) -> IngestResult:
    service: ReconciliationService = app.ctx.service
    event = request.headers.get("X-GitHub-Event", "workflow_run")
    result = service.record_webhook_event(
        request.headers.get("X-GitHub-Delivery"),
        request.body,
        request.headers.get("X-Hub-Signature-256"),
        event,
    )
    if result.outcome is IngestOutcome.accepted:
        await app.ctx.broadcaster.publish(
            {
                "source": "webhook",
                "event": event,
                "request_id": result.request_id,
                "seq": result.seq,
            }
        )
    return result


async def write_stream(
    service: ReconciliationService,
    queue: asyncio.Queue,
    since: int,
    write,
    heartbeat: float = HEARTBEAT_SECONDS,
) -> None:
    """Write stream events after ``since`` as SSE, waking on broadcasts.

    The sqlite read runs in a worker thread so the loop stays free.
    """
    last_seq = since
    await write("event: ready\ndata: {}\n\n")
    while True:
        _, events = await asyncio.to_thread(service.read_stream, last_seq)
        for event in events:
            body = json.dumps(event.model_dump(mode="json"))
            await write(f"id: {event.seq}\nevent: request_update\ndata: {body}\n\n")
            last_seq = event.seq
        try:
            await asyncio.wait_for(queue.get(), timeout=heartbeat)
        except asyncio.TimeoutError:
            await write(": keepalive\n\n")


def create_app(
    settings: Settings = SETTINGS,
    store: Optional[RequestStore] = None,
    rate_limits: Optional[RateLimitState] = None,
    name: str = "lifeline",
):

    app = Sanic(name)
    app.update_config(settings.model_dump())

    logging.getLogger().setLevel(settings.OVERRIDE_LOGGING)

    for handler in get_log_handlers(sanic.log.logger, settings):
        if logger.handlers:
            handler.setFormatter(logger.handlers[0].formatter)

    store = store or RequestStore(settings.LIFELINE_DB_PATH)

    app.ctx.settings = settings
    app.ctx.store = store
    app.ctx.cache = cachetools.LRUCache(maxsize=500)
    app.ctx.limiter = AsyncLimiter(settings.GITHUB_API_RATE_PER_MINUTE, 60)
    app.ctx.broadcaster = StreamBroadcaster()
    app.ctx.insights = None
    app.ctx.rate_limits = rate_limits

    @app.listener("before_server_start")
    async def init(app, loop):
        app.ctx.store.initialize()
        if app.ctx.rate_limits is None:
            app.ctx.rate_limits = get_rate_limit_state(settings)
        app.ctx.service = ReconciliationService(
            app.ctx.store, settings, rate_limits=app.ctx.rate_limits
        )
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession()

    @app.listener("after_server_stop")
    async def shutdown(app, loop):
        await app.ctx.aiohttp_session.close()
        app.ctx.rate_limits.close()

    @app.on_request
    async def on_request(request: Request):
        if request.path == "/metrics":
            return
        request_counter.labels(path=request.path).inc()

    @app.exception(RequestNotFound)
    async def not_found(request, exception):
        return response.json({"error": f"Request not found: {exception}"}, status=404)

    @app.get("/status")
    async def status(request):
        logger.debug("status check")
        return response.text("ok")

    @app.route("/webhook", methods=["POST"])
    async def github(request):
        logger.debug("Webhook received")
        try:
            result = await process_webhook(app, request)
        except Exception:
            error_counter.labels(context="webhook").inc()
            logger.error("Exception raised when ingesting webhook", exc_info=True)
            raise
        status_code = 401 if result.outcome is IngestOutcome.rejected else 200
        return response.json(result.as_dict(), status=status_code)

    @app.post("/requests")
    async def create_request(request):
        body = request.json or {}
        if not body.get("environment") or not body.get("module"):
            raise BadRequest("environment and module are required")
        created = app.ctx.service.create_request(
            environment=body["environment"],
            module=body["module"],
            project=body.get("project"),
            target_owner=body.get("target_owner"),
            target_repo=body.get("target_repo"),
        )
        return response.json(request_view(created), status=201)

    @app.get("/requests/<request_id>")
    async def show_request(request, request_id: str):
        row = app.ctx.service.get_request(request_id)
        view = request_view(row)
        view["needs_repair"] = app.ctx.service.should_repair(request_id)
        return response.json(view)

    @app.get("/requests/<request_id>/sync")
    async def sync_request(request, request_id: str):
        result = await app.ctx.service.sync(
            request_id,
            lambda: github_client(app),
            force=_flag(request, "repair"),
            tab_hidden=_flag(request, "hidden"),
        )
        return response.json(result.as_dict())

    @app.get("/stream")
    async def stream(request):
        since = _since(request)
        queue = await app.ctx.broadcaster.subscribe()

        async def stream_fn(stream_response):
            try:
                await write_stream(
                    app.ctx.service, queue, since, stream_response.write
                )
            finally:
                await app.ctx.broadcaster.unsubscribe(queue)

        return response.ResponseStream(
            stream_fn,
            content_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/insights")
    async def insights(request):
        summary, app.ctx.insights = app.ctx.service.status_summary(app.ctx.insights)
        return response.json(summary)

    @app.get("/metrics")
    async def metrics(request):
        registry = core.REGISTRY
        data = generate_latest(registry)
        return response.raw(data, content_type="text/plain; version=0.0.4")

    return app
