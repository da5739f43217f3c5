import asyncio
import contextlib
import logging
from time import time
from typing import (
    Optional,
)
from aio_statsd import TelegrafStatsdClient
from aiohttp import web
import aiohttp
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from space.pokearound.atp.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    SyncTaskAppKey,
    TickHealthTaskAppKey,
)
from space.pokearound.atp.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
    handle_internal_sync_link,
    handle_internal_sync_stats,
    handle_internal_sync_trigger,
)
from space.pokearound.atp.app.metrics import MetricsClient, create_metrics_client
from space.pokearound.atp.app.tasks import (
    SyncWorker,
    SyncWorkerAppKey,
    sync_task,
    tick_health_task,
)
from space.pokearound.atp.model.health import HealthGauge

logger = logging.getLogger(__name__)


async def build_metrics_client(settings: Settings) -> MetricsClient:
    if settings.metrics_backend.lower() != "telegraf":
        return create_metrics_client(settings.metrics_backend)

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    return create_metrics_client(
        "telegraf", prefix=settings.statsd_prefix, telegraf_client=statsd_client
    )


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    app[MetricsClientAppKey] = await build_metrics_client(settings)

    app[SyncWorkerAppKey] = SyncWorker(
        settings,
        app[SessionAppKey],
        database_session,
        metrics_client=app[MetricsClientAppKey],
        health_gauge=app[HealthGaugeAppKey],
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[SyncTaskAppKey] = asyncio.create_task(sync_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[SyncTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[SyncTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/sync", handle_internal_sync_stats),
            web.post("/internal/api/sync", handle_internal_sync_trigger),
            web.post("/internal/api/sync/{link_id}", handle_internal_sync_link),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
