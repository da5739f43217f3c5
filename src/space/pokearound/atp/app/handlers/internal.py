import json
import logging
from aiohttp import web

from space.pokearound.atp.app.config import HealthGaugeAppKey
from space.pokearound.atp.app.tasks import SyncWorkerAppKey
from space.pokearound.atp.atproto.errors import (
    ConfigurationError,
    LinkNotFound,
    SessionNotFound,
)

logger = logging.getLogger(__name__)


def _json_error(exc_class, message: str, **extra):
    return exc_class(
        body=json.dumps({"error": message, **extra}),
        content_type="application/json",
    )


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_internal_sync_stats(request: web.Request):
    return web.json_response(request.app[SyncWorkerAppKey].stats())


async def handle_internal_sync_trigger(request: web.Request):
    sync_worker = request.app[SyncWorkerAppKey]
    result = await sync_worker.sync_cycle()
    return web.json_response(
        {"result": result.to_dict(), "stats": sync_worker.stats()}
    )


async def handle_internal_sync_link(request: web.Request):
    try:
        link_id = int(request.match_info["link_id"])
    except ValueError:
        raise _json_error(web.HTTPBadRequest, "Invalid link id")

    sync_worker = request.app[SyncWorkerAppKey]
    try:
        link = await sync_worker.sync_link(link_id)
    except LinkNotFound:
        raise _json_error(web.HTTPNotFound, "Link not found")
    except (ConfigurationError, SessionNotFound) as e:
        logger.warning("Cannot sync link %s: %s", link_id, e)
        raise _json_error(web.HTTPServiceUnavailable, "Service account unavailable", detail=str(e))

    return web.json_response(
        {
            "id": link.id,
            "at_uri": link.at_uri,
            "sync_status": link.sync_status,
            "synced_at": link.synced_at.isoformat() if link.synced_at else None,
        }
    )
