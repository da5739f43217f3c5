import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from time import time
from typing import Any, Dict, NoReturn, Optional, Tuple
from aiohttp import ClientSession, web
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import sentry_sdk

from space.pokearound.atp.app.config import HealthGaugeAppKey, Settings
from space.pokearound.atp.app.metrics import MetricsClient, NoOpMetricsClient
from space.pokearound.atp.atproto.client import create_record, get_session_for
from space.pokearound.atp.atproto.errors import (
    ATProtoError,
    ConfigurationError,
    LinkNotFound,
    SessionNotFound,
)
from space.pokearound.atp.atproto.lexicon import LINK_COLLECTION, LinkRecord
from space.pokearound.atp.atproto.session import Session
from space.pokearound.atp.atproto.tid import TIDGenerator, default_generator
from space.pokearound.atp.model.health import HealthGauge
from space.pokearound.atp.model.links import Link, LinkStore
from space.pokearound.atp.model.oauth import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    skipped: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class SyncWorker:
    """
    Publishes high scoring links to the service account's repository.

    Each cycle loads the service account session, selects up to `batch_size` links
    that have not been attempted yet, and creates one `space.pokearound.link` record
    per link. Links are processed one after another against the same session so a
    nonce rotated by the PDS on one call is used for the next; the session is saved
    once at the end of the cycle.

    A link that fails to publish is marked "failed" and is never selected again.

    Cycles never overlap: the periodic loop and manual triggers share one lock.
    """

    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        database_session_maker: async_sessionmaker[AsyncSession],
        session_store: Optional[SessionStore] = None,
        link_store: Optional[LinkStore] = None,
        metrics_client: Optional[MetricsClient] = None,
        tid_generator: Optional[TIDGenerator] = None,
        health_gauge: Optional[HealthGauge] = None,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.session_store = session_store or SessionStore(
            database_session_maker, settings.encryption_key
        )
        self.link_store = link_store or LinkStore(database_session_maker)
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.tid_generator = tid_generator or default_generator
        self.health_gauge = health_gauge

        self.enabled = settings.sync_enabled
        self.min_score = settings.sync_min_score
        self.batch_size = settings.sync_batch_size
        self.interval = settings.sync_interval
        self.initial_delay = settings.sync_initial_delay
        self.service_did = settings.service_did

        self.synced_count = 0
        self.failed_count = 0
        self.last_sync: Optional[datetime] = None

        self._lock = asyncio.Lock()

    async def run(self) -> None:
        """Run sync cycles forever, starting after the initial delay."""
        if not self.enabled:
            logger.info("Link sync disabled")
            return

        logger.info(
            "Starting link sync: every %ss, min score %s", self.interval, self.min_score
        )
        await asyncio.sleep(self.initial_delay)

        while True:
            try:
                await self.sync_cycle()
            except Exception as e:
                logger.exception("Link sync cycle failed")
                sentry_sdk.capture_exception(e)
                if self.health_gauge is not None:
                    await self.health_gauge.womp()
                self.metrics_client.increment(
                    "sync.cycle.exception",
                    1,
                    tag_dict={"exception": type(e).__name__},
                )
            await asyncio.sleep(self.interval)

    async def _service_session(self) -> Optional[Session]:
        if not self.service_did:
            logger.debug("Link sync: no service account configured")
            return None

        try:
            return await get_session_for(
                self.http_session,
                self.settings,
                self.session_store,
                self.service_did,
                metrics_client=self.metrics_client,
            )
        except SessionNotFound:
            logger.warning(
                "Link sync: no stored session for service account %s", self.service_did
            )
            return None

    async def _publish(self, link: Link, session: Session) -> Tuple[Session, bool]:
        record = LinkRecord.from_link(link).to_record()
        rkey = self.tid_generator.generate()

        try:
            ref, session = await create_record(
                self.http_session,
                session,
                LINK_COLLECTION,
                record,
                rkey=rkey,
                metrics_client=self.metrics_client,
            )
        except Exception as e:
            # Keep any nonce the PDS handed out before failing.
            if isinstance(e, ATProtoError) and e.session is not None:
                session = e.session
            logger.warning("Failed to sync link %s: %s", link.id, e)
            sentry_sdk.capture_exception(e)
            await self.link_store.mark_failed(link)
            self.metrics_client.increment(
                "sync.link.failed", 1, tag_dict={"exception": type(e).__name__}
            )
            return session, False

        await self.link_store.mark_synced(link, ref.uri, datetime.now(timezone.utc))
        self.metrics_client.increment("sync.link.synced", 1)
        return session, True

    async def sync_cycle(self) -> SyncResult:
        """Publish one batch of links."""
        async with self._lock:
            if not self.enabled:
                return SyncResult(skipped="disabled")

            session = await self._service_session()
            if session is None:
                return SyncResult(skipped="no_service_session")

            start_time = time()
            links = await self.link_store.select_syncable(
                self.min_score, self.batch_size
            )

            result = SyncResult()
            for link in links:
                result.attempted += 1
                session, ok = await self._publish(link, session)
                if ok:
                    result.synced += 1
                else:
                    result.failed += 1

            if result.attempted > 0:
                await self.session_store.save(session)

            self.synced_count += result.synced
            self.failed_count += result.failed
            self.last_sync = datetime.now(timezone.utc)

            self.metrics_client.timer("sync.cycle.time", time() - start_time)
            logger.info(
                "Link sync complete: %d synced, %d failed", result.synced, result.failed
            )
            return result

    async def sync_link(self, link_id: int) -> Link:
        """
        Publish one link immediately, regardless of its score.

        Raises:
            ConfigurationError: no service account is configured
            SessionNotFound: the service account has no stored session
            LinkNotFound: no link has the given id
        """
        async with self._lock:
            if not self.service_did:
                raise ConfigurationError("service_did is not configured")

            session = await get_session_for(
                self.http_session,
                self.settings,
                self.session_store,
                self.service_did,
                metrics_client=self.metrics_client,
            )

            link = await self.link_store.get(link_id)
            if link is None:
                raise LinkNotFound(link_id)

            session, ok = await self._publish(link, session)
            await self.session_store.save(session)

            if ok:
                self.synced_count += 1
            else:
                self.failed_count += 1
            return link

    def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._lock.locked(),
            "min_score": self.min_score,
            "batch_size": self.batch_size,
            "interval": self.interval,
            "service_did": self.service_did,
            "synced_count": self.synced_count,
            "failed_count": self.failed_count,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
        }


SyncWorkerAppKey = web.AppKey("sync_worker", SyncWorker)
"""AppKey for the link sync worker"""


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def sync_task(app: web.Application) -> None:
    await app[SyncWorkerAppKey].run()
