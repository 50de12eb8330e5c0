"""
Settlement Worker Scheduler - 2 periodic jobs

1. Auto-Bump - raise the premium of due mempool entries (every 10s)
2. Expiry    - expire overdue orders in batches of 20 (every 10s), backing off
               min(poll * 2^n, 60s) after n consecutive database failures
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from services.mempool_service import MempoolService
from services.order_lifecycle_service import OrderLifecycleService
from utils.datetime_helpers import to_iso, utc_now

logger = logging.getLogger(__name__)

AUTO_BUMP_JOB_ID = "mempool_auto_bump"
EXPIRY_JOB_ID = "order_expiry"


def expiry_backoff_seconds(consecutive_errors: int, poll_seconds: float = None,
                           max_seconds: float = None) -> float:
    """Delay before the next expiry attempt after consecutive_errors failures"""
    poll = Config.EXPIRY_POLL_SECONDS if poll_seconds is None else poll_seconds
    cap = Config.EXPIRY_MAX_BACKOFF_SECONDS if max_seconds is None else max_seconds
    return min(poll * (2 ** consecutive_errors), cap)


class SettlementScheduler:
    """
    Periodic settlement jobs on an AsyncIOScheduler.

    Both jobs are coalesced single-instance interval jobs: a slow tick never
    overlaps the next one.
    """

    def __init__(
        self,
        lifecycle: OrderLifecycleService,
        mempool: MempoolService,
        auto_bump_seconds: Optional[int] = None,
        expiry_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lifecycle = lifecycle
        self.mempool = mempool
        self.auto_bump_seconds = auto_bump_seconds or Config.AUTO_BUMP_POLL_SECONDS
        self.expiry_seconds = expiry_seconds or Config.EXPIRY_POLL_SECONDS
        self._clock = clock

        self.consecutive_expiry_errors = 0
        self._expiry_resume_at: Optional[float] = None
        self.total_expired = 0
        self.total_bumped = 0

        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,  # Prevent job pileup
                'max_instances': 1,  # Single instance enforcement
                'misfire_grace_time': 30
            },
            timezone='UTC'
        )

    # ===== JOB BODIES =====

    async def run_auto_bump(self) -> Optional[Dict[str, Any]]:
        try:
            results = await self.mempool.run_auto_bump_cycle()
        except SQLAlchemyError as e:
            logger.error(f"❌ AUTO_BUMP_JOB_ERROR: {e}")
            return None
        self.total_bumped += results["bumped"]
        return results

    def expiry_paused(self) -> bool:
        return self._expiry_resume_at is not None and self._clock() < self._expiry_resume_at

    async def run_expiry(self) -> Optional[Dict[str, Any]]:
        """One expiry tick; skipped while backing off after database errors"""
        if self.expiry_paused():
            logger.debug("⏸️ EXPIRY_BACKOFF: tick skipped")
            return None

        try:
            results = await self.lifecycle.expire_overdue_orders(batch_size=Config.EXPIRY_BATCH_SIZE)
        except SQLAlchemyError as e:
            self.consecutive_expiry_errors += 1
            delay = expiry_backoff_seconds(self.consecutive_expiry_errors, self.expiry_seconds)
            self._expiry_resume_at = self._clock() + delay
            logger.error(
                f"❌ EXPIRY_BATCH_ERROR: consecutive={self.consecutive_expiry_errors} "
                f"backoff={delay}s error={e}"
            )
            return None

        self.consecutive_expiry_errors = 0
        self._expiry_resume_at = None
        self.total_expired += len(results["expired"])
        self._write_heartbeat(len(results["expired"]))
        return results

    def _write_heartbeat(self, batch_size: int) -> None:
        path = Config.EXPIRY_HEARTBEAT_PATH
        if not path:
            return
        try:
            with open(path, "w") as fh:
                json.dump({"lastRun": to_iso(utc_now()), "totalExpired": self.total_expired,
                           "lastBatchSize": batch_size}, fh)
        except OSError as e:
            logger.warning(f"⚠️ EXPIRY_HEARTBEAT_FAILED: {path}: {e}")

    # ===== SCHEDULING =====

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self.run_auto_bump,
            trigger=IntervalTrigger(seconds=self.auto_bump_seconds),
            id=AUTO_BUMP_JOB_ID,
            name="📈 Mempool Auto-Bump",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"✅ Mempool Auto-Bump scheduled every {self.auto_bump_seconds} seconds")

        self.scheduler.add_job(
            self.run_expiry,
            trigger=IntervalTrigger(seconds=self.expiry_seconds),
            id=EXPIRY_JOB_ID,
            name="⏰ Order Expiry",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(
            f"✅ Order Expiry scheduled every {self.expiry_seconds} seconds "
            f"(batch {Config.EXPIRY_BATCH_SIZE})"
        )

    def start(self) -> None:
        """Register jobs and start; must be called with the event loop running"""
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info(
            f"📴 Settlement scheduler stopped (expired={self.total_expired}, bumped={self.total_bumped})"
        )
