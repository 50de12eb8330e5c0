"""
Settlement worker entry point

Runs the auto-bump and expiry jobs and hosts the fallback socket server until
SIGINT/SIGTERM. Exit status: 0 after a signal, 1 when startup fails.

The hosted pub/sub provider is injected as `channel_transport` (anything with
`async publish(channel, event, payload)`). Without one the worker publishes
through the fallback socket server only.
"""

import asyncio
import logging
import sys
from typing import Optional

from aiohttp import web

from config import Config
from database import dispose_engine, get_session_factory, test_connection
from jobs.settlement_scheduler import SettlementScheduler
from services.escrow_client import EscrowClient
from services.mempool_service import MempoolService
from services.order_event_publisher import OrderEventPublisher
from services.order_lifecycle_service import OrderLifecycleService
from services.order_socket_server import OrderSocketServer
from utils.graceful_shutdown import GracefulShutdownManager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1


async def _start_socket_server(socket_server: OrderSocketServer) -> Optional[web.AppRunner]:
    if not Config.FALLBACK_SOCKET_PORT:
        logger.info("📡 Fallback socket server disabled (FALLBACK_SOCKET_PORT=0)")
        return None
    runner = web.AppRunner(socket_server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, Config.FALLBACK_SOCKET_HOST, Config.FALLBACK_SOCKET_PORT)
    await site.start()
    logger.info(f"📡 Fallback socket server listening on {Config.FALLBACK_SOCKET_HOST}:{Config.FALLBACK_SOCKET_PORT}")
    return runner


async def run_worker(shutdown: Optional[GracefulShutdownManager] = None, channel_transport=None) -> int:
    """Start everything, wait for a shutdown signal, clean up; returns the exit status"""
    Config.log_environment_config()
    if Config.validate():
        logger.critical("❌ WORKER_STARTUP_FAILED: invalid configuration")
        return EXIT_STARTUP_FAILURE

    try:
        session_factory = get_session_factory()
    except ValueError as e:
        logger.critical(f"❌ WORKER_STARTUP_FAILED: {e}")
        return EXIT_STARTUP_FAILURE
    if not await test_connection():
        logger.critical("❌ WORKER_STARTUP_FAILED: database unreachable")
        await dispose_engine()
        return EXIT_STARTUP_FAILURE

    socket_server = OrderSocketServer()
    if channel_transport is None:
        logger.warning("⚠️ NO_CHANNEL_TRANSPORT: order events go to fallback socket subscribers only")
    publisher = OrderEventPublisher(channel_transport, socket_server)
    escrow_client = EscrowClient()
    lifecycle = OrderLifecycleService(session_factory, publisher, escrow_client)
    scheduler = SettlementScheduler(lifecycle, MempoolService(session_factory))

    shutdown = shutdown or GracefulShutdownManager()
    shutdown.setup_signal_handlers()

    try:
        runner = await _start_socket_server(socket_server)
    except OSError as e:
        logger.critical(f"❌ WORKER_STARTUP_FAILED: fallback socket server: {e}")
        await escrow_client.close()
        await dispose_engine()
        return EXIT_STARTUP_FAILURE

    scheduler.start()

    shutdown.add_cleanup_task(scheduler.stop)
    if runner is not None:
        shutdown.add_cleanup_task(runner.cleanup)
    shutdown.add_cleanup_task(escrow_client.close)
    shutdown.add_cleanup_task(dispose_engine)

    logger.info("🚀 Settlement worker running")
    await shutdown.wait()
    await shutdown.shutdown()
    return EXIT_OK


def main() -> None:
    Config.setup_logging()
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
