"""
Upkeep Daemon - Main Entry Point
"""
import asyncio
import sys
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from upkeep.config import get_settings
from upkeep.database import close_database, get_db_session, init_database
from upkeep.api import create_app
from upkeep.logging_config import setup_logging
from upkeep.services.manifest_client import get_manifest_client
from upkeep.services.update_orchestrator import UpdateOrchestrator

logger = structlog.get_logger(__name__)


class UpkeepDaemon:
    """Owns the database connection and the HTTP server"""

    def __init__(self):
        self.settings = get_settings()
        self.app: Optional[FastAPI] = None

    async def startup(self):
        """Initialize database and API"""
        logger.info(
            "upkeep_daemon_starting",
            version=self.settings.api_version,
            app_root=str(self.settings.app_root),
            installed_version=get_manifest_client().current_version(),
        )

        logger.info("initializing_database")
        await init_database(self.settings.database_url)

        # A pipeline cannot survive a restart; close out whatever was running
        async with get_db_session() as session:
            interrupted = await UpdateOrchestrator(session).fail_interrupted_attempts()
        if interrupted:
            logger.warning("interrupted_attempts_failed", count=interrupted)

        self.app = create_app(self.settings)

        logger.info("upkeep_daemon_ready", host=self.settings.daemon_host, port=self.settings.daemon_port)

    async def shutdown(self):
        """Gracefully shutdown all components"""
        logger.info("upkeep_daemon_shutting_down")
        await close_database()
        logger.info("upkeep_daemon_stopped")


async def main_async():
    """Async main function"""
    daemon = UpkeepDaemon()

    try:
        await daemon.startup()

        # Run FastAPI with uvicorn (uvicorn handles SIGINT/SIGTERM)
        config = uvicorn.Config(
            daemon.app,
            host=daemon.settings.daemon_host,
            port=daemon.settings.daemon_port,
            log_level=daemon.settings.log_level.lower(),
            access_log=True,
        )
        server = uvicorn.Server(config)
        await server.serve()

    except Exception as e:
        logger.error("daemon_error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        await daemon.shutdown()


def main():
    """Entry point for the daemon"""
    # Initialize logging first
    settings = get_settings()
    setup_logging(
        log_level=settings.log_level,
        json_logs=(settings.log_level != "DEBUG"),  # Use JSON in production
        log_file=settings.log_file,
    )

    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("interrupted_by_user")
        sys.exit(0)


if __name__ == "__main__":
    main()
