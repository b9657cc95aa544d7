"""HTTP trigger API for the mail sync supervisor, using aiohttp.

Routes:
    POST /start     (re)start sync with the current settings
    GET  /status    current mode and IDLE health
    POST /sync-now  run one ingestion pass and report the counts
    GET  /health    liveness check
"""

from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from claimmail.configuration.settings import ServerSettings
from claimmail.errors import ConfigurationError

from .supervisor import SyncSupervisor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Trigger Server
# ---------------------------------------------------------------------------


class TriggerServer:
    """Exposes the supervisor over HTTP.

    Example:
        >>> server = TriggerServer(supervisor, settings.server)
        >>> await server.start()
        >>> # Server running...
        >>> await server.stop()
    """

    def __init__(self, supervisor: SyncSupervisor, config: Optional[ServerSettings] = None):
        """Initialize trigger server.

        Args:
            supervisor: Supervisor the routes act on
            config: Bind address (defaults to ``ServerSettings()``)
        """
        self.supervisor = supervisor
        self.config = config or ServerSettings()

        self.app = web.Application()
        self._setup_routes()

        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def _setup_routes(self) -> None:
        self.app.router.add_post("/start", self.handle_start)
        self.app.router.add_get("/status", self.handle_status)
        self.app.router.add_post("/sync-now", self.handle_sync_now)
        self.app.router.add_get("/health", self.health_check)

    async def handle_start(self, request: web.Request) -> web.Response:
        try:
            status = await self.supervisor.ensure_running()
        except ConfigurationError as exc:
            return web.json_response(
                {"success": False, "error": exc.user_message}, status=400
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to start mail sync: {exc}")
            return web.json_response({"success": False, "error": str(exc)}, status=500)
        mode = status.mode.value if status.mode else None
        return web.json_response({"success": True, "mode": mode})

    async def handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.supervisor.status().to_api())

    async def handle_sync_now(self, request: web.Request) -> web.Response:
        """Run one pass.

        Returns:
            200 with counts, 400 when IMAP is not configured, 500 on failure
        """
        try:
            result = await self.supervisor.sync_now()
        except ConfigurationError as exc:
            return web.json_response(
                {"success": False, "error": exc.user_message}, status=400
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Manual mail sync failed: {exc}")
            return web.json_response({"success": False, "error": str(exc)}, status=500)
        return web.json_response({"success": True, **result.to_api()})

    async def health_check(self, request: web.Request) -> web.Response:
        status = self.supervisor.status()
        return web.json_response(
            {
                "status": "healthy",
                "syncActive": status.active,
                "mode": status.mode.value if status.mode else None,
            }
        )

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.config.listen_host, self.config.listen_port)
        await self.site.start()
        logger.info(
            f"Trigger server listening on {self.config.listen_host}:{self.config.listen_port}",
            extra={"host": self.config.listen_host, "port": self.config.listen_port},
        )

    async def stop(self) -> None:
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("Trigger server stopped")


__all__ = ["TriggerServer"]
