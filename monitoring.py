#!/usr/bin/env python3
"""
Monitoring for portmap
Status and health endpoints over HTTP plus a periodic status log line
"""

import asyncio
import time
from typing import List, Optional

from aiohttp import web

from registry import BridgeRegistry
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)


class StatusHttpServer:
    """HTTP server for the /status and /health endpoints"""

    def __init__(self, registry: BridgeRegistry, host: str = '127.0.0.1', port: int = 9090):
        self.registry = registry
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._start_time = time.time()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/status', self._status_handler)
        app.router.add_get('/health', self._health_handler)
        return app

    async def start_server(self):
        """Start HTTP server; a bind failure is logged, not fatal"""
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        try:
            site = web.TCPSite(runner, self.host, self.port)
            await site.start()
        except OSError as e:
            logger.error(f"Failed to start status server on {self.host}:{self.port}: {e}")
            await runner.cleanup()
            return False

        self._runner = runner
        self._start_time = time.time()
        logger.info(f"Status server started on {self.host}:{self.port}")
        return True

    async def stop_server(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Status server stopped")

    async def _status_handler(self, request: web.Request) -> web.Response:
        statuses = self.registry.status_report()
        return web.json_response({
            'timestamp': time.time(),
            'uptime': time.time() - self._start_time,
            'forwards': [status.to_dict() for status in statuses],
        })

    async def _health_handler(self, request: web.Request) -> web.Response:
        unhealthy = [bridge.name for bridge in self.registry if not bridge.healthy]
        healthy = not unhealthy
        return web.json_response(
            {
                'status': 'healthy' if healthy else 'degraded',
                'unhealthy': unhealthy,
                'timestamp': time.time(),
            },
            status=200 if healthy else 503
        )


class MonitoringManager:
    """Starts the status server and the periodic stats log"""

    def __init__(self, registry: BridgeRegistry, host: str = '127.0.0.1', port: int = 9090,
                 http_enabled: bool = False, stats_interval: float = 0):
        self.registry = registry
        self.http_server = StatusHttpServer(registry, host, port) if http_enabled else None
        self.stats_interval = stats_interval
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        if self.http_server:
            await self.http_server.start_server()
        if self.stats_interval > 0:
            self._tasks.append(asyncio.create_task(self._stats_loop()))

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self.http_server:
            await self.http_server.stop_server()

    async def _stats_loop(self):
        while True:
            await asyncio.sleep(self.stats_interval)
            for status in self.registry.status_report():
                logger.info(
                    f"[{status.name}] {'up' if status.healthy else 'DOWN'} "
                    f"active={status.active_connections} total={status.connections_total} "
                    f"dial_failures={status.dial_failures} "
                    f"in={status.bytes_in}B out={status.bytes_out}B"
                )
