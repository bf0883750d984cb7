#!/usr/bin/env python3
"""
portmap Application Class
Main application logic separated from entry point
"""

import asyncio
import logging
import platform
import signal
import sys
from typing import Optional

from bridge import TrafficDump
from config_manager import Config, ConfigManager
from monitoring import MonitoringManager
from registry import BridgeRegistry, create_forwards, render_status_table
from safe_logger import get_safe_logger, parse_size, setup_safe_logging, supports_color

logger = get_safe_logger(__name__)


class PortmapApplication:
    """Main application class integrating all components"""

    def __init__(self, config_file: Optional[str] = None, debug: bool = False,
                 traffic: Optional[TrafficDump] = None, testfor: Optional[int] = None):
        self.config_manager = ConfigManager()
        self.config: Optional[Config] = None
        self.config_file = config_file
        self.debug = debug
        self.traffic = traffic or TrafficDump()
        self.testfor = testfor

        self.registry: Optional[BridgeRegistry] = None
        self.monitoring_manager: Optional[MonitoringManager] = None

        self.running = False
        self.shutdown_event: Optional[asyncio.Event] = None

    def initialize(self):
        """
        Load configuration, configure logging and build every bridge.

        Raises ConfigurationError before anything listens.
        """
        self.config = self.config_manager.load_config(self.config_file)
        self._setup_logging()

        self.registry = create_forwards(self.config.forwards, self.config.bridge, self.traffic)

        monitoring = self.config.monitoring
        self.monitoring_manager = MonitoringManager(
            self.registry,
            host=monitoring.host,
            port=monitoring.port,
            http_enabled=monitoring.enabled,
            stats_interval=monitoring.stats_interval
        )
        logger.info(f"{len(self.registry)} forwards configured")

    def _setup_logging(self):
        """Setup logging based on configuration"""
        log_config = self.config.logging
        level = logging.DEBUG if self.debug else getattr(logging, log_config.level.upper())

        components = {
            component: getattr(logging, component_level.upper())
            for component, component_level in log_config.components.items()
        }
        if self.traffic.enabled:
            components.setdefault('traffic', logging.INFO)

        setup_safe_logging(
            enabled=True,
            level=level,
            fmt=log_config.format,
            log_file=log_config.file.path if log_config.file.enabled else None,
            max_bytes=parse_size(log_config.file.max_size),
            backup_count=log_config.file.rotate_count,
            color=log_config.console.color,
            console=log_config.console.enabled,
            components=components
        )

    def _use_color(self) -> bool:
        return self.config.logging.console.color and supports_color(sys.stdout)

    async def start(self):
        """Start the application and block until shutdown is requested"""
        self.shutdown_event = asyncio.Event()
        self.initialize()

        try:
            logger.info("Starting portmap...")
            self.running = True

            await self.registry.start()
            print(render_status_table(self.registry.status_report(), color=self._use_color()))

            await self.monitoring_manager.start()
            self._setup_signal_handlers()

            if self.testfor:
                asyncio.get_running_loop().call_later(self.testfor, self.request_shutdown)

            await self.shutdown_event.wait()
        finally:
            await self.shutdown()

    def request_shutdown(self):
        if self.shutdown_event is not None:
            self.shutdown_event.set()

    async def shutdown(self):
        """Shutdown the application cleanly"""
        if not self.running:
            return

        logger.info("Shutting down portmap...")
        self.running = False

        if self.monitoring_manager:
            await self.monitoring_manager.stop()

        if self.registry:
            await self.registry.stop()

        logger.info("portmap shutdown complete")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame=None):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            loop.call_soon_threadsafe(self.request_shutdown)

        # No add_signal_handler on the Windows event loops
        if platform.system() == 'Windows':
            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGBREAK, signal_handler)
        else:
            loop.add_signal_handler(signal.SIGINT, signal_handler, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, signal_handler, signal.SIGTERM)
