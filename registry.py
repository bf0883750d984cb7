#!/usr/bin/env python3
"""
Bridge registry for portmap
Builds one Bridge per enabled forward and reports their status
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional

from bridge import Bridge, TrafficDump
from config_manager import BridgeConfig, ConfigurationError, ForwardConfig
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

STATUS_OK = "\033[32m  OK  \033[0m"
STATUS_FAILED = "\033[31m  ERR \033[0m"
STATUS_OK_PLAIN = "  OK  "
STATUS_FAILED_PLAIN = "  ERR "

TABLE_SEPARATOR = '-' * 78


@dataclass
class ForwardStatus:
    """Status row of one bridge"""
    local: int
    remote: str
    name: str
    healthy: bool
    active_connections: int = 0
    connections_total: int = 0
    dial_failures: int = 0
    bytes_in: int = 0
    bytes_out: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BridgeRegistry:
    """Bridges by name, in configuration order"""

    def __init__(self):
        self.bridges: Dict[str, Bridge] = {}

    def add(self, bridge: Bridge):
        self.bridges[bridge.name] = bridge

    def __len__(self) -> int:
        return len(self.bridges)

    def __iter__(self) -> Iterator[Bridge]:
        return iter(self.bridges.values())

    @property
    def healthy(self) -> bool:
        return all(bridge.healthy for bridge in self)

    async def start(self) -> int:
        """Start every listener, returns how many came up"""
        started = 0
        for bridge in self:
            if await bridge.start():
                started += 1
        logger.info(f"{started} of {len(self)} bridges listening")
        return started

    async def stop(self):
        await asyncio.gather(*(bridge.stop() for bridge in self))

    def status_report(self) -> List[ForwardStatus]:
        return [
            ForwardStatus(
                local=bridge.local_port,
                remote=bridge.remote,
                name=bridge.name,
                healthy=bridge.healthy,
                active_connections=bridge.active_connections,
                connections_total=bridge.stats.connections_total,
                dial_failures=bridge.stats.dial_failures,
                bytes_in=bridge.stats.bytes_in,
                bytes_out=bridge.stats.bytes_out,
            )
            for bridge in self
        ]


def create_forwards(forwards: Iterable[ForwardConfig],
                    bridge_config: Optional[BridgeConfig] = None,
                    traffic: Optional[TrafficDump] = None) -> BridgeRegistry:
    """
    Build a Bridge for every enabled forward, in order.

    Names are checked before any Bridge exists, so a duplicate enabled name
    fails the whole configuration without a single listener being created.

    Raises:
        ConfigurationError: duplicate enabled name or unusable remote address
    """
    bridge_config = bridge_config or BridgeConfig()
    enabled = [forward for forward in forwards if forward.enable]

    seen = set()
    for forward in enabled:
        if forward.name in seen:
            raise ConfigurationError(f"config element name {forward.name} already exists")
        seen.add(forward.name)

    registry = BridgeRegistry()
    for forward in enabled:
        try:
            bridge = Bridge(
                forward.name,
                forward.local,
                forward.remote,
                dial_timeout=bridge_config.dial_timeout,
                lookup_retry_count=bridge_config.lookup_retry_count,
                lookup_retry_delay=bridge_config.lookup_retry_delay,
                bind_host=bridge_config.bind_host,
                traffic=traffic,
            )
        except ValueError as e:
            raise ConfigurationError(f"forward '{forward.name}': {e}")
        registry.add(bridge)
    return registry


def render_status_table(statuses: Iterable[ForwardStatus], color: bool = False) -> str:
    """Operator table of local port, remote, name and listener status"""
    lines = [
        TABLE_SEPARATOR,
        f"|  {'local':<5}  |            remote            |           name           | status |",
        TABLE_SEPARATOR,
    ]
    for status in statuses:
        if status.healthy:
            cell = STATUS_OK if color else STATUS_OK_PLAIN
        else:
            cell = STATUS_FAILED if color else STATUS_FAILED_PLAIN
        lines.append(f"|  {status.local:<5}  | {status.remote:<28} | {status.name:<24} | {cell} |")
    lines.append(TABLE_SEPARATOR)
    return "\n".join(lines)
