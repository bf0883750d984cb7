#!/usr/bin/env python3
"""
Port forwarding bridge for portmap
One Bridge per configured mapping: a local listener whose inbound connections
are each paired with a freshly dialed remote connection and relayed byte for
byte in both directions
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Set

from connection_table import ConnectionTable
from endpoint import (
    DIAL_TIMEOUT,
    Endpoint,
    Listener,
    ListenerHandler,
    build_listen_uri,
    dial,
    format_address,
    parse_uri,
)
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)
traffic_logger = get_safe_logger('traffic')

# A message that arrives before its accept finished registering the pair is
# looked up this many times, this many seconds apart, before it is dropped
LOOKUP_RETRY_COUNT = 5
LOOKUP_RETRY_DELAY = 0.5


@dataclass
class TrafficDump:
    """Per message dump settings (the --verbose, --plain and --name flags)"""
    enabled: bool = False
    plain: bool = False
    name: Optional[str] = None

    def wants(self, bridge_name: str) -> bool:
        return self.enabled and (self.name is None or self.name == bridge_name)


@dataclass
class BridgeStats:
    """Counters exposed through the status endpoint"""
    connections_total: int = 0
    dial_failures: int = 0
    bytes_in: int = 0
    bytes_out: int = 0


class Bridge(ListenerHandler):
    """Forwards one local port to one remote address"""

    def __init__(self, name: str, local_port: int, remote: str,
                 dial_timeout: float = DIAL_TIMEOUT,
                 lookup_retry_count: int = LOOKUP_RETRY_COUNT,
                 lookup_retry_delay: float = LOOKUP_RETRY_DELAY,
                 bind_host: str = '0.0.0.0',
                 traffic: Optional[TrafficDump] = None):
        self.name = name
        self.local_port = local_port
        self.remote = remote
        self.scheme, remote_host, remote_port = parse_uri(remote)
        self.host = format_address((remote_host, remote_port))
        self.listen_uri = build_listen_uri(self.scheme, local_port, bind_host)

        self.dial_timeout = dial_timeout
        self.lookup_retry_count = lookup_retry_count
        self.lookup_retry_delay = lookup_retry_delay
        self.traffic = traffic or TrafficDump()

        self.listener = Listener(self.listen_uri, self)
        self.table = ConnectionTable()
        self.healthy = True
        self.stats = BridgeStats()
        self._relays: Set[asyncio.Task] = set()

    @property
    def active_connections(self) -> int:
        return len(self.table)

    async def start(self) -> bool:
        """Bind the local listener; a failure only marks this bridge unhealthy"""
        try:
            await self.listener.start()
        except OSError as e:
            logger.error(f"[{self.name}] cannot listen on {self.listen_uri}: {e}")
            self.healthy = False
            return False
        self.healthy = True
        logger.info(f"[{self.name}] forwarding {self.listen_uri} -> {self.remote}")
        return True

    async def stop(self):
        """Stop accepting and tear down every open pair"""
        self.listener.close()
        closed = self.table.close_all()
        for task in list(self._relays):
            task.cancel()
        if self._relays:
            await asyncio.gather(*list(self._relays), return_exceptions=True)
        await self.listener.wait_closed()
        logger.info(f"[{self.name}] stopped, {closed} open connections closed")

    async def on_accept(self, inbound: Endpoint):
        logger.info(f"[{self.name}] connection accepted [{inbound.remote_address}] "
                    f"forward to remote [{self.remote}]")
        try:
            outbound = await dial(self.remote, timeout=self.dial_timeout)
        except OSError as e:
            logger.error(f"[{self.name}] connect to remote [{self.remote}] error [{e}]")
            self.stats.dial_failures += 1
            inbound.close()
            return

        if not self.table.insert(inbound, outbound):
            logger.debug(f"[{self.name}] [{inbound.remote_address}] went away while dialing")
            outbound.close()
            return

        self.stats.connections_total += 1
        task = asyncio.create_task(self._relay(inbound, outbound))
        self._relays.add(task)
        task.add_done_callback(self._relays.discard)

    async def on_receive(self, inbound: Endpoint, data: bytes):
        outbound = await self._resolve_partner(inbound)
        if outbound is None:
            logger.error(f"[{self.name}] client [{inbound.remote_address}] no relay connection found")
            self.table.remove_and_close(inbound)
            return

        self._dump(inbound, outbound, data)
        try:
            await outbound.send(data)
        except OSError as e:
            logger.error(f"[{self.name}] [{inbound.remote_address}] -> [{outbound.remote_address}] "
                         f"send error [{e}]")
            self.table.remove_and_close(inbound)
            return
        self.stats.bytes_in += len(data)

    async def on_close(self, inbound: Endpoint):
        logger.info(f"[{self.name}] connection [{inbound.remote_address}] closed")
        self.table.remove_and_close(inbound)

    async def _resolve_partner(self, inbound: Endpoint) -> Optional[Endpoint]:
        """Bounded retry over the accept/receive registration race"""
        for attempt in range(self.lookup_retry_count):
            outbound = self.table.lookup(inbound)
            if outbound is not None:
                return outbound
            if inbound.closed:
                return None
            if attempt + 1 < self.lookup_retry_count:
                await asyncio.sleep(self.lookup_retry_delay)
        return None

    async def _relay(self, inbound: Endpoint, outbound: Endpoint):
        """Copy remote -> inbound until either side ends, then drop the pair"""
        logger.debug(f"[{self.name}] relay #{inbound.conn_id} "
                     f"[{outbound.remote_address}] -> [{inbound.remote_address}] started")
        try:
            while True:
                try:
                    data = await outbound.receive()
                except OSError as e:
                    logger.error(f"[{self.name}] [{outbound.remote_address}] -> [{inbound.remote_address}] "
                                 f"read error [{e}]")
                    break
                if data is None:
                    logger.debug(f"[{self.name}] remote [{outbound.remote_address}] closed")
                    break

                self._dump(outbound, inbound, data)
                try:
                    await inbound.send(data)
                except OSError as e:
                    logger.error(f"[{self.name}] [{outbound.remote_address}] -> [{inbound.remote_address}] "
                                 f"send error [{e}]")
                    break
                self.stats.bytes_out += len(data)
        finally:
            self.table.remove_and_close(inbound)

    def _dump(self, src: Endpoint, dst: Endpoint, data: bytes):
        if not self.traffic.wants(self.name):
            return
        text = data.decode('utf-8', errors='replace') if self.traffic.plain else '...'
        traffic_logger.info(f"[{self.name}] [{src.remote_address:<21}] -> [{dst.remote_address:<21}] "
                            f"length [{len(data)}] text [{text}]")
