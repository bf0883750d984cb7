#!/usr/bin/env python3
"""
Testing helpers for portmap
Echo services, an in-memory endpoint and small async polling utilities
"""

import asyncio
import socket
import time
from typing import Callable, List, Optional

from endpoint import Endpoint
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)


def free_port(kind: int = socket.SOCK_STREAM) -> int:
    """A port nothing listens on right now"""
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0,
                     interval: float = 0.01) -> bool:
    """Poll predicate until it holds or timeout expires"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeEndpoint(Endpoint):
    """In-memory endpoint that records sends and counts closes"""

    def __init__(self, name: str = 'fake', fail_send: bool = False):
        super().__init__(f'local-{name}', name)
        self.fail_send = fail_send
        self.sent: List[bytes] = []
        self.close_calls = 0
        self.effective_closes = 0
        self._inbox: Optional[asyncio.Queue] = None

    def _queue(self) -> asyncio.Queue:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    def inject(self, item):
        """Queue bytes, an exception, or None (end of stream) for receive()"""
        self._queue().put_nowait(item)

    async def send(self, data: bytes) -> int:
        self._check_open()
        if self.fail_send:
            raise ConnectionResetError(f"{self.remote_address} refuses data")
        self.sent.append(data)
        return len(data)

    async def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        if self._closed:
            return None
        if timeout is None:
            item = await self._queue().get()
        else:
            item = await asyncio.wait_for(self._queue().get(), timeout)
        if isinstance(item, Exception):
            raise item
        return None if self._closed else item

    def close(self):
        self.close_calls += 1
        if self._closed:
            return
        self._closed = True
        self.effective_closes += 1
        if self._inbox is not None:
            self._inbox.put_nowait(None)


class EchoServer:
    """TCP echo service for relay tests"""

    def __init__(self, host: str = '127.0.0.1', port: int = 0):
        self.host = host
        self.port = port
        self.server = None
        self.writers: List[asyncio.StreamWriter] = []
        self.client_count = 0

    async def start(self):
        self.server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Echo server started on {self.host}:{self.port}")
        return self

    @property
    def active_connections(self) -> int:
        return len(self.writers)

    def drop_connections(self):
        """Close every client connection from the server side"""
        for writer in list(self.writers):
            writer.close()

    async def stop(self):
        if self.server:
            self.server.close()
        self.drop_connections()
        if self.server:
            await self.server.wait_closed()

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        self.client_count += 1
        self.writers.append(writer)
        try:
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError as e:
            logger.debug(f"Echo server connection error: {e}")
        finally:
            if writer in self.writers:
                self.writers.remove(writer)
            writer.close()


class _UdpEchoProtocol(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(data, addr)


class UdpEchoServer:
    """UDP echo service for relay tests"""

    def __init__(self, host: str = '127.0.0.1', port: int = 0):
        self.host = host
        self.port = port
        self.transport = None

    async def start(self):
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            _UdpEchoProtocol, local_addr=(self.host, self.port)
        )
        self.port = self.transport.get_extra_info('sockname')[1]
        return self

    async def stop(self):
        if self.transport:
            self.transport.close()


class UdpClientProtocol(asyncio.DatagramProtocol):
    """Collects every datagram received into a queue"""

    def __init__(self):
        self.received: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.received.put_nowait(data)
