#!/usr/bin/env python3
"""
Endpoint transport for portmap
URI addressed TCP and UDP connections behind one message oriented interface,
plus a Listener that hands every inbound connection to a ListenerHandler
"""

import asyncio
import itertools
from typing import Dict, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)

SUPPORTED_SCHEMES = ('tcp', 'udp')
READ_BUFFER_SIZE = 64 * 1024
DIAL_TIMEOUT = 10.0

# Table keys are connection ids, never object identity
_connection_ids = itertools.count(1)


def parse_uri(uri: str) -> Tuple[str, str, int]:
    """
    Split a 'scheme://host:port' address.

    Returns:
        (scheme, host, port) with the scheme lower-cased

    Raises:
        ValueError: unsupported scheme, missing host or invalid port
    """
    try:
        parts = urlsplit(uri)
        port = parts.port
    except ValueError as e:
        raise ValueError(f"invalid address {uri!r}: {e}")

    scheme = parts.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(f"unsupported scheme {parts.scheme!r} in {uri!r}")
    if not parts.hostname:
        raise ValueError(f"missing host in {uri!r}")
    if port is None:
        raise ValueError(f"missing port in {uri!r}")
    return scheme, parts.hostname, port


def build_listen_uri(scheme: str, port: int, host: str = '0.0.0.0') -> str:
    return f"{scheme}://{format_address((host, port))}"


def format_address(address) -> str:
    """Render a socket address tuple as host:port ([host]:port for IPv6)"""
    if not address:
        return '-'
    if isinstance(address, (tuple, list)) and len(address) >= 2:
        host, port = address[0], address[1]
        if ':' in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(address)


class Endpoint:
    """One side of a relayed connection"""

    def __init__(self, local_address: str, remote_address: str):
        self.conn_id = next(_connection_ids)
        self.local_address = local_address
        self.remote_address = remote_address
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> int:
        """Write one message, returns the number of bytes sent, raises OSError"""
        raise NotImplementedError

    async def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Read the next message.

        Blocks forever when timeout is None. Returns None at end of stream
        (including after close()), raises OSError on transport errors.
        """
        raise NotImplementedError

    def close(self):
        """Close the endpoint; closing twice is a no-op"""
        raise NotImplementedError

    def _check_open(self):
        if self._closed:
            raise ConnectionResetError(f"endpoint {self.remote_address} is closed")

    def __repr__(self):
        return (f"<{type(self).__name__} #{self.conn_id} "
                f"{self.local_address} <-> {self.remote_address}>")


class StreamEndpoint(Endpoint):
    """TCP connection on top of asyncio streams"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        super().__init__(
            format_address(writer.get_extra_info('sockname')),
            format_address(writer.get_extra_info('peername'))
        )
        self.reader = reader
        self.writer = writer

    async def send(self, data: bytes) -> int:
        self._check_open()
        if self.writer.is_closing():
            raise ConnectionResetError(f"connection to {self.remote_address} is closing")
        self.writer.write(data)
        await self.writer.drain()
        return len(data)

    async def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        if self._closed:
            return None
        if timeout is None:
            data = await self.reader.read(READ_BUFFER_SIZE)
        else:
            data = await asyncio.wait_for(self.reader.read(READ_BUFFER_SIZE), timeout)
        # A local close() feeds EOF to a pending read as well
        return data or None

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.writer.close()


class _QueuedEndpoint(Endpoint):
    """Endpoint whose inbound messages are pushed into a queue"""

    def __init__(self, local_address: str, remote_address: str,
                 queue: Optional[asyncio.Queue] = None):
        super().__init__(local_address, remote_address)
        self._queue = queue if queue is not None else asyncio.Queue()

    def feed(self, item: Union[bytes, Exception, None]):
        """Queue a datagram, a transport error, or None for end of stream"""
        self._queue.put_nowait(item)

    async def receive(self, timeout: Optional[float] = None) -> Optional[bytes]:
        if self._closed:
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if isinstance(item, Exception):
            raise item
        if self._closed:
            return None
        return item


class _DatagramClientProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr):
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception):
        # ICMP port unreachable and friends: the remote is gone
        self.queue.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]):
        self.queue.put_nowait(exc)


class DatagramEndpoint(_QueuedEndpoint):
    """Dialed UDP socket, one datagram per message"""

    def __init__(self, transport: asyncio.DatagramTransport, queue: asyncio.Queue):
        super().__init__(
            format_address(transport.get_extra_info('sockname')),
            format_address(transport.get_extra_info('peername')),
            queue
        )
        self.transport = transport

    async def send(self, data: bytes) -> int:
        self._check_open()
        self.transport.sendto(data)
        return len(data)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.transport.close()
        self.feed(None)


class DatagramSessionEndpoint(_QueuedEndpoint):
    """One UDP peer of a Listener; replies go out through the listening socket"""

    def __init__(self, listener: 'Listener', transport: asyncio.DatagramTransport, peer):
        super().__init__(
            format_address(transport.get_extra_info('sockname')),
            format_address(peer)
        )
        self.listener = listener
        self.transport = transport
        self.peer = peer

    async def send(self, data: bytes) -> int:
        self._check_open()
        if self.transport.is_closing():
            raise ConnectionResetError("listener socket is closed")
        self.transport.sendto(data, self.peer)
        return len(data)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.listener._forget_session(self)
        self.feed(None)


class ListenerHandler:
    """
    Callbacks a Listener drives for each inbound endpoint.

    on_accept runs concurrently with message delivery, so the first
    on_receive for an endpoint may arrive before on_accept has finished.
    on_receive calls for one endpoint are sequential and stop once the
    endpoint is closed. on_close runs once when delivery for the endpoint ends.
    """

    async def on_accept(self, endpoint: Endpoint):
        raise NotImplementedError

    async def on_receive(self, endpoint: Endpoint, data: bytes):
        raise NotImplementedError

    async def on_close(self, endpoint: Endpoint):
        raise NotImplementedError


class _DatagramListenerProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: 'Listener'):
        self.listener = listener

    def datagram_received(self, data: bytes, addr):
        self.listener._dispatch_datagram(data, addr)

    def error_received(self, exc: Exception):
        logger.debug(f"listener {self.listener.uri} socket error: {exc}")


class Listener:
    """Accepts inbound endpoints on a tcp:// or udp:// address"""

    def __init__(self, uri: str, handler: ListenerHandler):
        self.uri = uri
        self.scheme, self.host, self.port = parse_uri(uri)
        self.handler = handler
        self.running = False

        self._server: Optional[asyncio.AbstractServer] = None
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._sessions: Dict[Tuple, DatagramSessionEndpoint] = {}
        self._endpoints: Set[Endpoint] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._stopped: Optional[asyncio.Event] = None

    @property
    def local_port(self) -> Optional[int]:
        """Port actually bound, useful when listening on port 0"""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        if self._transport is not None:
            return self._transport.get_extra_info('sockname')[1]
        return None

    @property
    def active_endpoints(self) -> int:
        return len(self._endpoints)

    async def start(self):
        """Bind the listening socket, raises OSError when that fails"""
        if self.running:
            return
        if self.scheme == 'tcp':
            self._server = await asyncio.start_server(self._handle_stream, self.host, self.port)
        else:
            loop = asyncio.get_running_loop()
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramListenerProtocol(self),
                local_addr=(self.host, self.port)
            )
        self._stopped = asyncio.Event()
        self.running = True
        logger.info(f"listening on {self.scheme}://{format_address((self.host, self.local_port))}")

    async def run(self):
        """Start and block until close() is called"""
        await self.start()
        await self._stopped.wait()

    def close(self):
        """Stop accepting and close every inbound endpoint still open"""
        if not self.running:
            return
        self.running = False
        if self._server is not None:
            self._server.close()
        if self._transport is not None:
            self._transport.close()
        for endpoint in list(self._endpoints):
            endpoint.close()
        for task in list(self._tasks):
            task.cancel()
        self._stopped.set()

    async def wait_closed(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _handle_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            await self._serve(StreamEndpoint(reader, writer))
        finally:
            self._tasks.discard(task)

    def _dispatch_datagram(self, data: bytes, addr):
        session = self._sessions.get(addr)
        if session is None:
            if not self.running:
                return
            session = DatagramSessionEndpoint(self, self._transport, addr)
            self._sessions[addr] = session
            self._spawn(self._serve(session))
        session.feed(data)

    def _forget_session(self, session: DatagramSessionEndpoint):
        if self._sessions.get(session.peer) is session:
            del self._sessions[session.peer]

    async def _accept(self, endpoint: Endpoint):
        try:
            await self.handler.on_accept(endpoint)
        except Exception as e:
            logger.exception(f"accept handler failed for [{endpoint.remote_address}]: {e}")
            endpoint.close()

    async def _serve(self, endpoint: Endpoint):
        """Deliver messages of one inbound endpoint until it closes"""
        self._endpoints.add(endpoint)
        self._spawn(self._accept(endpoint))
        try:
            while not endpoint.closed:
                try:
                    data = await endpoint.receive()
                except OSError as e:
                    logger.debug(f"read from [{endpoint.remote_address}] failed: {e}")
                    break
                if data is None:
                    break
                await self.handler.on_receive(endpoint, data)
        except Exception as e:
            logger.exception(f"receive handler failed for [{endpoint.remote_address}]: {e}")
            endpoint.close()
        finally:
            self._endpoints.discard(endpoint)
            await self.handler.on_close(endpoint)


def listen(uri: str, handler: ListenerHandler) -> Listener:
    """Create a Listener for uri; call start() or run() to bind it"""
    return Listener(uri, handler)


async def dial(uri: str, timeout: Optional[float] = DIAL_TIMEOUT) -> Endpoint:
    """
    Connect to a tcp:// or udp:// address.

    Raises:
        OSError: connection refused, unreachable, or timed out
        ValueError: malformed address
    """
    scheme, host, port = parse_uri(uri)
    if scheme == 'tcp':
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"connect to {uri} timed out after {timeout}s")
        return StreamEndpoint(reader, writer)

    loop = asyncio.get_running_loop()
    protocol = _DatagramClientProtocol()
    transport, _ = await loop.create_datagram_endpoint(lambda: protocol, remote_addr=(host, port))
    return DatagramEndpoint(transport, protocol.queue)
