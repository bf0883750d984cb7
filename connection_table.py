#!/usr/bin/env python3
"""
Connection pair table for portmap bridges
Maps each inbound endpoint to the outbound endpoint it is relayed to, and is
the only place where a pair gets torn down
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

from endpoint import Endpoint
from safe_logger import get_safe_logger

logger = get_safe_logger(__name__)


class ReadWriteLock:
    """Many concurrent readers or a single writer"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class ConnectionPair:
    """An inbound endpoint and the outbound endpoint dialed for it"""
    inbound: Endpoint
    outbound: Endpoint


class ConnectionTable:
    """
    Pairs keyed by the inbound endpoint's conn_id.

    Nothing here awaits, so holding the lock never spans I/O and the table
    can be shared by asyncio tasks and threads alike.
    """

    def __init__(self):
        self._lock = ReadWriteLock()
        self._pairs: Dict[int, ConnectionPair] = {}

    def insert(self, inbound: Endpoint, outbound: Endpoint) -> bool:
        """
        Register a freshly dialed pair.

        Returns False without registering anything when the inbound endpoint
        was closed while the dial was in flight; the caller then owns (and
        must close) the outbound endpoint.

        Raises:
            ValueError: the inbound endpoint is already paired
        """
        with self._lock.write_locked():
            if inbound.conn_id in self._pairs:
                raise ValueError(f"connection #{inbound.conn_id} is already paired")
            if inbound.closed:
                return False
            self._pairs[inbound.conn_id] = ConnectionPair(inbound, outbound)
            return True

    def lookup(self, inbound: Endpoint) -> Optional[Endpoint]:
        with self._lock.read_locked():
            pair = self._pairs.get(inbound.conn_id)
        return pair.outbound if pair else None

    def remove_and_close(self, inbound: Endpoint):
        """
        Close both sides of the pair and forget it.

        Safe to call any number of times from any terminal event; when the
        pair is already gone the inbound endpoint is closed again, which is
        a no-op for endpoints that are already closed.
        """
        with self._lock.write_locked():
            pair = self._pairs.pop(inbound.conn_id, None)
            if pair is not None:
                pair.outbound.close()
            inbound.close()
        if pair is not None:
            logger.debug(f"pair #{inbound.conn_id} [{inbound.remote_address}] <-> "
                         f"[{pair.outbound.remote_address}] removed")

    def close_all(self) -> int:
        """Tear down every pair, returns how many were open"""
        with self._lock.write_locked():
            pairs = list(self._pairs.values())
            self._pairs.clear()
            for pair in pairs:
                pair.outbound.close()
                pair.inbound.close()
        return len(pairs)

    def pairs(self) -> List[ConnectionPair]:
        with self._lock.read_locked():
            return list(self._pairs.values())

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._pairs)

    def __contains__(self, inbound: Endpoint) -> bool:
        with self._lock.read_locked():
            return inbound.conn_id in self._pairs
