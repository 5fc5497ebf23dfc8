"""
Connection State and Driver Event Bridge

Defines the connection readiness state and translates PyMongo topology and heartbeat monitoring events into the four connection
lifecycle callbacks of ``ConnectionObserver``: connected, error, disconnected and
reconnected. PyMongo delivers these events on its own monitor threads, so the bridge
keeps its bookkeeping under a lock and observers must only touch thread-safe state.
"""

import threading
from enum import Enum
from typing import Optional

from pymongo import ReadPreference
from pymongo.monitoring import (
    ServerHeartbeatFailedEvent,
    ServerHeartbeatListener,
    ServerHeartbeatStartedEvent,
    ServerHeartbeatSucceededEvent,
    TopologyClosedEvent,
    TopologyDescriptionChangedEvent,
    TopologyListener,
    TopologyOpenedEvent,
)


class ConnectionState(Enum):
    """Readiness state of the shared connection."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTING = "disconnecting"

    @property
    def code(self) -> int:
        """Numeric driver code reported by health checks."""
        return _STATE_CODES[self]


_STATE_CODES = {
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.CONNECTED: 1,
    ConnectionState.CONNECTING: 2,
    ConnectionState.DISCONNECTING: 3,
}


class ConnectionObserver:
    """Receiver of connection lifecycle events. Every hook defaults to a no-op."""

    def on_connected(self, **details) -> None:
        pass

    def on_error(self, error: BaseException, **details) -> None:
        pass

    def on_disconnected(self, **details) -> None:
        pass

    def on_reconnected(self, **details) -> None:
        pass


class TopologyEventBridge(TopologyListener, ServerHeartbeatListener):
    """
    PyMongo listener forwarding connection lifecycle events to one observer.

    Readability of the topology under the configured read preference decides the
    connection state: the first transition to readable is ``connected``, later
    transitions are ``reconnected``, and losing every readable server (or closing
    the topology) is ``disconnected``. Heartbeat failures are reported as errors
    only while the topology is readable.
    """

    def __init__(self, observer: ConnectionObserver, read_preference=None):
        self.observer = observer
        self.read_preference = read_preference or ReadPreference.PRIMARY_PREFERRED
        self._lock = threading.Lock()
        self._readable = False
        self._ever_connected = False

    @property
    def readable(self) -> bool:
        with self._lock:
            return self._readable

    def opened(self, event: TopologyOpenedEvent):
        pass

    def description_changed(self, event: TopologyDescriptionChangedEvent):
        readable = event.new_description.has_readable_server(self.read_preference)
        with self._lock:
            was_readable = self._readable
            was_connected = self._ever_connected
            self._readable = readable
            if readable:
                self._ever_connected = True

        if readable and not was_readable:
            if was_connected:
                self.observer.on_reconnected(topology_id=str(event.topology_id))
            else:
                self.observer.on_connected(topology_id=str(event.topology_id))
        elif was_readable and not readable:
            self.observer.on_disconnected(topology_id=str(event.topology_id))

    def closed(self, event: TopologyClosedEvent):
        with self._lock:
            was_readable = self._readable
            self._readable = False
        if was_readable:
            self.observer.on_disconnected(topology_id=str(event.topology_id))

    def started(self, event: ServerHeartbeatStartedEvent):
        pass

    def succeeded(self, event: ServerHeartbeatSucceededEvent):
        pass

    def failed(self, event: ServerHeartbeatFailedEvent):
        if not self.readable:
            return
        address: Optional[str] = None
        if event.connection_id:
            address = '%s:%s' % tuple(event.connection_id)
        self.observer.on_error(event.reply, address=address)


__all__ = [
    'ConnectionState',
    'ConnectionObserver',
    'TopologyEventBridge',
]
