"""Peer transports.

A :class:`SessionTransport` owns one registration with a rendezvous service
and hands out :class:`DataChannel` objects, one per peer connection.  Both
report what happens to them through named events, the way a PeerJS peer
does::

    transport "open"         (identifier)   registered, identifier is reachable
    transport "connection"   (channel)      a peer dialled us
    transport "disconnected" ()             lost the rendezvous service
    transport "error"        (TransportError)

    channel   "open"  ()
    channel   "data"  (payload)
    channel   "close" ()
    channel   "error" (TransportError)

Two implementations live here: :class:`LocalTransport`, which pairs
participants inside one process through a :class:`LocalRendezvous`, and
:class:`SocketIOTransport`, which talks to the rendezvous/relay service in
``app.py`` over Socket.IO.
"""
import json
import logging
import random
import string
import threading
from abc import ABC, abstractmethod

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from . import config

logger = logging.getLogger(__name__)

PEER_UNAVAILABLE   = "peer-unavailable"
NETWORK            = "network"
NEGOTIATION_FAILED = "negotiation-failed"
SERVER_ERROR       = "server-error"
UNAVAILABLE_ID     = "unavailable-id"
CONNECTION_REFUSED = "connection-refused"

# dial failures worth retrying: the host may simply not be registered yet
RECOVERABLE = frozenset({PEER_UNAVAILABLE, NETWORK, NEGOTIATION_FAILED})


class TransportError(Exception):
    def __init__(self, kind, message=None):
        super().__init__(message or kind)
        self.kind = kind

    @property
    def recoverable(self):
        return self.kind in RECOVERABLE


class Emitter:
    def __init__(self):
        self._handlers = {}

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def off(self, event=None):
        if event is None: self._handlers.clear()
        else: self._handlers.pop(event, None)

    def _emit(self, event, *args):
        for handler in list(self._handlers.get(event, ())):
            handler(*args)


class DataChannel(Emitter, ABC):
    def __init__(self, peer):
        super().__init__()
        self.peer = peer
        self.is_open = False

    @abstractmethod
    def send(self, payload):
        """Queue ``payload`` (a JSON-compatible object) for the other end."""

    @abstractmethod
    def close(self):
        """Close both ends; the other end receives "close"."""


class SessionTransport(Emitter, ABC):
    def __init__(self):
        super().__init__()
        self.identifier = None
        self.destroyed = False

    @abstractmethod
    def register(self):
        """Ask the rendezvous service for a reachable identifier ("open" on success)."""

    @abstractmethod
    def connect(self, identifier):
        """Dial ``identifier``; returns a DataChannel that emits "open" or "error".

        May raise TransportError when the failure is known immediately.
        """

    @abstractmethod
    def reconnect(self):
        """Re-establish the rendezvous connection, keeping the identifier."""

    @abstractmethod
    def destroy(self):
        """Drop the registration and close every channel."""


# ── In-process rendezvous ─────────────────────────────────────────────────────
def new_identifier(k=6):
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=k))


class LocalChannel(DataChannel):
    def __init__(self, peer):
        super().__init__(peer)
        self.remote = None

    def send(self, payload):
        if not self.is_open:
            raise TransportError(NETWORK, "channel is not open")
        # Round-trip through JSON so both ends never share objects.
        self.remote._emit("data", json.loads(json.dumps(payload)))

    def close(self):
        if not self.is_open: return
        self.is_open = False
        self.remote.is_open = False
        self.remote._emit("close")
        self._emit("close")

    def fail(self, kind):
        """Report a channel fault, as a broken negotiation would."""
        self._emit("error", TransportError(kind))


class LocalRendezvous:
    """Pairs LocalTransports by identifier; delivery is synchronous and ordered."""

    def __init__(self):
        self.peers = {}
        self.blocked = {}

    def register(self, transport, requested=None):
        ident = requested or new_identifier()
        owner = self.peers.get(ident)
        if owner is not None and owner is not transport:
            raise TransportError(UNAVAILABLE_ID, f"ID {ident!r} is taken")
        self.peers[ident] = transport
        return ident

    def unregister(self, transport):
        for ident, owner in list(self.peers.items()):
            if owner is transport:
                del self.peers[ident]

    def block(self, identifier, kind):
        """Make every dial to ``identifier`` fail with ``kind``."""
        self.blocked[identifier] = kind

    def dial(self, caller, target):
        if target in self.blocked:
            raise TransportError(self.blocked[target])
        host = self.peers.get(target)
        if host is None or not host.online:
            raise TransportError(PEER_UNAVAILABLE, f"Could not connect to peer {target}")
        near, far = LocalChannel(target), LocalChannel(caller.identifier)
        near.remote, far.remote = far, near
        near.is_open = far.is_open = True
        host.channels.append(far)
        host._emit("connection", far)
        if not near.is_open:
            raise TransportError(CONNECTION_REFUSED, f"{target} refused the connection")
        return near


class LocalTransport(SessionTransport):
    def __init__(self, rendezvous, identifier=None):
        super().__init__()
        self.rendezvous = rendezvous
        self.requested = identifier
        self.channels = []
        self.online = False

    def register(self):
        try:
            self.identifier = self.rendezvous.register(self, self.identifier or self.requested)
        except TransportError as err:
            self._emit("error", err)
            return
        self.online = True
        self._emit("open", self.identifier)

    def connect(self, identifier):
        if not self.online:
            raise TransportError(NETWORK, "not connected to the rendezvous service")
        channel = self.rendezvous.dial(self, identifier)
        self.channels.append(channel)
        return channel

    def drop(self):
        """Simulate losing the rendezvous service; open channels stay up."""
        self.online = False
        self._emit("disconnected")

    def reconnect(self):
        if self.destroyed: return
        self.register()

    def destroy(self):
        if self.destroyed: return
        self.destroyed = True
        self.online = False
        self.rendezvous.unregister(self)
        for channel in self.channels:
            channel.close()
        self.channels = []


# ── Socket.IO relay ───────────────────────────────────────────────────────────
class SocketIOChannel(DataChannel):
    def __init__(self, transport, peer, channel_id=None):
        super().__init__(peer)
        self.transport = transport
        self.channel_id = channel_id

    def send(self, payload):
        if not self.is_open:
            raise TransportError(NETWORK, "channel is not open")
        self.transport.client.emit("relay", {"channel": self.channel_id, "data": payload})

    def close(self):
        if not self.is_open: return
        self.is_open = False
        self.transport.channels.pop(self.channel_id, None)
        if self.transport.client.connected:
            self.transport.client.emit("close_channel", {"channel": self.channel_id})
        self._emit("close")


class SocketIOTransport(SessionTransport):
    """Transport backed by the Socket.IO rendezvous/relay service in ``app.py``.

    Socket.IO callbacks arrive on the client's own threads (greenlets once
    gevent has patched the process); they are serialised with a lock so the
    session sees one event at a time.
    """

    def __init__(self, url=None, client=None):
        super().__init__()
        self.url = url or config.RENDEZVOUS_URL
        self.client = client or socketio.Client(reconnection=False)
        self.channels = {}
        self._pending = {}
        self._lock = threading.RLock()
        self.client.on("connect", self._on_connect)
        self.client.on("disconnect", self._on_disconnect)
        self.client.on("dial_open", self._on_dial_open)
        self.client.on("dial_error", self._on_dial_error)
        self.client.on("incoming", self._on_incoming)
        self.client.on("data", self._on_data)
        self.client.on("channel_closed", self._on_channel_closed)

    def _emit(self, event, *args):
        with self._lock:
            super()._emit(event, *args)

    def register(self):
        try:
            self.client.connect(self.url)
        except SocketIOConnectionError as exc:
            logger.warning("Could not reach rendezvous service at %s: %s", self.url, exc)
            self._emit("error", TransportError(NETWORK, str(exc)))

    def reconnect(self):
        if self.destroyed: return
        self.client.start_background_task(self._reconnect)

    def _reconnect(self):
        while not self.destroyed:
            if self.client.connected:
                # the client reports itself connected until its disconnect handlers return
                self.client.sleep(0.1)
                continue
            try:
                self.client.connect(self.url)
                return
            except (SocketIOConnectionError, ValueError) as exc:
                logger.warning("Reconnect to %s failed: %s", self.url, exc)
            self.client.sleep(config.DIAL_BACKOFF)

    def connect(self, identifier):
        if not self.client.connected:
            raise TransportError(NETWORK, "not connected to the rendezvous service")
        channel = SocketIOChannel(self, identifier)
        self._pending[identifier] = channel
        self.client.emit("dial", {"target": identifier})
        return channel

    def destroy(self):
        if self.destroyed: return
        self.destroyed = True
        for channel in list(self.channels.values()):
            channel.close()
        self._pending.clear()
        if self.client.connected:
            self.client.emit("unregister")
            self.client.disconnect()

    # ── Socket.IO callbacks ──
    def _on_connect(self):
        # Re-sending our previous identifier lets the server rebind it after a drop.
        self.client.emit("register", {"id": self.identifier}, callback=self._on_registered)

    def _on_registered(self, reply):
        reply = reply or {}
        if reply.get("error"):
            self._emit("error", TransportError(reply["error"]))
            return
        self.identifier = reply["id"]
        logger.debug("Registered with rendezvous service as %s", self.identifier)
        self._emit("open", self.identifier)

    def _on_disconnect(self, *args):
        if self.destroyed: return
        self._emit("disconnected")

    def _on_dial_open(self, data):
        channel = self._pending.pop(data.get("target"), None)
        if channel is None: return
        channel.channel_id = data["channel"]
        channel.is_open = True
        self.channels[channel.channel_id] = channel
        with self._lock:
            channel._emit("open")

    def _on_dial_error(self, data):
        channel = self._pending.pop(data.get("target"), None)
        if channel is None: return
        with self._lock:
            channel._emit("error", TransportError(data.get("type") or SERVER_ERROR))

    def _on_incoming(self, data):
        channel = SocketIOChannel(self, data.get("peer"), data["channel"])
        channel.is_open = True
        self.channels[channel.channel_id] = channel
        self._emit("connection", channel)

    def _on_data(self, data):
        channel = self.channels.get(data.get("channel"))
        if channel is None: return
        with self._lock:
            channel._emit("data", data.get("data"))

    def _on_channel_closed(self, data):
        channel = self.channels.pop(data.get("channel"), None)
        if channel is None: return
        channel.is_open = False
        with self._lock:
            channel._emit("close")
