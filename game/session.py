"""One participant's side of an online game.

A Session owns exactly one transport, at most one data channel and the
participant's only copy of the game.  Connection progress follows::

    IDLE -> CONNECTING -> REGISTERED -> AWAITING_PEER (host) -> CONNECTED -> CLOSED
                                     -> DIALING       (client) -> CONNECTED -> CLOSED

Everything runs as non-overlapping callbacks from the transport; the only
thing a Session schedules itself is the dial retry.
"""
import logging
from enum import Enum

import gevent

from . import config
from .logic import O, X, UltimateTicTacToe
from .protocol import SyncProtocol
from .transport import NEGOTIATION_FAILED, TransportError

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE          = "idle"
    CONNECTING    = "connecting"
    REGISTERED    = "registered"
    AWAITING_PEER = "awaiting_peer"
    DIALING       = "dialing"
    CONNECTED     = "connected"
    CLOSED        = "closed"


class Role(Enum):
    HOST   = "host"
    CLIENT = "client"


ROLE_MARKS = {Role.HOST: X, Role.CLIENT: O}

TRANSITIONS = {
    Phase.IDLE:          {Phase.CONNECTING, Phase.CLOSED},
    Phase.CONNECTING:    {Phase.REGISTERED, Phase.IDLE, Phase.CLOSED},
    Phase.REGISTERED:    {Phase.AWAITING_PEER, Phase.DIALING, Phase.IDLE, Phase.CLOSED},
    Phase.AWAITING_PEER: {Phase.CONNECTED, Phase.IDLE, Phase.CLOSED},
    Phase.DIALING:       {Phase.CONNECTED, Phase.IDLE, Phase.CLOSED},
    Phase.CONNECTED:     {Phase.CLOSED},
    Phase.CLOSED:        set(),
}


class SessionClosedError(RuntimeError):
    pass


class GeventScheduler:
    def call_later(self, delay, func, *args):
        return _GreenletTimer(gevent.spawn_later(delay, func, *args))


class _GreenletTimer:
    def __init__(self, greenlet):
        self.greenlet = greenlet

    def cancel(self):
        self.greenlet.kill(block=False)


class Session:
    def __init__(self, transport_factory, scheduler=None, dial_backoff=None,
                 on_change=None, on_status=None):
        self.transport_factory = transport_factory
        self.scheduler = scheduler or GeventScheduler()
        self.dial_backoff = config.DIAL_BACKOFF if dial_backoff is None else dial_backoff
        self.on_change = on_change
        self.on_status = on_status

        self.phase = Phase.IDLE
        self.role = None
        self.mark = None
        self.engine = UltimateTicTacToe()
        self.identifier = None
        self.target = None
        self.status = ""
        self.dial_attempts = 0

        self._transport = None
        self._channel = None
        self._sync = None
        self._retry = None

    # ── public surface ──
    @property
    def state(self):
        return self.engine.state

    @property
    def my_turn(self):
        return self._sync is not None and self._sync.my_turn

    def host(self):
        self._start(Role.HOST)
        self._set_status("Initializing...")
        self._transport.register()

    def join(self, identifier):
        identifier = (identifier or "").strip()
        if not identifier:
            self._set_status("Please enter a game ID.")
            return False
        self._start(Role.CLIENT)
        self.target = identifier
        self._set_status("Connecting...")
        self._transport.register()
        return True

    def move(self, b, c):
        if self.phase is not Phase.CONNECTED:
            return False
        return self._sync.play(b, c)

    def reset(self):
        if self.phase is not Phase.CONNECTED:
            return False
        self._sync.reset()
        return True

    def close(self):
        if self.phase is Phase.CLOSED: return
        self._teardown()
        self._enter(Phase.CLOSED)
        self._set_status("Connection closed.")

    # ── lifecycle ──
    def _enter(self, phase):
        if phase not in TRANSITIONS[self.phase]:
            raise ValueError(f"Invalid transition: {self.phase.value} -> {phase.value}")
        logger.info("Session %s: %s -> %s", self.identifier or "-", self.phase.value, phase.value)
        self.phase = phase

    def _set_status(self, text):
        self.status = text
        logger.info("Status: %s", text)
        if self.on_status:
            self.on_status(text)

    def _start(self, role):
        if self.phase is Phase.CLOSED:
            raise SessionClosedError("This session is closed; start a new one.")
        if self.phase is Phase.CONNECTED:
            raise RuntimeError("Already connected to a peer.")
        self._teardown()
        if self.phase is not Phase.IDLE:
            self._enter(Phase.IDLE)
        self.role = role
        self.mark = ROLE_MARKS[role]
        self.identifier = None
        self.target = None
        self.dial_attempts = 0
        transport = self.transport_factory()
        transport.on("open", lambda ident: self._guard(transport, self._on_registered, ident))
        transport.on("connection", lambda ch: self._guard(transport, self._on_incoming, ch))
        transport.on("disconnected", lambda: self._guard(transport, self._on_rendezvous_lost))
        transport.on("error", lambda err: self._guard(transport, self._on_transport_error, err))
        self._transport = transport
        self._enter(Phase.CONNECTING)

    def _guard(self, transport, handler, *args):
        # Events from a transport we already discarded are stale.
        if transport is not self._transport:
            return
        handler(*args)

    def _teardown(self):
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        channel, self._channel = self._channel, None
        transport, self._transport = self._transport, None
        self._sync = None
        if channel is not None:
            channel.off()
            channel.close()
        if transport is not None:
            transport.off()
            transport.destroy()

    def _fail(self, text):
        self._teardown()
        self._enter(Phase.IDLE)
        self._set_status(text)

    # ── transport events ──
    def _on_registered(self, identifier):
        self.identifier = identifier
        if self.phase is Phase.CONNECTING:
            self._enter(Phase.REGISTERED)
        else:
            # re-registration after a rendezvous drop; nothing else changes
            logger.info("Re-registered with rendezvous service as %s", identifier)
            if self.phase is Phase.CONNECTED:
                self._set_status(self._sync.status_text())
            elif self.phase is Phase.AWAITING_PEER:
                self._set_status("Waiting for opponent to join...")
            elif self.phase is Phase.DIALING:
                self._set_status("Connecting...")
            return
        if self.role is Role.HOST:
            self._enter(Phase.AWAITING_PEER)
            self._set_status("Waiting for opponent to join...")
        else:
            self._enter(Phase.DIALING)
            self._dial()

    def _on_incoming(self, channel):
        if self.phase is not Phase.AWAITING_PEER:
            logger.warning("Refusing extra connection from %s", channel.peer)
            channel.close()
            return
        self._attach(channel)
        if channel.is_open:
            self._on_channel_open(channel)

    def _on_rendezvous_lost(self):
        self._set_status("Disconnected from server. Reconnecting...")
        try:
            self._transport.reconnect()
        except TransportError as err:
            logger.warning("Reconnect to rendezvous service failed: %s", err)

    def _on_transport_error(self, err):
        if self.phase is Phase.CONNECTED:
            logger.warning("Rendezvous error while connected: %s", err.kind)
            return
        if self.role is Role.HOST and err.kind == NEGOTIATION_FAILED:
            self._set_status("Negotiation failed. Waiting for opponent to retry...")
            return
        if self.phase is Phase.DIALING and err.recoverable:
            self._schedule_dial(err)
            return
        self._fail(f"Peer error: {err.kind}")

    # ── dialling ──
    def _dial(self):
        self._retry = None
        if self.phase is not Phase.DIALING:
            return
        self.dial_attempts += 1
        logger.debug("Dialling %s (attempt %d)", self.target, self.dial_attempts)
        try:
            channel = self._transport.connect(self.target)
        except TransportError as err:
            self._on_dial_error(None, err)
            return
        self._attach(channel)
        if channel.is_open:
            self._on_channel_open(channel)

    def _schedule_dial(self, err):
        logger.info("Dial to %s failed (%s); retrying in %.1fs", self.target, err.kind, self.dial_backoff)
        if err.kind == NEGOTIATION_FAILED:
            self._set_status("Negotiation failed, retrying...")
        else:
            self._set_status(f"Host not reachable ({err.kind}), retrying...")
        if self._retry is None:
            self._retry = self.scheduler.call_later(self.dial_backoff, self._dial)

    def _on_dial_error(self, channel, err):
        if channel is not None:
            channel.off()
            if channel is self._channel:
                self._channel = None
        if err.recoverable:
            self._schedule_dial(err)
        else:
            self._fail(f"Connection error: {err.kind}")

    # ── data channel ──
    def _attach(self, channel):
        self._channel = channel
        channel.on("open", lambda: self._channel_event(channel, self._on_channel_open, channel))
        channel.on("error", lambda err: self._channel_event(channel, self._on_channel_error, channel, err))
        channel.on("close", lambda: self._channel_event(channel, self._on_channel_close))

    def _channel_event(self, channel, handler, *args):
        if channel is not self._channel:
            return
        handler(*args)

    def _on_channel_open(self, channel):
        if self.phase is Phase.CONNECTED:
            return
        self._enter(Phase.CONNECTED)
        self.engine.reset()
        self._sync = SyncProtocol(self.engine, channel, self.mark, on_change=self._changed)
        self._set_status("Connected!")
        self._changed(self.engine.state)

    def _on_channel_error(self, channel, err):
        if self.phase is Phase.DIALING:
            self._on_dial_error(channel, err)
            return
        if self.phase is Phase.CONNECTED:
            if err.kind == NEGOTIATION_FAILED:
                text = "Negotiation failed. Attempting to reset connection..."
            else:
                text = f"Connection error: {err.kind}"
            self._teardown()
            self._enter(Phase.CLOSED)
            self._set_status(text)
            return
        self._fail(f"Connection error: {err.kind}")

    def _on_channel_close(self):
        if self.phase is Phase.CONNECTED:
            self._teardown()
            self._enter(Phase.CLOSED)
            self._set_status("Opponent disconnected.")
        elif self.phase is Phase.DIALING:
            self._fail("Connection closed.")
        else:
            self._channel = None

    def _changed(self, state):
        if self._sync is not None:
            self._set_status(self._sync.status_text())
        if self.on_change:
            self.on_change(state)
