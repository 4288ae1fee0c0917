"""Shared fixtures: a deterministic clock for dial retries, an in-process
rendezvous, and the Flask app with its module-level registries cleared."""
import pytest
from socketio.exceptions import ConnectionError as SocketIOConnectionError

import app as server
from game.logic import UltimateTicTacToe
from game.session import Session
from game.transport import LocalRendezvous, LocalTransport, SocketIOTransport


class ManualTimer:
    def __init__(self, when, func, args):
        self.when = when
        self.func = func
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Fires timers only when the test advances time."""

    def __init__(self):
        self.now = 0.0
        self.timers = []

    def call_later(self, delay, func, *args):
        timer = ManualTimer(self.now + delay, func, args)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds):
        self.now += seconds
        due = [t for t in self.pending if t.when <= self.now]
        self.timers = [t for t in self.timers if t not in due and not t.cancelled]
        for timer in due:
            timer.func(*timer.args)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def rendezvous():
    return LocalRendezvous()


@pytest.fixture
def make_session(rendezvous, scheduler):
    """Build a Session plus the list of transports it has created so far."""
    def build(identifier=None):
        transports = []

        def new_transport():
            t = LocalTransport(rendezvous, identifier)
            transports.append(t)
            return t

        return Session(new_transport, scheduler=scheduler, dial_backoff=1.5), transports
    return build


@pytest.fixture
def connected(make_session):
    """A host (X) and a client (O) with an open data channel."""
    host, host_transports = make_session("host01")
    client, client_transports = make_session()
    host.host()
    client.join("host01")
    return host, client, host_transports, client_transports


@pytest.fixture
def engine():
    return UltimateTicTacToe()


@pytest.fixture
def flask_app():
    server.games.clear()
    server.peers.clear()
    server.sids.clear()
    server.channels.clear()
    server.app.config['TESTING'] = True
    yield server.app
    server.games.clear()
    server.peers.clear()
    server.sids.clear()
    server.channels.clear()


@pytest.fixture
def http(flask_app):
    return flask_app.test_client()


@pytest.fixture
def sio_client(flask_app):
    clients = []

    def connect():
        c = server.socketio.test_client(flask_app)
        clients.append(c)
        return c

    yield connect
    for c in clients:
        if c.is_connected():
            c.disconnect()


class FlaskHTTP:
    """Gives the Flask test client the slice of requests.Session RestClient uses."""

    class Response:
        def __init__(self, resp):
            self.status_code = resp.status_code
            self._resp = resp

        def json(self):
            data = self._resp.get_json(silent=True)
            if data is None:
                raise ValueError("no JSON body")
            return data

    def __init__(self, client):
        self.client = client
        self.calls = 0

    def post(self, url, json=None, timeout=None):
        self.calls += 1
        path = url.split("://", 1)[-1]
        path = path[path.index("/"):]
        return self.Response(self.client.post(path, json=json))


@pytest.fixture
def rest_http(http):
    return FlaskHTTP(http)


class FakeSocketIOClient:
    """Stands in for socketio.Client; tests fire server events by hand.

    Mirrors the library's ordering where it matters: ``drop()`` runs the
    disconnect handler while ``connected`` is still True, and background
    tasks only run when the test calls ``run_tasks()``.
    """

    def __init__(self, failures=0):
        self.handlers = {}
        self.emitted = []
        self.callbacks = {}
        self.connected = False
        self.failures = failures
        self.connects = 0
        self.tasks = []
        self.sleeps = []

    def on(self, event, handler=None):
        self.handlers[event] = handler

    def connect(self, url):
        self.connects += 1
        if self.failures:
            self.failures -= 1
            raise SocketIOConnectionError("refused")
        self.connected = True
        self.handlers["connect"]()

    def disconnect(self):
        self.connected = False

    def emit(self, event, data=None, callback=None):
        self.emitted.append((event, data))
        if callback is not None:
            self.callbacks[event] = callback

    def start_background_task(self, target, *args):
        self.tasks.append((target, args))

    def sleep(self, seconds):
        self.sleeps.append(seconds)

    def run_tasks(self):
        tasks, self.tasks = self.tasks, []
        for target, args in tasks:
            target(*args)

    def fire(self, event, *args):
        self.handlers[event](*args)

    def drop(self):
        self.fire("disconnect", "transport error")
        self.connected = False

    def ack_register(self, ident):
        self.callbacks.pop("register")({"id": ident})


@pytest.fixture
def fake():
    return FakeSocketIOClient()


@pytest.fixture
def make_sio_session(scheduler):
    """Build a Session whose transports talk to the given fake Socket.IO client."""
    def build(client):
        return Session(lambda: SocketIOTransport("http://rendezvous.test", client=client),
                       scheduler=scheduler, dial_backoff=1.5)
    return build
