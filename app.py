from gevent import monkey
monkey.patch_all()

from flask import Flask, request, jsonify
from flask_socketio import SocketIO, emit
from game import config
from game.logic import O, UltimateTicTacToe
from game.transport import (CONNECTION_REFUSED, PEER_UNAVAILABLE, SERVER_ERROR,
                            UNAVAILABLE_ID, new_identifier)
import logging, os, time, uuid

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'a_secret_key')
socketio = SocketIO(app, async_mode='gevent')

# ── Stateless REST games ──────────────────────────────────────────────────────
games = {}   # game id -> {"id", "engine", "players"}


def make_game(game_id):
    return {
        "id":      game_id,
        "engine":  UltimateTicTacToe(),
        "players": {"host": True, "join": False},
    }

def game_json(game):
    s = game["engine"].state.to_dict()
    s["id"]      = game["id"]
    s["players"] = dict(game["players"])
    return s

def _error(message, status):
    return jsonify({"error": message}), status

def _payload():
    """Request body as a dict; an empty body counts as {}. None when it is not a JSON object."""
    if not request.get_data():
        return {}
    body = request.get_json(silent=True, force=True)
    return body if isinstance(body, dict) else None

def _lookup(payload):
    return games.get(payload.get("gameId")) if payload is not None else None


@app.route('/api/create', methods=['POST'])
def api_create():
    if _payload() is None: return _error("Invalid JSON", 400)
    game_id = uuid.uuid4().hex[:6]
    while game_id in games:
        game_id = uuid.uuid4().hex[:6]
    games[game_id] = make_game(game_id)
    logger.info("Created REST game %s", game_id)
    return jsonify({"gameId": game_id})

@app.route('/api/join', methods=['POST'])
def api_join():
    payload = _payload()
    if payload is None: return _error("Invalid JSON", 400)
    game = _lookup(payload)
    if not game: return _error("Game not found", 404)
    game["players"]["join"] = True
    return jsonify({"mark": O, "state": game_json(game)})

@app.route('/api/state', methods=['POST'])
def api_state():
    payload = _payload()
    if payload is None: return _error("Invalid JSON", 400)
    game = _lookup(payload)
    if not game: return _error("Game not found", 404)
    return jsonify(game_json(game))

@app.route('/api/move', methods=['POST'])
def api_move():
    payload = _payload()
    if payload is None: return _error("Invalid JSON", 400)
    game = _lookup(payload)
    if not game: return _error("Game not found", 404)
    b, c, mark = payload.get("boardIdx"), payload.get("cellIdx"), payload.get("mark")
    # Same legality check the peer transport applies to remote moves.
    if not game["engine"].apply_move(b, c, mark):
        logger.debug("Rejected move %r at %r/%r in game %s", mark, b, c, game["id"])
        return _error("Invalid move", 400)
    return jsonify(game_json(game))

@app.route('/api/reset', methods=['POST'])
def api_reset():
    payload = _payload()
    if payload is None: return _error("Invalid JSON", 400)
    game = _lookup(payload)
    if not game: return _error("Game not found", 404)
    fresh = make_game(game["id"])
    fresh["players"] = game["players"]
    games[game["id"]] = fresh
    return jsonify(game_json(fresh))


# ── Rendezvous / relay ────────────────────────────────────────────────────────
# A participant registers for an identifier, the other dials it, and the
# server relays channel traffic between the two sockets.  Identifiers outlive
# a dropped socket for RECONNECT_GRACE seconds so a reconnect can rebind them.
peers    = {}   # identifier -> {"sid", "channels", "pending", "dropped_at"}
sids     = {}   # socket sid -> identifier
channels = {}   # channel id -> (dialer identifier, host identifier)


def _deliver(ident, event, data):
    peer = peers.get(ident)
    if not peer: return
    if peer["sid"] is None:
        peer["pending"].append((event, data))
    else:
        socketio.emit(event, data, to=peer["sid"])

def _other_end(cid, ident):
    pair = channels.get(cid)
    if not pair or ident not in pair: return None
    return pair[1] if pair[0] == ident else pair[0]

def _close_channel(cid, closer):
    other = _other_end(cid, closer)
    if other is None: return
    del channels[cid]
    for ident in (closer, other):
        if ident in peers:
            peers[ident]["channels"].discard(cid)
    _deliver(other, "channel_closed", {"channel": cid})

def _drop_peer(ident):
    peer = peers.pop(ident, None)
    if not peer: return
    if peer["sid"]:
        sids.pop(peer["sid"], None)
    for cid in list(peer["channels"]):
        _close_channel(cid, ident)
    logger.info("Released identifier %s", ident)

def _expire_later(ident, dropped_at):
    socketio.sleep(config.RECONNECT_GRACE)
    expire_peer(ident, dropped_at)

def expire_peer(ident, dropped_at):
    """Release ``ident`` if it has stayed offline since ``dropped_at``."""
    peer = peers.get(ident)
    if peer and peer["sid"] is None and peer["dropped_at"] == dropped_at:
        _drop_peer(ident)


@socketio.on("register")
def register(data=None):
    sid       = request.sid
    requested = (data or {}).get("id")
    if sid in sids:
        return {"id": sids[sid]}
    peer = peers.get(requested) if requested else None
    if peer is not None:
        if peer["sid"] is not None:
            return {"error": UNAVAILABLE_ID}
        # Rebind after a reconnect and flush what arrived meanwhile.
        peer["sid"] = sid; peer["dropped_at"] = None
        sids[sid] = requested
        pending, peer["pending"] = peer["pending"], []
        for event, payload in pending:
            socketio.emit(event, payload, to=sid)
        logger.info("Rebound identifier %s", requested)
        return {"id": requested}
    ident = requested or new_identifier()
    while ident in peers:
        ident = new_identifier()
    peers[ident] = {"sid": sid, "channels": set(), "pending": [], "dropped_at": None}
    sids[sid] = ident
    logger.info("Registered identifier %s", ident)
    return {"id": ident}

@socketio.on("dial")
def dial(data):
    caller = sids.get(request.sid)
    target = (data or {}).get("target")
    if caller is None:
        emit("dial_error", {"target": target, "type": SERVER_ERROR}); return
    host = peers.get(target)
    if not host or host["sid"] is None or target == caller:
        emit("dial_error", {"target": target, "type": PEER_UNAVAILABLE}); return
    if host["channels"]:
        # One opponent per host; refuse before the dialler sees an open channel.
        emit("dial_error", {"target": target, "type": CONNECTION_REFUSED}); return
    cid = uuid.uuid4().hex[:12]
    channels[cid] = (caller, target)
    peers[caller]["channels"].add(cid)
    host["channels"].add(cid)
    # The dialler learns its channel id before any traffic on it can arrive.
    emit("dial_open", {"target": target, "channel": cid})
    socketio.emit("incoming", {"channel": cid, "peer": caller}, to=host["sid"])
    logger.info("Channel %s opened: %s -> %s", cid, caller, target)

@socketio.on("relay")
def relay(data):
    sender = sids.get(request.sid)
    cid    = (data or {}).get("channel")
    other  = _other_end(cid, sender)
    if other is None: return
    _deliver(other, "data", {"channel": cid, "data": data.get("data")})

@socketio.on("close_channel")
def close_channel(data):
    sender = sids.get(request.sid)
    _close_channel((data or {}).get("channel"), sender)

@socketio.on("unregister")
def unregister(*args):
    ident = sids.get(request.sid)
    if ident: _drop_peer(ident)

@socketio.on("disconnect")
def disconnect(*args):
    ident = sids.pop(request.sid, None)
    peer  = peers.get(ident)
    if not peer: return
    peer["sid"] = None
    peer["dropped_at"] = time.time()
    socketio.start_background_task(_expire_later, ident, peer["dropped_at"])


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    socketio.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
