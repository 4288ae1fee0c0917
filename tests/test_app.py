import app as server
from game.logic import O, X


def create(http):
    return http.post("/api/create").get_json()["gameId"]


def move(http, game_id, b, c, mark):
    return http.post("/api/move", json={"gameId": game_id, "boardIdx": b, "cellIdx": c, "mark": mark})


class TestRestAPI:
    def test_create_and_fetch(self, http):
        game_id = create(http)
        assert len(game_id) == 6
        state = http.post("/api/state", json={"gameId": game_id}).get_json()
        assert state["id"] == game_id
        assert state["currentPlayer"] == X
        assert state["nextBoardIndex"] is None
        assert state["gameOver"] is False
        assert state["bigBoard"] == [None]*9
        assert state["players"] == {"host": True, "join": False}

    def test_join(self, http):
        game_id = create(http)
        body = http.post("/api/join", json={"gameId": game_id}).get_json()
        assert body["mark"] == O
        assert body["state"]["players"]["join"] is True

    def test_legal_move(self, http):
        game_id = create(http)
        resp = move(http, game_id, 4, 0, X)
        assert resp.status_code == 200
        state = resp.get_json()
        assert state["smallBoards"][4][0] == X
        assert state["nextBoardIndex"] == 0
        assert state["currentPlayer"] == O

    def test_illegal_moves(self, http):
        game_id = create(http)
        move(http, game_id, 4, 0, X)
        before = http.post("/api/state", json={"gameId": game_id}).get_json()
        for b, c, mark in [(0, 1, X), (4, 1, O), (0, 9, O), (12, 0, O), ("0", 1, O)]:
            resp = move(http, game_id, b, c, mark)
            assert resp.status_code == 400
            assert resp.get_json() == {"error": "Invalid move"}
        assert http.post("/api/state", json={"gameId": game_id}).get_json() == before

    def test_scenario_one(self, http):
        game_id = create(http)
        for mark, (b, c) in zip([X, O, X, O, X], [(4, 0), (0, 4), (4, 1), (1, 4), (4, 2)]):
            state = move(http, game_id, b, c, mark).get_json()
        assert state["bigBoard"][4] == X
        assert state["nextBoardIndex"] == 2

    def test_reset(self, http):
        game_id = create(http)
        http.post("/api/join", json={"gameId": game_id})
        move(http, game_id, 4, 4, X)
        state = http.post("/api/reset", json={"gameId": game_id}).get_json()
        assert state["smallBoards"][4][4] is None
        assert state["currentPlayer"] == X
        assert state["players"]["join"] is True

    def test_unknown_game(self, http):
        for path in ("/api/join", "/api/state", "/api/move", "/api/reset"):
            resp = http.post(path, json={"gameId": "nope"})
            assert resp.status_code == 404
            assert resp.get_json() == {"error": "Game not found"}

    def test_bad_bodies(self, http):
        resp = http.post("/api/state", data="{not json", content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid JSON"}
        assert http.post("/api/state", json=[1, 2]).status_code == 400


def received(client, name):
    return [m["args"][0] for m in client.get_received() if m["name"] == name]


class TestRendezvous:
    def register(self, client, ident=None):
        return client.emit("register", {"id": ident}, callback=True)

    def test_register_issues_identifier(self, sio_client):
        reply = self.register(sio_client())
        assert len(reply["id"]) == 6
        assert reply["id"] in server.peers

    def test_requested_identifier_in_use(self, sio_client):
        assert self.register(sio_client(), "host01") == {"id": "host01"}
        assert self.register(sio_client(), "host01") == {"error": "unavailable-id"}

    def test_dial_unknown_target(self, sio_client):
        c = sio_client()
        self.register(c)
        c.emit("dial", {"target": "ghost"})
        assert received(c, "dial_error") == [{"target": "ghost", "type": "peer-unavailable"}]

    def test_dial_unregistered_caller(self, sio_client):
        c = sio_client()
        c.emit("dial", {"target": "ghost"})
        assert received(c, "dial_error")[0]["type"] == "server-error"

    def test_channel_relay_and_close(self, sio_client):
        host, guest = sio_client(), sio_client()
        self.register(host, "host01")
        guest_id = self.register(guest)["id"]
        guest.emit("dial", {"target": "host01"})
        opened = received(guest, "dial_open")[0]
        incoming = received(host, "incoming")[0]
        assert opened["channel"] == incoming["channel"]
        assert incoming["peer"] == guest_id
        cid = opened["channel"]

        guest.emit("relay", {"channel": cid, "data": {"type": "move", "boardIdx": 4, "cellIdx": 0}})
        assert received(host, "data") == [{"channel": cid, "data": {"type": "move", "boardIdx": 4, "cellIdx": 0}}]

        host.emit("close_channel", {"channel": cid})
        assert received(guest, "channel_closed") == [{"channel": cid}]
        assert cid not in server.channels

    def test_relay_on_foreign_channel_ignored(self, sio_client):
        host, guest, stranger = sio_client(), sio_client(), sio_client()
        self.register(host, "host01")
        self.register(guest)
        self.register(stranger)
        guest.emit("dial", {"target": "host01"})
        cid = received(guest, "dial_open")[0]["channel"]
        host.get_received()
        stranger.emit("relay", {"channel": cid, "data": {"type": "reset"}})
        assert received(host, "data") == []

    def test_rebind_after_drop_flushes_queue(self, sio_client):
        host, guest = sio_client(), sio_client()
        self.register(host, "host01")
        self.register(guest)
        guest.emit("dial", {"target": "host01"})
        cid = received(guest, "dial_open")[0]["channel"]
        host.disconnect()
        assert server.peers["host01"]["sid"] is None

        guest.emit("relay", {"channel": cid, "data": {"type": "reset"}})
        back = sio_client()
        assert self.register(back, "host01") == {"id": "host01"}
        assert received(back, "data") == [{"channel": cid, "data": {"type": "reset"}}]
        back.emit("relay", {"channel": cid, "data": {"type": "reset"}})
        assert received(guest, "data") == [{"channel": cid, "data": {"type": "reset"}}]

    def test_expired_peer_closes_channels(self, sio_client):
        host, guest = sio_client(), sio_client()
        self.register(host, "host01")
        self.register(guest)
        guest.emit("dial", {"target": "host01"})
        cid = received(guest, "dial_open")[0]["channel"]
        host.disconnect()
        server.expire_peer("host01", server.peers["host01"]["dropped_at"])
        assert "host01" not in server.peers
        assert received(guest, "channel_closed") == [{"channel": cid}]

    def test_unregister_releases_identifier(self, sio_client):
        c = sio_client()
        self.register(c, "host01")
        c.emit("unregister")
        assert "host01" not in server.peers
        assert self.register(sio_client(), "host01") == {"id": "host01"}

    def test_dial_to_busy_host_is_refused(self, sio_client):
        host, guest, intruder = sio_client(), sio_client(), sio_client()
        self.register(host, "host01")
        self.register(guest)
        self.register(intruder)
        guest.emit("dial", {"target": "host01"})
        assert len(received(guest, "dial_open")) == 1

        intruder.get_received()
        intruder.emit("dial", {"target": "host01"})
        assert received(intruder, "dial_error") == [{"target": "host01", "type": "connection-refused"}]
        assert received(intruder, "dial_open") == []
        assert len(received(host, "incoming")) == 1
        assert len(server.channels) == 1

    def test_host_accepts_a_new_dial_once_free(self, sio_client):
        host, guest, other = sio_client(), sio_client(), sio_client()
        self.register(host, "host01")
        self.register(guest)
        self.register(other)
        guest.emit("dial", {"target": "host01"})
        cid = received(guest, "dial_open")[0]["channel"]
        guest.emit("close_channel", {"channel": cid})
        other.emit("dial", {"target": "host01"})
        assert len(received(other, "dial_open")) == 1
