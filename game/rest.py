"""Client for the stateless REST transport served by ``app.py``.

The server owns the game and re-checks every move with the same
``apply_move`` rule the peer transport uses; the client keeps a copy only to
refuse obviously illegal moves before a round trip and to render between
polls.
"""
import logging

import requests

from . import config
from .logic import X, GameState, UltimateTicTacToe

logger = logging.getLogger(__name__)


class RestError(Exception):
    def __init__(self, status, message):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class RestClient:
    def __init__(self, base_url=None, http=None, timeout=10):
        self.base_url = (base_url or config.RENDEZVOUS_URL).rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout

    def _post(self, path, payload=None):
        try:
            resp = self.http.post(self.base_url + path, json=payload or {}, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RestError(None, str(exc)) from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            raise RestError(resp.status_code, data.get("error", "request failed"))
        return data

    def create(self):
        return self._post("/api/create")["gameId"]

    def join(self, game_id):
        return self._post("/api/join", {"gameId": game_id})

    def state(self, game_id):
        return self._post("/api/state", {"gameId": game_id})

    def move(self, game_id, b, c, mark):
        return self._post("/api/move", {"gameId": game_id, "boardIdx": b, "cellIdx": c, "mark": mark})

    def reset(self, game_id):
        return self._post("/api/reset", {"gameId": game_id})


class RestGame:
    def __init__(self, client, game_id, mark, state=None):
        self.client = client
        self.game_id = game_id
        self.mark = mark
        self.engine = UltimateTicTacToe(GameState.from_dict(state) if state else None)

    @classmethod
    def host(cls, client):
        game_id = client.create()
        return cls(client, game_id, X, client.state(game_id))

    @classmethod
    def join(cls, client, game_id):
        reply = client.join(game_id)
        return cls(client, game_id, reply["mark"], reply["state"])

    @property
    def state(self):
        return self.engine.state

    @property
    def my_turn(self):
        return not self.engine.finished and self.engine.turn == self.mark

    def _adopt(self, data):
        self.engine.state = GameState.from_dict(data)

    def move(self, b, c):
        if not self.engine.can_move(b, c, self.mark):
            return False
        try:
            self._adopt(self.client.move(self.game_id, b, c, self.mark))
        except RestError as err:
            if err.status != 400:
                raise
            # our copy was stale; the server's view wins
            logger.info("Server rejected move %d/%d in game %s", b, c, self.game_id)
            self.refresh()
            return False
        return True

    def refresh(self):
        """Poll the server; True when the opponent has changed the game."""
        before = self.engine.state
        self._adopt(self.client.state(self.game_id))
        return self.engine.state != before

    def reset(self):
        self._adopt(self.client.reset(self.game_id))
