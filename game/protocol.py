"""Wire messages exchanged between the two copies of the game and the policy
for applying them.

Only positions travel on the wire, never whole states::

    { "type": "move",  "boardIdx": 0..8, "cellIdx": 0..8, "mark": "X" }
    { "type": "reset" }

``mark`` is optional.  Peers that leave it out are still understood: the
receiver then takes the mover to be whoever its own copy says is on turn.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

from .logic import MARKS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Move:
    board_idx: int
    cell_idx: int
    mark: Optional[str] = None

    def to_dict(self):
        d = {"type": "move", "boardIdx": self.board_idx, "cellIdx": self.cell_idx}
        if self.mark is not None:
            d["mark"] = self.mark
        return d


@dataclass(frozen=True)
class Reset:
    def to_dict(self):
        return {"type": "reset"}


Message = Union[Move, Reset]


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def parse_message(payload) -> Optional[Message]:
    """Validate an inbound payload; None for anything that is not a known message."""
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return None
    if not isinstance(payload, dict):
        return None
    kind = payload.get("type")
    if kind == "reset":
        return Reset()
    if kind == "move":
        b, c, mark = payload.get("boardIdx"), payload.get("cellIdx"), payload.get("mark")
        if not _is_int(b) or not _is_int(c):
            return None
        if mark is not None and mark not in MARKS:
            return None
        return Move(b, c, mark)
    return None


def encode_message(message: Message) -> str:
    return json.dumps(message.to_dict())


class SyncProtocol:
    """Keeps one participant's engine in step with its peer over a data channel.

    Every move accepted locally is sent as a ``Move``; every ``Move`` received
    is replayed through the same ``apply_move`` check.  Both copies start from
    the same state and apply the same moves in the same order, so they stay
    identical without ever exchanging a snapshot.
    """

    def __init__(self, engine, channel, local_mark, on_change=None):
        self.engine = engine
        self.channel = channel
        self.local_mark = local_mark
        self.on_change = on_change
        channel.on("data", self.receive)

    @property
    def my_turn(self):
        return not self.engine.finished and self.engine.turn == self.local_mark

    def _send(self, message):
        if not self.channel.is_open:
            return False
        self.channel.send(message.to_dict())
        return True

    def _changed(self):
        if self.on_change:
            self.on_change(self.engine.state)

    def play(self, b, c):
        """Apply a local move; it is sent only if the engine accepted it."""
        if not self.my_turn:
            return False
        if not self.engine.apply_move(b, c, self.local_mark):
            return False
        self._send(Move(b, c, self.local_mark))
        self._changed()
        return True

    def reset(self):
        self.engine.reset()
        self._send(Reset())
        self._changed()

    def receive(self, payload):
        message = parse_message(payload)
        if message is None:
            logger.debug("Dropping unrecognised payload %r", payload)
            return
        if isinstance(message, Reset):
            self.engine.reset()
            self._changed()
            return
        mark = message.mark or self.engine.turn
        if mark == self.local_mark:
            logger.warning("Peer sent a move for our own mark %s at %d/%d; ignoring",
                           mark, message.board_idx, message.cell_idx)
            return
        if not self.engine.apply_move(message.board_idx, message.cell_idx, mark):
            logger.warning("Rejected remote move %s at %d/%d",
                           mark, message.board_idx, message.cell_idx)
            return
        self._changed()

    def status_text(self):
        s = self.engine.state
        if s.finished:
            if s.outcome == self.local_mark: return "You win!"
            if s.outcome in MARKS: return "You lose."
            return "The game is a tie!"
        return f"You are {self.local_mark}. " + ("Your turn." if self.my_turn else "Waiting for opponent...")
