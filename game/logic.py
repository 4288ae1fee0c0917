import copy

X, O, TIE = "X", "O", "T"
MARKS = (X, O)

WIN_LINES = [
    (0,1,2),(3,4,5),(6,7,8),
    (0,3,6),(1,4,7),(2,5,8),
    (0,4,8),(2,4,6)
]


def other(mark):
    return O if mark == X else X


def check_status(board):
    """Settle a 9-slot board: "X"/"O" for a completed line, "T" when full, else None.

    Shared by the small boards and the big board; a "T" slot on the big
    board never completes a line but does count towards it being full.
    """
    for a, b, c in WIN_LINES:
        if board[a] in MARKS and board[a] == board[b] == board[c]:
            return board[a]
    if all(board):
        return TIE
    return None


def _is_index(value):
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= 8


class GameState:
    def __init__(self):
        self.small_boards = [[None]*9 for _ in range(9)]
        self.big_board = [None]*9
        self.forced_board = None     # index of the board the next move must target
        self.turn = X
        self.finished = False
        self.outcome = None          # X, O or T once finished

    def copy(self):
        return copy.deepcopy(self)

    def to_dict(self):
        return {
            "smallBoards": [list(b) for b in self.small_boards],
            "bigBoard": list(self.big_board),
            "nextBoardIndex": self.forced_board,
            "currentPlayer": self.turn,
            "gameOver": self.finished,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data):
        s = cls()
        s.small_boards = [[c or None for c in b] for b in data["smallBoards"]]
        s.big_board = [c or None for c in data["bigBoard"]]
        s.forced_board = data.get("nextBoardIndex")
        s.turn = data.get("currentPlayer", X)
        s.finished = bool(data.get("gameOver", False))
        s.outcome = data.get("outcome")
        if s.finished and s.outcome is None:
            s.outcome = check_status(s.big_board)
        return s

    def __eq__(self, other_state):
        if not isinstance(other_state, GameState):
            return NotImplemented
        return self.to_dict() == other_state.to_dict()

    def __repr__(self):
        return (f"GameState(turn={self.turn!r}, forced={self.forced_board!r}, "
                f"big={self.big_board!r}, outcome={self.outcome!r})")


class UltimateTicTacToe:
    def __init__(self, state=None):
        self.state = state if state is not None else GameState()

    @property
    def turn(self): return self.state.turn

    @property
    def finished(self): return self.state.finished

    def can_move(self, b, c, mark):
        s = self.state
        if not _is_index(b) or not _is_index(c): return False
        if s.finished: return False
        if mark != s.turn: return False
        if s.forced_board is not None and b != s.forced_board: return False
        if s.big_board[b]: return False
        if s.small_boards[b][c] is not None: return False
        return True

    def apply_move(self, b, c, mark):
        """Play ``mark`` at cell ``c`` of small board ``b``; False leaves the state untouched."""
        if not self.can_move(b, c, mark): return False
        s = self.state
        s.small_boards[b][c] = mark
        result = check_status(s.small_boards[b])
        if result:
            s.big_board[b] = result
        overall = check_status(s.big_board)
        if overall:
            s.finished = True
            s.outcome = overall
            s.forced_board = None
        else:
            s.forced_board = c if s.big_board[c] is None else None
        s.turn = other(mark)
        return True

    def reset(self):
        self.state = GameState()
        return self.state

    def active_boards(self):
        s = self.state
        if s.finished: return []
        if s.forced_board is not None: return [s.forced_board]
        return [b for b in range(9) if s.big_board[b] is None]

    def valid_moves(self):
        s = self.state
        return [(b, c) for b in self.active_boards()
                for c in range(9) if s.small_boards[b][c] is None]

    def status_text(self):
        s = self.state
        if not s.finished:
            return f"Current Player: {s.turn}"
        if s.outcome in MARKS:
            return f"Player {s.outcome} wins the game!"
        return "The game is a tie!"
