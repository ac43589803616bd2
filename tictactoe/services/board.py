"""Rules of 3x3 tic-tac-toe on a flat nine-cell board.

Cells hold "X", "O" or "" and are indexed row * 3 + col.
"""

from dataclasses import dataclass

BOARD_SIZE = 9
SYMBOLS = ("X", "O")
EMPTY = ""

WIN_LINES: tuple[tuple[int, int, int], ...] = (
    (0, 1, 2),
    (3, 4, 5),
    (6, 7, 8),
    (0, 3, 6),
    (1, 4, 7),
    (2, 5, 8),
    (0, 4, 8),
    (2, 4, 6),
)


@dataclass(frozen=True)
class BoardOutcome:
    result: str  # "ongoing" | "win" | "draw"
    winner_symbol: str | None = None
    winning_line: tuple[int, int, int] | None = None

    @property
    def finished(self) -> bool:
        return self.result != "ongoing"


def empty_board() -> list[str]:
    return [EMPTY] * BOARD_SIZE


def position_from(row: int, col: int) -> int:
    if not (0 <= row < 3 and 0 <= col < 3):
        raise ValueError("Row and column must be between 0 and 2")
    return row * 3 + col


def next_symbol(symbol: str) -> str:
    if symbol not in SYMBOLS:
        raise ValueError(f"Unknown symbol: {symbol}")
    return "O" if symbol == "X" else "X"


def validate_move(board: list[str], position: int, symbol: str, current_symbol: str) -> None:
    if len(board) != BOARD_SIZE:
        raise ValueError("Board must have nine cells")
    if not isinstance(position, int) or isinstance(position, bool):
        raise ValueError("Position must be an integer")
    if not 0 <= position < BOARD_SIZE:
        raise ValueError("Position out of bounds")
    if symbol not in SYMBOLS:
        raise ValueError(f"Unknown symbol: {symbol}")
    if symbol != current_symbol:
        raise ValueError("Not your turn")
    if board[position] != EMPTY:
        raise ValueError("Cell already occupied")


def evaluate(board: list[str]) -> BoardOutcome:
    for line in WIN_LINES:
        a, b, c = line
        if board[a] != EMPTY and board[a] == board[b] == board[c]:
            return BoardOutcome(result="win", winner_symbol=board[a], winning_line=line)
    if all(cell != EMPTY for cell in board):
        return BoardOutcome(result="draw")
    return BoardOutcome(result="ongoing")


def apply_move(board: list[str], position: int, symbol: str) -> tuple[list[str], BoardOutcome]:
    """Place a symbol and evaluate; the input board is left untouched."""
    validate_move(board, position, symbol, symbol)
    updated = list(board)
    updated[position] = symbol
    return updated, evaluate(updated)


def check_consistency(
    board: list[str],
    moves: list[dict],
    current_symbol: str,
    status: str,
) -> list[str]:
    errors: list[str] = []
    if len(board) != BOARD_SIZE:
        return ["Board must have nine cells"]
    if any(cell not in (EMPTY, *SYMBOLS) for cell in board):
        errors.append("Board contains unknown symbols")

    occupied = sum(1 for cell in board if cell != EMPTY)
    if occupied != len(moves):
        errors.append(f"Move count {len(moves)} does not match {occupied} occupied cells")

    x_count = board.count("X")
    o_count = board.count("O")
    if x_count - o_count not in (0, 1):
        errors.append("Symbols do not alternate")

    for index, move in enumerate(moves):
        expected = SYMBOLS[index % 2]
        if move.get("symbol") != expected:
            errors.append(f"Move {index + 1} should be {expected}")
            break
        position = move.get("position")
        if not isinstance(position, int) or not 0 <= position < BOARD_SIZE or board[position] != expected:
            errors.append(f"Move {index + 1} does not match the board")
            break

    outcome = evaluate(board)
    if status == "active":
        if outcome.finished:
            errors.append("Game is still active but the board is finished")
        elif current_symbol != SYMBOLS[len(moves) % 2]:
            errors.append("Current symbol does not follow the move count")
    if outcome.result == "win":
        winners = {
            board[a]
            for a, b, c in WIN_LINES
            if board[a] != EMPTY and board[a] == board[b] == board[c]
        }
        if len(winners) > 1:
            errors.append("Both symbols have a winning line")
    return errors
