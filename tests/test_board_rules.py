import unittest

from tests import support  # noqa: F401
from tictactoe.services import board


class BoardRulesTests(unittest.TestCase):
    def test_row_win_is_detected_with_line(self) -> None:
        cells = ["X", "X", "X", "O", "O", "", "", "", ""]
        outcome = board.evaluate(cells)
        self.assertEqual(outcome.result, "win")
        self.assertEqual(outcome.winner_symbol, "X")
        self.assertEqual(outcome.winning_line, (0, 1, 2))
        self.assertTrue(outcome.finished)

    def test_anti_diagonal_win(self) -> None:
        cells = ["X", "X", "O", "", "O", "X", "O", "", ""]
        outcome = board.evaluate(cells)
        self.assertEqual(outcome.winner_symbol, "O")
        self.assertEqual(outcome.winning_line, (2, 4, 6))

    def test_full_board_without_line_is_draw(self) -> None:
        cells = ["X", "O", "X", "X", "O", "O", "O", "X", "X"]
        outcome = board.evaluate(cells)
        self.assertEqual(outcome.result, "draw")
        self.assertIsNone(outcome.winner_symbol)

    def test_empty_board_is_ongoing(self) -> None:
        outcome = board.evaluate(board.empty_board())
        self.assertEqual(outcome.result, "ongoing")
        self.assertFalse(outcome.finished)

    def test_validate_move_errors(self) -> None:
        cells = board.empty_board()
        cells[4] = "X"
        with self.assertRaisesRegex(ValueError, "out of bounds"):
            board.validate_move(cells, 9, "O", "O")
        with self.assertRaisesRegex(ValueError, "Not your turn"):
            board.validate_move(cells, 0, "X", "O")
        with self.assertRaisesRegex(ValueError, "already occupied"):
            board.validate_move(cells, 4, "O", "O")
        with self.assertRaisesRegex(ValueError, "integer"):
            board.validate_move(cells, True, "O", "O")

    def test_apply_move_leaves_input_untouched(self) -> None:
        cells = board.empty_board()
        updated, outcome = board.apply_move(cells, 0, "X")
        self.assertEqual(cells, [""] * 9)
        self.assertEqual(updated[0], "X")
        self.assertEqual(outcome.result, "ongoing")

    def test_position_from_row_and_col(self) -> None:
        self.assertEqual(board.position_from(0, 0), 0)
        self.assertEqual(board.position_from(2, 1), 7)
        with self.assertRaises(ValueError):
            board.position_from(3, 0)

    def test_next_symbol_alternates(self) -> None:
        self.assertEqual(board.next_symbol("X"), "O")
        self.assertEqual(board.next_symbol("O"), "X")

    def test_consistency_check_flags_tampered_board(self) -> None:
        moves = [{"position": 0, "symbol": "X"}, {"position": 4, "symbol": "O"}]
        clean = ["X", "", "", "", "O", "", "", "", ""]
        self.assertEqual(board.check_consistency(clean, moves, "X", "active"), [])

        tampered = ["X", "X", "", "", "O", "", "", "", ""]
        problems = board.check_consistency(tampered, moves, "X", "active")
        self.assertTrue(any("Move count" in problem for problem in problems))

    def test_consistency_check_flags_wrong_turn(self) -> None:
        moves = [{"position": 0, "symbol": "X"}]
        cells = ["X", "", "", "", "", "", "", "", ""]
        problems = board.check_consistency(cells, moves, "X", "active")
        self.assertIn("Current symbol does not follow the move count", problems)


if __name__ == "__main__":
    unittest.main()
