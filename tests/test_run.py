import unittest
from unittest.mock import patch

from tests import support  # noqa: F401
from tictactoe import run
from tictactoe.core.config import get_settings


class RunTests(unittest.TestCase):
    def test_main_serves_socket_app_from_settings(self) -> None:
        settings = get_settings()
        with patch.object(settings, "server_port", 9100), patch.object(run.uvicorn, "run") as serve:
            run.main()

        serve.assert_called_once()
        self.assertEqual(serve.call_args.args, ("tictactoe.main:app",))
        self.assertEqual(serve.call_args.kwargs["port"], 9100)
        self.assertEqual(serve.call_args.kwargs["host"], settings.server_host)
        self.assertEqual(serve.call_args.kwargs["log_level"], settings.log_level.strip().lower())


if __name__ == "__main__":
    unittest.main()
