from __future__ import annotations

from unittest.mock import patch

import pytest

import main
from apobot.config import Settings
from apobot.telegram_notifier import TelegramSessionListener


def _settings() -> Settings:
    return Settings(port=3100, host="127.0.0.1", telegram_bot_token="TEST_TOKEN", telegram_chat_ids=("1", "2"))


def _args(host: str | None = None, port: int | None = None):
    return type("Args", (), {"host": host, "port": port})()


def test_main_sends_start_and_shutdown_messages() -> None:
    settings = _settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.uvicorn.run") as run,
        patch("main._send_status_message") as send_status,
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args()),
    ):
        assert main.main() == 0

        run.assert_called_once()
        assert run.call_args.kwargs == {"host": "127.0.0.1", "port": 3100}

        # startup + shutdown
        assert send_status.call_count == 2
        assert "apobot started" in send_status.call_args_list[0].kwargs["text"]
        assert "127.0.0.1:3100" in send_status.call_args_list[0].kwargs["text"]
        assert "apobot stopped" in send_status.call_args_list[1].kwargs["text"]


def test_main_sends_crash_and_shutdown_messages_on_error() -> None:
    settings = _settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.uvicorn.run", side_effect=RuntimeError("boom")),
        patch("main._send_status_message") as send_status,
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args()),
    ):
        with pytest.raises(RuntimeError):
            main.main()

        # startup + crash + shutdown
        assert send_status.call_count == 3
        assert "apobot started" in send_status.call_args_list[0].kwargs["text"]
        assert "RuntimeError: boom" in send_status.call_args_list[1].kwargs["text"]
        assert "apobot stopped" in send_status.call_args_list[2].kwargs["text"]


def test_main_survives_telegram_outage() -> None:
    settings = _settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.uvicorn.run") as run,
        patch("main._send_status_message", side_effect=RuntimeError("telegram down")),
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args(port=9000)),
    ):
        assert main.main() == 0
        assert run.call_args.kwargs["port"] == 9000


def test_main_registers_telegram_listener_when_configured() -> None:
    settings = _settings()

    with (
        patch("main.load_settings", return_value=settings),
        patch("main.uvicorn.run"),
        patch("main._send_status_message"),
        patch("main.argparse.ArgumentParser.parse_args", return_value=_args()),
        patch("main.SessionContext") as context_cls,
    ):
        main.main()

    listeners = context_cls.call_args.kwargs["listeners"]
    assert any(isinstance(listener, TelegramSessionListener) for listener in listeners)
