from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


DEFAULT_BASE_URL = "https://cieasyapo2.ci-medical.com"


def _parse_telegram_chat_ids(raw: str) -> tuple[str, ...]:
    # TELEGRAM_CHAT_ID supports a single value or a comma-separated list.
    # Examples:
    #   TELEGRAM_CHAT_ID=123456789
    #   TELEGRAM_CHAT_ID=123456789,-1001234567890
    parts = [p.strip() for p in raw.split(",")]
    parts = [p for p in parts if p]

    seen: set[str] = set()
    result: list[str] = []
    for p in parts:
        try:
            int(p)
        except ValueError as e:
            raise RuntimeError(f"Invalid TELEGRAM_CHAT_ID value: {p!r}. Expected integer chat id.") from e

        if p == "0":
            raise RuntimeError("Invalid TELEGRAM_CHAT_ID value: '0' is not a valid chat id")

        if p in seen:
            continue
        seen.add(p)
        result.append(p)

    return tuple(result)


def _parse_origins(raw: str) -> tuple[str, ...]:
    origins = tuple(o.strip() for o in raw.split(",") if o.strip())
    return origins or ("*",)


@dataclass(frozen=True)
class Settings:
    port: int = 3000
    host: str = "0.0.0.0"

    # Session tuning
    keep_alive_interval_ms: int = 300_000
    # Kept short: callers are usually waiting on a live phone call.
    request_timeout_ms: int = 60_000
    # How many times a login (browser start + sign in) is attempted before the session goes to error.
    login_retry_attempts: int = 2

    allowed_origins: tuple[str, ...] = ("*",)
    base_url: str = DEFAULT_BASE_URL
    headless: bool = True
    clinic_timezone: str = "Asia/Tokyo"
    screenshot_dir: str = "screenshots"

    # Optional lifecycle alerts
    telegram_bot_token: str | None = None
    telegram_chat_ids: tuple[str, ...] = ()

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_ids)


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    headless_raw = os.getenv("HEADLESS", "1").strip().lower()
    headless = headless_raw not in {"0", "false", "no"}

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN") or None
    telegram_chat_ids = _parse_telegram_chat_ids(os.getenv("TELEGRAM_CHAT_ID", ""))
    if telegram_bot_token and not telegram_chat_ids:
        raise RuntimeError("TELEGRAM_CHAT_ID is empty. Provide at least one chat id.")

    return Settings(
        port=_int_env("PORT", 3000, minimum=1),
        host=os.getenv("HOST", "0.0.0.0"),
        keep_alive_interval_ms=_int_env("KEEP_ALIVE_INTERVAL_MS", 300_000, minimum=1000),
        request_timeout_ms=_int_env("REQUEST_TIMEOUT_MS", 60_000, minimum=1000),
        login_retry_attempts=_int_env("LOGIN_RETRY_ATTEMPTS", 2, minimum=1),
        allowed_origins=_parse_origins(os.getenv("ALLOWED_ORIGINS", "*")),
        base_url=os.getenv("BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
        headless=headless,
        clinic_timezone=os.getenv("CLINIC_TIMEZONE", "Asia/Tokyo"),
        screenshot_dir=os.getenv("SCREENSHOT_DIR", "screenshots"),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_ids=telegram_chat_ids,
    )
