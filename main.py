import argparse
import logging

import uvicorn

from apobot.config import load_settings
from apobot.server import create_app
from apobot.session import SessionContext, log_session_event
from apobot.telegram_notifier import TelegramSessionListener, broadcast_telegram


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _send_status_message(settings, text: str) -> None:
    broadcast_telegram(settings, text)


def main() -> int:
    parser = argparse.ArgumentParser(description="apobot: resident browser booking service")
    parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000)")
    args = parser.parse_args()

    _setup_logging()
    settings = load_settings()
    host = args.host or settings.host
    port = args.port or settings.port

    listeners = [log_session_event]
    if settings.telegram_enabled:
        listeners.append(TelegramSessionListener(settings))
    context = SessionContext(settings, listeners=listeners)

    logger = logging.getLogger(__name__)
    logger.info("Starting on %s:%s (keep-alive %s ms)", host, port, settings.keep_alive_interval_ms)
    logger.info("Sessions are created on the first request from the X-RPA-Login-Id / X-RPA-Login-Password headers")

    # Startup notification (best-effort)
    try:
        _send_status_message(settings, text=f"apobot started.\nListening on {host}:{port}")
    except Exception:
        logger.warning("Failed to send Telegram startup message", exc_info=True)

    try:
        uvicorn.run(create_app(settings, context), host=host, port=port)
        return 0

    except Exception as e:
        try:
            _send_status_message(settings, text=f"apobot crashed.\nReason: {type(e).__name__}: {e}")
        except Exception:
            logger.warning("Failed to send Telegram crash message", exc_info=True)
        raise

    finally:
        try:
            _send_status_message(settings, text="apobot stopped.")
        except Exception:
            logger.warning("Failed to send Telegram shutdown message", exc_info=True)


if __name__ == "__main__":
    raise SystemExit(main())
