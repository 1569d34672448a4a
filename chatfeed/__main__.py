"""Run the chat service: ``python -m chatfeed``."""

import logging
import sys

import uvicorn
from pydantic import ValidationError

from chatfeed.config import get_settings
from chatfeed.logging_utils import setup_logging
from chatfeed.main import close_event_streams, create_app


class ChatServer(uvicorn.Server):
    """uvicorn server that ends open event streams as soon as shutdown begins."""

    def handle_exit(self, sig, frame) -> None:
        close_event_streams(self.config.app)
        super().handle_exit(sig, frame)


def main() -> int:
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging("INFO")
        logging.getLogger("chatfeed").critical(f"Invalid configuration: {e}")
        return 2

    setup_logging(settings.LOG_LEVEL)
    config = uvicorn.Config(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
        timeout_graceful_shutdown=1,
    )
    ChatServer(config).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
