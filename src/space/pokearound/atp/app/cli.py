import os
from typing import Optional
from aiohttp import web
import logging
from logging.config import dictConfig
import json

from space.pokearound.atp.app.config import Settings


def configure_logging(debug: bool = True) -> None:
    """Configure logging from LOGGING_CONFIG_FILE (a dictConfig JSON file) if set."""
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def invoke(settings: Optional[Settings] = None) -> None:
    if settings is None:
        settings = Settings()  # type: ignore

    configure_logging(settings.debug)

    from space.pokearound.atp.app.server import start_web_server

    web.run_app(start_web_server(settings), port=settings.http_port)


if __name__ == "__main__":
    invoke()
