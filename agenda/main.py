from __future__ import annotations

import logging
import os

import uvicorn

from agenda.config_manager import ConfigManager

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main() -> None:
    config_path = os.getenv("AGENDA_CONFIG_PATH", "config.yaml")
    configure_logging(ConfigManager(config_path).load().log_level)
    host = os.getenv("AGENDA_HOST", "0.0.0.0")
    port = int(os.getenv("AGENDA_PORT", "8080"))
    uvicorn.run("agenda.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
