"""
keystone.__main__ — Entry point for ``python -m keystone``
==========================================================

Wiring:
1. Load .env (secrets, DATABASE_URL).
2. Load config.yaml (infrastructure settings) and configure logging.
3. Create the SQLAlchemy engine, ensure tables exist, seed default tuning.
4. Serve the FastAPI app (its lifespan warms the cache, starts the
   settings listener and wires the milestone hooks).
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from keystone.config import load_config
from keystone.database.engine import create_db_engine, init_db

logger = logging.getLogger("keystone")


def main() -> None:
    """Bootstrap and run the Keystone API."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Infrastructure configuration + logging.
    try:
        cfg = load_config()
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logging.basicConfig(level=logging.INFO)
        logger.critical("Cannot load config.yaml: %s", exc)
        sys.exit(1)

    logging.basicConfig(
        level=cfg.log_level_value,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Config loaded — platform: %s", cfg.platform_name)

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)
    engine.dispose()

    # 4. API (blocks until Ctrl+C or SIGTERM).
    uvicorn.run(
        "keystone.api.main:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level=cfg.log_level.lower(),
    )


if __name__ == "__main__":
    main()
