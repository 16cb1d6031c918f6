#!/usr/bin/env python3
"""Escrow core server.

All configuration comes from environment variables (see server/config.py);
secrets are never read from code or files.
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from server.config import Settings

logger = logging.getLogger("escrow")


def build_app(settings: Settings):
    for path in (settings.db_path, settings.challenge_db_path, settings.reputation_db_path):
        if path != ":memory:" and os.path.dirname(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
    return create_app(settings=settings)


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.jwt_secret:
        logger.warning("JWT_SECRET not set: sessions will not survive a restart")

    app = build_app(settings)
    logger.info("Processor: %s, chain: %s, webhooks: %s",
                "stripe" if settings.stripe_secret else "stub",
                "aptos" if settings.chain_configured else "stub",
                "verified" if settings.stripe_webhook_secret else "UNVERIFIED")
    logger.info("Listening on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
