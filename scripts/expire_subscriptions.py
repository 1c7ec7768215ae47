#!/usr/bin/env python3
"""
Cancel subscriptions whose trial or grace window has elapsed. Run from cron.
"""
import logging

from tenantcore.config import Settings
from tenantcore.db.database import make_engine, make_session_factory
from tenantcore.main import build_services
from tenantcore.observability.logging import setup_logging

logger = logging.getLogger("tenantcore.scripts.expire")


def main():
    setup_logging()
    settings = Settings.from_env()
    services = build_services(settings, make_session_factory(make_engine(settings.database_url)))
    expired = services.subscriptions.expire_lapsed()
    services.notifications.shutdown(wait=True)
    logger.info(f"Expired {len(expired)} subscriptions")


if __name__ == "__main__":
    main()
