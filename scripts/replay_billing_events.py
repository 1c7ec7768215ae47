#!/usr/bin/env python3
"""
Pull recent events from the billing provider and apply any that were missed.
"""
import argparse
import asyncio
from datetime import datetime, timedelta

from tenantcore.billing.provider import BillingProviderClient, replay_events
from tenantcore.config import Settings
from tenantcore.db.base import utcnow
from tenantcore.db.database import make_engine, make_session_factory
from tenantcore.main import build_services
from tenantcore.observability.logging import setup_logging


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--hours", type=int, default=24, help="look-back window")
    args = parser.parse_args()

    setup_logging()
    settings = Settings.from_env()
    services = build_services(settings, make_session_factory(make_engine(settings.database_url)))
    client = BillingProviderClient.from_settings(settings)
    since: datetime = utcnow() - timedelta(hours=args.hours)
    counts = asyncio.run(replay_events(client, services.subscriptions, since=since))
    services.notifications.shutdown(wait=True)
    print(counts)


if __name__ == "__main__":
    main()
