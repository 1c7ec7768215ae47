#!/usr/bin/env python3
"""
Create database tables for tenantcore.
"""
from tenantcore.config import Settings
from tenantcore.db.database import init_db, make_engine
from tenantcore.observability.logging import setup_logging


def main():
    setup_logging()
    settings = Settings.from_env()
    init_db(make_engine(settings.database_url))
    print("Tables created.")


if __name__ == "__main__":
    main()
