#!/usr/bin/env python3
# FacilityDesk - School Facility Equipment Checkout System
# Copyright (C) 2025 Oleg Tokmakov
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Database initialization script."""

import argparse
import logging

from facilitydesk.config import init_settings
from facilitydesk.database import init_database
from facilitydesk.main import configure_logging

logger = logging.getLogger("facilitydesk.init_db")


def main():
    """Initialize the database."""
    parser = argparse.ArgumentParser(description="Create the FacilityDesk database tables.")
    parser.add_argument("--config", help="Path to config.yaml (defaults to FACILITYDESK_CONFIG)")
    args = parser.parse_args()

    # Load configuration
    settings = init_settings(args.config)
    configure_logging(settings.app.log_level)

    logger.info("Initializing FacilityDesk database...")

    # Initialize database
    init_database()

    logger.info("Database initialization complete")


if __name__ == "__main__":
    main()
