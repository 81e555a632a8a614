#!/usr/bin/env python3
"""
Run the maintenance scheduler in the foreground.
"""

import sys

from sparkmarket.core.config import MAINTENANCE_SCHEDULE_SEC, is_heartbeat_enabled, maintenance_enabled
from sparkmarket.core.db import init_db
from sparkmarket.core.heartbeat import register_daily_maintenance, start, stop


def main():
    """Main entry point for heartbeat script."""
    if not (is_heartbeat_enabled() and maintenance_enabled()):
        print("Heartbeat requires HEARTBEAT_ENABLED=true and MAINTENANCE_ENABLED=true")
        return 1

    try:
        init_db()
        register_daily_maintenance(MAINTENANCE_SCHEDULE_SEC)
        print(f"Daily maintenance scheduled every {MAINTENANCE_SCHEDULE_SEC} seconds")
        start()
    except KeyboardInterrupt:
        stop()
    except Exception as e:
        print(f"Critical error: {e}")
        stop()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
