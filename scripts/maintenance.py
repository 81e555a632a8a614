#!/usr/bin/env python3
"""
Command-line runner for the daily market maintenance pass.
"""

import argparse
import json
import sys

from sparkmarket.core.db import init_db
from sparkmarket.core.maintenance import (
    check_database_integrity,
    perform_daily_maintenance,
    run_daily_issuance,
    sweep_expired,
    MaintenanceReport,
    MaintenanceError
)


def format_report(report: MaintenanceReport) -> str:
    """Format a maintenance report for display."""
    lines = [f"Operation: {report.operation}"]
    if report.completed_at and report.started_at:
        duration = report.completed_at - report.started_at
        lines.append(f"Duration: {duration.total_seconds():.2f} seconds")

    if report.errors:
        lines.append(f"Status: FAILED ({len(report.errors)} errors)")
    elif report.issues_found > 0:
        lines.append(f"Status: ISSUES FOUND ({report.issues_found} issues)")
    else:
        lines.append("Status: SUCCESS")

    if report.metadata:
        lines.append("Details:")
        for key, value in report.metadata.items():
            lines.append(f"  {key}: {value}")

    for title, items in (("Errors", report.errors), ("Recommendations", report.recommendations),
                         ("Actions Taken", report.actions_taken)):
        if items:
            lines.append(f"{title}:")
            lines.extend(f"  - {item}" for item in items)

    return "\n".join(lines)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Spark market maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --daily               # Issuance, expiry sweep and integrity check
  %(prog)s --issuance            # Only mint and distribute the daily issuance
  %(prog)s --sweep               # Only remove expired sparks and old votes
  %(prog)s --check-integrity     # Only check the database
  %(prog)s --daily --json        # Output results as JSON

Environment variables:
- MAINTENANCE_ENABLED=true (required)
- DB_PATH=./data/market.db (database location)
        """
    )
    parser.add_argument("--daily", "-d", action="store_true", help="Run the full daily pass")
    parser.add_argument("--issuance", action="store_true", help="Run the daily issuance")
    parser.add_argument("--sweep", "-s", action="store_true", help="Delete expired sparks and votes")
    parser.add_argument("--check-integrity", "-i", action="store_true", help="Check database integrity")
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")

    args = parser.parse_args(argv)

    individual = [args.issuance, args.sweep, args.check_integrity]
    if not (args.daily or any(individual)):
        parser.error("Must specify at least one maintenance operation")
    if args.daily and any(individual):
        parser.error("--daily cannot be combined with individual operations")

    try:
        init_db()
        if args.daily:
            reports = perform_daily_maintenance()
        else:
            reports = []
            if args.issuance:
                reports.append(run_daily_issuance())
            if args.sweep:
                reports.append(sweep_expired())
            if args.check_integrity:
                reports.append(check_database_integrity())

        if args.json:
            print(json.dumps({
                "operations": len(reports),
                "errors": sum(len(r.errors) for r in reports),
                "reports": [r.to_dict() for r in reports]
            }, indent=2, default=str))
        else:
            for report in reports:
                if not args.quiet or report.errors:
                    print(format_report(report))
                    print("-" * 40)

        if any(r.errors for r in reports):
            return 1
        if any(r.issues_found > 0 for r in reports):
            return 2
        return 0

    except MaintenanceError as e:
        print(f"ERROR: Maintenance operation failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
