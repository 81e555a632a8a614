"""
Daily maintenance: monetary issuance, TTL sweeps and database integrity.

Each step is a set-based statement against the store, so the pass can run
alongside live traffic.
"""

import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import dao
from .config import VOTE_RETENTION_DAYS, EconomyConfig, get_db_path, get_economy_config, maintenance_enabled
from .db import get_db
from .economy import SECONDS_PER_DAY, daily_issuance
from ..util.logging import audit_event, logger


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance step."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    issues_resolved: int = 0
    actions_taken: List[str] = None
    recommendations: List[str] = None
    errors: List[str] = None
    metadata: Dict[str, Any] = None

    def __post_init__(self):
        if self.actions_taken is None:
            self.actions_taken = []
        if self.recommendations is None:
            self.recommendations = []
        if self.errors is None:
            self.errors = []
        if self.metadata is None:
            self.metadata = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "issues_found": self.issues_found,
            "issues_resolved": self.issues_resolved,
            "actions_taken": self.actions_taken,
            "recommendations": self.recommendations,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


class MaintenanceError(Exception):
    """Raised when maintenance is requested while disabled."""
    pass


def _require_enabled():
    if not maintenance_enabled():
        raise MaintenanceError("Maintenance system is disabled. Enable with MAINTENANCE_ENABLED=true")


def _finish(report: MaintenanceReport, start: float) -> MaintenanceReport:
    report.completed_at = datetime.now()
    logger.log_maintenance(
        report.operation, start, time.time(),
        status="success" if not report.errors else "error",
        details={"issues_found": report.issues_found, "issues_resolved": report.issues_resolved}
    )
    return report


def run_daily_issuance(config: Optional[EconomyConfig] = None, now: Optional[float] = None) -> MaintenanceReport:
    """Mint the daily issuance and credit the UBI half to citizens."""
    _require_enabled()
    start = time.time()
    report = MaintenanceReport(operation="daily_issuance", started_at=datetime.now())

    try:
        result = daily_issuance(config or get_economy_config(), now)
        report.metadata.update({
            "issuance": result.issuance,
            "total_accounts": result.total_accounts,
            "citizens": result.citizens,
            "ubi_per_citizen": result.ubi_per_citizen,
            "credited_accounts": result.credited,
        })
        if result.credited:
            report.actions_taken.append(
                f"Credited {result.ubi_per_citizen} energy to {result.credited} citizens"
            )
        else:
            report.recommendations.append("No eligible citizens; nothing distributed")
    except sqlite3.Error as e:
        report.errors.append(f"Issuance failed: {e}")

    audit_event(
        event_type="daily_issuance",
        identifiers={"operation": report.operation},
        payload=report.metadata
    )
    return _finish(report, start)


def sweep_expired(now: Optional[float] = None) -> MaintenanceReport:
    """Delete claims past their hard TTL and votes past the retention window."""
    _require_enabled()
    now = time.time() if now is None else now
    start = time.time()
    report = MaintenanceReport(operation="expiry_sweep", started_at=datetime.now())

    try:
        claims_removed = dao.delete_expired_claims(now)
        votes_removed = dao.delete_votes_before(now - VOTE_RETENTION_DAYS * SECONDS_PER_DAY)

        report.issues_resolved = claims_removed + votes_removed
        report.metadata["claims_removed"] = claims_removed
        report.metadata["votes_removed"] = votes_removed
        if claims_removed:
            report.actions_taken.append(f"Removed {claims_removed} expired sparks")
        if votes_removed:
            report.actions_taken.append(f"Removed {votes_removed} votes past retention")
    except sqlite3.Error as e:
        report.errors.append(f"Expiry sweep failed: {e}")

    return _finish(report, start)


def check_database_integrity() -> MaintenanceReport:
    """
    Check SQLite database integrity and foreign keys, and record table counts.

    Returns:
        MaintenanceReport: Detailed integrity check results
    """
    _require_enabled()
    start = time.time()
    report = MaintenanceReport(operation="database_integrity_check", started_at=datetime.now())

    db_path = Path(get_db_path())
    if not db_path.exists():
        report.errors.append(f"Database file not found: {db_path}")
        return _finish(report, start)

    report.metadata["file_size"] = db_path.stat().st_size

    try:
        with get_db() as conn:
            integrity = conn.execute("PRAGMA integrity_check").fetchone()
            if integrity and integrity[0] == "ok":
                report.metadata["integrity_status"] = "passed"
            else:
                report.issues_found += 1
                report.errors.append(f"Integrity check failed: {integrity[0] if integrity else None}")
                report.recommendations.append("Restore the database from a backup")

            fk_violations = conn.execute("PRAGMA foreign_key_check").fetchall()
            if fk_violations:
                report.issues_found += len(fk_violations)
                report.errors.append(f"Foreign key violations: {len(fk_violations)}")

            negative_pools = conn.execute(
                "SELECT COUNT(*) FROM claims WHERE verifier_reward_pool < 0"
            ).fetchone()[0]
            if negative_pools:
                report.issues_found += negative_pools
                report.errors.append(f"Sparks with negative reward pools: {negative_pools}")

        report.metadata["table_counts"] = dao.table_counts()
    except sqlite3.Error as e:
        report.errors.append(f"Database error during integrity check: {e}")

    return _finish(report, start)


def perform_daily_maintenance(now: Optional[float] = None) -> List[MaintenanceReport]:
    """
    Run every daily step. A failing step yields an error report and the rest still run.

    Returns:
        List[MaintenanceReport]: One report per step
    """
    _require_enabled()

    reports = []
    operations = [
        lambda: run_daily_issuance(now=now),
        lambda: sweep_expired(now=now),
        check_database_integrity,
    ]
    names = ["daily_issuance", "expiry_sweep", "database_integrity_check"]

    for name, operation in zip(names, operations):
        try:
            reports.append(operation())
        except Exception as e:
            logger.error(f"Maintenance step {name} failed: {e}")
            reports.append(MaintenanceReport(
                operation=f"{name}_failed",
                started_at=datetime.now(),
                completed_at=datetime.now(),
                errors=[str(e)]
            ))

    return reports
