"""
Structured operation logging and audit events for the spark market core.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for market operations (charges, votes, liquidations, privacy, maintenance)."""

    def __init__(self, name: str = "sparkmarket"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.info(message)

    def log_charge(self, actor_id: str, action: str, cost: int, balance: int = None, status: str = "success"):
        """Log an energy charge (or a rejected one)."""
        details = {"actor_id": actor_id, "action": action, "cost": cost}
        if balance is not None:
            details["balance"] = balance

        self.log_operation(f"economy.{action}", status, details)

    def log_vote(self, claim_id: str, voter_id: str, action: str, weight: float,
                 confidence: float, status: str = "success"):
        """Log a recorded vote and the resulting confidence."""
        details = {
            "claim_id": claim_id,
            "voter_id": voter_id,
            "action": action,
            "weight": round(weight, 4),
            "confidence": round(confidence, 4)
        }
        self.log_operation("consensus.vote", status, details)

    def log_liquidation(self, claim_id: str, liquidation_value: int, distributed: int,
                        recipients: int, status: str = "success"):
        """Log a claim liquidation."""
        details = {
            "claim_id": claim_id,
            "liquidation_value": liquidation_value,
            "distributed": distributed,
            "burned": liquidation_value - distributed,
            "recipients": recipients
        }
        self.log_operation("liquidation", status, details)

    def log_reputation_change(self, user_id: str, before: float, after: float, delta: float):
        """Log a reputation adjustment."""
        details = {"user_id": user_id, "before": before, "after": after, "delta": delta}
        self.log_operation("reputation.adjust", "success", details)

    def log_privacy_budget(self, actor_id: str, region_key: str, usage: int, ceiling: int):
        """Log a search withheld because the privacy budget ran out."""
        details = {
            "actor_id": actor_id,
            "region_key": region_key,
            "usage": usage,
            "ceiling": ceiling
        }
        self.log_operation("privacy.budget_exceeded", "withheld", details)

    def log_maintenance(self, task_name: str, start_time: float, end_time: float,
                        status: str = "success", details: Dict[str, Any] = None):
        """Log maintenance task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)

        self.log_operation(f"maintenance.{task_name}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()

SENSITIVE_FIELDS = ['content', 'device_id_hash', 'ip_subnet', 'lat', 'lon', 'location']


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with location and content redaction."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
