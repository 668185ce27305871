"""
Structured operation logging for the funding engine.
Every state-changing path reports through one shared logger instance.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for ledger, schedule, price and lottery operations."""

    def __init__(self, name: str = "vaultfund"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

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

        if status in ("rejected", "failed"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_deposit(self, vault_id: int, investor: str, requested: int, credited: int, status: str = "success"):
        """Log an investment request and the amount actually credited."""
        details = {
            "vault_id": vault_id,
            "investor": investor,
            "requested": requested,
            "credited": credited
        }
        self.log_operation("ledger.deposit", status, details)

    def log_state_transition(self, entity: str, entity_id: int, old_state: str, new_state: str):
        """Log a lifecycle transition."""
        details = {
            "id": entity_id,
            "from": old_state,
            "to": new_state
        }
        self.log_operation(f"{entity}.transition", "success", details)

    def log_upkeep(self, vault_id: int, month: int, amount: int, status: str = "performed", details: Dict[str, Any] = None):
        """Log a processed (or skipped) repayment period."""
        log_details = {"vault_id": vault_id, "month": month, "amount": amount}
        if details:
            log_details.update(details)

        if status == "stale":
            # Expected outcome of racing keepers; not worth an INFO line
            self.logger.debug(f"Operation: upkeep.perform, Status: stale, Details: {log_details}")
            return

        self.log_operation("upkeep.perform", status, log_details)

    def log_price_observation(self, price: int, timestamp: int, multiplier: int, status: str = "accepted"):
        """Log an oracle price observation."""
        details = {
            "price": price,
            "timestamp": timestamp,
            "multiplier": multiplier
        }
        self.log_operation("price.observe", status, details)

    def log_lottery(self, action: str, round_id: int, details: Dict[str, Any] = None, status: str = "success"):
        """Log a lottery round action."""
        log_details = {"round_id": round_id}
        if details:
            log_details.update(details)

        self.log_operation(f"lottery.{action}", status, log_details)

    def log_keeper_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log keeper task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Keeper task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Keeper task '{task_name}' failed after {duration_ms}ms"

        self.log_operation(f"keeper.{task_name}", status, log_details)

    def log_rejection(self, operation: str, error_type: str, message: str, identifiers: Dict[str, Any] = None):
        """Log an operation rejected by validation or state checks."""
        log_details = {"error_type": error_type, "message": message[:100]}
        if identifiers:
            log_details.update(identifiers)

        self.log_operation(operation, "rejected", log_details)

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


def sanitize_payload(payload: Any, sensitive_fields: List[str] = None) -> Any:
    """Truncate long strings and redact secrets before they reach the event log."""
    if sensitive_fields is None:
        sensitive_fields = ['secret', 'password', 'private_key', 'signature']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if k in sensitive_fields:
                sanitized[k] = "[REDACTED]"
            else:
                sanitized[k] = sanitize_payload(v, sensitive_fields)
        return sanitized
    elif isinstance(payload, str):
        return payload[:200] + "..." if len(payload) > 200 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, sensitive_fields) for item in payload]
    else:
        return payload
