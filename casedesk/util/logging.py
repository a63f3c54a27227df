"""
Structured operation logging for the case API.
Every payload goes through sanitize_payload, so PII and long values never
reach the log stream.
"""

import logging
from typing import Any, Dict, List

from ..core.redact import redact_pii


# Payload sanitization utility
def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for logging: mask secret fields, redact PII, truncate long strings."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'input', 'secret', 'password', 'api_key', 'apiKey', 'token']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        payload = redact_pii(payload)
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, (list, tuple)):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload


class StructuredLogger:
    """Structured logger for submission pipeline operations."""

    def __init__(self, name: str = "casedesk"):
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

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.log(level, message)

    def log_case_created(self, case_id: str, agent_id: str, case_type: str):
        self.log_operation("case.create", "success", {
            "case_id": case_id,
            "agent_id": agent_id,
            "type": case_type
        })

    def log_output_appended(self, case_id: str, agent_id: str, output_index: int, kind: str, citations_count: int):
        """Log a case output that was appended and committed."""
        self.log_operation("case.output", "appended", {
            "case_id": case_id,
            "agent_id": agent_id,
            "output_index": output_index,
            "kind": kind,
            "citations_count": citations_count
        })

    def log_idempotent_replay(self, case_id: str, agent_id: str, request_id: str):
        """Log a submission answered from the idempotency store."""
        self.log_operation("case.output", "replayed", {
            "case_id": case_id,
            "agent_id": agent_id,
            "request_id": request_id
        })

    def log_rate_limited(self, agent_id: str, route: str, retry_after_seconds: int):
        self.log_operation("rate_limit", "rejected", {
            "agent_id": agent_id,
            "route": route,
            "retry_after_seconds": retry_after_seconds
        }, level=logging.WARNING)

    def log_citation_rejection(self, case_id: str, agent_id: str, error: str, message: str):
        """Log a submission refused by the citation rules."""
        self.log_operation("case.output", "rejected", {
            "case_id": case_id,
            "agent_id": agent_id,
            "error": error,
            "message": message
        })

    def log_best_effort_failure(self, operation: str, error: Exception):
        """Log a swallowed failure of an observability side effect."""
        self.log_operation(operation, "failed", {
            "error_type": type(error).__name__,
            "error": str(error)
        }, level=logging.WARNING)

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

    def exception(self, message: str) -> None:
        """Log an error message with the active traceback."""
        self.logger.exception(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()
