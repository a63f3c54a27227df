"""
Casedesk configuration - environment-driven settings for the case API.
Values that tests or operators change at runtime are exposed through getters.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/casedesk.db")
DB_BUSY_TIMEOUT_SEC = float(os.getenv("DB_BUSY_TIMEOUT_SEC", "30"))

# Debug flag is a function too so it can be flipped without a reload
DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Admission control (token bucket per agent and route)
DEFAULT_RATE_LIMIT_PER_MINUTE = 30
RATE_LIMIT_PER_MINUTE = os.getenv("RATE_LIMIT_PER_MINUTE", str(DEFAULT_RATE_LIMIT_PER_MINUTE))

# Idempotency records are kept for a week by default
IDEMPOTENCY_RETENTION_SEC = int(os.getenv("IDEMPOTENCY_RETENTION_SEC", str(7 * 24 * 3600)))

# Bounded case history
CASE_OUTPUTS_CAP = int(os.getenv("CASE_OUTPUTS_CAP", "50"))
CASE_AUDIT_TRAIL_CAP = int(os.getenv("CASE_AUDIT_TRAIL_CAP", "200"))
AGENT_RECENT_ACTIVITY_CAP = int(os.getenv("AGENT_RECENT_ACTIVITY_CAP", "20"))

# Web UI origins allowed by CORS
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# Route tags used as the second half of rate-limit bucket keys
ROUTE_CASE_OUTPUTS = "POST /api/cases/:id/outputs"
ROUTE_CASE_CREATE = "POST /api/cases"

# Version string
VERSION = "1.0.0"


def get_db_path() -> str:
    """Current database path. Re-reads DB_PATH so tests can point at a temp file."""
    return os.getenv("DB_PATH", DB_PATH)


def get_rate_limit_per_minute() -> int:
    """Requests per minute per (agent, route). Falls back to the default on bad values."""
    raw = os.getenv("RATE_LIMIT_PER_MINUTE", RATE_LIMIT_PER_MINUTE)
    if raw is None or raw == "":
        return DEFAULT_RATE_LIMIT_PER_MINUTE
    try:
        parsed = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_RATE_LIMIT_PER_MINUTE
    return parsed if parsed > 0 else DEFAULT_RATE_LIMIT_PER_MINUTE


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    raw_limit = os.getenv("RATE_LIMIT_PER_MINUTE")
    if raw_limit:
        try:
            if int(raw_limit) <= 0:
                issues.append(f"RATE_LIMIT_PER_MINUTE must be > 0 (using {DEFAULT_RATE_LIMIT_PER_MINUTE})")
        except ValueError:
            issues.append(f"Invalid RATE_LIMIT_PER_MINUTE: {raw_limit} (using {DEFAULT_RATE_LIMIT_PER_MINUTE})")

    if CASE_OUTPUTS_CAP < 1:
        issues.append("CASE_OUTPUTS_CAP must be >= 1")

    if CASE_AUDIT_TRAIL_CAP < 1:
        issues.append("CASE_AUDIT_TRAIL_CAP must be >= 1")

    if IDEMPOTENCY_RETENTION_SEC < 3600:
        issues.append("IDEMPOTENCY_RETENTION_SEC should be at least one hour so retries stay deduplicated")

    if DB_BUSY_TIMEOUT_SEC <= 0:
        issues.append("DB_BUSY_TIMEOUT_SEC must be > 0")

    return issues
