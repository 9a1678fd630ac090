"""
Engine configuration - every tunable is read from the environment.
Risk thresholds, approval timing, execution deadlines and batch defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/actions.db")

DEBUG = os.getenv("DEBUG", "true").lower() == "true"

# Risk classification thresholds
RISK_PRICE_CHANGE_PCT = float(os.getenv("RISK_PRICE_CHANGE_PCT", "10"))
RISK_IMPACT_ABS = float(os.getenv("RISK_IMPACT_ABS", "1000"))
RISK_REORDER_QUANTITY = int(os.getenv("RISK_REORDER_QUANTITY", "500"))
RISK_BULK_SKU_COUNT = int(os.getenv("RISK_BULK_SKU_COUNT", "20"))
RISK_CAMPAIGN_DISCOUNT_PCT = float(os.getenv("RISK_CAMPAIGN_DISCOUNT_PCT", "40"))
RISK_CONFIDENCE_FLOOR = float(os.getenv("RISK_CONFIDENCE_FLOOR", "0.5"))

# Validation defaults used when a tenant has no rule of that type
DEFAULT_MIN_MARGIN_PCT = float(os.getenv("DEFAULT_MIN_MARGIN_PCT", "10"))
DEFAULT_MAX_CHANGE_PCT = float(os.getenv("DEFAULT_MAX_CHANGE_PCT", "30"))
DEFAULT_COST_RATIO = float(os.getenv("DEFAULT_COST_RATIO", "0.6"))  # cost/price when a SKU has no cost

# Approval gate
APPROVAL_TTL_SEC = int(os.getenv("APPROVAL_TTL_SEC", "259200"))  # 72 hours
APPROVAL_REMINDER_SEC = int(os.getenv("APPROVAL_REMINDER_SEC", "86400"))
APPROVAL_MAX_REMINDERS = int(os.getenv("APPROVAL_MAX_REMINDERS", "3"))
APPROVAL_SWEEP_ENABLED = os.getenv("APPROVAL_SWEEP_ENABLED", "false").lower() == "true"
APPROVAL_SWEEP_INTERVAL_SEC = int(os.getenv("APPROVAL_SWEEP_INTERVAL_SEC", "60"))

# Executor
EXECUTION_TIMEOUT_SEC = float(os.getenv("EXECUTION_TIMEOUT_SEC", "30"))
EXECUTOR_IO_WORKERS = int(os.getenv("EXECUTOR_IO_WORKERS", "16"))

# Batches
BATCH_DEFAULT_MAX_CONCURRENT = int(os.getenv("BATCH_DEFAULT_MAX_CONCURRENT", "5"))
BATCH_ACTION_ESTIMATE_SEC = float(os.getenv("BATCH_ACTION_ESTIMATE_SEC", "2"))

# Optional JSON catalog for the in-memory commerce backend
CATALOG_SEED_PATH = os.getenv("CATALOG_SEED_PATH")

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def get_db_path():
    """Current database path, re-read so tests can point at a temp file."""
    return os.getenv("DB_PATH", DB_PATH)


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def get_risk_policy():
    """Build a RiskPolicy from the configured thresholds."""
    from .risk import RiskPolicy
    return RiskPolicy(
        price_change_pct=RISK_PRICE_CHANGE_PCT,
        impact_abs=RISK_IMPACT_ABS,
        reorder_quantity=RISK_REORDER_QUANTITY,
        bulk_sku_count=RISK_BULK_SKU_COUNT,
        campaign_discount_pct=RISK_CAMPAIGN_DISCOUNT_PCT,
        confidence_floor=RISK_CONFIDENCE_FLOOR,
    )


def get_validation_defaults():
    """Build the ValidationDefaults applied when no tenant rule overrides them."""
    from .validation import ValidationDefaults
    return ValidationDefaults(
        min_margin_pct=DEFAULT_MIN_MARGIN_PCT,
        max_change_pct=DEFAULT_MAX_CHANGE_PCT,
        cost_ratio=DEFAULT_COST_RATIO,
    )


def is_approval_sweep_enabled():
    """Check if the background approval sweep should run with the API."""
    return APPROVAL_SWEEP_ENABLED


def get_sweep_interval():
    """Get approval sweep interval in seconds."""
    return APPROVAL_SWEEP_INTERVAL_SEC


def validate_engine_config():
    """Validate engine configuration and return any issues."""
    issues = []

    if RISK_PRICE_CHANGE_PCT <= 0:
        issues.append("RISK_PRICE_CHANGE_PCT must be > 0")

    if not 0 <= RISK_CONFIDENCE_FLOOR <= 1:
        issues.append(f"Invalid RISK_CONFIDENCE_FLOOR: {RISK_CONFIDENCE_FLOOR}")

    if not 0 < DEFAULT_COST_RATIO < 1:
        issues.append(f"Invalid DEFAULT_COST_RATIO: {DEFAULT_COST_RATIO}")

    if APPROVAL_TTL_SEC < 1:
        issues.append("APPROVAL_TTL_SEC must be >= 1")

    if APPROVAL_SWEEP_INTERVAL_SEC < 1:
        issues.append("APPROVAL_SWEEP_INTERVAL_SEC must be >= 1")

    if EXECUTION_TIMEOUT_SEC <= 0:
        issues.append("EXECUTION_TIMEOUT_SEC must be > 0")

    if BATCH_DEFAULT_MAX_CONCURRENT < 1:
        issues.append("BATCH_DEFAULT_MAX_CONCURRENT must be >= 1")

    return issues
