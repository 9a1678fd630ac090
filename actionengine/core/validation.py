"""
Validation engine for action requests.

Runs in three stages and touches nothing but the SKU store (read-only)
and the rule table:

1. structural checks on the payload (aggregated, stop before rules)
2. existence checks for every target SKU
3. tenant business rules, highest priority first. Hard rules stop at the
   first failure; soft rules only add warnings or flag manual review.

Nothing is persisted until validate() returns.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .commerce import ISKUStore, SKU
from .errors import PayloadError, RuleViolation, ValidationError
from .payloads import (
    ActionPayload,
    BulkUpdatePayload,
    LaunchCampaignPayload,
    PriceUpdatePayload,
    ReorderStockPayload,
    decode_payload,
)
from .repository import ActionRepository
from .schema import ActionRequest, ActionType, RiskLevel, ValidationRule
from ..util.logging import logger

HARD_RULE_TYPES = ("margin_minimum", "change_limit", "budget_limit", "quantity_limit")
SOFT_RULE_TYPES = ("approval_threshold", "manual_review", "auto_approve", "discount_range", "require_supplier")
RULE_TYPES = HARD_RULE_TYPES + SOFT_RULE_TYPES

# Applied when a tenant has not configured the rule type
DEFAULT_CAMPAIGN_BUDGET = 5000.0
DEFAULT_DISCOUNT_RANGE = (5.0, 70.0)
MARGIN_WARNING_BAND = 5.0


@dataclass
class ValidationDefaults:
    min_margin_pct: float = 10.0
    max_change_pct: float = 30.0
    cost_ratio: float = 0.6


@dataclass
class ValidationResult:
    valid: bool
    payload: Optional[ActionPayload] = None
    warnings: List[str] = field(default_factory=list)
    violations: List[RuleViolation] = field(default_factory=list)
    expected_impact: Optional[float] = None
    current_state: Dict[str, SKU] = field(default_factory=dict)
    price_change_pct: Optional[float] = None
    manual_review: bool = False
    review_reasons: List[str] = field(default_factory=list)
    auto_approve_max_risk: Optional[str] = None

    def violate(self, rule: str, message: str):
        self.valid = False
        self.violations.append(RuleViolation(rule=rule, message=message))

    def flag_review(self, reason: str):
        self.manual_review = True
        self.review_reasons.append(reason)


def _config_number(config: Dict[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    value = config.get(key, default)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"rule config '{key}' must be a number, got {value!r}")


class ValidationEngine:
    """Checks requests against payload shape, catalog state and tenant rules."""

    def __init__(self, repository: ActionRepository, sku_store: ISKUStore,
                 defaults: Optional[ValidationDefaults] = None):
        self.repository = repository
        self.sku_store = sku_store
        self.defaults = defaults or ValidationDefaults()

        self._hard_rules: Dict[str, Callable] = {
            "margin_minimum": self._check_margin,
            "change_limit": self._check_change_limit,
            "budget_limit": self._check_budget,
            "quantity_limit": self._check_quantity,
        }
        self._soft_rules: Dict[str, Callable] = {
            "approval_threshold": self._check_approval_threshold,
            "manual_review": self._check_manual_review,
            "auto_approve": self._check_auto_approve,
            "discount_range": self._check_discount_range,
            "require_supplier": self._check_supplier,
        }

    def validate(self, request: ActionRequest, user_id: str) -> ValidationResult:
        """Validate a request, raising ValidationError with every violation found."""
        result = self.evaluate(request, user_id)
        if not result.valid:
            logger.log_validation_error(request.action_type, user_id, [v.to_dict() for v in result.violations])
            raise ValidationError(result.violations)
        return result

    def evaluate(self, request: ActionRequest, user_id: str) -> ValidationResult:
        """Same checks as validate() but returns an invalid result instead of raising."""
        result = ValidationResult(valid=True)

        self._check_structure(request, result)
        if not result.valid:
            return result

        self._check_existence(result)
        if not result.valid:
            return result

        self._compute_price_change(result)
        self._apply_rules(request, user_id, result)
        if not result.valid:
            return result

        if request.expected_impact is not None:
            result.expected_impact = float(request.expected_impact)
        else:
            result.expected_impact = self._estimate_impact(result)

        return result

    # ------------------------------------------------------------------
    # Stage 1: structure
    # ------------------------------------------------------------------
    def _check_structure(self, request: ActionRequest, result: ValidationResult):
        valid_types = [t.value for t in ActionType]
        if request.action_type not in valid_types:
            result.violate("action_type", f"Unknown action type '{request.action_type}'. "
                                          f"Expected one of {valid_types}")
            return

        params = dict(request.params or {})
        if request.action_type in (ActionType.PRICE_UPDATE.value, ActionType.REORDER_STOCK.value):
            if request.target_sku and not (params.get("sku") or params.get("sku_code")):
                params["sku_code"] = request.target_sku
        if request.action_type == ActionType.LAUNCH_CAMPAIGN.value:
            if request.target_skus and not params.get("target_skus"):
                params["target_skus"] = list(request.target_skus)

        try:
            payload = decode_payload(request.action_type, params)
        except PayloadError as e:
            result.violate("required_fields" if "requires" in str(e) else "payload_shape", str(e))
            return

        result.payload = payload

        if isinstance(payload, PriceUpdatePayload):
            if payload.new_price <= 0:
                result.violate("positive_price", f"Price must be greater than 0, got {payload.new_price:g}")
        elif isinstance(payload, ReorderStockPayload):
            if payload.quantity < 0:
                result.violate("non_negative_quantity",
                               f"Quantity must be zero or more, got {payload.quantity}")
            if payload.cost_per_unit < 0:
                result.violate("non_negative_cost", f"cost_per_unit must be zero or more, got {payload.cost_per_unit:g}")
        elif isinstance(payload, LaunchCampaignPayload):
            if payload.budget < 0:
                result.violate("non_negative_budget", f"Budget must be zero or more, got {payload.budget:g}")
            if not 0 <= payload.discount_percentage <= 100:
                result.violate("discount_bounds",
                               f"Discount must be between 0 and 100, got {payload.discount_percentage:g}")
            if payload.duration_hours <= 0:
                result.violate("positive_duration", f"Duration must be positive, got {payload.duration_hours:g}")
        elif isinstance(payload, BulkUpdatePayload):
            for item in payload.items:
                if item.new_price is not None and item.new_price <= 0:
                    result.violate("positive_price", f"{item.sku}: price must be greater than 0")
                if item.new_quantity is not None and item.new_quantity < 0:
                    result.violate("non_negative_quantity", f"{item.sku}: quantity must be zero or more")

        if request.confidence_score is not None:
            try:
                confidence = float(request.confidence_score)
            except (TypeError, ValueError):
                result.violate("confidence_bounds", f"Confidence must be a number, got {request.confidence_score!r}")
            else:
                if not 0 <= confidence <= 1:
                    result.violate("confidence_bounds", f"Confidence must be within [0, 1], got {confidence:g}")

        if request.expected_impact is not None:
            try:
                float(request.expected_impact)
            except (TypeError, ValueError):
                result.violate("expected_impact", f"expected_impact must be a number, got {request.expected_impact!r}")

    # ------------------------------------------------------------------
    # Stage 2: existence
    # ------------------------------------------------------------------
    def _check_existence(self, result: ValidationResult):
        missing = []
        for sku in result.payload.skus():
            current = self.sku_store.get_sku(sku)
            if current is None:
                missing.append(sku)
            else:
                result.current_state[sku] = current

        if missing:
            result.violate("sku_exists", f"SKU(s) not found: {', '.join(missing)}")

    def _compute_price_change(self, result: ValidationResult):
        payload = result.payload
        changes = []
        if isinstance(payload, PriceUpdatePayload):
            changes.append((payload.sku, payload.new_price))
            if payload.current_price is not None:
                stored = result.current_state[payload.sku].price
                if abs(stored - payload.current_price) > 0.005:
                    result.warnings.append(f"current_price {payload.current_price:.2f} is stale; "
                                           f"catalog price is {stored:.2f}")
        elif isinstance(payload, BulkUpdatePayload):
            changes.extend((item.sku, item.new_price) for item in payload.items if item.new_price is not None)

        largest = None
        for sku, new_price in changes:
            old_price = result.current_state[sku].price
            if old_price <= 0:
                continue
            pct = (new_price - old_price) / old_price * 100
            if largest is None or abs(pct) > abs(largest):
                largest = pct
        result.price_change_pct = round(largest, 4) if largest is not None else None

    # ------------------------------------------------------------------
    # Stage 3: business rules
    # ------------------------------------------------------------------
    def _apply_rules(self, request: ActionRequest, user_id: str, result: ValidationResult):
        rules = self.repository.list_rules(user_id, request.action_type)
        configured = {rule.rule_type for rule in rules}

        checks = [(rule.rule_type, rule.rule_config, rule.id) for rule in rules]
        for rule_type in ("margin_minimum", "change_limit", "budget_limit", "discount_range", "require_supplier"):
            if rule_type not in configured:
                checks.append((rule_type, {}, None))

        for rule_type, config, rule_id in checks:
            try:
                if rule_type in self._hard_rules:
                    violation = self._hard_rules[rule_type](config, result, rule_id is None)
                    if violation:
                        result.violate(rule_type, violation)
                        return
                elif rule_type in self._soft_rules:
                    self._soft_rules[rule_type](config, result, rule_id is None)
                else:
                    logger.warning(f"Ignoring unknown rule type '{rule_type}' (rule {rule_id})")
            except ValueError as e:
                result.violate(rule_type, f"misconfigured rule {rule_id}: {e}")
                return

    def _price_changes(self, result: ValidationResult):
        payload = result.payload
        if isinstance(payload, PriceUpdatePayload):
            return [(payload.sku, payload.new_price)]
        if isinstance(payload, BulkUpdatePayload):
            return [(item.sku, item.new_price) for item in payload.items if item.new_price is not None]
        return []

    def _check_margin(self, config, result: ValidationResult, is_default: bool) -> Optional[str]:
        min_margin = _config_number(config, "min_margin", self.defaults.min_margin_pct)
        for sku, new_price in self._price_changes(result):
            current = result.current_state[sku]
            cost = current.cost_price if current.cost_price is not None else current.price * self.defaults.cost_ratio
            margin = (new_price - cost) / new_price * 100
            if margin < min_margin:
                return f"{sku}: margin too low ({margin:.1f}%). Minimum {min_margin:g}% required."
            if margin < min_margin + MARGIN_WARNING_BAND:
                result.warnings.append(f"{sku}: margin is close to minimum ({margin:.1f}%)")
        return None

    def _check_change_limit(self, config, result: ValidationResult, is_default: bool) -> Optional[str]:
        max_change = _config_number(config, "max_change_percent", self.defaults.max_change_pct)
        for sku, new_price in self._price_changes(result):
            old_price = result.current_state[sku].price
            if old_price <= 0:
                continue
            pct = abs(new_price - old_price) / old_price * 100
            if pct > max_change:
                return f"{sku}: price change too large ({pct:.1f}%). Maximum {max_change:g}% allowed."
        return None

    def _check_budget(self, config, result: ValidationResult, is_default: bool) -> Optional[str]:
        payload = result.payload
        if isinstance(payload, ReorderStockPayload) and not is_default:
            max_budget = _config_number(config, "max_reorder_budget", 10000)
            if payload.total_cost > max_budget:
                return f"Reorder cost {payload.total_cost:.2f} exceeds budget limit {max_budget:g}"
        if isinstance(payload, LaunchCampaignPayload):
            max_budget = _config_number(config, "max_campaign_budget", DEFAULT_CAMPAIGN_BUDGET)
            if payload.budget > max_budget:
                return f"Campaign budget {payload.budget:g} exceeds limit {max_budget:g}"
        return None

    def _check_quantity(self, config, result: ValidationResult, is_default: bool) -> Optional[str]:
        max_quantity = _config_number(config, "max_quantity")
        if max_quantity is None:
            return None
        payload = result.payload
        if isinstance(payload, ReorderStockPayload) and payload.quantity > max_quantity:
            return f"Reorder quantity {payload.quantity} exceeds limit {max_quantity:g}"
        if isinstance(payload, BulkUpdatePayload):
            for item in payload.items:
                if item.new_quantity is not None and item.new_quantity > max_quantity:
                    return f"{item.sku}: quantity {item.new_quantity} exceeds limit {max_quantity:g}"
        return None

    def _check_approval_threshold(self, config, result: ValidationResult, is_default: bool):
        payload = result.payload
        if isinstance(payload, PriceUpdatePayload):
            threshold = _config_number(config, "threshold", 5)
            change = abs(payload.new_price - result.current_state[payload.sku].price)
            if change > threshold:
                result.flag_review(f"Price change {change:.2f} exceeds approval threshold {threshold:g}")
        elif isinstance(payload, ReorderStockPayload):
            threshold = _config_number(config, "threshold", 1000)
            if payload.total_cost > threshold:
                result.flag_review(f"Reorder cost {payload.total_cost:.2f} exceeds approval threshold {threshold:g}")
        elif isinstance(payload, LaunchCampaignPayload):
            threshold = _config_number(config, "campaign_threshold", 1000)
            if payload.budget > threshold:
                result.flag_review(f"Campaign budget {payload.budget:g} exceeds approval threshold {threshold:g}")

    def _check_manual_review(self, config, result: ValidationResult, is_default: bool):
        result.flag_review(config.get("reason") or "Tenant requires manual review for this action type")

    def _check_auto_approve(self, config, result: ValidationResult, is_default: bool):
        ceiling = config.get("max_risk_level", RiskLevel.LOW.value)
        if ceiling not in [level.value for level in RiskLevel]:
            raise ValueError(f"unknown max_risk_level {ceiling!r}")
        result.auto_approve_max_risk = ceiling

    def _check_discount_range(self, config, result: ValidationResult, is_default: bool):
        payload = result.payload
        if not isinstance(payload, LaunchCampaignPayload):
            return
        low = _config_number(config, "min", DEFAULT_DISCOUNT_RANGE[0])
        high = _config_number(config, "max", DEFAULT_DISCOUNT_RANGE[1])
        if payload.discount_percentage < low or payload.discount_percentage > high:
            result.warnings.append(f"Unusual discount percentage: {payload.discount_percentage:g}%")

    def _check_supplier(self, config, result: ValidationResult, is_default: bool):
        payload = result.payload
        if not isinstance(payload, ReorderStockPayload) or payload.supplier.strip():
            return
        result.warnings.append("No supplier specified")
        if not is_default:
            result.flag_review("Reorder has no supplier")

    # ------------------------------------------------------------------
    # Impact estimate
    # ------------------------------------------------------------------
    def _estimate_impact(self, result: ValidationResult) -> Optional[float]:
        payload = result.payload
        if isinstance(payload, PriceUpdatePayload):
            current = result.current_state[payload.sku]
            return round((payload.new_price - current.price) * current.quantity, 2)
        if isinstance(payload, ReorderStockPayload):
            current = result.current_state[payload.sku]
            return round(payload.quantity * (current.price - payload.cost_per_unit), 2)
        return None


def validation_rule_types() -> List[str]:
    """Rule types accepted in action_validation_rules.rule_type."""
    return list(RULE_TYPES)


def default_rules(user_id: str, created_by: str = "system") -> List[ValidationRule]:
    """Starter rule set installed by scripts/seed_rules.py."""
    rules = [
        (ActionType.PRICE_UPDATE, "margin_minimum", {"min_margin": 10}, 100),
        (ActionType.PRICE_UPDATE, "change_limit", {"max_change_percent": 30}, 90),
        (ActionType.PRICE_UPDATE, "approval_threshold", {"threshold": 5}, 50),
        (ActionType.REORDER_STOCK, "budget_limit", {"max_reorder_budget": 10000}, 100),
        (ActionType.REORDER_STOCK, "approval_threshold", {"threshold": 1000}, 50),
        (ActionType.LAUNCH_CAMPAIGN, "budget_limit", {"max_campaign_budget": 5000}, 100),
        (ActionType.LAUNCH_CAMPAIGN, "approval_threshold", {"campaign_threshold": 1000}, 50),
        (ActionType.BULK_UPDATE, "change_limit", {"max_change_percent": 20}, 90),
    ]
    return [
        ValidationRule(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action_type=action_type.value,
            rule_type=rule_type,
            rule_config=config,
            priority=priority,
            created_by=created_by,
        )
        for action_type, rule_type, config, priority in rules
    ]
