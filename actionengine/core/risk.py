"""
Risk classification for validated actions.
A pure function of the request, the validation result and a RiskPolicy.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .payloads import BulkUpdatePayload, LaunchCampaignPayload, ReorderStockPayload
from .schema import ActionRequest, RiskLevel


@dataclass(frozen=True)
class RiskPolicy:
    price_change_pct: float = 10.0
    impact_abs: float = 1000.0
    reorder_quantity: int = 500
    bulk_sku_count: int = 20
    campaign_discount_pct: float = 40.0
    confidence_floor: float = 0.5


@dataclass
class RiskAssessment:
    risk_level: RiskLevel
    requires_approval: bool
    reasons: List[str] = field(default_factory=list)
    auto_approvable: bool = False

    def to_dict(self):
        return {
            "risk_level": self.risk_level.value,
            "requires_approval": self.requires_approval,
            "reasons": list(self.reasons),
            "auto_approvable": self.auto_approvable,
        }


class RiskClassifier:
    """Scores an action; the highest signal wins."""

    def __init__(self, policy: Optional[RiskPolicy] = None):
        self.policy = policy or RiskPolicy()

    def classify(self, request: ActionRequest, validation_result) -> RiskAssessment:
        policy = self.policy
        payload = validation_result.payload
        signals = []  # (level, reason)

        # Price movement
        pct = validation_result.price_change_pct
        if pct is not None:
            magnitude = abs(pct)
            if magnitude >= policy.price_change_pct * 2:
                signals.append((RiskLevel.CRITICAL, f"price change {magnitude:.1f}% is at least twice the "
                                                    f"{policy.price_change_pct:g}% threshold"))
            elif magnitude >= policy.price_change_pct:
                signals.append((RiskLevel.HIGH, f"price change {magnitude:.1f}% meets the "
                                                f"{policy.price_change_pct:g}% threshold"))
            elif magnitude >= policy.price_change_pct / 2:
                signals.append((RiskLevel.MEDIUM, f"price change {magnitude:.1f}%"))

        # Absolute impact
        impact = request.expected_impact
        if impact is None:
            impact = validation_result.expected_impact
        if impact is not None:
            if abs(impact) >= policy.impact_abs * 2:
                signals.append((RiskLevel.CRITICAL, f"expected impact {impact:.2f} is at least twice "
                                                    f"the {policy.impact_abs:g} limit"))
            elif abs(impact) >= policy.impact_abs:
                signals.append((RiskLevel.HIGH, f"expected impact {impact:.2f} meets the {policy.impact_abs:g} limit"))

        # Type sensitivity
        if isinstance(payload, ReorderStockPayload) and payload.quantity > policy.reorder_quantity:
            signals.append((RiskLevel.HIGH, f"reorder of {payload.quantity} units exceeds {policy.reorder_quantity}"))

        if isinstance(payload, BulkUpdatePayload):
            count = len(payload.items)
            if count > policy.bulk_sku_count:
                signals.append((RiskLevel.HIGH, f"bulk update touches {count} SKUs"))
            else:
                signals.append((RiskLevel.MEDIUM, "bulk update"))

        if isinstance(payload, LaunchCampaignPayload):
            if payload.discount_percentage >= policy.campaign_discount_pct:
                signals.append((RiskLevel.HIGH, f"campaign discount {payload.discount_percentage:g}% meets the "
                                                f"{policy.campaign_discount_pct:g}% threshold"))
            else:
                signals.append((RiskLevel.MEDIUM, "campaign launch"))

        # Recommendation confidence
        confidence = request.confidence_score
        if confidence is not None and confidence < policy.confidence_floor:
            signals.append((RiskLevel.HIGH, f"confidence {confidence:.2f} below floor {policy.confidence_floor:g}"))

        risk_level = max((level for level, _ in signals), key=lambda level: level.rank, default=RiskLevel.LOW)
        reasons = [reason for _, reason in signals]

        requires_approval = risk_level >= RiskLevel.HIGH
        if validation_result.manual_review:
            requires_approval = True
            reasons.extend(validation_result.review_reasons)

        auto_approvable = False
        ceiling = validation_result.auto_approve_max_risk
        if requires_approval and ceiling is not None and risk_level < RiskLevel.HIGH:
            auto_approvable = risk_level <= RiskLevel(ceiling)

        return RiskAssessment(
            risk_level=risk_level,
            requires_approval=requires_approval,
            reasons=reasons,
            auto_approvable=auto_approvable,
        )
