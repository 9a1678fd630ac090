"""
Risk classification: highest signal wins, high and above needs a human.
"""

import pytest

from actionengine.core.payloads import (
    BulkItem,
    BulkUpdatePayload,
    LaunchCampaignPayload,
    PriceUpdatePayload,
    ReorderStockPayload,
)
from actionengine.core.risk import RiskClassifier, RiskPolicy
from actionengine.core.schema import ActionRequest, RiskLevel
from actionengine.core.validation import ValidationResult


@pytest.fixture
def classifier():
    return RiskClassifier(RiskPolicy())


def price_result(pct, impact=None):
    return ValidationResult(
        valid=True,
        payload=PriceUpdatePayload(sku="GIN-001", new_price=24.99),
        price_change_pct=pct,
        expected_impact=impact,
    )


def request(**kwargs):
    return ActionRequest(action_type=kwargs.pop("action_type", "price_update"), params={}, **kwargs)


class TestPriceSignals:

    def test_small_change_is_low(self, classifier):
        assessment = classifier.classify(request(), price_result(-1.8))

        assert assessment.risk_level == RiskLevel.LOW
        assert not assessment.requires_approval
        assert assessment.reasons == []

    def test_half_threshold_is_medium(self, classifier):
        assessment = classifier.classify(request(), price_result(6.0))
        assert assessment.risk_level == RiskLevel.MEDIUM
        assert not assessment.requires_approval

    def test_threshold_drop_needs_approval(self, classifier):
        # 28.50 -> 24.99
        assessment = classifier.classify(request(expected_impact=150), price_result(-12.3))

        assert assessment.risk_level == RiskLevel.HIGH
        assert assessment.requires_approval
        assert "12.3%" in assessment.reasons[0]

    def test_double_threshold_is_critical(self, classifier):
        assessment = classifier.classify(request(), price_result(25.0))
        assert assessment.risk_level == RiskLevel.CRITICAL

    def test_policy_threshold_is_configurable(self):
        strict = RiskClassifier(RiskPolicy(price_change_pct=1.0))
        assert strict.classify(request(), price_result(-1.8)).risk_level == RiskLevel.HIGH


class TestOtherSignals:

    def test_caller_impact_is_used(self, classifier):
        assessment = classifier.classify(request(expected_impact=-1500), price_result(0.5))
        assert assessment.risk_level == RiskLevel.HIGH

    def test_estimated_impact_used_when_caller_silent(self, classifier):
        assessment = classifier.classify(request(), price_result(0.5, impact=2500))
        assert assessment.risk_level == RiskLevel.CRITICAL

    def test_large_reorder(self, classifier):
        result = ValidationResult(valid=True, payload=ReorderStockPayload(sku="GIN-001", quantity=600))
        assessment = classifier.classify(request(action_type="reorder_stock"), result)
        assert assessment.risk_level == RiskLevel.HIGH

    def test_bulk_update_is_at_least_medium(self, classifier):
        result = ValidationResult(valid=True, payload=BulkUpdatePayload(items=[BulkItem(sku="GIN-001", new_quantity=5)]))
        assert classifier.classify(request(action_type="bulk_update"), result).risk_level == RiskLevel.MEDIUM

    def test_deep_campaign_discount(self, classifier):
        result = ValidationResult(valid=True, payload=LaunchCampaignPayload(
            campaign_name="Clearance", target_skus=["GIN-001"], discount_percentage=50))
        assert classifier.classify(request(action_type="launch_campaign"), result).requires_approval

    def test_low_confidence(self, classifier):
        assessment = classifier.classify(request(confidence_score=0.3), price_result(0.5))

        assert assessment.risk_level == RiskLevel.HIGH
        assert any("confidence" in reason for reason in assessment.reasons)

    def test_highest_signal_wins(self, classifier):
        assessment = classifier.classify(request(confidence_score=0.3), price_result(30.0))

        assert assessment.risk_level == RiskLevel.CRITICAL
        assert len(assessment.reasons) == 2


class TestManualReview:

    def test_manual_review_forces_approval(self, classifier):
        result = price_result(0.5)
        result.flag_review("tenant wants eyes on every price change")

        assessment = classifier.classify(request(), result)

        assert assessment.risk_level == RiskLevel.LOW
        assert assessment.requires_approval
        assert "tenant wants eyes on every price change" in assessment.reasons
        assert not assessment.auto_approvable

    def test_auto_approvable_below_ceiling(self, classifier):
        result = price_result(6.0)
        result.flag_review("review")
        result.auto_approve_max_risk = "medium"

        assessment = classifier.classify(request(), result)
        assert assessment.requires_approval
        assert assessment.auto_approvable

    def test_high_risk_is_never_auto_approved(self, classifier):
        result = price_result(-12.3)
        result.auto_approve_max_risk = "critical"

        assessment = classifier.classify(request(), result)
        assert assessment.requires_approval
        assert not assessment.auto_approvable

    def test_to_dict(self, classifier):
        data = classifier.classify(request(), price_result(-12.3)).to_dict()
        assert data["risk_level"] == "high"
        assert data["requires_approval"] is True
