"""
Tests for the decision engine
"""
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import reserved, sp_capacity, sp_utilization
from metrics.records import SAVINGS_PLAN_TYPE_COMPUTE, SAVINGS_PLAN_TYPE_EC2_INSTANCE
from overlay.decision import (
    PREPAID_PRICE,
    DecisionEngine,
    compute_target_selector,
    decide,
    ec2_instance_target_selector,
    reserved_instance_target_selector,
    savings_plan_verdict,
)
from overlay.types import (
    AggregatedReservedInstance,
    AggregatedSavingsPlan,
    CapacityType,
    FamilyRegion,
    InstanceTypeRegion,
    OverlaySettings,
)


def _sp(utilization, remaining, sp_type=SAVINGS_PLAN_TYPE_COMPUTE, family="", region=""):
    return AggregatedSavingsPlan(
        type=sp_type,
        instance_family=family,
        region=region,
        total_remaining_capacity=remaining,
        average_utilization_percent=utilization,
        count=1,
    )


class TestSavingsPlanVerdict:
    """Tests for the shared Savings Plan rule"""

    def test_below_threshold_with_capacity(self):
        should_exist, reason = savings_plan_verdict(_sp(80.0, 12.5), 95.0)
        assert should_exist is True
        assert reason == "utilization 80.0% below threshold 95.0%, capacity available (12.50 $/hour)"

    def test_at_threshold(self):
        should_exist, reason = savings_plan_verdict(_sp(95.0, 12.5), 95.0)
        assert should_exist is False
        assert reason == "utilization 95.0% at/above threshold 95.0%"

    def test_above_threshold_checked_before_capacity(self):
        should_exist, reason = savings_plan_verdict(_sp(99.0, 0.0), 95.0)
        assert should_exist is False
        assert "at/above threshold" in reason

    def test_no_remaining_capacity(self):
        should_exist, reason = savings_plan_verdict(_sp(40.0, 0.0), 95.0)
        assert should_exist is False
        assert reason == "no remaining capacity (0.00 $/hour)"


class TestTargetSelectors:
    def test_compute(self):
        assert compute_target_selector() == \
            "karpenter.k8s.aws/instance-family: Exists, karpenter.sh/capacity-type: In [on-demand]"

    def test_ec2_instance(self):
        assert ec2_instance_target_selector("m5") == \
            "karpenter.k8s.aws/instance-family: In [m5], karpenter.sh/capacity-type: In [on-demand]"

    def test_reserved_instance(self):
        assert reserved_instance_target_selector("m5.xlarge") == \
            "node.kubernetes.io/instance-type: In [m5.xlarge], karpenter.sh/capacity-type: In [on-demand]"


class TestDecisionEngine:
    """Tests for DecisionEngine"""

    def test_compute_decision(self):
        engine = DecisionEngine()
        d = engine.analyze_compute_savings_plan(_sp(50.0, 3.0))
        assert d.name == "cost-aware-compute-sp-global"
        assert d.capacity_type == CapacityType.COMPUTE_SAVINGS_PLAN
        assert d.should_exist is True
        assert d.weight == 10
        assert d.price == PREPAID_PRICE == "0.00"
        assert d.target_selector == compute_target_selector()
        assert d.utilization_percent == 50.0
        assert d.remaining_capacity == 3.0
        assert d.instance_family == ""
        assert d.region == ""

    def test_ec2_instance_decision(self):
        engine = DecisionEngine()
        d = engine.analyze_ec2_instance_savings_plan(
            _sp(60.0, 2.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2")
        )
        assert d.name == "cost-aware-ec2-sp-m5-us-west-2"
        assert d.capacity_type == CapacityType.EC2_INSTANCE_SAVINGS_PLAN
        assert d.weight == 20
        assert d.instance_family == "m5"
        assert d.region == "us-west-2"
        assert d.target_selector == ec2_instance_target_selector("m5")

    def test_reserved_instance_decision(self):
        engine = DecisionEngine()
        d = engine.analyze_reserved_instance(
            AggregatedReservedInstance(instance_type="m5.xlarge", region="us-west-2", total_count=5)
        )
        assert d.name == "cost-aware-ri-m5.xlarge-us-west-2"
        assert d.should_exist is True
        assert d.reason == "5 reserved instances available"
        assert d.weight == 30
        assert d.utilization_percent == 0.0
        assert d.remaining_capacity == 0.0
        assert d.instance_type == "m5.xlarge"
        assert d.instance_family == "m5"

    def test_reserved_instance_none_available(self):
        d = DecisionEngine().analyze_reserved_instance(
            AggregatedReservedInstance(instance_type="c5.large", region="us-west-2", total_count=0)
        )
        assert d.should_exist is False
        assert d.reason == "no reserved instances available"

    def test_default_weight_precedence(self):
        """RI > EC2 instance SP > compute SP"""
        engine = DecisionEngine()
        ri = engine.analyze_reserved_instance(AggregatedReservedInstance("m5.large", "us-west-2", total_count=1))
        ec2 = engine.analyze_ec2_instance_savings_plan(
            _sp(10.0, 1.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2")
        )
        compute = engine.analyze_compute_savings_plan(_sp(10.0, 1.0))
        assert ri.weight > ec2.weight > compute.weight

    def test_configured_weights_and_prefixes(self):
        settings = OverlaySettings(
            utilization_threshold=80.0,
            weights={
                CapacityType.RESERVED_INSTANCE: 300,
                CapacityType.EC2_INSTANCE_SAVINGS_PLAN: 200,
                CapacityType.COMPUTE_SAVINGS_PLAN: 100,
            },
            prefixes={
                CapacityType.RESERVED_INSTANCE: "ri",
                CapacityType.EC2_INSTANCE_SAVINGS_PLAN: "ec2",
                CapacityType.COMPUTE_SAVINGS_PLAN: "sp",
            },
        )
        engine = DecisionEngine(settings)
        d = engine.analyze_compute_savings_plan(_sp(85.0, 4.0))
        assert d.name == "sp-global"
        assert d.weight == 100
        assert d.should_exist is False
        assert "at/above threshold 80.0%" in d.reason

    def test_decide_dispatches_on_aggregate_kind(self):
        engine = DecisionEngine()
        assert engine.decide(_sp(1.0, 1.0)).capacity_type == CapacityType.COMPUTE_SAVINGS_PLAN
        assert engine.decide(
            _sp(1.0, 1.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "r5", "us-east-1")
        ).capacity_type == CapacityType.EC2_INSTANCE_SAVINGS_PLAN
        assert engine.decide(
            AggregatedReservedInstance("r5.large", "us-east-1", total_count=2)
        ).capacity_type == CapacityType.RESERVED_INSTANCE

    def test_empty_aggregate_never_raises(self):
        d = DecisionEngine().analyze_compute_savings_plan(AggregatedSavingsPlan(type=SAVINGS_PLAN_TYPE_COMPUTE))
        assert d.should_exist is False
        assert "no remaining capacity" in d.reason


class TestSingleRecordWrappers:
    def test_compute_single(self):
        d = DecisionEngine().analyze_compute_savings_plan_single(
            sp_utilization("arn:1", 70.0), sp_capacity("arn:1", 9.0)
        )
        assert d.should_exist is True
        assert d.utilization_percent == 70.0
        assert d.remaining_capacity == 9.0

    def test_ec2_instance_single(self):
        d = DecisionEngine().analyze_ec2_instance_savings_plan_single(
            sp_utilization("arn:1", 96.2, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "c5", "us-east-1"),
            sp_capacity("arn:1", 0.4, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "c5", "us-east-1"),
        )
        assert d.name == "cost-aware-ec2-sp-c5-us-east-1"
        assert d.should_exist is False
        assert "at/above threshold" in d.reason

    def test_reserved_instance_single(self):
        d = DecisionEngine().analyze_reserved_instance_single(reserved("m5.large", 2))
        assert d.reason == "2 reserved instances available"


class TestDecideAll:
    """Tests for decide_all ordering"""

    def test_precedence_order_and_sorting(self):
        engine = DecisionEngine()
        ec2 = {
            FamilyRegion("r5", "us-west-2"): _sp(10.0, 1.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "r5", "us-west-2"),
            FamilyRegion("c5", "us-west-2"): _sp(10.0, 1.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "c5", "us-west-2"),
        }
        ri = {
            InstanceTypeRegion("m5.xlarge", "us-west-2"): AggregatedReservedInstance("m5.xlarge", "us-west-2", total_count=1),
            InstanceTypeRegion("c5.large", "us-west-2"): AggregatedReservedInstance("c5.large", "us-west-2", total_count=1),
        }
        decisions = engine.decide_all(_sp(10.0, 1.0), ec2, ri)
        assert [d.name for d in decisions] == [
            "cost-aware-ri-c5.large-us-west-2",
            "cost-aware-ri-m5.xlarge-us-west-2",
            "cost-aware-ec2-sp-c5-us-west-2",
            "cost-aware-ec2-sp-r5-us-west-2",
            "cost-aware-compute-sp-global",
        ]

    def test_no_compute_aggregate(self):
        decisions = DecisionEngine().decide_all(None, {}, {})
        assert decisions == []


class TestModuleDecide:
    def test_explicit_threshold_and_weight(self):
        d = decide(_sp(50.0, 2.0), threshold=40.0, weight=7)
        assert d.weight == 7
        assert d.should_exist is False

    def test_weight_copied_verbatim(self):
        d = decide(AggregatedReservedInstance("m5.large", "us-west-2", total_count=1), threshold=95.0, weight=4242)
        assert d.weight == 4242
        assert d.price == "0.00"
