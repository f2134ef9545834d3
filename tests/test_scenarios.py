"""
End-to-end scenarios: records -> aggregate -> decision -> overlay
"""
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import reserved, sp_capacity, sp_utilization
from metrics.records import SAVINGS_PLAN_TYPE_EC2_INSTANCE
from overlay import aggregation
from overlay.decision import DecisionEngine
from overlay.generator import OverlayGenerator
from overlay.types import AggregatedReservedInstance, FamilyRegion, InstanceTypeRegion
from overlay.validator import validate_overlay


@pytest.fixture
def engine():
    return DecisionEngine()


class TestComputeSavingsPlanScenario:
    """Three compute plans with 5, 10 and 15 $/hour remaining"""

    def test_single_global_overlay(self, engine, compute_records):
        utils, caps = compute_records
        agg = aggregation.aggregate_compute_savings_plans(utils, caps)
        decision = engine.analyze_compute_savings_plan(agg)

        assert agg.total_remaining_capacity == pytest.approx(30.0)
        assert agg.average_utilization_percent < 95.0
        assert decision.name.startswith("cost-aware-compute-sp")
        assert decision.should_exist is True
        assert "capacity available (30.00 $/hour)" in decision.reason

        overlay = OverlayGenerator().generate(decision)
        assert validate_overlay(overlay) == []


class TestEc2InstanceSavingsPlanScenario:
    """EC2 instance plan utilized past the threshold"""

    def test_above_threshold(self, engine):
        utils = [sp_utilization("arn:1", 96.2, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2")]
        caps = [sp_capacity("arn:1", 0.5, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2")]
        agg = aggregation.aggregate_ec2_instance_savings_plans(utils, caps)[FamilyRegion("m5", "us-west-2")]
        decision = engine.analyze_ec2_instance_savings_plan(agg)

        assert agg.average_utilization_percent == 96.2
        assert decision.should_exist is False
        assert "at/above threshold" in decision.reason
        assert OverlayGenerator().generate(decision) is None


class TestReservedInstanceScenario:
    """Same instance type in two zones, 3 + 2 reserved"""

    def test_counts_summed(self, engine):
        ris = [reserved("m5.xlarge", 3, az="us-west-2a"), reserved("m5.xlarge", 2, az="us-west-2b")]
        agg = aggregation.aggregate_reserved_instances(ris)[InstanceTypeRegion("m5.xlarge", "us-west-2")]
        decision = engine.analyze_reserved_instance(agg)

        assert agg.total_count == 5
        assert decision.reason == "5 reserved instances available"
        assert decision.should_exist is True


class TestEmptyCapacityScenario:
    """No records at all"""

    def test_empty_savings_plans(self, engine):
        agg = aggregation.aggregate_compute_savings_plans([], [])
        assert agg.count == 0
        assert agg.total_remaining_capacity == 0.0
        decision = engine.analyze_compute_savings_plan(agg)
        assert decision.should_exist is False
        assert "no remaining capacity" in decision.reason

    def test_empty_reserved_instances(self, engine):
        assert aggregation.aggregate_reserved_instances([]) == {}
        decision = engine.analyze_reserved_instance(
            AggregatedReservedInstance(instance_type="m5.large", region="us-west-2")
        )
        assert decision.should_exist is False
        assert decision.reason == "no reserved instances available"


class TestDisabledModeScenario:
    def test_full_pipeline_inert_but_valid(self, engine, compute_records):
        utils, caps = compute_records
        decision = engine.analyze_compute_savings_plan(
            aggregation.aggregate_compute_savings_plans(utils, caps)
        )
        overlay = OverlayGenerator(disabled=True).generate(decision)
        assert overlay.requirements[0].key == "capacity-overlays.io/disabled"
        assert validate_overlay(overlay) == []
