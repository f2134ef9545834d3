"""
Decision engine - overlay lifecycle (deterministic, never raises)

Savings Plan overlays exist while utilization is below the threshold AND
remaining capacity is positive. Reserved Instance overlays exist while any RI
is available.
"""
import logging
from typing import Dict, List, Optional

from metrics.records import (
    SAVINGS_PLAN_TYPE_EC2_INSTANCE,
    ReservedInstance,
    SavingsPlanCapacity,
    SavingsPlanUtilization,
)
from overlay import aggregation
from overlay.naming import NameCodec
from overlay.types import (
    AggregatedReservedInstance,
    AggregatedSavingsPlan,
    CapacityType,
    Decision,
    FamilyRegion,
    InstanceTypeRegion,
    OverlaySettings,
)

logger = logging.getLogger(__name__)

# Pre-paid capacity is treated as free (100% discount)
PREPAID_PRICE = "0.00"

CAPACITY_TYPE_ON_DEMAND = "karpenter.sh/capacity-type: In [on-demand]"


def compute_target_selector() -> str:
    return f"karpenter.k8s.aws/instance-family: Exists, {CAPACITY_TYPE_ON_DEMAND}"


def ec2_instance_target_selector(family: str) -> str:
    return f"karpenter.k8s.aws/instance-family: In [{family}], {CAPACITY_TYPE_ON_DEMAND}"


def reserved_instance_target_selector(instance_type: str) -> str:
    return f"node.kubernetes.io/instance-type: In [{instance_type}], {CAPACITY_TYPE_ON_DEMAND}"


def savings_plan_verdict(agg: AggregatedSavingsPlan, threshold: float):
    """Return (should_exist, reason) for a Savings Plan aggregate"""
    utilization = agg.average_utilization_percent
    remaining = agg.total_remaining_capacity
    if utilization >= threshold:
        return False, f"utilization {utilization:.1f}% at/above threshold {threshold:.1f}%"
    if remaining <= 0:
        return False, f"no remaining capacity ({remaining:.2f} $/hour)"
    return True, (
        f"utilization {utilization:.1f}% below threshold {threshold:.1f}%, "
        f"capacity available ({remaining:.2f} $/hour)"
    )


def reserved_instance_verdict(agg: AggregatedReservedInstance):
    if agg.total_count > 0:
        return True, f"{agg.total_count} reserved instances available"
    return False, "no reserved instances available"


class DecisionEngine:
    """Turns aggregates into Decisions using configured threshold, weights and prefixes"""

    def __init__(self, settings: Optional[OverlaySettings] = None):
        self.settings = settings or OverlaySettings()
        self.codec = NameCodec(self.settings.prefixes)

    @property
    def threshold(self) -> float:
        return self.settings.utilization_threshold

    def analyze_compute_savings_plan(self, agg: AggregatedSavingsPlan) -> Decision:
        """Global Compute SP overlay: targets every on-demand instance family"""
        should_exist, reason = savings_plan_verdict(agg, self.threshold)
        return Decision(
            name=self.codec.encode_compute(),
            capacity_type=CapacityType.COMPUTE_SAVINGS_PLAN,
            should_exist=should_exist,
            weight=self.settings.weight_for(CapacityType.COMPUTE_SAVINGS_PLAN),
            price=PREPAID_PRICE,
            target_selector=compute_target_selector(),
            reason=reason,
            utilization_percent=agg.average_utilization_percent,
            remaining_capacity=agg.total_remaining_capacity,
        )

    def analyze_ec2_instance_savings_plan(self, agg: AggregatedSavingsPlan) -> Decision:
        """Family-scoped EC2 Instance SP overlay (one per family and region)"""
        should_exist, reason = savings_plan_verdict(agg, self.threshold)
        return Decision(
            name=self.codec.encode_ec2_instance(agg.instance_family, agg.region),
            capacity_type=CapacityType.EC2_INSTANCE_SAVINGS_PLAN,
            should_exist=should_exist,
            weight=self.settings.weight_for(CapacityType.EC2_INSTANCE_SAVINGS_PLAN),
            price=PREPAID_PRICE,
            target_selector=ec2_instance_target_selector(agg.instance_family),
            reason=reason,
            utilization_percent=agg.average_utilization_percent,
            remaining_capacity=agg.total_remaining_capacity,
            instance_family=agg.instance_family,
            region=agg.region,
        )

    def analyze_reserved_instance(self, agg: AggregatedReservedInstance) -> Decision:
        # RIs are tracked by count: no utilization, no $/hour
        should_exist, reason = reserved_instance_verdict(agg)
        family = agg.instance_type.split(".", 1)[0] if "." in agg.instance_type else ""
        return Decision(
            name=self.codec.encode_reserved_instance(agg.instance_type, agg.region),
            capacity_type=CapacityType.RESERVED_INSTANCE,
            should_exist=should_exist,
            weight=self.settings.weight_for(CapacityType.RESERVED_INSTANCE),
            price=PREPAID_PRICE,
            target_selector=reserved_instance_target_selector(agg.instance_type),
            reason=reason,
            utilization_percent=0.0,
            remaining_capacity=0.0,
            instance_family=family,
            region=agg.region,
            instance_type=agg.instance_type,
        )

    def decide(self, agg) -> Decision:
        """Dispatch on aggregate kind"""
        if isinstance(agg, AggregatedReservedInstance):
            return self.analyze_reserved_instance(agg)
        if agg.type == SAVINGS_PLAN_TYPE_EC2_INSTANCE:
            return self.analyze_ec2_instance_savings_plan(agg)
        return self.analyze_compute_savings_plan(agg)

    # Single-record convenience wrappers

    def analyze_compute_savings_plan_single(
        self, utilization: SavingsPlanUtilization, capacity: SavingsPlanCapacity
    ) -> Decision:
        agg = aggregation.aggregate_compute_savings_plans([utilization], [capacity])
        return self.analyze_compute_savings_plan(agg)

    def analyze_ec2_instance_savings_plan_single(
        self, utilization: SavingsPlanUtilization, capacity: SavingsPlanCapacity
    ) -> Decision:
        by_key = aggregation.aggregate_ec2_instance_savings_plans([utilization], [capacity])
        return self.analyze_ec2_instance_savings_plan(next(iter(by_key.values())))

    def analyze_reserved_instance_single(self, ri: ReservedInstance) -> Decision:
        by_key = aggregation.aggregate_reserved_instances([ri])
        return self.analyze_reserved_instance(next(iter(by_key.values())))

    def decide_all(
        self,
        compute: Optional[AggregatedSavingsPlan],
        ec2_instance: Dict[FamilyRegion, AggregatedSavingsPlan],
        reserved: Dict[InstanceTypeRegion, AggregatedReservedInstance],
    ) -> List[Decision]:
        """Decisions in precedence order: RIs, then EC2 instance SPs, then compute.

        Keys are sorted so output is stable across cycles. `compute` may be None
        when no compute savings plan is known.
        """
        decisions: List[Decision] = []
        for key in sorted(reserved):
            decisions.append(self.analyze_reserved_instance(reserved[key]))
        for key in sorted(ec2_instance):
            decisions.append(self.analyze_ec2_instance_savings_plan(ec2_instance[key]))
        if compute is not None:
            decisions.append(self.analyze_compute_savings_plan(compute))
        for d in decisions:
            logger.debug(f"Decision {d.name}: should_exist={d.should_exist} ({d.reason})")
        return decisions


def decide(agg, threshold: float, weight: int, codec: Optional[NameCodec] = None) -> Decision:
    """Decide a single aggregate with an explicit threshold and weight"""
    codec = codec or NameCodec()
    if isinstance(agg, AggregatedReservedInstance):
        capacity_type = CapacityType.RESERVED_INSTANCE
    elif agg.type == SAVINGS_PLAN_TYPE_EC2_INSTANCE:
        capacity_type = CapacityType.EC2_INSTANCE_SAVINGS_PLAN
    else:
        capacity_type = CapacityType.COMPUTE_SAVINGS_PLAN
    settings = OverlaySettings(
        utilization_threshold=threshold,
        weights={capacity_type: weight},
        prefixes=dict(codec.prefixes),
    )
    return DecisionEngine(settings).decide(agg)
