"""
Capacity aggregation.

Collapses raw Savings Plan / Reserved Instance records into one aggregate per
logical overlay target, so that several plans covering the same target never
produce duplicate overlay names.

Blended utilization is commitment-weighted. Each plan's hourly commitment is
back-calculated from the pair (remaining capacity, utilization percent):

    commitment = remaining / (1 - utilization / 100)

and the aggregate utilization is (sum(commitment) - sum(remaining)) / sum(commitment).
"""
import logging
import math
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from metrics.records import (
    SAVINGS_PLAN_TYPE_COMPUTE,
    SAVINGS_PLAN_TYPE_EC2_INSTANCE,
    ReservedInstance,
    SavingsPlanCapacity,
    SavingsPlanUtilization,
)
from overlay.types import (
    AggregatedReservedInstance,
    AggregatedSavingsPlan,
    FamilyRegion,
    InstanceTypeRegion,
)

logger = logging.getLogger(__name__)


def _implied_commitment(remaining: float, utilization_percent: float) -> Optional[float]:
    """Hourly commitment implied by one plan, or None when it cannot be derived"""
    if remaining == 0 or utilization_percent == 100:
        return None
    return remaining / (1 - utilization_percent / 100.0)


def _fold(
    sp_type: str,
    utilizations: Sequence[SavingsPlanUtilization],
    capacities: Sequence[SavingsPlanCapacity],
    capacity_by_id: Dict[str, SavingsPlanCapacity],
    instance_family: str = "",
    region: str = "",
) -> AggregatedSavingsPlan:
    if not utilizations:
        return AggregatedSavingsPlan(type=sp_type, instance_family=instance_family, region=region)

    remaining_values: List[float] = []
    commitments: List[float] = []
    matched: List[SavingsPlanUtilization] = []

    for util in utilizations:
        cap = capacity_by_id.get(util.savings_plan_id) if util.savings_plan_id else None
        if cap is None:
            # Positional pairing for the single-plan call pattern
            if len(utilizations) == 1 and len(capacities) == 1:
                cap = capacities[0]
            else:
                logger.debug(f"No capacity record for savings plan {util.savings_plan_id!r}, skipping")
                continue

        remaining_values.append(cap.remaining_capacity)
        commitment = _implied_commitment(cap.remaining_capacity, util.utilization_percent)
        if commitment is not None:
            commitments.append(commitment)
        matched.append(util)

    # fsum keeps totals independent of record order
    total_remaining = math.fsum(remaining_values)
    total_commitment = math.fsum(commitments)

    if len(matched) == 1:
        average = matched[0].utilization_percent
    elif total_commitment > 0:
        average = (total_commitment - total_remaining) / total_commitment * 100.0
    else:
        average = 0.0

    return AggregatedSavingsPlan(
        type=sp_type,
        instance_family=instance_family,
        region=region,
        account_id=utilizations[0].account_id,
        total_remaining_capacity=total_remaining,
        average_utilization_percent=average,
        count=len(matched),
    )


def _index_capacities(capacities: Sequence[SavingsPlanCapacity]) -> Dict[str, SavingsPlanCapacity]:
    return {cap.savings_plan_id: cap for cap in capacities if cap.savings_plan_id}


def aggregate_compute_savings_plans(
    utilizations: Sequence[SavingsPlanUtilization],
    capacities: Sequence[SavingsPlanCapacity],
) -> AggregatedSavingsPlan:
    """Fold all Compute Savings Plans into one global aggregate.

    Empty input yields a zero-valued aggregate with count 0.
    """
    return _fold(
        SAVINGS_PLAN_TYPE_COMPUTE,
        list(utilizations),
        list(capacities),
        _index_capacities(capacities),
    )


def aggregate_ec2_instance_savings_plans(
    utilizations: Sequence[SavingsPlanUtilization],
    capacities: Sequence[SavingsPlanCapacity],
) -> Dict[FamilyRegion, AggregatedSavingsPlan]:
    """Group EC2 Instance Savings Plans by (instance family, region) and fold each group.

    Records without an instance family cannot be targeted and are dropped.
    """
    capacities = [cap for cap in capacities if cap.instance_family]
    capacity_by_id = _index_capacities(capacities)
    groups: "OrderedDict[FamilyRegion, List[SavingsPlanUtilization]]" = OrderedDict()
    for util in utilizations:
        if not util.instance_family:
            logger.debug(f"EC2 instance savings plan {util.savings_plan_id!r} has no instance family, skipping")
            continue
        key = FamilyRegion(util.instance_family, util.region)
        groups.setdefault(key, []).append(util)

    result: Dict[FamilyRegion, AggregatedSavingsPlan] = {}
    for key, group in groups.items():
        agg = _fold(
            SAVINGS_PLAN_TYPE_EC2_INSTANCE,
            group,
            capacities,
            capacity_by_id,
            instance_family=key.instance_family,
            region=key.region,
        )
        if agg.count == 0:
            logger.debug(f"EC2 instance savings plans for {key} had no matching capacity")
        result[key] = agg
    return result


def aggregate_reserved_instances(
    reserved_instances: Sequence[ReservedInstance],
) -> Dict[InstanceTypeRegion, AggregatedReservedInstance]:
    """Sum Reserved Instance counts across availability zones per (instance type, region)"""
    totals: Dict[InstanceTypeRegion, int] = {}
    first_seen: Dict[InstanceTypeRegion, ReservedInstance] = {}
    for ri in reserved_instances:
        key = InstanceTypeRegion(ri.instance_type, ri.region)
        totals[key] = totals.get(key, 0) + ri.count
        first_seen.setdefault(key, ri)

    return {
        key: AggregatedReservedInstance(
            instance_type=key.instance_type,
            region=key.region,
            account_id=first_seen[key].account_id,
            total_count=total,
        )
        for key, total in totals.items()
    }
