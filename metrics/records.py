"""Typed capacity records produced by the metrics source.

These are read-only snapshots of what Lumina exports to Prometheus. The overlay
pipeline consumes them; it never mutates them.
"""
from dataclasses import dataclass
from typing import Optional


SAVINGS_PLAN_TYPE_COMPUTE = "compute"
SAVINGS_PLAN_TYPE_EC2_INSTANCE = "ec2_instance"


@dataclass(frozen=True)
class SavingsPlanUtilization:
    """Utilization of one Savings Plan (percent of its hourly commitment in use)"""
    type: str
    instance_family: str = ""  # empty for compute SPs
    region: str = ""
    account_id: str = ""
    savings_plan_id: str = ""
    utilization_percent: float = 0.0
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class SavingsPlanCapacity:
    """Unused $/hour headroom of one Savings Plan"""
    type: str
    instance_family: str = ""
    region: str = ""
    account_id: str = ""
    savings_plan_id: str = ""
    remaining_capacity: float = 0.0
    # Informational only; aggregation back-calculates commitment instead
    hourly_commitment: Optional[float] = None
    timestamp: Optional[float] = None


@dataclass(frozen=True)
class ReservedInstance:
    """Reserved Instance count for one instance type in one availability zone"""
    instance_type: str
    region: str = ""
    account_id: str = ""
    availability_zone: str = ""
    count: int = 0
    timestamp: Optional[float] = None
