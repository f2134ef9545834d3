"""
Shared value types for the overlay pipeline.

Every value here is immutable and rebuilt each reconciliation cycle:
aggregates -> decisions -> generated overlays.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class CapacityType(str, Enum):
    """Kind of pre-paid AWS capacity backing an overlay"""
    COMPUTE_SAVINGS_PLAN = "compute_savings_plan"
    EC2_INSTANCE_SAVINGS_PLAN = "ec2_instance_savings_plan"
    RESERVED_INSTANCE = "reserved_instance"

    @property
    def label_value(self) -> str:
        """Kubernetes-safe value for the capacity-type label"""
        return _CAPACITY_TYPE_META[self]["label"]

    @property
    def default_prefix(self) -> str:
        return _CAPACITY_TYPE_META[self]["prefix"]

    @property
    def default_weight(self) -> int:
        return _CAPACITY_TYPE_META[self]["weight"]


# More specific capacity outranks more general capacity: RI > EC2 SP > Compute SP
_CAPACITY_TYPE_META: Dict[CapacityType, Dict[str, Any]] = {
    CapacityType.COMPUTE_SAVINGS_PLAN: {
        "label": "compute-savings-plan",
        "prefix": "cost-aware-compute-sp",
        "weight": 10,
    },
    CapacityType.EC2_INSTANCE_SAVINGS_PLAN: {
        "label": "ec2-instance-savings-plan",
        "prefix": "cost-aware-ec2-sp",
        "weight": 20,
    },
    CapacityType.RESERVED_INSTANCE: {
        "label": "reserved-instance",
        "prefix": "cost-aware-ri",
        "weight": 30,
    },
}


class FamilyRegion(NamedTuple):
    """Grouping key for EC2 Instance Savings Plans"""
    instance_family: str
    region: str

    def __str__(self) -> str:
        return f"{self.instance_family}:{self.region}"


class InstanceTypeRegion(NamedTuple):
    """Grouping key for Reserved Instances"""
    instance_type: str
    region: str

    def __str__(self) -> str:
        return f"{self.instance_type}:{self.region}"


@dataclass(frozen=True)
class AggregatedSavingsPlan:
    type: str
    instance_family: str = ""
    region: str = ""
    account_id: str = ""
    total_remaining_capacity: float = 0.0
    average_utilization_percent: float = 0.0
    count: int = 0


@dataclass(frozen=True)
class AggregatedReservedInstance:
    instance_type: str
    region: str = ""
    account_id: str = ""
    total_count: int = 0


@dataclass(frozen=True)
class Decision:
    """Whether one overlay should exist, and with which precedence.

    `instance_family`, `region` and `instance_type` carry the structured target;
    `name` is derived from them and kept as the resource identifier.
    """
    name: str
    capacity_type: CapacityType
    should_exist: bool
    weight: int
    price: str
    target_selector: str
    reason: str
    utilization_percent: float = 0.0
    remaining_capacity: float = 0.0
    instance_family: str = ""
    region: str = ""
    instance_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "capacity_type": self.capacity_type.value,
            "should_exist": self.should_exist,
            "weight": self.weight,
            "price": self.price,
            "target_selector": self.target_selector,
            "reason": self.reason,
            "utilization_percent": self.utilization_percent,
            "remaining_capacity": self.remaining_capacity,
            "instance_family": self.instance_family,
            "region": self.region,
            "instance_type": self.instance_type,
        }


@dataclass(frozen=True)
class NodeSelectorRequirement:
    key: str
    operator: str
    values: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"key": self.key, "operator": self.operator}
        if self.values:
            out["values"] = list(self.values)
        return out


@dataclass(frozen=True)
class NodeOverlay:
    """Karpenter NodeOverlay resource"""
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    requirements: List[NodeSelectorRequirement] = field(default_factory=list)
    price: Optional[str] = None
    weight: Optional[int] = None
    # Relative form such as "-20%"; mutually exclusive with price
    price_adjustment: Optional[str] = None
    api_version: str = "karpenter.sh/v1alpha1"
    kind: str = "NodeOverlay"

    def to_dict(self) -> Dict[str, Any]:
        """Manifest form handed to the apply step"""
        spec: Dict[str, Any] = {
            "requirements": [r.to_dict() for r in self.requirements],
        }
        if self.price is not None:
            spec["price"] = self.price
        if self.price_adjustment is not None:
            spec["priceAdjustment"] = self.price_adjustment
        if self.weight is not None:
            spec["weight"] = self.weight
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {"name": self.name, "labels": dict(self.labels)},
            "spec": spec,
        }


ACTION_CREATE = "create"
ACTION_DELETE = "delete"


@dataclass(frozen=True)
class GeneratedOverlay:
    """Generated resource plus the decision behind it.

    create => resource is set; delete => resource is None.
    """
    resource: Optional[NodeOverlay]
    decision: Decision
    action: str

    def __post_init__(self):
        if self.action == ACTION_CREATE and self.resource is None:
            raise ValueError("create action requires a resource")
        if self.action == ACTION_DELETE and self.resource is not None:
            raise ValueError("delete action must not carry a resource")


@dataclass(frozen=True)
class OverlaySettings:
    """Plain configuration values consumed by the pipeline"""
    utilization_threshold: float = 95.0
    weights: Dict[CapacityType, int] = field(
        default_factory=lambda: {ct: ct.default_weight for ct in CapacityType}
    )
    prefixes: Dict[CapacityType, str] = field(
        default_factory=lambda: {ct: ct.default_prefix for ct in CapacityType}
    )
    disabled: bool = False

    def weight_for(self, capacity_type: CapacityType) -> int:
        return self.weights.get(capacity_type, capacity_type.default_weight)

    def prefix_for(self, capacity_type: CapacityType) -> str:
        return self.prefixes.get(capacity_type) or capacity_type.default_prefix
