"""
NodeOverlay generation from Decisions.

A decision that should exist becomes a NodeOverlay biasing Karpenter toward
pre-paid on-demand capacity; a decision that should not exist becomes a delete
action with no resource.
"""
import logging
import re
from typing import Dict, List, Optional

from overlay.naming import NameCodec
from overlay.types import (
    ACTION_CREATE,
    ACTION_DELETE,
    CapacityType,
    Decision,
    GeneratedOverlay,
    NodeOverlay,
    NodeSelectorRequirement,
)

logger = logging.getLogger(__name__)


# Labels on managed overlays
LABEL_DOMAIN = "capacity-overlays.io"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_MANAGED_BY_VALUE = "capacity-overlays"
LABEL_INSTANCE_FAMILY = f"{LABEL_DOMAIN}/instance-family"
LABEL_INSTANCE_TYPE = f"{LABEL_DOMAIN}/instance-type"
LABEL_CAPACITY_TYPE = f"{LABEL_DOMAIN}/capacity-type"
LABEL_REGION = f"{LABEL_DOMAIN}/region"
LABEL_OPTIMIZATION_REASON = f"{LABEL_DOMAIN}/optimization-reason"

# Well-known node labels used in requirements
LABEL_INSTANCE_TYPE_K8S = "node.kubernetes.io/instance-type"
LABEL_INSTANCE_FAMILY_KARPENTER = "karpenter.k8s.aws/instance-family"
LABEL_CAPACITY_TYPE_KARPENTER = "karpenter.sh/capacity-type"

# No node ever carries this label; requiring it makes an overlay inert
LABEL_DISABLED_KEY = f"{LABEL_DOMAIN}/disabled"
LABEL_DISABLED_VALUE = "true"

OP_IN = "In"
OP_EXISTS = "Exists"

LABEL_VALUE_MAX_LENGTH = 63
LABEL_VALUE_FALLBACK = "capacity-available"

_INVALID_LABEL_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_REPEATED_HYPHENS = re.compile(r"-{2,}")
_EDGE_CHARS = "-_."


def sanitize_label_value(value: str) -> str:
    """Coerce an arbitrary string into a valid Kubernetes label value.

    Invalid characters become '-', hyphen runs collapse, separators are trimmed
    from both ends and the result is cut to 63 characters.
    """
    s = _INVALID_LABEL_CHARS.sub("-", value or "")
    s = _REPEATED_HYPHENS.sub("-", s)
    s = s.strip(_EDGE_CHARS)
    if len(s) > LABEL_VALUE_MAX_LENGTH:
        s = s[:LABEL_VALUE_MAX_LENGTH].rstrip(_EDGE_CHARS)
    return s or LABEL_VALUE_FALLBACK


def _on_demand_requirement() -> NodeSelectorRequirement:
    # SPs and RIs never discount spot capacity
    return NodeSelectorRequirement(LABEL_CAPACITY_TYPE_KARPENTER, OP_IN, ["on-demand"])


class OverlayGenerator:
    def __init__(self, disabled: bool = False, codec: Optional[NameCodec] = None):
        self.disabled = disabled
        self.codec = codec or NameCodec()

    def _target(self, decision: Decision):
        """(family, instance_type, region) from structured fields, else decoded from the name"""
        family, instance_type, region = decision.instance_family, decision.instance_type, decision.region
        if decision.capacity_type == CapacityType.EC2_INSTANCE_SAVINGS_PLAN and not family:
            family, decoded_region = self.codec.decode_ec2_instance(decision.name)
            region = region or decoded_region
        elif decision.capacity_type == CapacityType.RESERVED_INSTANCE and not instance_type:
            instance_type, decoded_region = self.codec.decode_reserved_instance(decision.name)
            region = region or decoded_region
        if instance_type and not family:
            dot = instance_type.find(".")
            if dot > 0:
                family = instance_type[:dot]
        return family, instance_type, region

    def generate_labels(self, decision: Decision) -> Dict[str, str]:
        labels = {
            LABEL_MANAGED_BY: LABEL_MANAGED_BY_VALUE,
            LABEL_CAPACITY_TYPE: decision.capacity_type.label_value,
            LABEL_OPTIMIZATION_REASON: sanitize_label_value(decision.reason),
        }
        if self.disabled:
            labels[LABEL_DISABLED_KEY] = LABEL_DISABLED_VALUE

        if decision.capacity_type == CapacityType.COMPUTE_SAVINGS_PLAN:
            return labels

        family, instance_type, region = self._target(decision)
        if decision.capacity_type == CapacityType.RESERVED_INSTANCE and instance_type:
            labels[LABEL_INSTANCE_TYPE] = instance_type
        if family:
            labels[LABEL_INSTANCE_FAMILY] = family
        if region:
            labels[LABEL_REGION] = region
        return labels

    def generate_requirements(self, decision: Decision) -> List[NodeSelectorRequirement]:
        requirements: List[NodeSelectorRequirement] = []
        if self.disabled:
            requirements.append(
                NodeSelectorRequirement(LABEL_DISABLED_KEY, OP_IN, [LABEL_DISABLED_VALUE])
            )

        family, instance_type, _ = self._target(decision)
        if decision.capacity_type == CapacityType.COMPUTE_SAVINGS_PLAN:
            requirements.append(NodeSelectorRequirement(LABEL_INSTANCE_FAMILY_KARPENTER, OP_EXISTS))
        elif decision.capacity_type == CapacityType.EC2_INSTANCE_SAVINGS_PLAN:
            requirements.append(NodeSelectorRequirement(LABEL_INSTANCE_FAMILY_KARPENTER, OP_IN, [family]))
        elif decision.capacity_type == CapacityType.RESERVED_INSTANCE:
            requirements.append(NodeSelectorRequirement(LABEL_INSTANCE_TYPE_K8S, OP_IN, [instance_type]))
        requirements.append(_on_demand_requirement())
        return requirements

    def generate(self, decision: Decision) -> Optional[NodeOverlay]:
        """NodeOverlay for a decision, or None when the overlay should not exist"""
        if not decision.should_exist:
            return None
        return NodeOverlay(
            name=decision.name,
            labels=self.generate_labels(decision),
            requirements=self.generate_requirements(decision),
            price=decision.price,
            weight=decision.weight,
        )

    def generate_all(self, decisions: List[Decision]) -> List[GeneratedOverlay]:
        """One GeneratedOverlay per decision, in input order"""
        results: List[GeneratedOverlay] = []
        for decision in decisions:
            if decision.should_exist:
                results.append(GeneratedOverlay(self.generate(decision), decision, ACTION_CREATE))
            else:
                results.append(GeneratedOverlay(None, decision, ACTION_DELETE))
        logger.debug(f"Generated {len(results)} overlay actions")
        return results
