"""Overlay name encoding/decoding.

Names:
  compute SP:      {prefix}-global
  EC2 instance SP: {prefix}-{family}-{region}
  RI:              {prefix}-{instance_type}-{region}

Decoding returns ("", "") when a name cannot be split; callers treat empty
parts as unknown.
"""
from typing import Dict, Optional, Tuple

from overlay.types import CapacityType


COMPUTE_SCOPE = "global"

# Region segments in names like us-west-2 / eu-central-1
_REGION_SEGMENTS = 3


class NameCodec:
    def __init__(self, prefixes: Optional[Dict[CapacityType, str]] = None):
        prefixes = prefixes or {}
        self.prefixes = {
            ct: prefixes.get(ct) or ct.default_prefix for ct in CapacityType
        }

    def prefix(self, capacity_type: CapacityType) -> str:
        return self.prefixes[capacity_type]

    def encode(self, capacity_type: CapacityType, target: Tuple[str, str] = ("", "")) -> str:
        """Encode a target ((family, region) or (instance_type, region)) into a name"""
        if capacity_type == CapacityType.COMPUTE_SAVINGS_PLAN:
            return f"{self.prefix(capacity_type)}-{COMPUTE_SCOPE}"
        first, region = target
        if not region:
            return f"{self.prefix(capacity_type)}-{first}"
        return f"{self.prefix(capacity_type)}-{first}-{region}"

    def decode(self, capacity_type: CapacityType, name: str) -> Tuple[str, str]:
        if capacity_type == CapacityType.EC2_INSTANCE_SAVINGS_PLAN:
            return self.decode_ec2_instance(name)
        if capacity_type == CapacityType.RESERVED_INSTANCE:
            return self.decode_reserved_instance(name)
        return "", ""

    def encode_ec2_instance(self, family: str, region: str) -> str:
        return self.encode(CapacityType.EC2_INSTANCE_SAVINGS_PLAN, (family, region))

    def encode_reserved_instance(self, instance_type: str, region: str) -> str:
        return self.encode(CapacityType.RESERVED_INSTANCE, (instance_type, region))

    def encode_compute(self) -> str:
        return self.encode(CapacityType.COMPUTE_SAVINGS_PLAN)

    def _strip_prefix(self, capacity_type: CapacityType, name: str) -> Optional[str]:
        prefix = self.prefix(capacity_type) + "-"
        if not name.startswith(prefix):
            return None
        return name[len(prefix):]

    def decode_ec2_instance(self, name: str) -> Tuple[str, str]:
        """Split '{prefix}-{family}-{region}' into (family, region).

        Assumes the last three hyphen segments are the region when there are at
        least four; otherwise the first segment is the family.
        """
        remainder = self._strip_prefix(CapacityType.EC2_INSTANCE_SAVINGS_PLAN, name)
        if remainder is None:
            return "", ""
        parts = remainder.split("-")
        if len(parts) > _REGION_SEGMENTS:
            return "-".join(parts[:-_REGION_SEGMENTS]), "-".join(parts[-_REGION_SEGMENTS:])
        if len(parts) >= 2:
            return parts[0], "-".join(parts[1:])
        return "", ""

    def decode_reserved_instance(self, name: str) -> Tuple[str, str]:
        """Split '{prefix}-{instance_type}-{region}' into (instance_type, region).

        The instance type runs through the first hyphen after its dot. A name
        without a region yields (instance_type, "").
        """
        remainder = self._strip_prefix(CapacityType.RESERVED_INSTANCE, name)
        if remainder is None:
            return "", ""
        dot = remainder.find(".")
        if dot < 0:
            return "", ""
        hyphen = remainder.find("-", dot + 1)
        if hyphen < 0:
            return remainder, ""
        return remainder[:hyphen], remainder[hyphen + 1:]
