"""
Tests for overlay name encoding and decoding
"""
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from overlay.naming import NameCodec
from overlay.types import CapacityType


REGIONS = ["us-west-2", "us-east-1", "eu-central-1", "ap-southeast-2", "sa-east-1"]


class TestEncode:
    """Tests for NameCodec.encode"""

    def test_compute_is_global(self):
        assert NameCodec().encode_compute() == "cost-aware-compute-sp-global"

    def test_ec2_instance(self):
        assert NameCodec().encode_ec2_instance("m5", "us-west-2") == "cost-aware-ec2-sp-m5-us-west-2"

    def test_reserved_instance(self):
        assert NameCodec().encode_reserved_instance("m5.xlarge", "us-west-2") == \
            "cost-aware-ri-m5.xlarge-us-west-2"

    def test_without_region(self):
        assert NameCodec().encode(CapacityType.EC2_INSTANCE_SAVINGS_PLAN, ("m5", "")) == "cost-aware-ec2-sp-m5"

    def test_custom_prefixes(self):
        codec = NameCodec({CapacityType.RESERVED_INSTANCE: "my-ri"})
        assert codec.encode_reserved_instance("c5.large", "us-east-1") == "my-ri-c5.large-us-east-1"
        # Unset prefixes keep their defaults
        assert codec.prefix(CapacityType.COMPUTE_SAVINGS_PLAN) == "cost-aware-compute-sp"


class TestDecodeEc2Instance:
    """Tests for NameCodec.decode_ec2_instance"""

    @pytest.mark.parametrize("family", ["m5", "c6g", "r7iz", "x2idn"])
    @pytest.mark.parametrize("region", REGIONS)
    def test_round_trip(self, family, region):
        codec = NameCodec()
        assert codec.decode_ec2_instance(codec.encode_ec2_instance(family, region)) == (family, region)

    def test_round_trip_custom_prefix(self):
        codec = NameCodec({CapacityType.EC2_INSTANCE_SAVINGS_PLAN: "team-a-ec2"})
        name = codec.encode_ec2_instance("m6i", "eu-west-3")
        assert codec.decode(CapacityType.EC2_INSTANCE_SAVINGS_PLAN, name) == ("m6i", "eu-west-3")

    def test_wrong_prefix(self):
        assert NameCodec().decode_ec2_instance("other-m5-us-west-2") == ("", "")

    def test_single_segment(self):
        assert NameCodec().decode_ec2_instance("cost-aware-ec2-sp-m5") == ("", "")

    def test_short_region(self):
        """Fewer than four segments: first is the family, rest the region"""
        assert NameCodec().decode_ec2_instance("cost-aware-ec2-sp-m5-local") == ("m5", "local")


class TestDecodeReservedInstance:
    """Tests for NameCodec.decode_reserved_instance"""

    @pytest.mark.parametrize("instance_type", ["m5.xlarge", "c5.2xlarge", "t3.micro", "r6g.metal"])
    @pytest.mark.parametrize("region", REGIONS)
    def test_round_trip(self, instance_type, region):
        codec = NameCodec()
        name = codec.encode_reserved_instance(instance_type, region)
        assert codec.decode(CapacityType.RESERVED_INSTANCE, name) == (instance_type, region)

    def test_no_dot(self):
        assert NameCodec().decode_reserved_instance("cost-aware-ri-m5xlarge-us-west-2") == ("", "")

    def test_no_region(self):
        assert NameCodec().decode_reserved_instance("cost-aware-ri-m5.xlarge") == ("m5.xlarge", "")

    def test_wrong_prefix(self):
        assert NameCodec().decode_reserved_instance("cost-aware-ec2-sp-m5.xlarge-us-west-2") == ("", "")


class TestDecodeCompute:
    def test_compute_has_no_target(self):
        codec = NameCodec()
        assert codec.decode(CapacityType.COMPUTE_SAVINGS_PLAN, codec.encode_compute()) == ("", "")
