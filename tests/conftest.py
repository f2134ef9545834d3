"""
Test fixtures and configuration for pytest
"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from metrics.records import (
    SAVINGS_PLAN_TYPE_COMPUTE,
    SAVINGS_PLAN_TYPE_EC2_INSTANCE,
    ReservedInstance,
    SavingsPlanCapacity,
    SavingsPlanUtilization,
)


ACCOUNT_ID = "123456789012"
REGION = "us-west-2"


def sp_utilization(arn, utilization, sp_type=SAVINGS_PLAN_TYPE_COMPUTE, family="", region=""):
    return SavingsPlanUtilization(
        type=sp_type,
        instance_family=family,
        region=region,
        account_id=ACCOUNT_ID,
        savings_plan_id=arn,
        utilization_percent=utilization,
    )


def sp_capacity(arn, remaining, sp_type=SAVINGS_PLAN_TYPE_COMPUTE, family="", region=""):
    return SavingsPlanCapacity(
        type=sp_type,
        instance_family=family,
        region=region,
        account_id=ACCOUNT_ID,
        savings_plan_id=arn,
        remaining_capacity=remaining,
    )


def reserved(instance_type, count, az="us-west-2a", region=REGION):
    return ReservedInstance(
        instance_type=instance_type,
        region=region,
        account_id=ACCOUNT_ID,
        availability_zone=az,
        count=count,
    )


@pytest.fixture
def compute_records():
    """Three Compute SPs: 5, 10 and 15 $/hour remaining"""
    utils = [
        sp_utilization("arn:sp-1", 80.0),
        sp_utilization("arn:sp-2", 90.0),
        sp_utilization("arn:sp-3", 50.0),
    ]
    caps = [
        sp_capacity("arn:sp-1", 5.0),
        sp_capacity("arn:sp-2", 10.0),
        sp_capacity("arn:sp-3", 15.0),
    ]
    return utils, caps


@pytest.fixture
def ec2_records():
    """EC2 Instance SPs: two m5 plans in us-west-2, one c5 plan in us-east-1"""
    utils = [
        sp_utilization("arn:ec2-1", 60.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2"),
        sp_utilization("arn:ec2-2", 75.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2"),
        sp_utilization("arn:ec2-3", 96.2, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "c5", "us-east-1"),
    ]
    caps = [
        sp_capacity("arn:ec2-1", 4.0, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2"),
        sp_capacity("arn:ec2-2", 2.5, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "m5", "us-west-2"),
        sp_capacity("arn:ec2-3", 0.38, SAVINGS_PLAN_TYPE_EC2_INSTANCE, "c5", "us-east-1"),
    ]
    return utils, caps


@pytest.fixture
def ri_records():
    return [
        reserved("m5.xlarge", 3, az="us-west-2a"),
        reserved("m5.xlarge", 2, az="us-west-2b"),
        reserved("c5.2xlarge", 0, az="us-west-2a"),
    ]


def vector_sample(labels, value, ts=1767520800.0):
    return {"metric": dict(labels), "value": [ts, str(value)]}


@pytest.fixture
def prometheus_vector():
    """Builder for a successful Prometheus instant-query payload"""
    def _build(samples):
        return {
            "status": "success",
            "data": {"resultType": "vector", "result": list(samples)},
        }
    return _build
