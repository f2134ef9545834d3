"""
Lumina metrics source.

Reads Savings Plan / Reserved Instance metrics exported by Lumina from
Prometheus and returns typed records. Queries are scoped to one AWS account and
region so that a cluster never acts on another account's capacity.
Malformed samples are skipped; transport and query failures raise PrometheusError.
"""
import logging
from typing import Dict, List, Optional

from config import AWS_ACCOUNT_ID, AWS_REGION
from . import prometheus_client as prom
from .prometheus_client import PrometheusQueryError
from .records import (
    SAVINGS_PLAN_TYPE_COMPUTE,
    SAVINGS_PLAN_TYPE_EC2_INSTANCE,
    ReservedInstance,
    SavingsPlanCapacity,
    SavingsPlanUtilization,
)

logger = logging.getLogger(__name__)


METRIC_SP_REMAINING_CAPACITY = "savings_plan_remaining_capacity"
METRIC_SP_UTILIZATION_PERCENT = "savings_plan_utilization_percent"
METRIC_SP_HOURLY_COMMITMENT = "savings_plan_hourly_commitment"
METRIC_EC2_RESERVED_INSTANCE = "ec2_reserved_instance"
METRIC_DATA_FRESHNESS_SECONDS = "lumina_data_freshness_seconds"

LABEL_TYPE = "type"
LABEL_INSTANCE_FAMILY = "instance_family"
LABEL_INSTANCE_TYPE = "instance_type"
LABEL_REGION = "region"
LABEL_AVAILABILITY_ZONE = "availability_zone"
LABEL_ACCOUNT_ID = "account_id"
LABEL_SAVINGS_PLAN_ARN = "savings_plan_arn"


def _selector(metric: str, **labels: str) -> str:
    """`metric{k="v", ...}` with labels in the given order"""
    inner = ", ".join(f'{k}="{v}"' for k, v in labels.items())
    return f"{metric}{{{inner}}}"


def _scope(account_id: Optional[str], region: Optional[str]):
    return (account_id if account_id is not None else AWS_ACCOUNT_ID,
            region if region is not None else AWS_REGION)


def _savings_plan_query(metric: str, account_id: str, region: str, instance_family: str) -> str:
    # Compute SPs are global; EC2 instance SPs are scoped to account/region(/family)
    if instance_family:
        return _selector(metric, **{
            LABEL_TYPE: SAVINGS_PLAN_TYPE_EC2_INSTANCE,
            LABEL_ACCOUNT_ID: account_id,
            LABEL_REGION: region,
            LABEL_INSTANCE_FAMILY: instance_family,
        })
    return (
        _selector(metric, **{LABEL_TYPE: SAVINGS_PLAN_TYPE_COMPUTE})
        + " or "
        + _selector(metric, **{
            LABEL_TYPE: SAVINGS_PLAN_TYPE_EC2_INSTANCE,
            LABEL_ACCOUNT_ID: account_id,
            LABEL_REGION: region,
        })
    )


def query_savings_plan_utilization(sp_type: str = "",
                                   account_id: Optional[str] = None,
                                   region: Optional[str] = None) -> List[SavingsPlanUtilization]:
    """Utilization percent per Savings Plan, optionally filtered by SP type"""
    account_id, region = _scope(account_id, region)
    labels = {LABEL_ACCOUNT_ID: account_id}
    if sp_type:
        labels[LABEL_TYPE] = sp_type
    query = _selector(METRIC_SP_UTILIZATION_PERCENT, **labels)
    logger.debug(f"Savings Plan utilization query: {query}")

    records: List[SavingsPlanUtilization] = []
    for sample in prom.query_instant(query):
        value = prom.parse_sample_value(sample)
        if value is None:
            continue
        metric = sample.get("metric", {})
        sample_type = metric.get(LABEL_TYPE, "")
        # EC2 instance SPs from other regions do not apply here
        if sample_type == SAVINGS_PLAN_TYPE_EC2_INSTANCE and region and metric.get(LABEL_REGION, region) != region:
            continue
        records.append(SavingsPlanUtilization(
            type=sample_type,
            instance_family=metric.get(LABEL_INSTANCE_FAMILY, ""),
            region=metric.get(LABEL_REGION, ""),
            account_id=metric.get(LABEL_ACCOUNT_ID, ""),
            savings_plan_id=metric.get(LABEL_SAVINGS_PLAN_ARN, ""),
            utilization_percent=value,
            timestamp=prom.parse_sample_timestamp(sample),
        ))
    return records


def query_savings_plan_capacity(instance_family: str = "",
                                account_id: Optional[str] = None,
                                region: Optional[str] = None) -> List[SavingsPlanCapacity]:
    """Remaining $/hour per Savings Plan.

    The commitment vector defines which plans exist; remaining capacity is
    joined onto it by ARN (0 when absent).
    """
    account_id, region = _scope(account_id, region)
    commitment_query = _savings_plan_query(METRIC_SP_HOURLY_COMMITMENT, account_id, region, instance_family)
    remaining_query = _savings_plan_query(METRIC_SP_REMAINING_CAPACITY, account_id, region, instance_family)
    logger.debug(f"Savings Plan capacity queries: {commitment_query} | {remaining_query}")

    commitment_samples = prom.query_instant(commitment_query)
    remaining_samples = prom.query_instant(remaining_query)

    remaining_by_arn: Dict[str, float] = {}
    for sample in remaining_samples:
        value = prom.parse_sample_value(sample)
        if value is None:
            continue
        remaining_by_arn[sample.get("metric", {}).get(LABEL_SAVINGS_PLAN_ARN, "")] = value

    records: List[SavingsPlanCapacity] = []
    for sample in commitment_samples:
        commitment = prom.parse_sample_value(sample)
        if commitment is None:
            continue
        metric = sample.get("metric", {})
        arn = metric.get(LABEL_SAVINGS_PLAN_ARN, "")
        records.append(SavingsPlanCapacity(
            type=metric.get(LABEL_TYPE, ""),
            instance_family=metric.get(LABEL_INSTANCE_FAMILY, ""),
            region=metric.get(LABEL_REGION, ""),
            account_id=metric.get(LABEL_ACCOUNT_ID, ""),
            savings_plan_id=arn,
            remaining_capacity=remaining_by_arn.get(arn, 0.0),
            hourly_commitment=commitment,
            timestamp=prom.parse_sample_timestamp(sample),
        ))
    return records


def query_reserved_instances(instance_type: str = "",
                             account_id: Optional[str] = None,
                             region: Optional[str] = None) -> List[ReservedInstance]:
    """Reserved Instance counts per instance type and availability zone"""
    account_id, region = _scope(account_id, region)
    labels = {LABEL_ACCOUNT_ID: account_id, LABEL_REGION: region}
    if instance_type:
        labels[LABEL_INSTANCE_TYPE] = instance_type
    query = _selector(METRIC_EC2_RESERVED_INSTANCE, **labels)
    logger.debug(f"Reserved Instance query: {query}")

    records: List[ReservedInstance] = []
    for sample in prom.query_instant(query):
        value = prom.parse_sample_value(sample)
        metric = sample.get("metric", {})
        if value is None or not metric.get(LABEL_INSTANCE_TYPE):
            continue
        records.append(ReservedInstance(
            instance_type=metric[LABEL_INSTANCE_TYPE],
            region=metric.get(LABEL_REGION, ""),
            account_id=metric.get(LABEL_ACCOUNT_ID, ""),
            availability_zone=metric.get(LABEL_AVAILABILITY_ZONE, ""),
            count=int(value),
            timestamp=prom.parse_sample_timestamp(sample),
        ))
    return records


def data_freshness() -> float:
    """Age in seconds of the data Lumina last exported"""
    samples = prom.query_instant(METRIC_DATA_FRESHNESS_SECONDS)
    for sample in samples:
        value = prom.parse_sample_value(sample)
        if value is not None:
            return value
    raise PrometheusQueryError("no data freshness metric available")
