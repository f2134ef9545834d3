import logging
import math
import time
from typing import List, Dict, Any, Optional

import requests

from config import (
    PROMETHEUS_URL,
    PROMETHEUS_TIMEOUT_SECONDS,
    PROMETHEUS_RETRY_COUNT,
    PROMETHEUS_RETRY_BACKOFF_BASE,
)

logger = logging.getLogger(__name__)


class PrometheusError(Exception):
    pass


class PrometheusConnectionError(PrometheusError):
    """Prometheus could not be reached after all retries"""
    pass


class PrometheusQueryError(PrometheusError):
    """Prometheus answered, but not with a usable result"""
    pass


def _now() -> float:
    return time.time()


def query_instant(promql: str, at: Optional[float] = None) -> List[Dict[str, Any]]:
    """
    Query Prometheus `/api/v1/query` and return the vector result list.
    Each element is `{"metric": {label: value}, "value": [ts, "value"]}`.

    Connection failures are retried PROMETHEUS_RETRY_COUNT times with
    exponential backoff; HTTP and payload errors are not retried.
    """
    params = {"query": promql, "time": str(at if at is not None else _now())}
    url = f"{PROMETHEUS_URL.rstrip('/')}/api/v1/query"
    attempts = max(1, PROMETHEUS_RETRY_COUNT)

    r = None
    for attempt in range(attempts):
        try:
            r = requests.get(url, params=params, timeout=PROMETHEUS_TIMEOUT_SECONDS)
            break
        except requests.RequestException as e:
            logger.warning(f"Prometheus request failed (attempt {attempt + 1}/{attempts}): {e}")
            if attempt + 1 >= attempts:
                raise PrometheusConnectionError(f"request failed: {e}")
            time.sleep(PROMETHEUS_RETRY_BACKOFF_BASE * (2 ** attempt))

    if r.status_code != 200:
        raise PrometheusQueryError(f"prometheus returned status {r.status_code}: {r.text}")
    try:
        data = r.json()
    except ValueError as e:
        raise PrometheusQueryError(f"invalid JSON from prometheus: {e}")
    if data.get("status") != "success":
        raise PrometheusQueryError(f"prometheus error: {data}")

    result = data.get("data", {})
    if result.get("resultType") not in (None, "vector"):
        raise PrometheusQueryError(f"unexpected result type: {result.get('resultType')}")
    return result.get("result", []) or []


def parse_sample_value(sample: Dict[str, Any]) -> Optional[float]:
    """Numeric value of one vector sample, or None when missing/malformed/non-finite"""
    try:
        val = sample.get("value", [None, None])[1]
        fv = float(val)
    except (ValueError, IndexError, TypeError):
        return None
    if not math.isfinite(fv):  # NaN, +Inf, -Inf
        return None
    return fv


def parse_sample_timestamp(sample: Dict[str, Any]) -> Optional[float]:
    try:
        return float(sample.get("value", [None, None])[0])
    except (ValueError, IndexError, TypeError):
        return None
