import os
import logging
import sys
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

import yaml

from overlay.types import CapacityType, OverlaySettings


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def setup_logging():
    """Configure application-wide logging"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> Optional[float]:
    v = os.getenv(name)
    if v is None or v == "":
        return None
    return float(v)


# =============================================================================
# Metrics Source (Prometheus scraping Lumina)
# =============================================================================
PROMETHEUS_URL: str = os.getenv("PROMETHEUS_URL", "http://prometheus:9090")
PROMETHEUS_TIMEOUT_SECONDS: int = int(os.getenv("PROMETHEUS_TIMEOUT_SECONDS", "30"))
PROMETHEUS_RETRY_COUNT: int = int(os.getenv("PROMETHEUS_RETRY_COUNT", "3"))
PROMETHEUS_RETRY_BACKOFF_BASE: int = int(os.getenv("PROMETHEUS_RETRY_BACKOFF_BASE", "1"))

# Every metrics query is scoped to one account and region
AWS_ACCOUNT_ID: str = os.getenv("AWS_ACCOUNT_ID", "")
AWS_REGION: str = os.getenv("AWS_REGION", "")

# =============================================================================
# Overlay Management
# =============================================================================
OVERLAY_CONFIG_PATH: str = os.getenv("OVERLAY_CONFIG_PATH", "config.yaml")
# Operator toggle: create overlays with an impossible requirement
OVERLAY_DISABLED: bool = _env_bool("OVERLAY_DISABLED", False)

# Output directory for plan / dry-run files
OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "output")

# "once" runs a single reconciliation cycle, "loop" repeats every interval
RUN_MODE: str = os.getenv("RUN_MODE", "once")
RECONCILE_INTERVAL_SECONDS: int = int(os.getenv("RECONCILE_INTERVAL_SECONDS", "300"))

# YAML export of NodePools (e.g. `kubectl get nodepools -o yaml`) whose
# preference annotations become preference overlays; empty disables them
NODEPOOLS_PATH: str = os.getenv("NODEPOOLS_PATH", "")


def get_plan_output_path() -> str:
    return os.path.join(OUTPUT_DIR, "overlay_plan.json")


def get_dry_run_output_path() -> str:
    return os.path.join(OUTPUT_DIR, "overlay_plan.yaml")


# Defaults for the YAML overlay-management file (camelCase keys)
DEFAULT_OVERLAY_CONFIG: Dict[str, Any] = {
    "overlayManagement": {
        "utilizationThreshold": 95.0,
        "disabled": False,
        "weights": {
            "reservedInstance": CapacityType.RESERVED_INSTANCE.default_weight,
            "ec2InstanceSavingsPlan": CapacityType.EC2_INSTANCE_SAVINGS_PLAN.default_weight,
            "computeSavingsPlan": CapacityType.COMPUTE_SAVINGS_PLAN.default_weight,
        },
        "naming": {
            "reservedInstancePrefix": CapacityType.RESERVED_INSTANCE.default_prefix,
            "ec2InstanceSavingsPlanPrefix": CapacityType.EC2_INSTANCE_SAVINGS_PLAN.default_prefix,
            "computeSavingsPlanPrefix": CapacityType.COMPUTE_SAVINGS_PLAN.default_prefix,
        },
    }
}

_WEIGHT_KEYS = {
    CapacityType.RESERVED_INSTANCE: "reservedInstance",
    CapacityType.EC2_INSTANCE_SAVINGS_PLAN: "ec2InstanceSavingsPlan",
    CapacityType.COMPUTE_SAVINGS_PLAN: "computeSavingsPlan",
}

_PREFIX_KEYS = {
    CapacityType.RESERVED_INSTANCE: "reservedInstancePrefix",
    CapacityType.EC2_INSTANCE_SAVINGS_PLAN: "ec2InstanceSavingsPlanPrefix",
    CapacityType.COMPUTE_SAVINGS_PLAN: "computeSavingsPlanPrefix",
}


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "PROMETHEUS_URL",
    "PROMETHEUS_TIMEOUT_SECONDS",
    "PROMETHEUS_RETRY_COUNT",
    "PROMETHEUS_RETRY_BACKOFF_BASE",
    "AWS_ACCOUNT_ID",
    "AWS_REGION",
    "OVERLAY_CONFIG_PATH",
    "OVERLAY_DISABLED",
    "OUTPUT_DIR",
    "RUN_MODE",
    "RECONCILE_INTERVAL_SECONDS",
    "NODEPOOLS_PATH",
    "get_plan_output_path",
    "get_dry_run_output_path",
    "DEFAULT_OVERLAY_CONFIG",
    "load_config_file",
    "load_overlay_settings",
    "validate_overlay_settings",
    "load_nodepools",
    "validate_config",
    "ConfigValidationError",
]


# =============================================================================
# Configuration Validation
# =============================================================================
class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override onto a copy of base"""
    out = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def get_config_value(config: Dict[str, Any], *keys, default=None):
    """Safely get nested config value with default fallback"""
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load the YAML overlay-management file merged over defaults.

    A missing file yields the defaults.
    """
    path = config_path or OVERLAY_CONFIG_PATH
    if not path or not os.path.exists(path):
        logging.getLogger(__name__).info(f"Config file {path!r} not found, using defaults")
        return _merge(DEFAULT_OVERLAY_CONFIG, {})
    try:
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"failed to parse config file {path}: {e}")
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"config file {path} must contain a mapping")
    return _merge(DEFAULT_OVERLAY_CONFIG, loaded)


def load_overlay_settings(config_path: Optional[str] = None) -> OverlaySettings:
    """Build validated OverlaySettings from the YAML file plus env overrides

    Raises:
        ConfigValidationError: If the file is unreadable or any value is invalid
    """
    config = load_config_file(config_path)
    section = get_config_value(config, "overlayManagement", default={})

    threshold = get_config_value(section, "utilizationThreshold", default=95.0)
    try:
        env_threshold = _env_float("OVERLAY_UTILIZATION_THRESHOLD")
    except ValueError:
        raise ConfigValidationError("OVERLAY_UTILIZATION_THRESHOLD must be a number")
    if env_threshold is not None:
        threshold = env_threshold

    disabled = bool(get_config_value(section, "disabled", default=False)) or OVERLAY_DISABLED

    weights = {
        ct: get_config_value(section, "weights", key, default=ct.default_weight)
        for ct, key in _WEIGHT_KEYS.items()
    }
    prefixes = {
        ct: get_config_value(section, "naming", key, default=ct.default_prefix)
        for ct, key in _PREFIX_KEYS.items()
    }

    try:
        threshold = float(threshold)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"utilizationThreshold must be a number, got {threshold!r}")

    settings = OverlaySettings(
        utilization_threshold=threshold,
        weights=weights,
        prefixes=prefixes,
        disabled=disabled,
    )
    validate_overlay_settings(settings)
    return settings


def validate_overlay_settings(settings: OverlaySettings) -> None:
    errors = []
    if not (0 <= settings.utilization_threshold <= 100):
        errors.append(
            f"utilization threshold must be between 0 and 100, got {settings.utilization_threshold}"
        )
    for ct in CapacityType:
        weight = settings.weights.get(ct)
        if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
            errors.append(f"{_WEIGHT_KEYS[ct]} weight must be a non-negative integer, got {weight!r}")
        prefix = settings.prefixes.get(ct)
        if not isinstance(prefix, str) or not prefix:
            errors.append(f"{_PREFIX_KEYS[ct]} must be a non-empty string")
    if errors:
        raise ConfigValidationError(
            "Overlay configuration invalid:\n  - " + "\n  - ".join(errors)
        )


def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_account_id(value: str) -> None:
    if not value:
        raise ConfigValidationError("AWS_ACCOUNT_ID is required")
    if len(value) != 12 or not value.isdigit():
        raise ConfigValidationError(f"AWS_ACCOUNT_ID must be exactly 12 digits, got '{value}'")


def _validate_choice(name: str, value: str, choices) -> None:
    if value not in choices:
        raise ConfigValidationError(
            f"{name} must be one of {', '.join(choices)}, got '{value}'"
        )


def validate_config() -> None:
    """Validate all environment configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors: List[str] = []

    for name, value in (
        ("PROMETHEUS_TIMEOUT_SECONDS", PROMETHEUS_TIMEOUT_SECONDS),
        ("PROMETHEUS_RETRY_COUNT", PROMETHEUS_RETRY_COUNT),
        ("RECONCILE_INTERVAL_SECONDS", RECONCILE_INTERVAL_SECONDS),
    ):
        try:
            _validate_positive_int(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    try:
        _validate_url("PROMETHEUS_URL", PROMETHEUS_URL)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_account_id(AWS_ACCOUNT_ID)
    except ConfigValidationError as e:
        errors.append(str(e))

    if not AWS_REGION:
        errors.append("AWS_REGION is required")

    try:
        _validate_choice("LOG_LEVEL", LOG_LEVEL, VALID_LOG_LEVELS)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_choice("RUN_MODE", RUN_MODE, ("once", "loop"))
    except ConfigValidationError as e:
        errors.append(str(e))

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )


# =============================================================================
# NodePool Export
# =============================================================================
def _nodepool_documents(docs) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ConfigValidationError(f"NodePool document must be a mapping, got {type(doc).__name__}")
        if isinstance(doc.get("items"), list):
            out.extend(_nodepool_documents(doc["items"]))
        else:
            out.append(doc)
    return out


def load_nodepools(path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Read NodePool names and annotations from a YAML export.

    Accepts a single NodePool, a `List` with `items`, or a multi-document
    stream. Returns [{"name": ..., "annotations": {...}}]; an unset path
    yields an empty list.

    Raises:
        ConfigValidationError: If the file cannot be parsed
    """
    path = NODEPOOLS_PATH if path is None else path
    if not path:
        return []
    logger = logging.getLogger(__name__)
    if not os.path.exists(path):
        logger.warning(f"NodePool file {path!r} not found, no preference overlays")
        return []
    try:
        with open(path, 'r') as f:
            docs = list(yaml.safe_load_all(f))
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"failed to parse NodePool file {path}: {e}")

    nodepools: List[Dict[str, Any]] = []
    for doc in _nodepool_documents(docs):
        name = get_config_value(doc, "metadata", "name", default="")
        if not name:
            logger.warning(f"Skipping NodePool without metadata.name in {path}")
            continue
        annotations = get_config_value(doc, "metadata", "annotations", default={}) or {}
        if not isinstance(annotations, dict):
            raise ConfigValidationError(f"NodePool {name} annotations must be a mapping")
        nodepools.append({
            "name": str(name),
            "annotations": {str(k): str(v) for k, v in annotations.items()},
        })
    logger.debug(f"Loaded {len(nodepools)} NodePools from {path}")
    return nodepools
