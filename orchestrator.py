"""Orchestrator: query -> aggregate -> decide -> generate -> validate -> atomic write.
One reconciliation cycle produces an overlay plan (create/delete per overlay) plus a
dry-run YAML rendering. Applying the plan to a cluster is done elsewhere.
"""
import logging
from datetime import datetime, timezone
import json
import os
import tempfile
import time
from typing import List, Dict, Any, Optional, Sequence

import config
from config import setup_logging, validate_config, ConfigValidationError, load_overlay_settings
from metrics import lumina
from metrics.prometheus_client import PrometheusError
from metrics.records import (
    SAVINGS_PLAN_TYPE_COMPUTE,
    SAVINGS_PLAN_TYPE_EC2_INSTANCE,
    ReservedInstance,
    SavingsPlanCapacity,
    SavingsPlanUtilization,
)
from overlay import aggregation
from overlay.decision import DecisionEngine
from overlay.generator import OverlayGenerator
from overlay.preference import PreferenceOverlayGenerator, parse_nodepool_preferences
from overlay.render import render_overlays_yaml
from overlay.types import ACTION_CREATE, ACTION_DELETE, OverlaySettings
from overlay.validator import validate_overlay

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _atomic_write(path: str, data: str) -> None:
    dirp = os.path.dirname(path) or '.'
    fd, tmp = tempfile.mkstemp(prefix='.tmp_plan_', dir=dirp)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
        # Atomic replace
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def _of_type(records: Sequence, sp_type: str) -> List:
    return [r for r in records if r.type == sp_type]


def _preference_overlays(nodepools: Sequence[Dict[str, Any]], disabled: bool):
    """(overlay, reason) pairs for every parseable preference, plus parse errors by NodePool"""
    generator = PreferenceOverlayGenerator(disabled=disabled)
    overlays = []
    errors: Dict[str, List[str]] = {}
    for nodepool in nodepools:
        name = nodepool.get('name', '')
        prefs, parse_errors = parse_nodepool_preferences(nodepool.get('annotations'), name)
        if parse_errors:
            errors[name] = [str(e) for e in parse_errors]
        for pref in prefs:
            reason = f"preference {pref.number} of NodePool {name}"
            overlays.append((generator.generate(pref), reason))
    return overlays, errors


def build_plan(utilizations: Sequence[SavingsPlanUtilization],
               capacities: Sequence[SavingsPlanCapacity],
               reserved_instances: Sequence[ReservedInstance],
               settings: Optional[OverlaySettings] = None,
               nodepools: Optional[Sequence[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Run the overlay pipeline over one metrics snapshot plus NodePool preferences

    Returns dict with keys:
      - decisions: decision dicts in precedence order (RI, EC2 SP, compute SP)
      - overlays: {name, action, reason, manifest|None, valid}; capacity overlays
        first, then preference overlays per NodePool
      - validation_errors: {overlay name: [error strings]}
      - preference_errors: {nodepool name: [unparseable annotation messages]}
      - summary: create/delete/invalid/preference counts
      - dry_run_yaml: multi-document YAML for valid overlays to create
    """
    settings = settings or OverlaySettings()
    engine = DecisionEngine(settings)
    generator = OverlayGenerator(disabled=settings.disabled, codec=engine.codec)

    compute_utils = _of_type(utilizations, SAVINGS_PLAN_TYPE_COMPUTE)
    compute_caps = _of_type(capacities, SAVINGS_PLAN_TYPE_COMPUTE)
    ec2_utils = _of_type(utilizations, SAVINGS_PLAN_TYPE_EC2_INSTANCE)
    ec2_caps = _of_type(capacities, SAVINGS_PLAN_TYPE_EC2_INSTANCE)

    # Without any compute SP there is no global overlay to manage
    compute_agg = None
    if compute_utils or compute_caps:
        compute_agg = aggregation.aggregate_compute_savings_plans(compute_utils, compute_caps)
    ec2_aggs = aggregation.aggregate_ec2_instance_savings_plans(ec2_utils, ec2_caps)
    ri_aggs = aggregation.aggregate_reserved_instances(reserved_instances)

    decisions = engine.decide_all(compute_agg, ec2_aggs, ri_aggs)
    generated = generator.generate_all(decisions)
    preference_overlays, preference_errors = _preference_overlays(nodepools or [], settings.disabled)

    overlays: List[Dict[str, Any]] = []
    validation_errors: Dict[str, List[str]] = {}
    to_render = []

    def _add(name, action, reason, resource):
        entry: Dict[str, Any] = {
            'name': name,
            'action': action,
            'reason': reason,
            'manifest': resource.to_dict() if resource is not None else None,
            'valid': True,
        }
        if action == ACTION_CREATE:
            errors = validate_overlay(resource)
            if errors:
                entry['valid'] = False
                validation_errors[name] = [str(e) for e in errors]
            else:
                to_render.append(resource)
        overlays.append(entry)

    for g in generated:
        _add(g.decision.name, g.action, g.decision.reason, g.resource)
    for resource, reason in preference_overlays:
        _add(resource.name, ACTION_CREATE, reason, resource)

    create_count = sum(1 for o in overlays if o['action'] == ACTION_CREATE)
    return {
        'decisions': [d.to_dict() for d in decisions],
        'overlays': overlays,
        'validation_errors': validation_errors,
        'preference_errors': preference_errors,
        'summary': {
            'decision_count': len(decisions),
            'create_count': create_count,
            'delete_count': sum(1 for o in overlays if o['action'] == ACTION_DELETE),
            'invalid_count': len(validation_errors),
            'preference_count': len(preference_overlays),
        },
        'dry_run_yaml': render_overlays_yaml(to_render),
    }


def run_once(settings: Optional[OverlaySettings] = None,
             nodepools: Optional[Sequence[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Query Lumina metrics for the configured account/region and build the plan

    NodePools default to the configured NodePool export.

    Raises:
        PrometheusError: If the metrics source cannot be queried
        ConfigValidationError: If the NodePool export cannot be parsed
    """
    settings = settings or load_overlay_settings()
    account_id, region = config.AWS_ACCOUNT_ID, config.AWS_REGION
    if nodepools is None:
        nodepools = config.load_nodepools()

    logger.info(f"Reconciling overlays for account {account_id} in {region}")

    freshness: Optional[float] = None
    try:
        freshness = lumina.data_freshness()
        logger.info(f"Lumina data freshness: {freshness:.0f}s")
    except PrometheusError as e:
        logger.warning(f"Lumina data freshness unavailable: {e}")

    utilizations = lumina.query_savings_plan_utilization(account_id=account_id, region=region)
    capacities = lumina.query_savings_plan_capacity(account_id=account_id, region=region)
    reserved = lumina.query_reserved_instances(account_id=account_id, region=region)
    logger.info(
        f"Fetched {len(utilizations)} SP utilization, {len(capacities)} SP capacity "
        f"and {len(reserved)} RI records"
    )

    plan = build_plan(utilizations, capacities, reserved, settings, nodepools)

    for entry in plan['overlays']:
        logger.info(f"Overlay {entry['name']}: {entry['action']} ({entry['reason']})")
    for name, errors in plan['validation_errors'].items():
        logger.warning(f"Overlay {name} failed validation: {'; '.join(errors)}")
    for nodepool, errors in plan['preference_errors'].items():
        logger.warning(f"NodePool {nodepool} has invalid preferences: {'; '.join(errors)}")

    plan['generated_at'] = _now_iso()
    plan['scope'] = {
        'account_id': account_id,
        'region': region,
        'data_freshness_seconds': freshness,
        'utilization_threshold': settings.utilization_threshold,
        'disabled': settings.disabled,
        'nodepool_count': len(nodepools),
    }
    return plan


def write_plan(plan: Dict[str, Any]) -> List[str]:
    """Write plan JSON and dry-run YAML atomically; returns written paths"""
    os.makedirs(config.OUTPUT_DIR, exist_ok=True)
    plan_path = config.get_plan_output_path()
    yaml_path = config.get_dry_run_output_path()
    body = {k: v for k, v in plan.items() if k != 'dry_run_yaml'}
    _atomic_write(plan_path, json.dumps(body, indent=2))
    _atomic_write(yaml_path, plan.get('dry_run_yaml', ''))
    return [plan_path, yaml_path]


def reconcile(settings: OverlaySettings) -> bool:
    """One cycle; returns True on success"""
    try:
        plan = run_once(settings)
        paths = write_plan(plan)
    except PrometheusError as e:
        logger.error(f"Reconciliation failed, metrics source error: {e}")
        return False
    except ConfigValidationError as e:
        logger.error(f"Reconciliation failed, NodePool export unreadable: {e}")
        return False
    except OSError as e:
        logger.error(f"Reconciliation failed, could not write plan: {e}")
        return False

    summary = plan['summary']
    logger.info(
        f"Reconciliation complete: {summary['create_count']} create, "
        f"{summary['delete_count']} delete, {summary['invalid_count']} invalid, "
        f"{summary['preference_count']} preference"
    )
    logger.info(f"Output files: {paths}")
    return summary['invalid_count'] == 0


def main() -> int:
    # Setup logging first
    setup_logging()

    # Validate configuration
    try:
        validate_config()
        settings = load_overlay_settings()
        logger.info("Configuration validated successfully")
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if settings.disabled:
        logger.info("Overlay disabled mode enabled - overlays get an impossible requirement")

    if config.RUN_MODE != 'loop':
        return 0 if reconcile(settings) else 1

    logger.info(f"Starting reconcile loop (interval={config.RECONCILE_INTERVAL_SECONDS}s)")
    try:
        while True:
            reconcile(settings)
            time.sleep(config.RECONCILE_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        logger.info("Reconcile loop stopped")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
