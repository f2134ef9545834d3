#!/usr/bin/env python3
"""
Status API for the overlay reconciler.

Serves the last overlay plan written by orchestrator.py:
- /api/plan: plan JSON (decisions, overlays, validation errors)
- /api/plan.yaml: dry-run NodeOverlay manifests
- /health, /ready, /metrics for probes and self-monitoring
"""
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from flask import Flask, jsonify, Response

import config
from config import setup_logging

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Metrics for observability
_metrics = {
    'requests_total': 0,
    'requests_by_endpoint': {},
    'errors_total': 0,
    'start_time': time.time()
}


def _record_request(endpoint: str):
    """Record request metrics"""
    _metrics['requests_total'] += 1
    _metrics['requests_by_endpoint'][endpoint] = _metrics['requests_by_endpoint'].get(endpoint, 0) + 1


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def load_json(filepath):
    """Load JSON file safely"""
    try:
        filepath = Path(filepath)
        if not filepath.exists():
            return None
        with open(filepath, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading {filepath}: {e}")
        _metrics['errors_total'] += 1
        return None


def load_plan():
    return load_json(config.get_plan_output_path())


@app.route('/api/plan')
def get_plan():
    """API endpoint for the last overlay plan"""
    _record_request('/api/plan')
    plan = load_plan()
    if plan:
        return jsonify(plan)
    return jsonify({"error": "Plan not found. Run: python orchestrator.py"}), 404


@app.route('/api/plan.yaml')
def get_plan_yaml():
    """Dry-run NodeOverlay manifests as multi-document YAML"""
    _record_request('/api/plan.yaml')
    path = Path(config.get_dry_run_output_path())
    if not path.exists():
        return Response("dry-run output not found\n", status=404, mimetype='text/plain')
    return Response(path.read_text(encoding='utf-8'), mimetype='application/yaml')


@app.route('/health')
def health():
    """Health check endpoint for liveness probes"""
    _record_request('/health')
    return jsonify({
        "status": "healthy",
        "timestamp": _timestamp()
    })


@app.route('/ready')
def ready():
    """Readiness check endpoint - verifies a plan has been written"""
    _record_request('/ready')
    plan = load_plan()
    if plan:
        return jsonify({
            "status": "ready",
            "generated_at": plan.get('generated_at'),
            "summary": plan.get('summary', {}),
            "timestamp": _timestamp()
        })
    return jsonify({
        "status": "not_ready",
        "reason": "No overlay plan found",
        "timestamp": _timestamp()
    }), 503


@app.route('/metrics')
def metrics():
    """Prometheus metrics endpoint for self-monitoring"""
    _record_request('/metrics')
    uptime = time.time() - _metrics['start_time']
    plan = load_plan() or {}
    summary = plan.get('summary', {})

    lines = [
        "# HELP overlay_ui_requests_total Total number of HTTP requests",
        "# TYPE overlay_ui_requests_total counter",
        f"overlay_ui_requests_total {_metrics['requests_total']}",
        "",
        "# HELP overlay_ui_errors_total Total number of errors",
        "# TYPE overlay_ui_errors_total counter",
        f"overlay_ui_errors_total {_metrics['errors_total']}",
        "",
        "# HELP overlay_ui_uptime_seconds UI uptime in seconds",
        "# TYPE overlay_ui_uptime_seconds gauge",
        f"overlay_ui_uptime_seconds {uptime:.2f}",
        "",
        "# HELP overlay_plan_available Whether an overlay plan file exists",
        "# TYPE overlay_plan_available gauge",
        f"overlay_plan_available {1 if plan else 0}",
    ]

    lines.append("")
    lines.append("# HELP overlay_plan_overlays Overlays in the last plan by action")
    lines.append("# TYPE overlay_plan_overlays gauge")
    for action in ('create', 'delete', 'invalid'):
        lines.append(f'overlay_plan_overlays{{action="{action}"}} {summary.get(f"{action}_count", 0)}')

    lines.append("")
    lines.append("# HELP overlay_plan_preference_overlays NodePool preference overlays in the last plan")
    lines.append("# TYPE overlay_plan_preference_overlays gauge")
    lines.append(f"overlay_plan_preference_overlays {summary.get('preference_count', 0)}")

    # Add per-endpoint metrics
    lines.append("")
    lines.append("# HELP overlay_ui_requests_by_endpoint Requests per endpoint")
    lines.append("# TYPE overlay_ui_requests_by_endpoint counter")
    for endpoint, count in _metrics['requests_by_endpoint'].items():
        lines.append(f'overlay_ui_requests_by_endpoint{{endpoint="{endpoint}"}} {count}')

    return Response('\n'.join(lines), mimetype='text/plain')


if __name__ == '__main__':
    logger.info("Overlay plan status API")
    logger.info("Plan: http://127.0.0.1:8080/api/plan")
    logger.info("Health: http://127.0.0.1:8080/health")
    logger.info("Ready: http://127.0.0.1:8080/ready")
    logger.info("Metrics: http://127.0.0.1:8080/metrics")
    app.run(debug=False, host='127.0.0.1', port=8080)
