"""YAML rendering of NodeOverlays for dry-run and audit output."""
from typing import Any, Dict, Iterable, Optional

import yaml

from overlay.types import GeneratedOverlay, NodeOverlay


class _Quoted(str):
    """String scalar always emitted double-quoted"""


class _OverlayDumper(yaml.SafeDumper):
    # Indent block sequences under their parent key
    def increase_indent(self, flow=False, indentless=False):
        return super().increase_indent(flow, False)


def _represent_quoted(dumper, data):
    return dumper.represent_scalar('tag:yaml.org,2002:str', str(data), style='"')


_OverlayDumper.add_representer(_Quoted, _represent_quoted)


def _document(overlay: NodeOverlay) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {'name': overlay.name}
    if overlay.labels:
        metadata['labels'] = {k: _Quoted(v) for k, v in overlay.labels.items()}

    spec: Dict[str, Any] = {}
    if overlay.weight is not None:
        spec['weight'] = overlay.weight
    if overlay.price is not None:
        spec['price'] = _Quoted(overlay.price)
    if overlay.price_adjustment is not None:
        spec['priceAdjustment'] = _Quoted(overlay.price_adjustment)
    if overlay.requirements:
        reqs = []
        for req in overlay.requirements:
            item: Dict[str, Any] = {'key': req.key, 'operator': req.operator}
            if req.values:
                item['values'] = [_Quoted(v) for v in req.values]
            reqs.append(item)
        spec['requirements'] = reqs

    return {
        'apiVersion': overlay.api_version,
        'kind': overlay.kind,
        'metadata': metadata,
        'spec': spec,
    }


def render_overlay_yaml(overlay: Optional[NodeOverlay]) -> str:
    """YAML text for one overlay; empty string for None"""
    if overlay is None:
        return ''
    return yaml.dump(
        _document(overlay),
        Dumper=_OverlayDumper,
        sort_keys=False,
        default_flow_style=False,
        width=4096,
    )


def render_overlays_yaml(overlays: Iterable[NodeOverlay]) -> str:
    return '---\n'.join(render_overlay_yaml(o) for o in overlays if o is not None)


def render_plan_yaml(generated: Iterable[GeneratedOverlay]) -> str:
    """Multi-document dry-run output, one document per overlay to create"""
    return render_overlays_yaml(g.resource for g in generated)
