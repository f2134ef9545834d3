"""
NodePool preference overlays.

A NodePool opts into instance preferences through numbered annotations:

    capacity-overlays.io/preference.1: "karpenter.k8s.aws/instance-family=c7g,m7g adjust=-20%"
    capacity-overlays.io/preference.2: "kubernetes.io/arch=amd64 adjust=+10%"

Each annotation is one or more label matchers plus a required percentage price
adjustment. Every valid annotation becomes a NodeOverlay scoped to its NodePool
with priceAdjustment set and weight equal to the preference number.

Matcher forms: key=a,b (In), key!=a,b (NotIn), key>N (Gt), key<N (Lt).
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from overlay.generator import (
    LABEL_DISABLED_KEY,
    LABEL_DISABLED_VALUE,
    LABEL_DOMAIN,
    LABEL_MANAGED_BY,
    LABEL_MANAGED_BY_VALUE,
    OP_IN,
)
from overlay.types import NodeOverlay, NodeSelectorRequirement

logger = logging.getLogger(__name__)


ANNOTATION_PREFIX = f"{LABEL_DOMAIN}/preference."

LABEL_PREFERENCE_TYPE = f"{LABEL_DOMAIN}/type"
LABEL_PREFERENCE_TYPE_VALUE = "preference"
LABEL_SOURCE_NODEPOOL = f"{LABEL_DOMAIN}/source-nodepool"
LABEL_PREFERENCE_NUMBER = f"{LABEL_DOMAIN}/preference-number"

LABEL_NODEPOOL = "karpenter.sh/nodepool"

# Labels a preference may match on
SUPPORTED_LABELS = frozenset({
    "karpenter.k8s.aws/instance-family",
    "karpenter.k8s.aws/instance-category",
    "karpenter.k8s.aws/instance-generation",
    "karpenter.k8s.aws/instance-size",
    "karpenter.k8s.aws/instance-cpu",
    "karpenter.k8s.aws/instance-cpu-manufacturer",
    "karpenter.k8s.aws/instance-memory",
    "kubernetes.io/arch",
    "karpenter.sh/capacity-type",
    "node.kubernetes.io/instance-type",
})

OPERATOR_IN = "In"
OPERATOR_NOT_IN = "NotIn"
OPERATOR_GT = "Gt"
OPERATOR_LT = "Lt"

OVERLAY_NAME_PREFIX = "pref"

_ADJUST_KEYWORD = "adjust="
_ADJUSTMENT_PATTERN = re.compile(r'adjust=([+-]?[0-9]+(?:\.[0-9]+)?)%')
_INTEGER_PATTERN = re.compile(r'[+-]?[0-9]+')


@dataclass(frozen=True)
class LabelMatcher:
    key: str
    operator: str
    values: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Preference:
    """One parsed preference annotation"""
    number: int
    nodepool_name: str
    matchers: List[LabelMatcher]
    adjustment: float


class PreferenceParseError(Exception):
    """A preference annotation that could not be parsed; other annotations still apply"""

    def __init__(self, annotation_key: str, message: str):
        super().__init__(f'annotation "{annotation_key}": {message}')
        self.annotation_key = annotation_key
        self.message = message


def _parse_values(raw: str) -> List[str]:
    return [v.strip() for v in raw.split(",") if v.strip()]


def _parse_numeric(expr: str, raw: str, operator: str) -> List[str]:
    val = raw.strip()
    if not _INTEGER_PATTERN.fullmatch(val):
        raise ValueError(f'invalid matcher "{expr}": {operator} operator requires a numeric value, got "{val}"')
    return [val]


def parse_matcher(expr: str) -> LabelMatcher:
    """Parse one label matcher expression; raises ValueError when malformed.

    Operators are tried in order !=, >=/<= (rejected), >, <, = so that '=' never
    shadows '!='.
    """
    expr = expr.strip()
    if not expr:
        raise ValueError("empty matcher expression")

    if "!=" in expr:
        key, raw = expr.split("!=", 1)
        operator, values = OPERATOR_NOT_IN, _parse_values(raw)
    elif ">=" in expr or "<=" in expr:
        raise ValueError(f'invalid matcher "{expr}": >= and <= operators are not supported, use > or <')
    elif ">" in expr:
        key, raw = expr.split(">", 1)
        operator, values = OPERATOR_GT, _parse_numeric(expr, raw, OPERATOR_GT)
    elif "<" in expr:
        key, raw = expr.split("<", 1)
        operator, values = OPERATOR_LT, _parse_numeric(expr, raw, OPERATOR_LT)
    elif "=" in expr:
        key, raw = expr.split("=", 1)
        operator, values = OPERATOR_IN, _parse_values(raw)
    else:
        raise ValueError(f'invalid matcher "{expr}": missing operator (=, !=, >, <)')

    key = key.strip()
    if not key:
        raise ValueError(f'invalid matcher "{expr}": empty label key')
    if key not in SUPPORTED_LABELS:
        raise ValueError(f'unsupported label key "{key}": must be one of the supported Karpenter labels')
    if not values:
        raise ValueError(f'invalid matcher "{expr}": at least one value is required')
    return LabelMatcher(key=key, operator=operator, values=values)


def parse_adjustment(expr: str) -> float:
    """Percentage from an 'adjust=[+-]N%' expression; raises ValueError when malformed"""
    expr = expr.strip()
    m = _ADJUSTMENT_PATTERN.fullmatch(expr)
    if not m:
        raise ValueError(f"invalid adjustment \"{expr}\": expected format 'adjust=[+-]N%' (e.g., 'adjust=-20%')")
    return float(m.group(1))


def parse_preference_value(value: str) -> Tuple[List[LabelMatcher], float]:
    """Matchers and adjustment of one annotation value; raises ValueError when malformed"""
    parts = (value or "").split()
    if not parts:
        raise ValueError("empty preference value")

    matchers: List[LabelMatcher] = []
    adjustment: Optional[float] = None
    for part in parts:
        if part.startswith(_ADJUST_KEYWORD):
            adjustment = parse_adjustment(part)
        else:
            matchers.append(parse_matcher(part))

    if adjustment is None:
        raise ValueError("missing required 'adjust=[+-]N%' expression")
    if not matchers:
        raise ValueError("at least one label matcher is required")
    return matchers, adjustment


def parse_nodepool_preferences(
    annotations: Optional[Mapping[str, str]],
    nodepool_name: str,
) -> Tuple[List[Preference], List[PreferenceParseError]]:
    """Parse every preference annotation of a NodePool.

    Returns (preferences sorted by number, parse errors). A bad annotation is
    reported and skipped; the rest are still returned.
    """
    preferences: List[Preference] = []
    errors: List[PreferenceParseError] = []

    for key in sorted(annotations or {}):
        if not key.startswith(ANNOTATION_PREFIX):
            continue
        raw_number = key[len(ANNOTATION_PREFIX):]
        if not _INTEGER_PATTERN.fullmatch(raw_number):
            errors.append(PreferenceParseError(
                key, f'invalid preference number "{raw_number}": must be a positive integer'
            ))
            continue
        number = int(raw_number)
        if number < 1:
            errors.append(PreferenceParseError(key, f"invalid preference number {number}: must be >= 1"))
            continue

        try:
            matchers, adjustment = parse_preference_value(annotations[key])
        except ValueError as e:
            errors.append(PreferenceParseError(key, str(e)))
            continue

        preferences.append(Preference(
            number=number,
            nodepool_name=nodepool_name,
            matchers=matchers,
            adjustment=adjustment,
        ))

    preferences.sort(key=lambda p: p.number)
    return preferences, errors


def overlay_name_for_preference(nodepool_name: str, number: int) -> str:
    return f"{OVERLAY_NAME_PREFIX}-{nodepool_name}-{number}"


def format_price_adjustment(adjustment: float) -> str:
    """'+40%', '-12.5%' or '0%'"""
    adjustment = round(adjustment, 2)
    if adjustment == 0:
        return "0%"
    text = f"{adjustment:+.2f}".rstrip("0").rstrip(".")
    return f"{text}%"


def is_preference_overlay(labels: Optional[Mapping[str, str]]) -> bool:
    """True for overlays this module generated"""
    labels = labels or {}
    return (labels.get(LABEL_PREFERENCE_TYPE) == LABEL_PREFERENCE_TYPE_VALUE
            and labels.get(LABEL_MANAGED_BY) == LABEL_MANAGED_BY_VALUE)


def source_nodepool(labels: Optional[Mapping[str, str]]) -> str:
    return (labels or {}).get(LABEL_SOURCE_NODEPOOL, "")


def preference_number(labels: Optional[Mapping[str, str]]) -> int:
    """Preference number from overlay labels; 0 when absent or malformed"""
    raw = (labels or {}).get(LABEL_PREFERENCE_NUMBER, "")
    if not _INTEGER_PATTERN.fullmatch(raw):
        return 0
    return int(raw)


class PreferenceOverlayGenerator:
    def __init__(self, disabled: bool = False):
        self.disabled = disabled

    def generate_labels(self, pref: Preference) -> Dict[str, str]:
        labels = {
            LABEL_MANAGED_BY: LABEL_MANAGED_BY_VALUE,
            LABEL_PREFERENCE_TYPE: LABEL_PREFERENCE_TYPE_VALUE,
            LABEL_SOURCE_NODEPOOL: pref.nodepool_name,
            LABEL_PREFERENCE_NUMBER: str(pref.number),
        }
        if self.disabled:
            labels[LABEL_DISABLED_KEY] = LABEL_DISABLED_VALUE
        return labels

    def generate_requirements(self, pref: Preference) -> List[NodeSelectorRequirement]:
        requirements: List[NodeSelectorRequirement] = []
        if self.disabled:
            requirements.append(NodeSelectorRequirement(LABEL_DISABLED_KEY, OP_IN, [LABEL_DISABLED_VALUE]))
        # Always scoped to the NodePool that declared the preference
        requirements.append(NodeSelectorRequirement(LABEL_NODEPOOL, OP_IN, [pref.nodepool_name]))
        for matcher in pref.matchers:
            requirements.append(NodeSelectorRequirement(matcher.key, matcher.operator, list(matcher.values)))
        return requirements

    def generate(self, pref: Preference) -> NodeOverlay:
        return NodeOverlay(
            name=overlay_name_for_preference(pref.nodepool_name, pref.number),
            labels=self.generate_labels(pref),
            requirements=self.generate_requirements(pref),
            price_adjustment=format_price_adjustment(pref.adjustment),
            weight=pref.number,
        )

    def generate_all(self, prefs: Iterable[Preference]) -> List[NodeOverlay]:
        """One overlay per preference, in input order"""
        overlays = [self.generate(p) for p in prefs]
        logger.debug(f"Generated {len(overlays)} preference overlays")
        return overlays
