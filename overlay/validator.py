"""
NodeOverlay validation - structural checks before the apply step.
Returns a list of field-tagged errors; never raises.
"""
import re
from dataclasses import dataclass
from typing import List, Optional

from overlay.types import NodeOverlay


VALID_OPERATORS = {'In', 'NotIn', 'Exists', 'DoesNotExist', 'Gt', 'Lt'}
OPERATORS_REQUIRING_VALUES = {'In', 'NotIn'}

NAME_MAX_LENGTH = 253
LABEL_KEY_MAX_LENGTH = 253
LABEL_VALUE_MAX_LENGTH = 63
WEIGHT_MIN = 1
WEIGHT_MAX = 10000

_PRICE_PATTERN = re.compile(r'[0-9]+(\.[0-9]+)?')
_PRICE_ADJUSTMENT_PATTERN = re.compile(r'[+-]?[0-9]+(\.[0-9]+)?%?')


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


def _validate_labels(labels) -> List[ValidationError]:
    errors: List[ValidationError] = []
    for key, value in (labels or {}).items():
        field = f'metadata.labels[{key}]'
        if not isinstance(key, str) or not isinstance(value, str):
            errors.append(ValidationError(field, 'label key and value must be strings'))
            continue
        if len(key) > LABEL_KEY_MAX_LENGTH:
            errors.append(ValidationError(field, f'label key must be {LABEL_KEY_MAX_LENGTH} characters or less'))
        if len(value) > LABEL_VALUE_MAX_LENGTH:
            errors.append(ValidationError(field, f'label value must be {LABEL_VALUE_MAX_LENGTH} characters or less'))
    return errors


def _validate_pricing(overlay: NodeOverlay) -> List[ValidationError]:
    errors: List[ValidationError] = []
    price, adjustment = overlay.price, overlay.price_adjustment

    if price is not None:
        if not isinstance(price, str):
            errors.append(ValidationError('spec.price', f'price must be a string, got {type(price).__name__}'))
        elif price == '':
            errors.append(ValidationError('spec.price', 'price cannot be empty string'))
        elif not _PRICE_PATTERN.fullmatch(price):
            errors.append(ValidationError(
                'spec.price', f'price "{price}" must be a non-negative decimal (e.g., "0.00", "1.5")'
            ))

    if adjustment is not None:
        if not isinstance(adjustment, str):
            errors.append(ValidationError(
                'spec.priceAdjustment', f'price adjustment must be a string, got {type(adjustment).__name__}'
            ))
        elif not _PRICE_ADJUSTMENT_PATTERN.fullmatch(adjustment):
            errors.append(ValidationError(
                'spec.priceAdjustment',
                f'price adjustment "{adjustment}" must be a signed number or percentage (e.g., "-20%", "+0.5")'
            ))
        if price is not None:
            errors.append(ValidationError('spec.priceAdjustment', 'price and priceAdjustment are mutually exclusive'))

    return errors


def validate_overlay(overlay: Optional[NodeOverlay]) -> List[ValidationError]:
    """Validate a generated NodeOverlay

    Checks:
    1. Resource present
    2. Name required, at most 253 characters
    3. Label keys and values are strings; keys at most 253, values at most 63 characters
    4. At least one requirement; each with a key, known operator and values for In/NotIn
    5. Price (if set) is a non-negative decimal string
    6. Price adjustment (if set) is a signed number or percentage, and excludes price
    7. Weight (if set) is an integer within 1-10000
    """
    if overlay is None:
        return [ValidationError('overlay', 'overlay is nil')]

    errors: List[ValidationError] = []

    if not overlay.name:
        errors.append(ValidationError('metadata.name', 'name is required'))
    elif not isinstance(overlay.name, str):
        errors.append(ValidationError('metadata.name', 'name must be a string'))
    elif len(overlay.name) > NAME_MAX_LENGTH:
        errors.append(ValidationError('metadata.name', f'name must be {NAME_MAX_LENGTH} characters or less'))

    errors.extend(_validate_labels(overlay.labels))

    requirements = overlay.requirements or []
    if not requirements:
        errors.append(ValidationError('spec.requirements', 'at least one requirement is required'))
    for i, req in enumerate(requirements):
        if not req.key:
            errors.append(ValidationError(f'spec.requirements[{i}].key', 'requirement key is required'))
        if req.operator not in VALID_OPERATORS:
            errors.append(ValidationError(
                f'spec.requirements[{i}].operator', f'invalid operator "{req.operator}"'
            ))
        elif req.operator in OPERATORS_REQUIRING_VALUES and not req.values:
            errors.append(ValidationError(
                f'spec.requirements[{i}].values', f'operator "{req.operator}" requires at least one value'
            ))

    errors.extend(_validate_pricing(overlay))

    weight = overlay.weight
    if weight is not None:
        # bool is an int subclass but never a meaningful weight
        if isinstance(weight, bool) or not isinstance(weight, int):
            errors.append(ValidationError('spec.weight', f'weight must be an integer, got {weight!r}'))
        elif not (WEIGHT_MIN <= weight <= WEIGHT_MAX):
            errors.append(ValidationError(
                'spec.weight', f'weight {weight} must be between {WEIGHT_MIN} and {WEIGHT_MAX}'
            ))

    return errors
