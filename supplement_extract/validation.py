"""
Record validation: schema checks for model documents and the required-field
completeness check shared by every stage of the fallback chain.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import config
from .models import (
    CompletenessReport, Ingredient, MAX_PRIMARY_INGREDIENTS,
    NormalizedSupplementRecord, ValidationReport,
)
from .rules import ExtractionRules, load_rules

REQUIRED_FIELDS = (
    'name',
    'price_sek',
    'total_servings',
    'serving_size',
    'active_ingredients',
    'ingredient_doses',
)

ERROR_PENALTY = 25
WARNING_PENALTY = 5


def required_field_status(record: NormalizedSupplementRecord) -> Dict[str, bool]:
    name = (record.name or '').strip()
    return {
        'name': len(name) > 2,
        'price_sek': bool(record.price_sek and record.price_sek > 0),
        'total_servings': bool(record.total_servings and record.total_servings > 0),
        'serving_size': len((record.serving_size or '').strip()) > 2,
        'active_ingredients': len(record.active_ingredients) > 0,
        'ingredient_doses': any(i.dosage_mg > 0 for i in record.active_ingredients),
    }


def check_completeness(record: NormalizedSupplementRecord,
                       valid_threshold: int = config.VALID_COMPLETENESS,
                       acceptable_threshold: int = config.ACCEPTABLE_COMPLETENESS) -> CompletenessReport:
    """Percentage of required fields present, rounded."""
    status = required_field_status(record)
    present = sum(1 for ok in status.values() if ok)
    completeness = round(present / len(REQUIRED_FIELDS) * 100)
    return CompletenessReport(
        completeness=completeness,
        required_fields=tuple(status.items()),
        missing_fields=tuple(name for name, ok in status.items() if not ok),
        is_valid=completeness >= valid_threshold,
        is_acceptable=completeness >= acceptable_threshold,
    )


def missing_fields(record: NormalizedSupplementRecord) -> List[str]:
    return [name for name, ok in required_field_status(record).items() if not ok]


def validate_document(doc: Dict[str, Any], rules: Optional[ExtractionRules] = None) -> ValidationReport:
    """
    Validate a normalized-record document as returned by the completion
    service. Errors make the document unusable; warnings only lower the score.
    """
    rules = rules or load_rules()
    errors: List[str] = []
    warnings: List[str] = []

    name = doc.get('name')
    if not isinstance(name, str) or len(name.strip()) < 3:
        errors.append('Product name missing or too short')

    price = doc.get('price_sek')
    if not _is_number(price) or price <= 0:
        errors.append('Invalid price')

    servings = doc.get('total_servings')
    if not _is_number(servings) or servings <= 0:
        errors.append('Invalid total servings')

    if not isinstance(doc.get('serving_size'), str):
        errors.append('Missing serving size')

    ingredients = doc.get('active_ingredients')
    if not isinstance(ingredients, list) or not ingredients:
        errors.append('No active ingredients')
        ingredients = []

    primaries = 0
    for i, ing in enumerate(ingredients):
        if not isinstance(ing, dict):
            errors.append(f'Ingredient {i} is not an object')
            continue
        if not ing.get('name'):
            errors.append(f'Ingredient {i} missing name')
        dose = ing.get('dose_mg')
        if not _is_number(dose) or dose < 0:
            errors.append(f'Ingredient {i} invalid dose')
        if 'is_primary' in ing and not isinstance(ing['is_primary'], bool):
            warnings.append(f'Ingredient {i} is_primary should be boolean')
        if ing.get('is_primary') is True:
            primaries += 1

    if ingredients:
        warnings.extend(primary_count_warnings(primaries))

    if not doc.get('product_type'):
        warnings.append('Missing product type')

    confidence = doc.get('confidence')
    if not _is_number(confidence) or not 0 <= confidence <= 100:
        warnings.append('Invalid confidence score')

    if _is_number(price) and price > 0:
        low, high = rules.range('model_price_warning')
        if not low <= price <= high:
            warnings.append(f'Unusual price: {price} SEK')

    if _is_number(servings) and servings > 0:
        low, high = rules.range('model_servings_warning')
        if not low <= servings <= high:
            warnings.append(f'Unusual serving count: {servings}')

    score = max(0, 100 - ERROR_PENALTY * len(errors) - WARNING_PENALTY * len(warnings))
    return ValidationReport(
        is_valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        score=score,
    )


def primary_count_warnings(primaries: int) -> List[str]:
    if primaries == 0:
        return ['No primary ingredient marked']
    if primaries > MAX_PRIMARY_INGREDIENTS:
        return [f'Too many primary ingredients: {primaries}']
    return []


def clamp_primary_flags(ingredients: Sequence[Ingredient]) -> Tuple[Tuple[Ingredient, ...], List[str]]:
    """
    Keep the primary flags of a list within bounds.

    More than two primaries is collapsed to the first one; zero is left as-is.
    Returns the new tuple and any warnings.
    """
    count = sum(1 for i in ingredients if i.is_primary)
    warnings = primary_count_warnings(count) if ingredients else []
    if count <= MAX_PRIMARY_INGREDIENTS:
        return tuple(ingredients), warnings

    clamped = []
    seen_primary = False
    for ing in ingredients:
        if ing.is_primary and seen_primary:
            ing = replace(ing, is_primary=False)
        elif ing.is_primary:
            seen_primary = True
        clamped.append(ing)
    return tuple(clamped), warnings


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
