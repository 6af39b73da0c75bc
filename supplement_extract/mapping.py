"""
Conversion between site-extractor output (StructuredSupplementData) and the
pipeline's NormalizedSupplementRecord.

For ingredients with a known key the mapping is lossless in both
directions: inclusion flag, dosage, unit and sources survive a round trip.
"""

import re
from typing import Any, Dict, List, Optional

from .ingredients import display_name, is_known
from .models import (
    ExtractionMetadata, Ingredient, IngredientEntry, NormalizedSupplementRecord,
    StructuredSupplementData, UnrecognizedIngredient,
)
from .rules import ExtractionRules, load_rules
from .validation import clamp_primary_flags

_UNITS = re.compile(r'\b(kapslar|kaps|caps|capsules|tabletter|tabl|tabs|tablets|g|ml)\b', re.IGNORECASE)


def product_type_from_serving(serving_size: Optional[str]) -> Optional[str]:
    match = _UNITS.search(serving_size or '')
    if not match:
        return None
    unit = match.group(1).lower()
    if unit.startswith(('kap', 'cap')):
        return 'capsules'
    if unit.startswith('tab'):
        return 'tablets'
    if unit == 'ml':
        return 'liquid'
    return 'powder'


def _primary_key(ingredients: Dict[str, IngredientEntry]) -> Optional[str]:
    """Largest milligram dose among included ingredients."""
    best = None
    for key, entry in ingredients.items():
        if not entry.is_included or entry.unit != 'mg':
            continue
        if best is None or entry.dosage_mg > ingredients[best].dosage_mg:
            best = key
    return best


def structured_to_record(data: StructuredSupplementData,
                         rules: Optional[ExtractionRules] = None) -> NormalizedSupplementRecord:
    rules = rules or load_rules()
    primary = _primary_key(data.ingredients)

    ingredients = [
        Ingredient(
            key=key,
            display_name=display_name(key, entry.raw_name, rules),
            dosage_mg=entry.dosage_mg,
            is_included=entry.is_included,
            sources=tuple(entry.sources),
            unit=entry.unit,
            is_primary=key == primary,
        )
        for key, entry in data.ingredients.items()
    ]
    ingredients.extend(
        Ingredient(
            key=re.sub(r'[^a-z0-9]+', '_', u.name.lower()).strip('_') or 'unknown',
            display_name=u.name,
            dosage_mg=u.dosage_mg or 0.0,
            is_included=True,
            sources=(u.name,),
            unit=u.unit,
        )
        for u in data.unrecognized_ingredients
    )
    ingredients, _ = clamp_primary_flags(ingredients)

    return NormalizedSupplementRecord(
        name=data.product_name,
        price_sek=data.price,
        total_servings=data.servings_per_container,
        serving_size=data.serving_size,
        active_ingredients=ingredients,
        product_type=product_type_from_serving(data.serving_size),
        confidence=int(round(data.extraction_metadata.confidence * 100)),
    )


def record_to_structured(record: NormalizedSupplementRecord,
                         rules: Optional[ExtractionRules] = None,
                         metadata: Optional[ExtractionMetadata] = None) -> StructuredSupplementData:
    rules = rules or load_rules()
    ingredients: Dict[str, IngredientEntry] = {}
    unrecognized: List[UnrecognizedIngredient] = []

    for ing in record.active_ingredients:
        if is_known(ing.key, rules):
            ingredients[ing.key] = IngredientEntry(
                is_included=ing.is_included,
                dosage_mg=ing.dosage_mg,
                sources=tuple(ing.sources),
                raw_name=ing.sources[0] if ing.sources else ing.display_name,
                unit=ing.unit,
            )
        else:
            unrecognized.append(UnrecognizedIngredient(
                name=ing.display_name, dosage_mg=ing.dosage_mg, unit=ing.unit,
            ))

    caffeine = ingredients.get('caffeine')
    metadata = metadata or ExtractionMetadata(
        ingredient_list_found=bool(ingredients),
        serving_size_found=record.serving_size is not None,
        price_found=record.price_sek is not None,
        quantity_found=record.total_servings is not None,
        confidence=record.confidence / 100,
        method='normalized',
    )
    return StructuredSupplementData(
        product_name=record.name,
        serving_size=record.serving_size,
        servings_per_container=int(record.total_servings) if record.total_servings else None,
        ingredients=ingredients,
        unrecognized_ingredients=unrecognized,
        total_caffeine_mg=caffeine.dosage_mg if caffeine and caffeine.is_included else None,
        extraction_metadata=metadata,
        price=record.price_sek,
    )


def to_legacy_format(data: StructuredSupplementData) -> Dict[str, Any]:
    """Collapse structured data into a single active-ingredient summary."""
    included = data.included_ingredients()
    names = [display_name(key, entry.raw_name) for key, entry in included.items()]
    return {
        'name': data.product_name,
        'price': data.price,
        'serving_size': data.serving_size,
        'servings_per_container': data.servings_per_container,
        'active_ingredient': ' + '.join(names) if names else None,
        'dosage_per_unit': sum(e.dosage_mg for e in included.values() if e.unit == 'mg') or None,
        'total_caffeine_mg': data.total_caffeine_mg,
        'confidence': data.extraction_metadata.confidence,
        'structured_data': data.to_dict(),
    }
