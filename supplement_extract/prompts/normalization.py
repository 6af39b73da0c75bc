"""
Normalization Prompt
====================

Turns ranked page blocks plus pattern candidates into one normalized
supplement record.
"""

import json
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import Category, PatternExtractionResult, RankedBlocks


SYSTEM_PROMPT = (
    "You are a data normalizer for supplement products. "
    "You always respond with valid JSON only."
)


class IngredientDocument(BaseModel):
    """One active ingredient, dose per serving in milligrams"""
    name: Optional[str] = Field(default=None, description="Ingredient name")
    dose_mg: Optional[float] = Field(default=None, description="Dose per serving in mg (IU for vitamins given in IU)")
    unit: str = Field(default="mg", description="mg, or IU when the label gives IU")
    is_primary: bool = Field(default=False, description="True for the main active ingredient (at most one)")


class NormalizedRecordDocument(BaseModel):
    """Structured output for supplement normalization"""
    name: Optional[str] = Field(default=None, description="Product name")
    price_sek: Optional[float] = Field(default=None, description="Price in SEK")
    total_servings: Optional[float] = Field(default=None, description="Servings per container")
    serving_size: Optional[str] = Field(default=None, description="Serving size, e.g. '2 capsules' or '10 g'")
    active_ingredients: List[IngredientDocument] = Field(default_factory=list)
    product_type: Optional[str] = Field(default=None, description="capsules, tablets, powder or liquid")
    confidence: Optional[float] = Field(default=None, description="0-100")


def _block_section(ranked: RankedBlocks, limits: Dict[str, int]) -> str:
    lines = []
    for category in Category:
        blocks = ranked.bucket(category)[:limits['blocks_per_category']]
        if not blocks:
            continue
        lines.append(f"\n{category.value.upper()} BLOCKS:")
        for block in blocks:
            lines.append(json.dumps(block.to_dict(max_text=limits['block_chars']), ensure_ascii=False))
    return '\n'.join(lines)


def _pattern_section(patterns: PatternExtractionResult, limits: Dict[str, int]) -> str:
    summary = {
        'price': patterns.price.value if patterns.price else None,
        'dosages': [f"{d.amount} {d.unit}" for d in patterns.dosages[:limits['dosages']]],
        'quantities': [f"{q.value} ({q.kind})" for q in patterns.quantities[:limits['quantities']]],
        'serving_sizes': [s.describe() for s in patterns.serving_sizes[:limits['serving_sizes']]],
        'ingredients': [
            f"{i.name}: {i.amount} {i.unit}" if i.has_amount else i.name
            for i in patterns.ingredients[:limits['ingredients']]
        ],
        'product_name': patterns.product_name.text if patterns.product_name else None,
    }
    return json.dumps(summary, ensure_ascii=False, indent=2)


def get_prompt(ranked: RankedBlocks, patterns: PatternExtractionResult, limits: Dict[str, int]) -> str:
    """Generate the normalization prompt. Size is bounded by `limits`."""
    return f"""Normalize this supplement product data into a standard format.

Content blocks extracted from the product page (highest relevance first):
{_block_section(ranked, limits)}

Pattern matches found on the page:
{_pattern_section(patterns, limits)}

Return JSON with exactly these fields:
{{
  "name": "product name",
  "price_sek": number,
  "total_servings": number,
  "serving_size": "e.g. 2 capsules",
  "active_ingredients": [{{"name": "ingredient", "dose_mg": number, "unit": "mg", "is_primary": true}}],
  "product_type": "capsules|tablets|powder|liquid",
  "confidence": number between 0 and 100
}}

Rules:
- Convert all doses to mg: 1 g = 1000 mg, 1 mcg = 0.001 mg. Leave IU values as IU and set "unit": "IU".
- Doses are per serving.
- Mark exactly one ingredient as primary.
- Nutrition facts (energy, fat, carbohydrates, sugar, protein, salt) are not active ingredients.
- If a value cannot be found, use null. Do not guess.
- confidence reflects how sure you are about the whole record."""
