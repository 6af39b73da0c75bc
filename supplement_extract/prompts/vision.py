"""
Vision Fallback Prompt
======================

Reads the fields the text pipeline could not find from a rendered image of
the most relevant block.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from .normalization import IngredientDocument


class VisionDocument(BaseModel):
    """Structured output for the vision fallback. Only requested fields are set."""
    active_ingredients: Optional[List[IngredientDocument]] = Field(default=None)
    serving_size: Optional[str] = Field(default=None, description="Serving size, e.g. '1 scoop (10 g)'")
    total_servings: Optional[float] = Field(default=None, description="Servings per container")
    confidence: float = Field(default=0, description="0-100")


FIELD_FOCUS = {
    'active_ingredients': "Focus on the active ingredients and their dose per serving.",
    'ingredient_doses': "Read the dose of every active ingredient per serving.",
    'serving_size': "Find the recommended serving size or daily dose.",
    'total_servings': "Find how many servings the container holds.",
}


def get_prompt(missing_fields: List[str]) -> str:
    """Generate a prompt scoped to the missing fields."""
    focus = [FIELD_FOCUS[f] for f in missing_fields if f in FIELD_FOCUS]
    return "\n".join([
        "Extract supplement information from this product page section.",
        *focus,
        "",
        "Return JSON with only the fields you can read:",
        '{"active_ingredients": [{"name": "...", "dose_mg": number, "unit": "mg", "is_primary": true}],',
        ' "serving_size": "...", "total_servings": number, "confidence": 0-100}',
        "Convert doses to mg (1 g = 1000 mg, 1 mcg = 0.001 mg); keep IU as IU.",
    ])
