"""
Supplement Extract
==================

Turns a supplement product page (HTML + URL) into a normalized record:
name, price, servings, serving size and active ingredients with doses.

    from supplement_extract import SupplementExtractor
    result = SupplementExtractor().extract_sync(html, url)
"""

from .config import Config, config
from .errors import (
    ExternalServiceError, ExtractionError, MalformedInputError, SchemaValidationError, UnitConversionError,
)
from .extractor import (
    SupplementExtractor, extract_supplement_data, get_extraction_summary, parse_ingredient_input,
)
from .mapping import record_to_structured, structured_to_record, to_legacy_format
from .models import (
    ExtractionResult, ExtractionSource, Ingredient, NormalizedSupplementRecord, StructuredSupplementData,
)

__version__ = "0.1.0"
