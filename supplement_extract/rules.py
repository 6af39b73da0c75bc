"""
Versioned rule tables for extraction.

Keywords, regex families, ingredient aliases and thresholds are data, not
code. They live in data/extraction_rules.json and are injected into the
block ranker, pattern extractor and site extractors.
"""

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple

from .config import config

DEFAULT_RULES_PATH = Path(__file__).parent / 'data' / 'extraction_rules.json'


class ExtractionRules:
    """Read-only view over a rule table document with compiled patterns."""

    def __init__(self, data: Dict, source: Optional[str] = None):
        self.data = data
        self.source = source
        self.version = data.get('version', '0')

        flags = re.IGNORECASE
        self.relevance_keywords: Dict[str, List[str]] = data['relevance_keywords']
        self.category_priority: List[str] = data['category_priority']
        self.element_scores: Dict[str, int] = data['element_scores']
        self.attribute_keywords: List[str] = data['attribute_keywords']
        self.bucket_limit: int = data.get('bucket_limit', 5)
        self.scoring: Dict[str, int] = data['scoring']
        self.block_filters: Dict = data['block_filters']
        self.pattern_sources: Dict[str, List[str]] = data['pattern_sources']
        self.pattern_confidence: Dict = data['pattern_confidence']
        self.name_bonus: Dict[str, int] = data['name_bonus']
        self.ranges: Dict[str, List[float]] = data['ranges']
        self.ingredient_aliases: Dict[str, str] = data['ingredient_aliases']
        self.display_names: Dict[str, str] = data['display_names']
        self.caffeine: Dict = data['caffeine']
        self.table_classification: Dict[str, List[str]] = data['table_classification']
        self.macro_gram_threshold: float = data['macro_gram_threshold']
        self.product_types: List[Tuple[str, List[str]]] = [tuple(p) for p in data['product_types']]
        self.default_quantities_g: Dict[str, float] = data['default_quantities_g']
        self.default_serving_g: float = data['default_serving_g']
        self.prompt_limits: Dict[str, int] = data['prompt_limits']

        self.keyword_patterns: Dict[str, Dict[str, Pattern]] = {
            category: {kw: _token_pattern(kw) for kw in keywords}
            for category, keywords in self.relevance_keywords.items()
        }
        self.attribute_patterns: Dict[str, Pattern] = {
            kw: re.compile(re.escape(kw), flags) for kw in self.attribute_keywords
        }
        self.unit_token_pattern: Pattern = re.compile(data['unit_token_pattern'], flags)

        patterns = data['patterns']
        self.price_patterns = _compile_family(patterns['price'])
        self.dosage_patterns = _compile_family(patterns['dosage'])
        self.quantity_patterns = _compile_family(patterns['quantity'])
        self.serving_size_patterns = _compile_family(patterns['serving_size'])
        self.name_patterns = _compile_family(patterns['name'])
        self.ingredient_amount_pattern = re.compile(patterns['ingredient_amount'], flags)
        self.ingredient_list_pattern = re.compile(patterns['ingredient_list'], flags)

    def range(self, name: str) -> Tuple[float, float]:
        low, high = self.ranges[name]
        return low, high

    def __repr__(self):
        return f"ExtractionRules(version={self.version!r}, source={self.source!r})"


def _token_pattern(keyword: str) -> Pattern:
    """Match a keyword as a whole token (letters may not touch either side)."""
    return re.compile(r'(?<![^\W\d_])' + re.escape(keyword) + r'(?![^\W\d_])', re.IGNORECASE)


def _compile_family(family: Dict[str, str]) -> List[Tuple[str, Pattern]]:
    return [(name, re.compile(expr, re.IGNORECASE)) for name, expr in family.items()]


@lru_cache(maxsize=8)
def _load(path: str) -> ExtractionRules:
    with open(path, 'r', encoding='utf-8') as f:
        return ExtractionRules(json.load(f), source=path)


def load_rules(path: Optional[str] = None) -> ExtractionRules:
    """Load (once per path) the rule tables. Defaults to the bundled file."""
    return _load(str(path or config.RULES_PATH or DEFAULT_RULES_PATH))
