"""
Site-specific structured extractors, in dispatch priority order.
"""

from typing import List, Optional

from ..rules import ExtractionRules
from .base import (
    QuantityTier, SiteExtractor, StructuredExtractionResult, TableKind, TableRow,
)
from .tillskottsbolaget import TillskottsbolagetExtractor


def default_site_extractors(rules: Optional[ExtractionRules] = None) -> List[SiteExtractor]:
    return [
        TillskottsbolagetExtractor(rules),
    ]


def find_site_extractor(url: str, extractors: List[SiteExtractor]) -> Optional[SiteExtractor]:
    """First extractor (in priority order) that accepts the URL."""
    for extractor in extractors:
        if extractor.can_handle(url):
            return extractor
    return None
