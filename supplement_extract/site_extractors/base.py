"""
Base class for site-specific structured extractors.

A site extractor knows one shop's markup well enough to read the nutrition
table, price and container size directly. Everything that is not
site-specific lives here: table classification, unit handling with the
macro/dose gram threshold, caffeine summation, struck-price rejection and
the container-size fallback tiers.
"""

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..ingredients import clean_name, known_key
from ..logger import get_stage_logger
from ..models import (
    ExtractionMetadata, IngredientEntry, StructuredSupplementData, UnrecognizedIngredient,
)
from ..rules import ExtractionRules, load_rules
from ..units import IU, parse_number, to_mg


class TableKind(Enum):
    NUTRITIONAL = "nutritional"
    SUPPLEMENT = "supplement"


class QuantityTier(Enum):
    """Where the container size came from, most to least reliable."""
    HEADER_TEXT = "header_text"
    METADATA = "metadata"
    URL = "url"
    PRODUCT_TYPE_DEFAULT = "product_type_default"


TIER_PENALTY = {
    QuantityTier.HEADER_TEXT: 0.0,
    QuantityTier.METADATA: 0.05,
    QuantityTier.URL: 0.1,
    QuantityTier.PRODUCT_TYPE_DEFAULT: 0.2,
}

STRUCK_TAGS = ('s', 'del', 'strike')
STRUCK_CLASSES = ('strikethrough', 'crossed-out', 'old-price', 'line-through')
# class names match as whole hyphen/underscore-delimited parts: 'product-old-price' yes, 'bold-price' no
STRUCK_CLASS_PATTERN = re.compile(
    r'(?:^|[-_])(?:' + '|'.join(re.escape(c) for c in STRUCK_CLASSES) + r')(?:$|[-_])'
)

DOSAGE_PATTERN = re.compile(r'(\d+(?:[.,]\d+)?)\s*(mg|mcg|µg|μg|g|iu|ie)(?![^\W\d_])', re.IGNORECASE)
HEADER_SERVING_PATTERN = re.compile(
    r'per\s+(?:skopa|portion|serving|scoop)\s*\((\d+(?:[.,]\d+)?)\s*g\)|(\d+(?:[.,]\d+)?)\s*g(?![^\W\d_])',
    re.IGNORECASE
)
WEIGHT_PATTERN = re.compile(r'(\d+(?:[.,]\d+)?)\s*(kg|kilogram|gram|grams|g)(?![^\W\d_])', re.IGNORECASE)
URL_WEIGHT_PATTERN = re.compile(r'[\-_/](\d+)[\-_]?(kg|g)(?![a-z])', re.IGNORECASE)
# '1 299 kr': space or no-break space as thousands separator
_AMOUNT = r'(\d{1,3}(?:[ \u00a0]\d{3})+|\d+)'
PRICE_PATTERNS = (
    re.compile(_AMOUNT + r'\s*kr', re.IGNORECASE),
    re.compile(_AMOUNT + r'\s*:-'),
    re.compile(r'kr\s*' + _AMOUNT, re.IGNORECASE),
)
BARE_NUMBER = re.compile(r'(\d+(?:[.,]\d+)?)')


@dataclass
class TableRow:
    label: str
    value_text: str
    amount: Optional[float] = None
    unit: Optional[str] = None
    dosage_mg: Optional[float] = None
    is_included: bool = False
    key: Optional[str] = None


@dataclass
class StructuredExtractionResult:
    """Raw output of a site extractor, before to_structured_format()."""
    product_name: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    quantity_unit: Optional[str] = None
    quantity_tier: Optional[QuantityTier] = None
    serving_size: Optional[str] = None
    serving_size_g: Optional[float] = None
    product_type: str = "default"
    table_found: bool = False
    table_kind: Optional[TableKind] = None
    rows: List[TableRow] = field(default_factory=list)
    ingredients: Dict[str, IngredientEntry] = field(default_factory=dict)
    unrecognized: List[UnrecognizedIngredient] = field(default_factory=list)
    nutritional_facts: Dict[str, float] = field(default_factory=dict)
    total_caffeine_mg: Optional[float] = None
    errors: List[str] = field(default_factory=list)


class SiteExtractor(ABC):
    """Structured extractor for one shop."""

    site_domain = ""
    name = ""

    def __init__(self, rules: Optional[ExtractionRules] = None):
        self.rules = rules or load_rules()
        self.log = get_stage_logger(f'site.{self.name}')
        tc = self.rules.table_classification
        self._macro_keywords = [k.lower() for k in tc['macro_keywords']]
        self._active_keywords = [k.lower() for k in tc['active_keywords']]
        self._header_keywords = [k.lower() for k in tc['header_keywords']]

    def can_handle(self, url: str) -> bool:
        host = (urlparse(url or '').hostname or '').lower()
        return bool(self.site_domain) and (host == self.site_domain or host.endswith('.' + self.site_domain))

    @abstractmethod
    def extract(self, markup: str, url: Optional[str] = None) -> StructuredExtractionResult:
        """Read the product page. Must not raise on unexpected markup."""
        pass

    def to_structured_format(self, result: StructuredExtractionResult) -> StructuredSupplementData:
        serving_g = result.serving_size_g or self.rules.default_serving_g
        servings = None
        if result.quantity and result.quantity_unit == 'g' and serving_g:
            servings = math.floor(result.quantity / serving_g)

        metadata = ExtractionMetadata(
            table_found=result.table_found,
            table_kind=result.table_kind.value if result.table_kind else None,
            ingredient_list_found=bool(result.ingredients),
            serving_size_found=result.serving_size is not None,
            price_found=result.price is not None,
            quantity_found=result.quantity is not None,
            quantity_tier=result.quantity_tier.value if result.quantity_tier else None,
            confidence=self.confidence(result),
            site_domain=self.site_domain,
            extractor_used=self.name,
            extracted_at=datetime.now(timezone.utc).isoformat(),
            rules_version=self.rules.version,
        )
        return StructuredSupplementData(
            product_name=result.product_name,
            serving_size=result.serving_size or f"{_fmt(serving_g)} g",
            servings_per_container=servings,
            ingredients=dict(result.ingredients),
            unrecognized_ingredients=list(result.unrecognized),
            total_caffeine_mg=result.total_caffeine_mg,
            nutritional_facts=dict(result.nutritional_facts),
            extraction_metadata=metadata,
            price=result.price,
            quantity=result.quantity,
            quantity_unit=result.quantity_unit,
        )

    def confidence(self, result: StructuredExtractionResult) -> float:
        """0..1; lowered for every piece that came from a weaker source."""
        score = 0.9 if result.table_found and result.ingredients else 0.3
        if result.quantity_tier is not None:
            score -= TIER_PENALTY[result.quantity_tier]
        if result.serving_size is None:
            score -= 0.1
        if result.price is None:
            score -= 0.05
        return round(min(1.0, max(0.0, score)), 2)

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def _keyword_hits(self, label: str) -> Tuple[int, int]:
        text = label.lower()
        macro = sum(1 for k in self._macro_keywords if k in text)
        active = sum(1 for k in self._active_keywords if k in text)
        return macro, active

    def classify_table(self, labels: Sequence[str]) -> TableKind:
        """
        Majority vote of row labels. A row votes for the class with more
        keyword hits; on a tied vote, more total macro hits means nutritional.
        """
        macro_votes = active_votes = macro_total = active_total = 0
        for label in labels:
            macro, active = self._keyword_hits(label)
            macro_total += macro
            active_total += active
            if macro > active:
                macro_votes += 1
            elif active > macro:
                active_votes += 1

        if macro_votes != active_votes:
            return TableKind.NUTRITIONAL if macro_votes > active_votes else TableKind.SUPPLEMENT
        return TableKind.NUTRITIONAL if macro_total > active_total else TableKind.SUPPLEMENT

    def is_macro_label(self, label: str) -> bool:
        macro, active = self._keyword_hits(label)
        return macro > active

    def is_header_label(self, label: str) -> bool:
        text = label.lower()
        return any(k in text for k in self._header_keywords)

    def parse_row(self, label: str, value_text: str) -> TableRow:
        """
        Parse one table row. Gram amounts at or above the macro threshold are
        nutrition data (not included); smaller ones are supplement doses.
        """
        row = TableRow(label=label, value_text=value_text, key=known_key(label, self.rules))
        match = DOSAGE_PATTERN.search(value_text)
        if not match:
            return row

        row.amount = parse_number(match.group(1))
        row.unit = match.group(2).lower()
        dosage = to_mg(row.amount, row.unit)
        row.dosage_mg = dosage.amount
        if dosage.unit == IU:
            row.unit = IU
            row.is_included = True
        elif row.unit == 'g':
            row.is_included = row.amount < self.rules.macro_gram_threshold
        else:
            row.is_included = True
        return row

    def parse_table(self, table: Tag, result: StructuredExtractionResult):
        """Fill rows, serving size and table kind on `result` from a <table>."""
        result.table_found = True
        labels = []
        for tr in table.find_all('tr'):
            cells = [' '.join(c.get_text(' ', strip=True).split()) for c in tr.find_all(['td', 'th'])]
            if len(cells) < 2:
                continue
            label, value_text = cells[0], cells[1]
            if self.is_header_label(label):
                match = HEADER_SERVING_PATTERN.search(' '.join(cells))
                if match and result.serving_size_g is None:
                    result.serving_size_g = parse_number(match.group(1) or match.group(2))
                    result.serving_size = f"{_fmt(result.serving_size_g)} g"
                continue
            labels.append(label)
            result.rows.append(self.parse_row(label, value_text))

        result.table_kind = self.classify_table(labels)
        self.build_ingredients(result)

    def build_ingredients(self, result: StructuredExtractionResult):
        """
        Sort rows into ingredients, unrecognized ingredients and nutrition facts.

        Macro-labelled rows are always nutrition facts. Known ingredients are
        ingredients (when under the gram threshold). Unknown rows are
        unrecognized ingredients in a supplement table and nutrition facts in
        a nutritional one.
        """
        for row in result.rows:
            if row.amount is None:
                continue
            if row.key and row.is_included:
                entry = result.ingredients.get(row.key)
                if entry is None:
                    result.ingredients[row.key] = IngredientEntry(
                        is_included=True, dosage_mg=row.dosage_mg, sources=(row.label,),
                        raw_name=row.label, unit=row.unit if row.unit == IU else 'mg',
                    )
                else:
                    result.ingredients[row.key] = IngredientEntry(
                        is_included=True, dosage_mg=entry.dosage_mg + row.dosage_mg,
                        sources=entry.sources + (row.label,), raw_name=entry.raw_name, unit=entry.unit,
                    )
            elif (not row.key and not self.is_macro_label(row.label)
                  and result.table_kind == TableKind.SUPPLEMENT and row.is_included):
                result.unrecognized.append(UnrecognizedIngredient(
                    name=row.label, dosage_mg=row.dosage_mg, unit=row.unit if row.unit == IU else 'mg',
                    description=f"Unmapped table row: {row.value_text}",
                ))
            else:
                fact = re.sub(r'[^a-z0-9åäö]+', '_', clean_name(row.label)).strip('_')
                result.nutritional_facts[f"{fact}_{row.unit}"] = row.amount

        self.apply_caffeine_total(result)

    def apply_caffeine_total(self, result: StructuredExtractionResult):
        """Single derived caffeine entry: direct caffeine + blends + green tea share."""
        caffeine = self.rules.caffeine
        total = 0.0
        sources = []
        for row in result.rows:
            if not row.key or not row.is_included or row.unit == IU:
                continue
            if row.key in caffeine['direct'] or row.key in caffeine['blends']:
                total += row.dosage_mg
                sources.append(row.label)
            elif row.key in caffeine['green_tea']:
                share = row.dosage_mg * caffeine['green_tea_ratio']
                total += share
                sources.append(row.label)
                entry = result.ingredients[row.key]
                result.ingredients[row.key] = IngredientEntry(
                    is_included=entry.is_included, dosage_mg=entry.dosage_mg, sources=entry.sources,
                    raw_name=entry.raw_name, unit=entry.unit,
                    caffeine_content_mg=round(entry.dosage_mg * caffeine['green_tea_ratio'], 1),
                )

        if total > 0:
            result.total_caffeine_mg = round(total)
            result.ingredients['caffeine'] = IngredientEntry(
                is_included=True, dosage_mg=round(total), sources=tuple(sources),
                raw_name=sources[0], calculated=len(sources) > 1 or 'caffeine' not in result.ingredients,
            )

    # -------------------------------------------------------------------------
    # Price
    # -------------------------------------------------------------------------

    @staticmethod
    def is_struck(tag: Tag, stop: Optional[Tag] = None) -> bool:
        """True if the tag, or an ancestor up to `stop`, is styled as a crossed-out price."""
        node = tag
        while isinstance(node, Tag):
            if node.name in STRUCK_TAGS:
                return True
            style = (node.get('style') or '').replace(' ', '').lower()
            if 'line-through' in style:
                return True
            classes = [c.lower() for c in (node.get('class') or [])]
            if any(STRUCK_CLASS_PATTERN.search(c) for c in classes):
                return True
            if node is stop:
                break
            node = node.parent
        return False

    def parse_price_text(self, text: str, allow_bare: bool = True) -> Optional[float]:
        low, high = self.rules.range('site_price')
        patterns = PRICE_PATTERNS + ((BARE_NUMBER,) if allow_bare else ())
        for pattern in patterns:
            for match in pattern.finditer(text or ''):
                value = parse_number(match.group(1))
                if value is not None and low <= value <= high:
                    return value
        return None

    # -------------------------------------------------------------------------
    # Container size
    # -------------------------------------------------------------------------

    def weight_from_text(self, text: str) -> Optional[float]:
        """First container weight in grams within the plausible range."""
        low, high = self.rules.range('container_grams')
        for match in WEIGHT_PATTERN.finditer(text or ''):
            grams = parse_number(match.group(1))
            if grams is None:
                continue
            if match.group(2).lower().startswith('k'):
                grams *= 1000
            if low <= grams <= high:
                return grams
        return None

    def weight_from_url(self, url: Optional[str]) -> Optional[float]:
        low, high = self.rules.range('container_grams')
        path = urlparse(url or '').path
        for match in URL_WEIGHT_PATTERN.finditer(path):
            grams = float(match.group(1)) * (1000 if match.group(2).lower() == 'kg' else 1)
            if low <= grams <= high:
                return grams
        return None

    def weight_from_meta(self, soup: BeautifulSoup) -> Optional[float]:
        for selector in ('meta[property="product:weight"]', 'meta[property="product:size"]',
                         'meta[name="weight"]', '[itemprop="weight"]'):
            el = soup.select_one(selector)
            if not el:
                continue
            grams = self.weight_from_text(el.get('content') or el.get_text(' ', strip=True))
            if grams:
                return grams
        return None

    def detect_product_type(self, name: Optional[str]) -> str:
        text = (name or '').lower()
        for product_type, keywords in self.rules.product_types:
            if any(re.search(r'(?<![^\W\d_])' + re.escape(k) + r'(?![^\W\d_])', text) for k in keywords):
                return product_type
        return 'default'

    def resolve_quantity(self, result: StructuredExtractionResult, header_texts: Sequence[str],
                         soup: BeautifulSoup, url: Optional[str]):
        """Header text -> metadata -> URL -> product-type default."""
        for text in header_texts:
            grams = self.weight_from_text(text)
            if grams:
                result.quantity, result.quantity_unit, result.quantity_tier = grams, 'g', QuantityTier.HEADER_TEXT
                return

        grams = self.weight_from_meta(soup)
        if grams:
            result.quantity, result.quantity_unit, result.quantity_tier = grams, 'g', QuantityTier.METADATA
            return

        grams = self.weight_from_url(url)
        if grams:
            result.quantity, result.quantity_unit, result.quantity_tier = grams, 'g', QuantityTier.URL
            return

        defaults = self.rules.default_quantities_g
        result.quantity = float(defaults.get(result.product_type, defaults['default']))
        result.quantity_unit = 'g'
        result.quantity_tier = QuantityTier.PRODUCT_TYPE_DEFAULT


def _fmt(value: float):
    return int(value) if float(value).is_integer() else value
