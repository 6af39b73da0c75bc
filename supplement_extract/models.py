"""
Data models for supplement extraction.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple, Iterable


class BlockKind(Enum):
    TABLE = "table"
    LIST = "list"
    PARAGRAPH = "paragraph"
    SPAN = "span"
    CONTAINER = "container"
    HEADING = "heading"


class Category(Enum):
    """Relevance category. Declaration order is the categorisation priority."""
    PRICE = "price"
    INGREDIENT = "ingredient"
    DOSAGE = "dosage"
    QUANTITY = "quantity"
    NUTRITIONAL = "nutritional"
    OTHER = "other"


class ExtractionSource(Enum):
    """Which path produced the final record."""
    AI_NORMALIZED = "ai_normalized"
    PATTERN_FALLBACK = "pattern_fallback"
    PATTERN_WITH_VISION = "pattern_with_vision"
    PARTIAL_WITH_USER_INPUT = "partial_with_user_input"
    MINIMAL_STRUCTURE = "minimal_structure"
    SITE_SPECIFIC = "site_specific"
    PARALLEL_MERGED = "parallel_merged"
    USER_COMPLETED = "user_completed"


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


# =============================================================================
# Blocks
# =============================================================================

@dataclass(frozen=True)
class BlockStructure:
    """Row/column grid of a table, or the items of a list."""
    rows: Tuple[Tuple[str, ...], ...] = ()
    items: Tuple[str, ...] = ()

    @property
    def n_rows(self) -> int:
        return len(self.rows)

    @property
    def n_columns(self) -> int:
        return max((len(r) for r in self.rows), default=0)

    def lines(self) -> List[str]:
        """One string per row ('cell: cell') or per item."""
        if self.rows:
            return [': '.join(c for c in row if c) for row in self.rows if any(row)]
        return [item for item in self.items if item]


@dataclass(frozen=True)
class SemanticBlock:
    """A candidate fragment of the page. Immutable."""
    kind: BlockKind
    tag: str
    text: str
    raw_markup: str
    class_name: str = ""
    element_id: str = ""
    structure: Optional[BlockStructure] = None
    position: int = 0  # document order

    def lines(self) -> List[str]:
        if self.structure:
            lines = self.structure.lines()
            if lines:
                return lines
        return [self.text]


@dataclass(frozen=True)
class BlockSet:
    """Output of the block extractor, partitioned by kind."""
    tables: Tuple[SemanticBlock, ...] = ()
    lists: Tuple[SemanticBlock, ...] = ()
    paragraphs: Tuple[SemanticBlock, ...] = ()
    spans: Tuple[SemanticBlock, ...] = ()
    containers: Tuple[SemanticBlock, ...] = ()
    headings: Tuple[SemanticBlock, ...] = ()

    def all(self) -> List[SemanticBlock]:
        """Every block in document order."""
        blocks = (self.tables + self.lists + self.paragraphs +
                  self.spans + self.containers + self.headings)
        return sorted(blocks, key=lambda b: b.position)

    def counts(self) -> Dict[str, int]:
        return {
            'tables': len(self.tables),
            'lists': len(self.lists),
            'paragraphs': len(self.paragraphs),
            'spans': len(self.spans),
            'containers': len(self.containers),
            'headings': len(self.headings),
        }

    @property
    def count(self) -> int:
        return sum(self.counts().values())

    def is_empty(self) -> bool:
        return self.count == 0


@dataclass(frozen=True)
class ScoreBreakdown:
    element: int = 0
    keywords: int = 0
    numbers: int = 0
    units: int = 0
    attributes: int = 0
    matched_keywords: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    @property
    def total(self) -> int:
        return self.element + self.keywords + self.numbers + self.units + self.attributes

    def matched(self, category: str) -> Tuple[str, ...]:
        for name, keywords in self.matched_keywords:
            if name == category:
                return keywords
        return ()


@dataclass(frozen=True)
class RankedBlock:
    """A block with its relevance score and category. Never mutated."""
    block: SemanticBlock
    relevance_score: int
    category: Category
    breakdown: ScoreBreakdown = ScoreBreakdown()

    @property
    def text(self) -> str:
        return self.block.text

    @property
    def kind(self) -> BlockKind:
        return self.block.kind

    @property
    def tag(self) -> str:
        return self.block.tag

    @property
    def raw_markup(self) -> str:
        return self.block.raw_markup

    def to_dict(self, max_text: Optional[int] = None) -> Dict[str, Any]:
        text = self.text if max_text is None else self.text[:max_text]
        data = {
            'score': self.relevance_score,
            'category': self.category.value,
            'element': self.tag,
            'text': text,
        }
        if self.block.structure and self.block.structure.rows:
            data['table_structure'] = {
                'rows': self.block.structure.n_rows,
                'columns': self.block.structure.n_columns,
            }
        return data


@dataclass(frozen=True)
class RankedBlocks:
    """Ranked blocks bucketed by category, each bucket sorted and bounded."""
    price: Tuple[RankedBlock, ...] = ()
    ingredient: Tuple[RankedBlock, ...] = ()
    dosage: Tuple[RankedBlock, ...] = ()
    quantity: Tuple[RankedBlock, ...] = ()
    nutritional: Tuple[RankedBlock, ...] = ()
    other: Tuple[RankedBlock, ...] = ()

    def bucket(self, category) -> Tuple[RankedBlock, ...]:
        name = category.value if isinstance(category, Category) else category
        return getattr(self, name)

    def buckets(self, categories: Iterable) -> List[RankedBlock]:
        blocks = []
        for category in categories:
            blocks.extend(self.bucket(category))
        return blocks

    def all_blocks(self) -> List[RankedBlock]:
        """All kept blocks, highest score first (ties keep bucket priority)."""
        blocks = self.buckets(Category)
        return sorted(blocks, key=lambda b: -b.relevance_score)

    def top(self, category) -> Optional[RankedBlock]:
        bucket = self.bucket(category)
        return bucket[0] if bucket else None

    def counts(self) -> Dict[str, int]:
        return {c.value: len(self.bucket(c)) for c in Category}

    @property
    def total(self) -> int:
        return sum(self.counts().values())


# =============================================================================
# Pattern extraction
# =============================================================================

@dataclass(frozen=True)
class PriceCandidate:
    value: float
    pattern: str
    context: str
    block_score: int


@dataclass(frozen=True)
class DosageCandidate:
    amount: float
    unit: str
    context: str
    block_score: int


@dataclass(frozen=True)
class QuantityCandidate:
    value: int
    kind: str  # capsules, tablets, servings, pieces, count_generic
    context: str
    block_score: int


@dataclass(frozen=True)
class ServingSizeCandidate:
    amount: float
    unit: str
    kind: str  # per_serving, daily_dose, recommended
    context: str
    block_score: int

    def describe(self) -> str:
        amount = int(self.amount) if float(self.amount).is_integer() else self.amount
        return f"{amount} {self.unit}"


@dataclass(frozen=True)
class IngredientCandidate:
    name: str
    amount: Optional[float]
    unit: Optional[str]
    context: str
    block_score: int
    source: str = "amount"  # amount | list

    @property
    def has_amount(self) -> bool:
        return self.amount is not None


@dataclass(frozen=True)
class NameCandidate:
    text: str
    source: str  # heading | markup
    score: int


@dataclass(frozen=True)
class PatternExtractionResult:
    price: Optional[PriceCandidate] = None
    prices: Tuple[PriceCandidate, ...] = ()
    dosages: Tuple[DosageCandidate, ...] = ()
    quantities: Tuple[QuantityCandidate, ...] = ()
    serving_sizes: Tuple[ServingSizeCandidate, ...] = ()
    ingredients: Tuple[IngredientCandidate, ...] = ()
    product_name: Optional[NameCandidate] = None
    name_candidates: Tuple[NameCandidate, ...] = ()
    confidence_scores: Tuple[Tuple[str, int], ...] = ()
    widened: bool = False

    def confidence(self, field_name: str) -> int:
        return dict(self.confidence_scores).get(field_name, 0)

    @property
    def overall_confidence(self) -> int:
        return self.confidence('overall')

    def to_dict(self) -> Dict[str, Any]:
        data = _jsonable(asdict(self))
        data['confidence_scores'] = dict(self.confidence_scores)
        return data


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class Ingredient:
    """Canonical ingredient. dosage_mg is milligrams unless unit == 'IU'."""
    key: str
    display_name: str
    dosage_mg: float
    is_included: bool = True
    sources: Tuple[str, ...] = ()
    unit: str = "mg"
    is_primary: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'name': self.display_name,
            'dose_mg': self.dosage_mg,
            'unit': self.unit,
            'is_included': self.is_included,
            'is_primary': self.is_primary,
            'sources': list(self.sources),
        }


MAX_PRIMARY_INGREDIENTS = 2


@dataclass(frozen=True)
class NormalizedSupplementRecord:
    name: Optional[str] = None
    price_sek: Optional[float] = None
    total_servings: Optional[float] = None
    serving_size: Optional[str] = None
    active_ingredients: Tuple[Ingredient, ...] = ()
    product_type: Optional[str] = None
    confidence: int = 0

    def __post_init__(self):
        primaries = sum(1 for i in self.active_ingredients if i.is_primary)
        if primaries > MAX_PRIMARY_INGREDIENTS:
            raise ValueError(f"{primaries} primary ingredients (max {MAX_PRIMARY_INGREDIENTS})")
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence {self.confidence} outside 0..100")

    @property
    def primary_ingredients(self) -> List[Ingredient]:
        return [i for i in self.active_ingredients if i.is_primary]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'price_sek': self.price_sek,
            'total_servings': self.total_servings,
            'serving_size': self.serving_size,
            'active_ingredients': [i.to_dict() for i in self.active_ingredients],
            'product_type': self.product_type,
            'confidence': self.confidence,
        }


@dataclass(frozen=True)
class IngredientEntry:
    """Ingredient as reported by a site-specific extractor."""
    is_included: bool
    dosage_mg: float
    sources: Tuple[str, ...] = ()
    raw_name: str = ""
    calculated: bool = False
    unit: str = "mg"
    caffeine_content_mg: Optional[float] = None


@dataclass(frozen=True)
class UnrecognizedIngredient:
    name: str
    dosage_mg: Optional[float]
    unit: str = "mg"
    description: str = ""


@dataclass
class ExtractionMetadata:
    table_found: bool = False
    table_kind: Optional[str] = None
    ingredient_list_found: bool = False
    serving_size_found: bool = False
    price_found: bool = False
    quantity_found: bool = False
    quantity_tier: Optional[str] = None
    confidence: float = 0.0  # 0..1
    site_domain: str = ""
    extractor_used: str = ""
    extracted_at: str = ""
    method: str = "structured"
    rules_version: str = ""


@dataclass
class StructuredSupplementData:
    product_name: Optional[str] = None
    serving_size: Optional[str] = None
    servings_per_container: Optional[int] = None
    ingredients: Dict[str, IngredientEntry] = field(default_factory=dict)
    unrecognized_ingredients: List[UnrecognizedIngredient] = field(default_factory=list)
    total_caffeine_mg: Optional[float] = None
    nutritional_facts: Dict[str, float] = field(default_factory=dict)
    extraction_metadata: ExtractionMetadata = field(default_factory=ExtractionMetadata)
    price: Optional[float] = None
    quantity: Optional[float] = None
    quantity_unit: Optional[str] = None

    def included_ingredients(self) -> Dict[str, IngredientEntry]:
        return {k: v for k, v in self.ingredients.items() if v.is_included}

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


# =============================================================================
# Validation & results
# =============================================================================

@dataclass(frozen=True)
class UserInputPrompt:
    field: str
    prompt: str
    input_type: str  # text | number | ingredient_list | manual_form
    suggestion: Optional[str] = None
    example: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ValidationReport:
    """Schema-level validation of a model document."""
    is_valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    score: int = 0


@dataclass(frozen=True)
class CompletenessReport:
    """Required-field check of a record."""
    completeness: int
    required_fields: Tuple[Tuple[str, bool], ...]
    missing_fields: Tuple[str, ...]
    is_valid: bool
    is_acceptable: bool


@dataclass(frozen=True)
class ExtractionResult:
    """Final pipeline output. Built by ExtractionResultBuilder, then frozen."""
    success: bool
    source: ExtractionSource
    record: NormalizedSupplementRecord
    structured: Optional[StructuredSupplementData] = None
    fallbacks_used: Tuple[str, ...] = ()
    missing_fields: Tuple[str, ...] = ()
    user_input_needed: Tuple[UserInputPrompt, ...] = ()
    completeness: int = 0
    warnings: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'source': self.source.value,
            'data': self.record.to_dict(),
            'structured_data': self.structured.to_dict() if self.structured else None,
            'fallbacks_used': list(self.fallbacks_used),
            'missing_fields': list(self.missing_fields),
            'user_input_needed': [p.to_dict() for p in self.user_input_needed],
            'completeness': self.completeness,
            'warnings': list(self.warnings),
            'metadata': _jsonable(self.metadata),
        }


class ExtractionResultBuilder:
    """Mutable accumulator owned by one orchestrator run."""

    def __init__(self):
        self.success = False
        self.source = ExtractionSource.MINIMAL_STRUCTURE
        self.record = NormalizedSupplementRecord()
        self.structured: Optional[StructuredSupplementData] = None
        self.fallbacks_used: List[str] = []
        self.missing_fields: List[str] = []
        self.user_input_needed: List[UserInputPrompt] = []
        self.completeness = 0
        self.warnings: List[str] = []
        self.metadata: Dict[str, Any] = {}
        self._frozen = False

    def add_fallback(self, identifier: str):
        self.fallbacks_used.append(identifier)

    def warn(self, message: str):
        if message not in self.warnings:
            self.warnings.append(message)

    def freeze(self) -> ExtractionResult:
        if self._frozen:
            raise RuntimeError("Result already frozen")
        self._frozen = True
        return ExtractionResult(
            success=self.success,
            source=self.source,
            record=self.record,
            structured=self.structured,
            fallbacks_used=tuple(self.fallbacks_used),
            missing_fields=tuple(self.missing_fields),
            user_input_needed=tuple(self.user_input_needed),
            completeness=self.completeness,
            warnings=tuple(self.warnings),
            metadata=dict(self.metadata),
        )


@dataclass
class PageData:
    """Loaded page data."""
    url: str
    html: str
    title: Optional[str] = None
