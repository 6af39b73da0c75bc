"""
Model normalization: ranked blocks + pattern candidates -> one normalized
supplement record, via a completion service.

Also owns the pattern-only fallback record used when the model path fails.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from .config import Config, config as default_config
from .errors import ExternalServiceError, SchemaValidationError
from .ingredients import display_name, ingredient_key
from .llm_handler import LLMHandler
from .logger import get_stage_logger
from .models import (
    Ingredient, NormalizedSupplementRecord, PatternExtractionResult,
    RankedBlocks, ValidationReport,
)
from .prompts import normalization
from .prompts.normalization import IngredientDocument, NormalizedRecordDocument
from .rules import ExtractionRules, load_rules
from .units import IU, is_convertible, to_mg
from .validation import clamp_primary_flags, validate_document

log = get_stage_logger('normalizer')

CAPSULE_UNITS = ('caps', 'kaps', 'kapslar')
TABLET_UNITS = ('tabs', 'tabl', 'tabletter')


# =============================================================================
# Completion services
# =============================================================================

class CompletionService(ABC):
    """Black-box text completion: payload in, normalized-record document out."""

    name = "completion"

    @abstractmethod
    def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Args:
            payload: {"prompt": str, "pattern_extraction": dict, "block_counts": dict}

        Raises:
            ExternalServiceError on any transport or parsing failure.
        """
        pass


class ClaudeCompletionService(CompletionService):
    """Calls Claude directly with structured (tool) output."""

    name = "claude"

    def __init__(self, handler: Optional[LLMHandler] = None, max_tokens: Optional[int] = None):
        self.handler = handler or LLMHandler()
        self.max_tokens = max_tokens or default_config.NORMALIZER_MAX_TOKENS

    def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = self.handler.call(
            prompt=payload['prompt'],
            response_model=NormalizedRecordDocument,
            max_tokens=self.max_tokens,
            system=normalization.SYSTEM_PROMPT,
        )
        if not result.get('success'):
            raise ExternalServiceError(result.get('error', 'unknown error'), service=self.name)
        return result['data']


class HttpCompletionService(CompletionService):
    """POSTs the payload to a normalization endpoint."""

    name = "http"

    def __init__(self, endpoint: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def complete(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise ExternalServiceError(f"Normalization endpoint failed: {e}", service=self.name) from e
        except ValueError as e:
            raise ExternalServiceError(f"Normalization endpoint returned invalid JSON: {e}",
                                       service=self.name) from e
        if not isinstance(data, dict):
            raise ExternalServiceError("Normalization endpoint returned a non-object", service=self.name)
        data.pop('_metadata', None)
        return data


def build_completion_service(cfg: Config = default_config) -> CompletionService:
    if cfg.NORMALIZER_ENDPOINT:
        return HttpCompletionService(cfg.NORMALIZER_ENDPOINT, timeout=cfg.MODEL_TIMEOUT_S)
    return ClaudeCompletionService(LLMHandler(model=cfg.CLAUDE_MODEL, timeout=cfg.MODEL_TIMEOUT_S), cfg.NORMALIZER_MAX_TOKENS)


# =============================================================================
# Normalizer
# =============================================================================

@dataclass
class NormalizationOutcome:
    success: bool
    record: Optional[NormalizedSupplementRecord] = None
    validation: Optional[ValidationReport] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def ingredient_from_document(doc: IngredientDocument, source: str,
                             rules: Optional[ExtractionRules] = None) -> Ingredient:
    name = doc.name or 'unknown'
    key = ingredient_key(name, rules)
    unit = IU if (doc.unit or '').strip().upper() in ('IU', 'IE') else 'mg'
    return Ingredient(
        key=key,
        display_name=display_name(key, name, rules),
        dosage_mg=float(doc.dose_mg or 0),
        sources=(source,),
        unit=unit,
        is_primary=bool(doc.is_primary),
    )


def record_from_document(doc: NormalizedRecordDocument, rules: Optional[ExtractionRules] = None):
    """Convert a validated model document into a record. Returns (record, warnings)."""
    ingredients = [ingredient_from_document(i, 'model', rules) for i in doc.active_ingredients]
    ingredients, warnings = clamp_primary_flags(ingredients)
    confidence = doc.confidence if doc.confidence is not None else 0
    record = NormalizedSupplementRecord(
        name=doc.name.strip() if doc.name else None,
        price_sek=doc.price_sek,
        total_servings=doc.total_servings,
        serving_size=doc.serving_size,
        active_ingredients=ingredients,
        product_type=doc.product_type,
        confidence=int(round(min(100, max(0, confidence)))),
    )
    return record, warnings


class ModelNormalizer:

    def __init__(self, service: CompletionService, rules: Optional[ExtractionRules] = None):
        self.service = service
        self.rules = rules or load_rules()

    def build_payload(self, ranked: RankedBlocks, patterns: PatternExtractionResult) -> Dict[str, Any]:
        return {
            'prompt': normalization.get_prompt(ranked, patterns, self.rules.prompt_limits),
            'pattern_extraction': patterns.to_dict(),
            'block_counts': ranked.counts(),
        }

    def normalize(self, ranked: RankedBlocks, patterns: PatternExtractionResult, log=log) -> NormalizationOutcome:
        payload = self.build_payload(ranked, patterns)
        log.event('normalization_requested', service=self.service.name, prompt_chars=len(payload['prompt']))

        try:
            document = self.service.complete(payload)
            report = validate_document(document, self.rules)
            if not report.is_valid:
                raise SchemaValidationError('Model output failed validation', report.errors)
            parsed = NormalizedRecordDocument.model_validate(document)
        except ExternalServiceError as e:
            log.event('normalization_failed', reason='service_error', error=str(e)[:200])
            return NormalizationOutcome(success=False, error=str(e))
        except SchemaValidationError as e:
            log.event('normalization_failed', reason='schema', errors=len(e.errors))
            return NormalizationOutcome(success=False, validation=report,
                                        error=f"{e}: {'; '.join(e.errors)}")
        except ValidationError as e:
            log.event('normalization_failed', reason='schema', errors=e.error_count())
            return NormalizationOutcome(success=False, validation=report, error=str(e))

        record, warnings = record_from_document(parsed, self.rules)
        log.event('normalization_succeeded', score=report.score, warnings=len(report.warnings))
        return NormalizationOutcome(
            success=True,
            record=record,
            validation=report,
            warnings=list(report.warnings) + [w for w in warnings if w not in report.warnings],
        )


# =============================================================================
# Pattern-only fallback record
# =============================================================================

def create_fallback_record(patterns: PatternExtractionResult,
                           rules: Optional[ExtractionRules] = None) -> NormalizedSupplementRecord:
    """Best record that can be assembled from pattern candidates alone."""
    rules = rules or load_rules()

    total_servings = None
    serving_size = None
    product_type = None
    if patterns.quantities:
        quantity = patterns.quantities[0]
        total_servings = quantity.value
        if quantity.kind == 'capsules':
            product_type = 'capsules'
            serving_size = '1-2 capsules'
        elif quantity.kind == 'tablets':
            product_type = 'tablets'
            serving_size = '1-2 tablets'

    ingredients = []
    for cand in patterns.ingredients:
        if len(ingredients) >= 5:
            break
        if not cand.has_amount or not is_convertible(cand.unit):
            continue
        dosage = to_mg(cand.amount, cand.unit)
        key = ingredient_key(cand.name, rules)
        ingredients.append(Ingredient(
            key=key,
            display_name=display_name(key, cand.name, rules),
            dosage_mg=dosage.amount,
            sources=('pattern',),
            unit=dosage.unit,
            is_primary=not ingredients,
        ))

    if not serving_size and patterns.serving_sizes:
        serving = patterns.serving_sizes[0]
        serving_size = serving.describe()
        if not product_type:
            if serving.unit in CAPSULE_UNITS:
                product_type = 'capsules'
            elif serving.unit in TABLET_UNITS:
                product_type = 'tablets'
            elif serving.unit == 'g' and serving.amount > 5:
                product_type = 'powder'

    price = patterns.price.value if patterns.price else None

    confidence = 30
    if price and ingredients:
        confidence = 50
    if total_servings and serving_size:
        confidence += 15

    return NormalizedSupplementRecord(
        name=patterns.product_name.text if patterns.product_name else None,
        price_sek=price,
        total_servings=total_servings,
        serving_size=serving_size,
        active_ingredients=tuple(ingredients),
        product_type=product_type,
        confidence=confidence,
    )
