"""
Validation / fallback chain.

    ModelNormalization -> PatternFallback -> VisionFallback
        -> PartialWithUserInput -> MinimalStructure

States only move forward, so a run visits at most five states and never
repeats one. Every state entered after the first is appended to
`fallbacks_used`. Service errors and timeouts are recorded as the reason for
moving on; they never propagate.
"""

import asyncio
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import Config, config as default_config
from .errors import ExternalServiceError
from .logger import get_stage_logger
from .models import (
    BlockKind, Category, CompletenessReport, ExtractionSource,
    NormalizedSupplementRecord, PatternExtractionResult, RankedBlocks, UserInputPrompt,
)
from .normalizer import ModelNormalizer, create_fallback_record
from .patterns import PatternExtractor
from .prompts import vision as vision_prompt
from .rules import ExtractionRules, load_rules
from .validation import check_completeness
from .vision import (
    VISION_FIELDS, VisionService, find_best_block_for_vision, merge_vision_data,
    needs_vision, parse_vision_document,
)

log = get_stage_logger('fallback')

_FIRST_NUMBER = re.compile(r'\d+(?:[.,]\d+)?')

INGREDIENT_EXAMPLE = "Creatine: 5000mg, Caffeine: 100mg"

SERVICE_WORKERS = 4


def service_executor(max_workers: int = SERVICE_WORKERS) -> ThreadPoolExecutor:
    """Worker pool for blocking service calls (model, vision, site extractors)."""
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='supplement-service')


async def run_blocking(executor: ThreadPoolExecutor, fn, *args, timeout: float):
    """
    Run a blocking call on `executor` under a timeout.

    A call that times out is abandoned, not joined: the pool is not the
    event loop's default executor, so asyncio.run() returns without waiting
    for it. The worker finishes in the background.
    """
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(loop.run_in_executor(executor, fn, *args), timeout=timeout)


class FallbackState(Enum):
    MODEL_NORMALIZATION = "model_normalization"
    PATTERN_FALLBACK = "pattern_fallback"
    VISION_FALLBACK = "vision_fallback"
    PARTIAL_WITH_USER_INPUT = "partial_with_user_input"
    MINIMAL_STRUCTURE = "minimal_structure"


STATE_ORDER = list(FallbackState)


@dataclass
class FallbackOutcome:
    success: bool
    source: ExtractionSource
    record: NormalizedSupplementRecord
    completeness: CompletenessReport
    states_visited: List[FallbackState] = field(default_factory=list)
    fallbacks_used: List[str] = field(default_factory=list)
    user_input_needed: List[UserInputPrompt] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class _Run:
    ranked: RankedBlocks
    patterns: PatternExtractionResult
    fallback_name: Optional[str]
    log: object
    record: Optional[NormalizedSupplementRecord] = None
    report: Optional[CompletenessReport] = None
    success: bool = False
    source: ExtractionSource = ExtractionSource.MINIMAL_STRUCTURE
    fallbacks_used: List[str] = field(default_factory=list)
    user_input_needed: List[UserInputPrompt] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def keep_if_better(self, record: NormalizedSupplementRecord, cfg: Config) -> bool:
        report = check_completeness(record, cfg.VALID_COMPLETENESS, cfg.ACCEPTABLE_COMPLETENESS)
        if self.report is None or report.completeness > self.report.completeness:
            self.record, self.report = record, report
            return True
        return False


class FallbackOrchestrator:

    def __init__(self, normalizer: Optional[ModelNormalizer] = None,
                 vision_service: Optional[VisionService] = None,
                 pattern_extractor: Optional[PatternExtractor] = None,
                 rules: Optional[ExtractionRules] = None,
                 config: Config = default_config,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.rules = rules or load_rules()
        self.executor = executor or service_executor()
        self.normalizer = normalizer
        self.vision_service = vision_service
        self.pattern_extractor = pattern_extractor or PatternExtractor(self.rules)
        self.config = config
        self._handlers: Dict[FallbackState, Callable] = {
            FallbackState.MODEL_NORMALIZATION: self._model_normalization,
            FallbackState.PATTERN_FALLBACK: self._pattern_fallback,
            FallbackState.VISION_FALLBACK: self._vision_fallback,
            FallbackState.PARTIAL_WITH_USER_INPUT: self._partial_with_user_input,
            FallbackState.MINIMAL_STRUCTURE: self._minimal_structure,
        }

    async def run(self, ranked: RankedBlocks, patterns: PatternExtractionResult,
                  fallback_name: Optional[str] = None, log=log) -> FallbackOutcome:
        run = _Run(ranked=ranked, patterns=patterns, fallback_name=fallback_name, log=log)
        visited: List[FallbackState] = []
        state: Optional[FallbackState] = FallbackState.MODEL_NORMALIZATION

        while state is not None:
            if visited and STATE_ORDER.index(state) <= STATE_ORDER.index(visited[-1]):
                raise RuntimeError(f"Fallback chain moved backwards: {visited[-1].value} -> {state.value}")
            if visited:
                run.fallbacks_used.append(state.value)
                log.event('fallback_transition', from_state=visited[-1].value, to_state=state.value)
            visited.append(state)
            state = await self._handlers[state](run)

        log.event('fallback_finished', success=run.success, source=run.source.value,
                  completeness=run.report.completeness, states=len(visited))
        return FallbackOutcome(
            success=run.success,
            source=run.source,
            record=run.record,
            completeness=run.report,
            states_visited=visited,
            fallbacks_used=run.fallbacks_used,
            user_input_needed=run.user_input_needed,
            warnings=run.warnings,
        )

    async def _call(self, fn, *args, timeout: float):
        return await run_blocking(self.executor, fn, *args, timeout=timeout)

    # -------------------------------------------------------------------------
    # States
    # -------------------------------------------------------------------------

    async def _model_normalization(self, run: _Run) -> Optional[FallbackState]:
        if self.normalizer is None:
            run.warnings.append('Model normalization not configured')
            return FallbackState.PATTERN_FALLBACK

        try:
            outcome = await self._call(self.normalizer.normalize, run.ranked, run.patterns,
                                       run.log.bind('normalizer'), timeout=self.config.MODEL_TIMEOUT_S)
        except asyncio.TimeoutError:
            run.warnings.append(f'Model normalization timed out after {self.config.MODEL_TIMEOUT_S}s')
            run.log.event('model_normalization_timeout', timeout_s=self.config.MODEL_TIMEOUT_S)
            return FallbackState.PATTERN_FALLBACK
        except Exception as e:
            run.warnings.append(f'Model normalization error: {e}')
            run.log.event('model_normalization_error', error_type=type(e).__name__, error=str(e)[:200])
            return FallbackState.PATTERN_FALLBACK

        if not outcome.success:
            run.warnings.append(f'Model normalization failed: {outcome.error}')
            return FallbackState.PATTERN_FALLBACK

        run.warnings.extend(outcome.warnings)
        run.keep_if_better(outcome.record, self.config)
        if run.report.is_valid:
            run.success = True
            run.source = ExtractionSource.AI_NORMALIZED
            return None

        run.warnings.append(f'Model record incomplete ({run.report.completeness}%)')
        return FallbackState.PATTERN_FALLBACK

    async def _pattern_fallback(self, run: _Run) -> Optional[FallbackState]:
        run.keep_if_better(create_fallback_record(run.patterns, self.rules), self.config)

        if not run.report.is_valid:
            # retry with every regex family over every bucket
            widened = self.pattern_extractor.extract(run.ranked, widen=True, log=run.log.bind('patterns'))
            if run.keep_if_better(create_fallback_record(widened, self.rules), self.config):
                run.fallbacks_used.append('pattern_fallback_widened')

        if run.report.is_valid:
            run.success = True
            run.source = ExtractionSource.PATTERN_FALLBACK
            return None

        if needs_vision(list(run.report.missing_fields)):
            return FallbackState.VISION_FALLBACK
        return self._after_automatic_stages(run)

    async def _vision_fallback(self, run: _Run) -> Optional[FallbackState]:
        block = find_best_block_for_vision(run.ranked)
        if self.vision_service is None or block is None:
            reason = 'not configured' if self.vision_service is None else 'no ingredient/nutrition block'
            run.warnings.append(f'Vision fallback skipped: {reason}')
            return self._after_automatic_stages(run)

        missing = [f for f in run.report.missing_fields if f in VISION_FIELDS]
        prompt = vision_prompt.get_prompt(missing)
        run.log.event('vision_requested', block_category=block.category.value,
                      block_score=block.relevance_score, missing=','.join(missing))

        try:
            data = await self._call(self.vision_service.analyze, block.raw_markup, prompt, missing,
                                    timeout=self.config.VISION_TIMEOUT_S)
            document = parse_vision_document(data)
        except asyncio.TimeoutError:
            run.warnings.append(f'Vision fallback timed out after {self.config.VISION_TIMEOUT_S}s')
            run.log.event('vision_timeout', timeout_s=self.config.VISION_TIMEOUT_S)
            return self._after_automatic_stages(run)
        except ExternalServiceError as e:
            run.warnings.append(f'Vision fallback failed: {e}')
            run.log.event('vision_failed', error=str(e)[:200])
            return self._after_automatic_stages(run)
        except Exception as e:
            run.warnings.append(f'Vision fallback error: {e}')
            run.log.event('vision_failed', error_type=type(e).__name__, error=str(e)[:200])
            return self._after_automatic_stages(run)

        merged = merge_vision_data(run.record, document, self.rules)
        run.keep_if_better(merged, self.config)
        run.log.event('vision_merged', completeness=run.report.completeness)

        if run.report.is_acceptable:
            run.success = True
            run.source = ExtractionSource.PATTERN_WITH_VISION
            return None
        return self._after_automatic_stages(run)

    def _after_automatic_stages(self, run: _Run) -> FallbackState:
        if run.report and run.report.completeness > 0:
            return FallbackState.PARTIAL_WITH_USER_INPUT
        return FallbackState.MINIMAL_STRUCTURE

    async def _partial_with_user_input(self, run: _Run) -> None:
        run.success = False
        run.source = ExtractionSource.PARTIAL_WITH_USER_INPUT
        run.user_input_needed = build_user_prompts(run.report.missing_fields, run.ranked,
                                                   run.patterns, run.record)
        return None

    async def _minimal_structure(self, run: _Run) -> None:
        name = None
        if run.patterns.product_name:
            name = run.patterns.product_name.text
        record = minimal_record(name or run.fallback_name)
        run.record = record
        run.report = check_completeness(record, self.config.VALID_COMPLETENESS,
                                        self.config.ACCEPTABLE_COMPLETENESS)
        run.success = False
        run.source = ExtractionSource.MINIMAL_STRUCTURE
        run.user_input_needed = build_user_prompts(run.report.missing_fields, run.ranked,
                                                   run.patterns, record)
        return None


# =============================================================================
# User input prompts
# =============================================================================

def minimal_record(name: Optional[str]) -> NormalizedSupplementRecord:
    """Best-guess name only, zero confidence."""
    return NormalizedSupplementRecord(name=name or None, confidence=0)


def _first_number(text: str) -> Optional[str]:
    match = _FIRST_NUMBER.search(text or '')
    return match.group(0) if match else None


def suggest_name(ranked: RankedBlocks, patterns: PatternExtractionResult) -> Optional[str]:
    for block in ranked.all_blocks():
        if block.kind == BlockKind.HEADING:
            return block.text
    return patterns.product_name.text if patterns.product_name else None


def suggest_serving_size(ranked: RankedBlocks) -> Optional[str]:
    block = ranked.top(Category.DOSAGE)
    if not block:
        return None
    text = block.text.lower()
    if 'kaps' in text or 'caps' in text:
        return '2 capsules'
    if 'tabl' in text or 'tabs' in text:
        return '1 tablet'
    if 'skopa' in text or 'scoop' in text:
        return '1 scoop'
    return None


def build_user_prompts(missing: List[str], ranked: RankedBlocks, patterns: PatternExtractionResult,
                       record: Optional[NormalizedSupplementRecord] = None) -> List[UserInputPrompt]:
    """One prompt per missing field, each with a best-effort suggestion."""
    prompts = []
    for field_name in missing:
        if field_name == 'name':
            prompts.append(UserInputPrompt('name', 'What is the product name?', 'text',
                                           suggestion=suggest_name(ranked, patterns)))
        elif field_name == 'price_sek':
            top = ranked.top(Category.PRICE)
            prompts.append(UserInputPrompt('price_sek', 'What is the price in SEK?', 'number',
                                           suggestion=_first_number(top.text) if top else None))
        elif field_name == 'total_servings':
            top = ranked.top(Category.QUANTITY)
            prompts.append(UserInputPrompt('total_servings', 'How many servings does the package contain?',
                                           'number', suggestion=_first_number(top.text) if top else None))
        elif field_name == 'serving_size':
            prompts.append(UserInputPrompt('serving_size', 'What is the recommended serving size?', 'text',
                                           suggestion=suggest_serving_size(ranked)))
        elif field_name == 'active_ingredients':
            prompts.append(UserInputPrompt('active_ingredients',
                                           'List the active ingredients with their dose per serving',
                                           'ingredient_list', example=INGREDIENT_EXAMPLE))
        elif field_name == 'ingredient_doses' and 'active_ingredients' not in missing:
            names = [i.display_name for i in record.active_ingredients] if record else []
            prompts.append(UserInputPrompt('active_ingredients',
                                           'Enter the dose per serving for each active ingredient',
                                           'ingredient_list',
                                           suggestion=', '.join(f"{n}: ? mg" for n in names) or None,
                                           example=INGREDIENT_EXAMPLE))
    return prompts
