"""
Supplement Extractor
====================

Top-level orchestrator. For one page (markup + URL) it:

1. Picks a site-specific extractor, if one accepts the URL
2. Runs it and/or the legacy pipeline
   (blocks -> ranking -> patterns -> fallback chain), sequentially or in
   parallel depending on the site's configured mode
3. Merges, validates and freezes one ExtractionResult

extract() never raises: any unexpected error ends in a minimal record.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import unquote, urlparse

from .blocks import BlockExtractor
from .config import Config, config as default_config
from .errors import MalformedInputError
from .fallback import (
    FallbackOrchestrator, FallbackOutcome, build_user_prompts, minimal_record, run_blocking, service_executor,
)
from .ingredients import display_name, ingredient_key
from .logger import get_stage_logger, new_correlation_id
from .mapping import structured_to_record
from .models import (
    BlockSet, ExtractionResult, ExtractionResultBuilder, ExtractionSource, Ingredient,
    NormalizedSupplementRecord, PatternExtractionResult, RankedBlocks, StructuredSupplementData,
)
from .normalizer import CompletionService, ModelNormalizer, build_completion_service
from .patterns import PatternExtractor
from .ranker import RelevanceRanker
from .rules import ExtractionRules, load_rules
from .site_extractors import SiteExtractor, default_site_extractors, find_site_extractor
from .units import parse_number, to_mg
from .validation import check_completeness, clamp_primary_flags
from .vision import VisionService, build_vision_service

_TITLE = re.compile(r'<title[^>]*>([^<]+)</title>', re.IGNORECASE)
_INGREDIENT_INPUT = re.compile(r'^([^:]+):\s*(\d+(?:[.,]\d+)?)\s*(mg|g|mcg|µg|μg|iu|ie)?', re.IGNORECASE)

USER_CONFIDENCE_BOOST = 40
USER_CONFIDENCE_CAP = 90


class ExtractionMode(Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


@dataclass
class LegacyRun:
    blocks: BlockSet
    ranked: RankedBlocks
    patterns: PatternExtractionResult
    outcome: FallbackOutcome


# =============================================================================
# Name heuristics
# =============================================================================

def product_name_from_url(url: str) -> Optional[str]:
    """'https://shop.se/pwo/c4-ripped-400g.html' -> 'C4 Ripped 400G'"""
    path = unquote(urlparse(url or '').path)
    segments = [s for s in path.split('/') if s]
    if not segments:
        return None
    slug = re.sub(r'\.(html?|aspx?|php)$', '', segments[-1], flags=re.IGNORECASE)
    slug = re.sub(r'[-_]\d{4,}$', '', slug)  # trailing article ids
    name = ' '.join(re.split(r'[-_+]+', slug)).strip()
    if len(name) <= 2 or name.isdigit():
        return None
    return name.title()


def title_from_markup(markup: str) -> Optional[str]:
    match = _TITLE.search(markup or '')
    if not match:
        return None
    title = re.split(r'\s+[|–-]\s+', ' '.join(match.group(1).split()))[0].strip()
    return title or None


def guess_product_name(url: str, markup: str) -> Optional[str]:
    return product_name_from_url(url) or title_from_markup(markup)


# =============================================================================
# User input
# =============================================================================

def parse_ingredient_input(text: str, rules: Optional[ExtractionRules] = None) -> List[Ingredient]:
    """
    Parse 'Creatine: 5000mg, Caffeine: 100mg' into ingredients.

    Unit defaults to mg; a bare name gets dose 0. The first entry is primary.
    """
    ingredients = []
    for part in re.split(r'[,;]', text or ''):
        part = part.strip()
        if not part:
            continue
        match = _INGREDIENT_INPUT.match(part)
        if match:
            name = match.group(1).strip()
            dosage = to_mg(parse_number(match.group(2)), match.group(3) or 'mg')
            amount, unit = dosage.amount, dosage.unit
        elif len(part) > 1:
            name, amount, unit = part.rstrip(':').strip(), 0.0, 'mg'
        else:
            continue
        key = ingredient_key(name, rules)
        ingredients.append(Ingredient(
            key=key,
            display_name=display_name(key, name, rules),
            dosage_mg=amount,
            sources=('user',),
            unit=unit,
            is_primary=not ingredients,
        ))
    return ingredients


def _apply_user_input(record: NormalizedSupplementRecord, user_input: Dict[str, Any],
                      rules: Optional[ExtractionRules]) -> NormalizedSupplementRecord:
    changes: Dict[str, Any] = {}
    if user_input.get('name'):
        changes['name'] = str(user_input['name']).strip()
    for numeric in ('price_sek', 'total_servings'):
        if user_input.get(numeric) not in (None, ''):
            value = parse_number(user_input[numeric])
            if value is not None:
                changes[numeric] = value
    if user_input.get('serving_size'):
        changes['serving_size'] = str(user_input['serving_size']).strip()
    if user_input.get('product_type'):
        changes['product_type'] = str(user_input['product_type']).strip()

    ingredients = user_input.get('active_ingredients')
    if isinstance(ingredients, str):
        ingredients = parse_ingredient_input(ingredients, rules)
    if ingredients:
        changes['active_ingredients'], _ = clamp_primary_flags(ingredients)

    changes['confidence'] = min(USER_CONFIDENCE_CAP, record.confidence + USER_CONFIDENCE_BOOST)
    return replace(record, **changes)


def get_extraction_summary(result: ExtractionResult) -> Dict[str, Any]:
    """Compact overview of one extraction for logs and the CLI."""
    record = result.record
    return {
        'success': result.success,
        'source': result.source.value,
        'completeness': result.completeness,
        'confidence': record.confidence,
        'fallbacks_used': list(result.fallbacks_used),
        'missing_fields': list(result.missing_fields),
        'needs_user_input': bool(result.user_input_needed),
        'blocks': result.metadata.get('block_counts', {}),
        'patterns': result.metadata.get('pattern_counts', {}),
        'final_data': {
            'has_name': bool(record.name),
            'has_price': record.price_sek is not None,
            'has_servings': record.total_servings is not None,
            'has_serving_size': bool(record.serving_size),
            'ingredients': len(record.active_ingredients),
            'primary': [i.display_name for i in record.primary_ingredients],
        },
        'site_extractor': result.metadata.get('site_extractor'),
        'mode': result.metadata.get('mode'),
    }


# =============================================================================
# Orchestrator
# =============================================================================

class SupplementExtractor:
    """
    Main extraction entry point.

    Services are injectable; by default they are built from config (HTTP
    endpoints when configured, otherwise Claude directly).
    """

    def __init__(self, config: Config = default_config,
                 rules: Optional[ExtractionRules] = None,
                 completion_service: Optional[CompletionService] = None,
                 vision_service: Optional[VisionService] = None,
                 site_extractors: Optional[List[SiteExtractor]] = None):
        self.config = config
        self.rules = rules or load_rules(config.RULES_PATH)
        self.block_extractor = BlockExtractor(self.rules)
        self.ranker = RelevanceRanker(self.rules)
        self.pattern_extractor = PatternExtractor(self.rules, config.PATTERN_CONFIDENCE_CAP)
        self.completion_service = completion_service or build_completion_service(config)
        self.vision_service = vision_service or build_vision_service(config)
        self.site_extractors = (site_extractors if site_extractors is not None
                                else default_site_extractors(self.rules))
        # shared by site extractors and the fallback chain; never joined on timeout
        self.executor = service_executor()
        self.fallback = FallbackOrchestrator(
            normalizer=ModelNormalizer(self.completion_service, self.rules),
            vision_service=self.vision_service,
            pattern_extractor=self.pattern_extractor,
            rules=self.rules,
            config=config,
            executor=self.executor,
        )

    def mode_for(self, url: str, log) -> ExtractionMode:
        raw = self.config.mode_for(urlparse(url or '').hostname or '')
        try:
            return ExtractionMode(raw)
        except ValueError:
            log.event('unknown_mode', level=logging.WARNING, mode=raw)
            return ExtractionMode.SEQUENTIAL

    async def extract(self, markup: str, url: str = '') -> ExtractionResult:
        correlation_id = new_correlation_id()
        log = get_stage_logger('orchestrator', correlation_id)
        builder = ExtractionResultBuilder()
        builder.metadata.update({
            'url': url,
            'correlation_id': correlation_id,
            'rules_version': self.rules.version,
        })
        started = time.time()
        log.event('extraction_started', url=url, markup_chars=len(markup or ''))

        try:
            await self._extract(markup, url, builder, log)
        except MalformedInputError as e:
            builder.warn(str(e))
            self._finish_minimal(builder, url, markup, log)
        except Exception as e:
            log.event('extraction_crashed', level=logging.ERROR,
                      error_type=type(e).__name__, error=str(e)[:200])
            builder.warn(f'Extraction error: {e}')
            self._finish_minimal(builder, url, markup, log)

        builder.metadata['elapsed_ms'] = round((time.time() - started) * 1000)
        result = builder.freeze()
        log.event('extraction_finished', success=result.success, source=result.source.value,
                  completeness=result.completeness, fallbacks=','.join(result.fallbacks_used))
        return result

    def extract_sync(self, markup: str, url: str = '') -> ExtractionResult:
        return asyncio.run(self.extract(markup, url))

    async def _extract(self, markup: str, url: str, builder: ExtractionResultBuilder, log):
        site = find_site_extractor(url, self.site_extractors)
        mode = self.mode_for(url, log)
        builder.metadata['mode'] = mode.value
        builder.metadata['site_extractor'] = site.name if site else None
        log.event('mode_selected', mode=mode.value, site_extractor=site.name if site else None)

        if site is None:
            legacy = await self._run_legacy(markup, url, log)
            self._finish_from_legacy(builder, legacy)
            return

        if mode is ExtractionMode.PARALLEL:
            structured, legacy = await asyncio.gather(
                self._run_site(site, markup, url, builder, log),
                self._run_legacy(markup, url, log),
                return_exceptions=True,
            )
            if isinstance(legacy, BaseException):
                if not isinstance(legacy, Exception):
                    raise legacy
                builder.warn(f'Legacy pipeline failed: {legacy}')
                legacy = None
            if isinstance(structured, BaseException):
                if not isinstance(structured, Exception):
                    raise structured
                builder.warn(f'Site extractor failed: {structured}')
                structured = None
            self._merge_parallel(builder, structured, legacy, url, markup, log)
            return

        structured = await self._run_site(site, markup, url, builder, log)
        if structured and structured.extraction_metadata.confidence > self.config.SITE_HIGH_CONFIDENCE:
            log.event('legacy_skipped', confidence=structured.extraction_metadata.confidence)
            self._finish_from_site(builder, structured, url, markup)
            return

        if structured:
            builder.warn(f'Site extractor confidence {structured.extraction_metadata.confidence} '
                         f'not above {self.config.SITE_HIGH_CONFIDENCE}')
            builder.add_fallback('site_extractor_low_confidence')
        legacy = await self._run_legacy(markup, url, log)
        self._finish_from_legacy(builder, legacy)
        builder.structured = structured

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    async def _run_site(self, site: SiteExtractor, markup: str, url: str,
                        builder: ExtractionResultBuilder, log) -> Optional[StructuredSupplementData]:
        try:
            raw = await run_blocking(self.executor, site.extract, markup, url,
                                     timeout=self.config.SITE_TIMEOUT_S)
            structured = site.to_structured_format(raw)
        except asyncio.TimeoutError:
            builder.warn(f'Site extractor {site.name} timed out')
            log.event('site_extractor_timeout', site=site.name)
            return None
        except Exception as e:
            builder.warn(f'Site extractor {site.name} failed: {e}')
            log.event('site_extractor_failed', level=logging.WARNING, site=site.name,
                      error_type=type(e).__name__, error=str(e)[:200])
            return None

        meta = structured.extraction_metadata
        log.event('site_extractor_finished', site=site.name, confidence=meta.confidence,
                  ingredients=len(structured.ingredients), quantity_tier=meta.quantity_tier)
        return structured

    def _prepare(self, markup: str, log):
        blocks = self.block_extractor.extract(markup, log=log.bind('blocks'))
        if blocks.is_empty():
            raise MalformedInputError('No semantic blocks found in markup')
        ranked = self.ranker.rank(blocks, log=log.bind('ranker'))
        patterns = self.pattern_extractor.extract(ranked, log=log.bind('patterns'))
        return blocks, ranked, patterns

    async def _run_legacy(self, markup: str, url: str, log) -> LegacyRun:
        blocks, ranked, patterns = await asyncio.to_thread(self._prepare, markup, log)
        outcome = await self.fallback.run(ranked, patterns, fallback_name=guess_product_name(url, markup),
                                          log=log.bind('fallback'))
        return LegacyRun(blocks=blocks, ranked=ranked, patterns=patterns, outcome=outcome)

    # -------------------------------------------------------------------------
    # Finishing
    # -------------------------------------------------------------------------

    def _record_legacy_metadata(self, builder: ExtractionResultBuilder, legacy: LegacyRun):
        patterns = legacy.patterns
        builder.metadata.update({
            'block_counts': legacy.blocks.counts(),
            'ranked_counts': legacy.ranked.counts(),
            'pattern_counts': {
                'prices': len(patterns.prices),
                'dosages': len(patterns.dosages),
                'quantities': len(patterns.quantities),
                'serving_sizes': len(patterns.serving_sizes),
                'ingredients': len(patterns.ingredients),
            },
            'pattern_confidence': dict(patterns.confidence_scores),
            'states_visited': [s.value for s in legacy.outcome.states_visited],
        })

    def _finish_from_legacy(self, builder: ExtractionResultBuilder, legacy: LegacyRun):
        outcome = legacy.outcome
        builder.success = outcome.success
        builder.source = outcome.source
        builder.record = outcome.record
        builder.completeness = outcome.completeness.completeness
        builder.missing_fields = list(outcome.completeness.missing_fields)
        builder.user_input_needed = list(outcome.user_input_needed)
        for fallback in outcome.fallbacks_used:
            builder.add_fallback(fallback)
        for warning in outcome.warnings:
            builder.warn(warning)
        self._record_legacy_metadata(builder, legacy)

    def _finish_from_site(self, builder: ExtractionResultBuilder, structured: StructuredSupplementData,
                          url: str, markup: str):
        record = structured_to_record(structured, self.rules)
        if not record.name:
            record = replace(record, name=guess_product_name(url, markup))
        report = check_completeness(record, self.config.VALID_COMPLETENESS, self.config.ACCEPTABLE_COMPLETENESS)
        builder.success = report.is_valid
        builder.source = ExtractionSource.SITE_SPECIFIC
        builder.record = record
        builder.structured = structured
        builder.completeness = report.completeness
        builder.missing_fields = list(report.missing_fields)
        if not report.is_valid:
            builder.user_input_needed = build_user_prompts(list(report.missing_fields), RankedBlocks(),
                                                           PatternExtractionResult(), record)

    def _finish_minimal(self, builder: ExtractionResultBuilder, url: str, markup: str, log):
        record = minimal_record(guess_product_name(url, markup))
        report = check_completeness(record, self.config.VALID_COMPLETENESS, self.config.ACCEPTABLE_COMPLETENESS)
        builder.success = False
        builder.source = ExtractionSource.MINIMAL_STRUCTURE
        builder.record = record
        builder.completeness = report.completeness
        builder.missing_fields = list(report.missing_fields)
        builder.user_input_needed = build_user_prompts(list(report.missing_fields), RankedBlocks(),
                                                       PatternExtractionResult(), record)
        builder.add_fallback('minimal_structure')
        log.event('minimal_structure', name=record.name)

    def _merge_parallel(self, builder: ExtractionResultBuilder,
                        structured: Optional[StructuredSupplementData],
                        legacy: Optional[LegacyRun], url: str, markup: str, log):
        """Identity and pricing from the legacy record, ingredient structure from the site record."""
        usable = (structured is not None and
                  structured.extraction_metadata.confidence >= self.config.SITE_MIN_CONFIDENCE)
        if structured is not None and not usable:
            builder.warn(f'Site extractor confidence {structured.extraction_metadata.confidence} '
                         f'below {self.config.SITE_MIN_CONFIDENCE}; ignored')

        if legacy is None:
            if usable:
                self._finish_from_site(builder, structured, url, markup)
            else:
                self._finish_minimal(builder, url, markup, log)
            return

        self._finish_from_legacy(builder, legacy)
        if not usable:
            builder.structured = structured
            return

        site_record = structured_to_record(structured, self.rules)
        base = legacy.outcome.record
        merged = NormalizedSupplementRecord(
            name=base.name or site_record.name,
            price_sek=base.price_sek or site_record.price_sek,
            total_servings=site_record.total_servings or base.total_servings,
            serving_size=site_record.serving_size or base.serving_size,
            active_ingredients=site_record.active_ingredients or base.active_ingredients,
            product_type=base.product_type or site_record.product_type,
            confidence=round((base.confidence + site_record.confidence) / 2),
        )
        report = check_completeness(merged, self.config.VALID_COMPLETENESS, self.config.ACCEPTABLE_COMPLETENESS)
        builder.success = report.is_valid
        builder.source = ExtractionSource.PARALLEL_MERGED
        builder.record = merged
        builder.structured = structured
        builder.completeness = report.completeness
        builder.missing_fields = list(report.missing_fields)
        builder.user_input_needed = ([] if report.is_valid else
                                     build_user_prompts(list(report.missing_fields), legacy.ranked,
                                                        legacy.patterns, merged))
        log.event('parallel_merged', completeness=report.completeness,
                  site_confidence=structured.extraction_metadata.confidence)

    # -------------------------------------------------------------------------
    # User completion
    # -------------------------------------------------------------------------

    def complete_with_user_input(self, result: ExtractionResult,
                                 user_input: Dict[str, Union[str, float, List[Ingredient]]]) -> ExtractionResult:
        """Apply user answers to a partial result and re-validate."""
        record = _apply_user_input(result.record, user_input, self.rules)
        report = check_completeness(record, self.config.VALID_COMPLETENESS, self.config.ACCEPTABLE_COMPLETENESS)

        builder = ExtractionResultBuilder()
        builder.success = report.is_valid
        builder.source = ExtractionSource.USER_COMPLETED
        builder.record = record
        builder.structured = result.structured
        builder.fallbacks_used = list(result.fallbacks_used) + ['user_input']
        builder.completeness = report.completeness
        builder.missing_fields = list(report.missing_fields)
        still_missing = set(report.missing_fields)
        if 'ingredient_doses' in still_missing:
            still_missing.add('active_ingredients')
        builder.user_input_needed = [p for p in result.user_input_needed if p.field in still_missing]
        builder.warnings = list(result.warnings)
        builder.metadata = dict(result.metadata)
        builder.metadata['user_completed_fields'] = sorted(k for k, v in user_input.items() if v)

        get_stage_logger('orchestrator', result.metadata.get('correlation_id')).event(
            'user_input_applied', fields=','.join(builder.metadata['user_completed_fields']),
            completeness=report.completeness,
        )
        return builder.freeze()


def extract_supplement_data(markup: str, url: str = '', **kwargs) -> ExtractionResult:
    """Synchronous convenience wrapper."""
    return SupplementExtractor(**kwargs).extract_sync(markup, url)
