#!/usr/bin/env python3
"""
Fallback Chain Tests
====================

ModelNormalization -> PatternFallback -> VisionFallback
    -> PartialWithUserInput -> MinimalStructure

Run:
    python -m unittest tests.test_fallback
"""

import sys
import unittest
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from supplement_extract.config import Config
from supplement_extract.errors import ExternalServiceError
from supplement_extract.fallback import STATE_ORDER, FallbackOrchestrator, FallbackState
from supplement_extract.models import ExtractionSource
from supplement_extract.normalizer import ModelNormalizer
from supplement_extract.patterns import PatternExtractor
from tests.fixtures import (
    CAPSULE_PAGE, EMPTY_PAGE, POWDER_PAGE, RULES, FakeCompletionService, FakeVisionService,
    failing_completion, failing_vision, model_document, prepare,
)

VISION_DOCUMENT = {
    'active_ingredients': [{'name': 'Beta-alanin', 'dose_mg': 3200, 'is_primary': True}],
    'serving_size': '1 skopa (10 g)',
    'confidence': 75,
}


def orchestrator(completion, vision=None, **config):
    return FallbackOrchestrator(
        normalizer=ModelNormalizer(completion, RULES) if completion else None,
        vision_service=vision,
        pattern_extractor=PatternExtractor(RULES),
        rules=RULES,
        config=Config(**config),
    )


class TestFallbackChain(unittest.IsolatedAsyncioTestCase):

    async def run_chain(self, markup, completion, vision=None, fallback_name=None, **config):
        _, ranked, patterns = prepare(markup)
        return await orchestrator(completion, vision, **config).run(ranked, patterns, fallback_name)

    def assert_forward_only(self, outcome):
        self.assertLessEqual(len(outcome.states_visited), 5)
        indexes = [STATE_ORDER.index(s) for s in outcome.states_visited]
        self.assertEqual(indexes, sorted(set(indexes)))

    async def test_model_output_accepted(self):
        completion = FakeCompletionService(model_document())
        outcome = await self.run_chain(CAPSULE_PAGE, completion)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.source, ExtractionSource.AI_NORMALIZED)
        self.assertEqual(outcome.states_visited, [FallbackState.MODEL_NORMALIZATION])
        self.assertEqual(outcome.fallbacks_used, [])
        self.assertEqual(outcome.record.active_ingredients[0].key, 'creatine_monohydrate')
        self.assertEqual(sorted(completion.payloads[0]), ['block_counts', 'pattern_extraction', 'prompt'])

    async def test_service_error_falls_back_to_patterns(self):
        outcome = await self.run_chain(CAPSULE_PAGE, failing_completion())
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.source, ExtractionSource.PATTERN_FALLBACK)
        self.assertEqual(outcome.fallbacks_used, ['pattern_fallback'])
        self.assertEqual(outcome.completeness.completeness, 100)
        self.assertTrue(any('503' in w for w in outcome.warnings))
        self.assert_forward_only(outcome)

    async def test_invalid_model_document_falls_back(self):
        completion = FakeCompletionService(model_document(price_sek=-5, active_ingredients=[]))
        outcome = await self.run_chain(CAPSULE_PAGE, completion)
        self.assertEqual(outcome.source, ExtractionSource.PATTERN_FALLBACK)
        self.assertTrue(any('Invalid price' in w for w in outcome.warnings))

    async def test_model_timeout_falls_back(self):
        completion = FakeCompletionService(model_document(), delay=0.3)
        outcome = await self.run_chain(CAPSULE_PAGE, completion, MODEL_TIMEOUT_S=0.05)
        self.assertEqual(outcome.source, ExtractionSource.PATTERN_FALLBACK)
        self.assertTrue(any('timed out' in w for w in outcome.warnings))

    async def test_no_normalizer_configured(self):
        outcome = await self.run_chain(CAPSULE_PAGE, None)
        self.assertEqual(outcome.source, ExtractionSource.PATTERN_FALLBACK)

    async def test_half_complete_record_goes_to_vision_before_partial(self):
        vision = FakeVisionService(VISION_DOCUMENT)
        outcome = await self.run_chain(POWDER_PAGE, failing_completion(), vision)
        self.assertEqual(outcome.states_visited, [
            FallbackState.MODEL_NORMALIZATION, FallbackState.PATTERN_FALLBACK, FallbackState.VISION_FALLBACK,
        ])
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.source, ExtractionSource.PATTERN_WITH_VISION)
        self.assertEqual(outcome.fallbacks_used, ['pattern_fallback', 'vision_fallback'])
        self.assertEqual(outcome.record.serving_size, '1 skopa (10 g)')
        self.assertEqual(outcome.record.name, 'Super Pump Pre-Workout')

        call = vision.calls[0]
        self.assertTrue(call['html_block'].startswith('<table>'))
        self.assertEqual(call['missing_fields'], ['serving_size', 'active_ingredients', 'ingredient_doses'])

    async def test_vision_failure_asks_the_user(self):
        outcome = await self.run_chain(POWDER_PAGE, failing_completion(), failing_vision())
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.source, ExtractionSource.PARTIAL_WITH_USER_INPUT)
        self.assertEqual(outcome.fallbacks_used,
                         ['pattern_fallback', 'vision_fallback', 'partial_with_user_input'])
        self.assertEqual(outcome.completeness.completeness, 50)
        self.assertEqual([p.field for p in outcome.user_input_needed], ['serving_size', 'active_ingredients'])
        self.assertEqual(outcome.record.price_sek, 299)
        self.assert_forward_only(outcome)

    async def test_vision_result_is_validated(self):
        vision = FakeVisionService({'serving_size': '1 skopa', 'confidence': 'very high'})
        outcome = await self.run_chain(POWDER_PAGE, failing_completion(), vision)
        self.assertEqual(outcome.source, ExtractionSource.PARTIAL_WITH_USER_INPUT)
        self.assertTrue(any('Vision fallback failed' in w for w in outcome.warnings))

    async def test_nothing_found_gives_minimal_structure(self):
        outcome = await self.run_chain(EMPTY_PAGE, failing_completion(), failing_vision(),
                                       fallback_name='Fallback Name')
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.source, ExtractionSource.MINIMAL_STRUCTURE)
        self.assertEqual(outcome.record.name, 'Fallback Name')
        self.assertEqual(outcome.record.confidence, 0)
        self.assertEqual(outcome.fallbacks_used, ['pattern_fallback', 'vision_fallback', 'minimal_structure'])
        self.assertEqual([p.field for p in outcome.user_input_needed],
                         ['price_sek', 'total_servings', 'serving_size', 'active_ingredients'])
        self.assert_forward_only(outcome)

    async def test_transitions_are_logged(self):
        with self.assertLogs('supplement_extract', level='INFO') as captured:
            await self.run_chain(POWDER_PAGE, failing_completion(), failing_vision())
        transitions = [r.fields for r in captured.records if getattr(r, 'event', None) == 'fallback_transition']
        self.assertEqual([t['to_state'] for t in transitions],
                         ['pattern_fallback', 'vision_fallback', 'partial_with_user_input'])


class TestUserPrompts(unittest.IsolatedAsyncioTestCase):

    async def test_prompt_suggestions(self):
        markup = ("<h1>Magnesium Citrate</h1><p>Antal: 90 tabletter</p>"
                  "<p>Dosering: 2 tabletter dagligen</p>")
        _, ranked, patterns = prepare(markup)
        outcome = await orchestrator(failing_completion(), failing_vision()).run(ranked, patterns)
        prompts = {p.field: p for p in outcome.user_input_needed}
        self.assertEqual(prompts['price_sek'].input_type, 'number')
        self.assertEqual(prompts['active_ingredients'].example, 'Creatine: 5000mg, Caffeine: 100mg')


if __name__ == "__main__":
    unittest.main(verbosity=2)
