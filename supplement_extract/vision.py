"""
Vision fallback.

Renders the single most relevant ingredient/nutrition block to an image and
asks a vision-capable model for the fields the text pipeline is missing.
The answer is merged into the record without overwriting present fields.
"""

import base64
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright
from pydantic import ValidationError

from .config import Config, config as default_config
from .errors import ExternalServiceError
from .llm_handler import LLMHandler
from .logger import get_stage_logger
from .models import Category, NormalizedSupplementRecord, RankedBlock, RankedBlocks
from .normalizer import ingredient_from_document
from .prompts.vision import VisionDocument
from .rules import ExtractionRules
from .validation import clamp_primary_flags, required_field_status

log = get_stage_logger('vision')

# fields the vision model can plausibly read off a label
VISION_FIELDS = ('active_ingredients', 'ingredient_doses', 'serving_size', 'total_servings')
# vision is only worth a call when one of these is missing
VISION_TRIGGERS = ('active_ingredients', 'serving_size')

PAGE_TEMPLATE = """<!DOCTYPE html>
<html><head><meta charset="utf-8">
<style>body {{ font-family: Arial, sans-serif; font-size: 14px; padding: 16px; background: #fff; }}
table {{ border-collapse: collapse; }} td, th {{ border: 1px solid #999; padding: 4px 8px; }}</style>
</head><body>{content}</body></html>"""


def render_block_png(html_block: str, width: int = 800, timeout_ms: int = 15000) -> bytes:
    """Render an HTML fragment in headless Chromium and screenshot it."""
    with sync_playwright() as p:
        browser = p.chromium.launch(headless=True)
        try:
            page = browser.new_page(viewport={'width': width, 'height': 600})
            page.set_content(PAGE_TEMPLATE.format(content=html_block), timeout=timeout_ms)
            return page.screenshot(full_page=True, type='png')
        finally:
            browser.close()


def block_text(html_block: str) -> str:
    return ' '.join(BeautifulSoup(html_block or '', 'html.parser').get_text(' ', strip=True).split())


# =============================================================================
# Vision services
# =============================================================================

class VisionService(ABC):
    """Black-box vision extraction: html block + prompt in, partial document out."""

    name = "vision"

    @abstractmethod
    def analyze(self, html_block: str, prompt: str, missing_fields: List[str]) -> Dict[str, Any]:
        """
        Returns a dict with any of active_ingredients, serving_size,
        total_servings, plus confidence.

        Raises:
            ExternalServiceError on any transport or parsing failure.
        """
        pass


class ClaudeVisionService(VisionService):
    """Screenshot the block and send it to Claude as an image."""

    name = "claude_vision"

    def __init__(self, handler: Optional[LLMHandler] = None, renderer=render_block_png,
                 max_tokens: Optional[int] = None):
        self.handler = handler or LLMHandler()
        self.renderer = renderer
        self.max_tokens = max_tokens or default_config.VISION_MAX_TOKENS

    def analyze(self, html_block: str, prompt: str, missing_fields: List[str]) -> Dict[str, Any]:
        try:
            image_b64 = base64.b64encode(self.renderer(html_block)).decode('ascii')
        except PlaywrightError as e:
            # no browser available: send the block's text instead
            log.event('vision_render_failed', error=str(e)[:200])
            result = self.handler.call(
                f"{prompt}\n\nSection content:\n{block_text(html_block)[:4000]}",
                response_model=VisionDocument,
                max_tokens=self.max_tokens,
            )
        else:
            result = self.handler.call_with_image(
                prompt, image_b64, response_model=VisionDocument, max_tokens=self.max_tokens
            )

        if not result.get('success'):
            raise ExternalServiceError(result.get('error', 'unknown error'), service=self.name)
        return result['data']


class HttpVisionService(VisionService):
    """POSTs {html_block, prompt, missing_fields} to a vision endpoint."""

    name = "http_vision"

    def __init__(self, endpoint: str, timeout: float = 45.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def analyze(self, html_block: str, prompt: str, missing_fields: List[str]) -> Dict[str, Any]:
        payload = {'html_block': html_block, 'prompt': prompt, 'missing_fields': list(missing_fields)}
        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise ExternalServiceError(f"Vision endpoint failed: {e}", service=self.name) from e
        except ValueError as e:
            raise ExternalServiceError(f"Vision endpoint returned invalid JSON: {e}",
                                       service=self.name) from e
        if not isinstance(data, dict):
            raise ExternalServiceError("Vision endpoint returned a non-object", service=self.name)
        return data


def build_vision_service(cfg: Config = default_config) -> VisionService:
    if cfg.VISION_ENDPOINT:
        return HttpVisionService(cfg.VISION_ENDPOINT, timeout=cfg.VISION_TIMEOUT_S)
    return ClaudeVisionService(LLMHandler(model=cfg.CLAUDE_MODEL, timeout=cfg.VISION_TIMEOUT_S), max_tokens=cfg.VISION_MAX_TOKENS)


# =============================================================================
# Block selection & merge
# =============================================================================

def needs_vision(missing: List[str]) -> bool:
    return any(f in missing for f in VISION_TRIGGERS)


def find_best_block_for_vision(ranked: RankedBlocks) -> Optional[RankedBlock]:
    """Highest-scoring nutritional or ingredient block; nutritional wins ties."""
    candidates = ranked.buckets([Category.NUTRITIONAL, Category.INGREDIENT])
    if not candidates:
        return None
    return max(candidates, key=lambda b: b.relevance_score)


def parse_vision_document(data: Dict[str, Any]) -> VisionDocument:
    try:
        return VisionDocument.model_validate(data)
    except ValidationError as e:
        raise ExternalServiceError(f"Vision response failed validation: {e}", service='vision') from e


def merge_vision_data(record: NormalizedSupplementRecord, vision: VisionDocument,
                      rules: Optional[ExtractionRules] = None) -> NormalizedSupplementRecord:
    """
    Fill absent fields of `record` from the vision document.

    Present fields are never overwritten, so completeness cannot decrease.
    Ingredients are taken from vision when the record has none, or when the
    record has no positive dose and the vision list does.
    """
    status = required_field_status(record)
    changes = {}

    if vision.active_ingredients:
        new_ingredients = [ingredient_from_document(i, 'vision', rules) for i in vision.active_ingredients
                           if i.name]
        new_has_doses = any(i.dosage_mg > 0 for i in new_ingredients)
        if new_ingredients and (not status['active_ingredients'] or
                                (not status['ingredient_doses'] and new_has_doses)):
            changes['active_ingredients'], _ = clamp_primary_flags(new_ingredients)

    if not status['serving_size'] and vision.serving_size and len(vision.serving_size.strip()) > 2:
        changes['serving_size'] = vision.serving_size.strip()

    if not status['total_servings'] and vision.total_servings and vision.total_servings > 0:
        changes['total_servings'] = vision.total_servings

    if not changes:
        return record

    vision_confidence = int(round(min(100, max(0, vision.confidence or 0))))
    changes['confidence'] = max(record.confidence, vision_confidence)
    return replace(record, **changes)
