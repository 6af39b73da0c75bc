"""
Test Fixtures
=============

Product pages and fake services shared by the test modules.
"""

import time
from typing import Any, Dict, List, Optional

from supplement_extract.blocks import BlockExtractor
from supplement_extract.errors import ExternalServiceError
from supplement_extract.normalizer import CompletionService
from supplement_extract.patterns import PatternExtractor
from supplement_extract.ranker import RelevanceRanker
from supplement_extract.rules import load_rules
from supplement_extract.vision import VisionService

RULES = load_rules()

# Price, capsule count, one dosed ingredient: the pattern stage alone is complete.
CAPSULE_PAGE = """<html><head><title>Creatine Caps | Shop</title></head><body>
<h1>Creatine Monohydrate Caps</h1>
<div class="price">Pris: 249 kr</div>
<p>Innehåll: 120 kapslar per burk</p>
<table class="nutrition">
<tr><td>Kreatinmonohydrat</td><td>3000 mg</td></tr>
<tr><td>Vitamin B6</td><td>1.4 mg</td></tr>
</table>
<p>Dosering: Daglig dos 3 kapslar med vatten.</p>
<script>var fake = "999 kr";</script>
</body></html>"""

# Name, price and servings only (50 % complete); the nutrition table is an image.
POWDER_PAGE = """<html><body>
<h1>Super Pump Pre-Workout</h1>
<div class="price">Pris: 299 kr</div>
<p>Antal: 60 portioner</p>
<table><tr><td>Näringsvärde per skopa</td></tr><tr><td>se bild</td></tr></table>
</body></html>"""

# Blocks exist but carry nothing usable.
EMPTY_PAGE = """<html><body><div class="x">Hello there world</div></body></html>"""

SHOP_URL = "https://www.tillskottsbolaget.se/sv/pwo/c4-ripped.html"


def shop_page(title="C4 Ripped Pre-Workout 400g", rows=None, price_box=None, extra_head=""):
    """A tillskottsbolaget.se product page."""
    rows = rows if rows is not None else [
        ("Beta-alanin", "3200 mg"),
        ("Citrullinmalat", "6000 mg"),
        ("Koffein", "200 mg"),
        ("Grönt te-extrakt", "100 mg"),
    ]
    price_box = price_box if price_box is not None else '<span class="prisREA">249 kr</span>'
    table_rows = ''.join(f"<tr><td>{label}</td><td>{value}</td></tr>" for label, value in rows)
    return f"""<html><head><title>{title} | Tillskottsbolaget</title>{extra_head}</head><body>
<h1>{title}</h1>
<div id="PrisFalt">{price_box}</div>
<div class="JS-CleaningFunc__nutrition"><table>
<tr><th>Näringsvärde</th><th>Per portion (20 g)</th></tr>
{table_rows}
</table></div>
</body></html>"""


def prepare(markup: str):
    """Blocks -> ranked -> patterns for a page."""
    blocks = BlockExtractor(RULES).extract(markup)
    ranked = RelevanceRanker(RULES).rank(blocks)
    patterns = PatternExtractor(RULES).extract(ranked)
    return blocks, ranked, patterns


def model_document(**overrides) -> Dict[str, Any]:
    doc = {
        'name': 'Creatine Monohydrate Caps',
        'price_sek': 249,
        'total_servings': 120,
        'serving_size': '3 capsules',
        'active_ingredients': [
            {'name': 'Kreatinmonohydrat', 'dose_mg': 3000, 'unit': 'mg', 'is_primary': True},
        ],
        'product_type': 'capsules',
        'confidence': 85,
    }
    doc.update(overrides)
    return doc


class FakeCompletionService(CompletionService):
    """Returns a fixed document, or raises, and records every payload."""

    name = "fake_completion"

    def __init__(self, document: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.document = document
        self.error = error
        self.delay = delay
        self.payloads: List[Dict[str, Any]] = []

    def complete(self, payload):
        self.payloads.append(payload)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return dict(self.document)


class FakeVisionService(VisionService):
    """Returns a fixed vision document, or raises, and records every call."""

    name = "fake_vision"

    def __init__(self, document: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.document = document
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def analyze(self, html_block, prompt, missing_fields):
        self.calls.append({'html_block': html_block, 'prompt': prompt, 'missing_fields': list(missing_fields)})
        if self.error:
            raise self.error
        return dict(self.document)


def failing_completion() -> FakeCompletionService:
    return FakeCompletionService(error=ExternalServiceError("endpoint returned 503", service="fake"))


def failing_vision() -> FakeVisionService:
    return FakeVisionService(error=ExternalServiceError("vision endpoint returned 500", service="fake"))
