"""
Pattern extraction over ranked blocks.

Applies the locale-aware regex families from the rule tables to the blocks
of the relevant categories. Every match is kept with the score of the block
it came from; per-field winners are the candidates from the highest-scoring
block (ties keep match order).
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from .config import config
from .ingredients import clean_name
from .logger import get_stage_logger
from .models import (
    BlockKind, Category, DosageCandidate, IngredientCandidate, NameCandidate,
    PatternExtractionResult, PriceCandidate, QuantityCandidate, RankedBlock,
    RankedBlocks, ServingSizeCandidate,
)
from .rules import ExtractionRules, load_rules
from .units import parse_number

log = get_stage_logger('patterns')

# labels that look like "<name> <amount><unit>" but are not ingredients
_NON_INGREDIENT_LABEL = re.compile(
    r'^(?:per|varje|each|dos|dose|dosering|portion|serving|daglig|daily|rekommenderad|recommended|'
    r'pris|price|innehåll|ingredienser|ingredients|skopa|scoop)\b',
    re.IGNORECASE
)

FIELDS = ('price', 'ingredients', 'quantity', 'serving_size', 'product_name')


def _by_score(candidates: Iterable):
    # stable: equal scores keep match order
    return tuple(sorted(candidates, key=lambda c: -c.block_score))


class PatternExtractor:

    def __init__(self, rules: Optional[ExtractionRules] = None,
                 confidence_cap: int = config.PATTERN_CONFIDENCE_CAP):
        self.rules = rules or load_rules()
        self.confidence_cap = confidence_cap

    def extract(self, ranked: RankedBlocks, widen: bool = False, log=log) -> PatternExtractionResult:
        """
        Run every regex family over its source categories.

        With widen=True every family runs over every bucket; this is the
        retry used by the fallback chain and has no side effects.
        """
        def sources(field_name: str) -> List[RankedBlock]:
            if widen:
                return ranked.buckets(Category)
            return ranked.buckets(self.rules.pattern_sources[field_name])

        prices = _by_score(self._prices(sources('prices')))
        dosages = _by_score(self._dosages(sources('dosages')))
        quantities = _by_score(self._quantities(sources('quantities')))
        serving_sizes = _by_score(self._serving_sizes(sources('serving_sizes')))
        ingredients = self._dedupe_ingredients(_by_score(self._ingredients(sources('ingredients'))))
        names = self._names(ranked.all_blocks())

        winners = {
            'price': prices[0].block_score if prices else None,
            'ingredients': ingredients[0].block_score if ingredients else None,
            'quantity': quantities[0].block_score if quantities else None,
            'serving_size': serving_sizes[0].block_score if serving_sizes else None,
            'product_name': names[0].score if names else None,
        }
        scores = [(name, self._field_confidence(name, winners[name])) for name in FIELDS]
        overall = round(sum(s for _, s in scores) / len(scores))
        scores.append(('overall', overall))

        result = PatternExtractionResult(
            price=prices[0] if prices else None,
            prices=prices,
            dosages=dosages,
            quantities=quantities,
            serving_sizes=serving_sizes,
            ingredients=ingredients,
            product_name=names[0] if names else None,
            name_candidates=names,
            confidence_scores=tuple(scores),
            widened=widen,
        )
        log.event(
            'patterns_extracted',
            widened=widen,
            prices=len(prices),
            dosages=len(dosages),
            quantities=len(quantities),
            serving_sizes=len(serving_sizes),
            ingredients=len(ingredients),
            overall_confidence=overall,
        )
        return result

    def _field_confidence(self, name: str, winning_score: Optional[int]) -> int:
        if winning_score is None:
            return 0
        conf = self.rules.pattern_confidence
        return min(self.confidence_cap, conf['base'][name] + conf['per_score'] * winning_score)

    # -------------------------------------------------------------------------
    # Families
    # -------------------------------------------------------------------------

    def _prices(self, blocks: Sequence[RankedBlock]) -> List[PriceCandidate]:
        low, high = self.rules.range('price')
        found = []
        for block in blocks:
            for family, pattern in self.rules.price_patterns:
                for match in pattern.finditer(block.text):
                    value = parse_number(match.group(1))
                    if value is not None and low < value < high:
                        found.append(PriceCandidate(value, family, match.group(0).strip(),
                                                    block.relevance_score))
        return found

    def _dosages(self, blocks: Sequence[RankedBlock]) -> List[DosageCandidate]:
        found = []
        for block in blocks:
            for unit, pattern in self.rules.dosage_patterns:
                for match in pattern.finditer(block.text):
                    amount = parse_number(match.group(1))
                    if amount is not None:
                        found.append(DosageCandidate(amount, unit, match.group(0).strip(),
                                                     block.relevance_score))
        return found

    def _quantities(self, blocks: Sequence[RankedBlock]) -> List[QuantityCandidate]:
        low, high = self.rules.range('quantity')
        found = []
        for block in blocks:
            for kind, pattern in self.rules.quantity_patterns:
                for match in pattern.finditer(block.text):
                    value = int(match.group(1))
                    if low < value < high:
                        found.append(QuantityCandidate(value, kind, match.group(0).strip(),
                                                       block.relevance_score))
        return found

    def _serving_sizes(self, blocks: Sequence[RankedBlock]) -> List[ServingSizeCandidate]:
        found = []
        for block in blocks:
            for kind, pattern in self.rules.serving_size_patterns:
                for match in pattern.finditer(block.text):
                    amount = parse_number(match.group(1))
                    if amount is not None:
                        found.append(ServingSizeCandidate(amount, match.group(2).lower(), kind,
                                                          match.group(0).strip(),
                                                          block.relevance_score))
        return found

    def _ingredients(self, blocks: Sequence[RankedBlock]) -> List[IngredientCandidate]:
        found = []
        for block in blocks:
            # tables and lists are matched row by row so names don't run together
            for line in block.block.lines():
                for match in self.rules.ingredient_amount_pattern.finditer(line):
                    name = clean_name(match.group(1))
                    if len(name) <= 2 or _NON_INGREDIENT_LABEL.match(name):
                        continue
                    found.append(IngredientCandidate(
                        name=name,
                        amount=parse_number(match.group(2)),
                        unit=match.group(3).lower(),
                        context=match.group(0).strip(),
                        block_score=block.relevance_score,
                    ))

            for match in self.rules.ingredient_list_pattern.finditer(block.text):
                for part in re.split(r'[,;]', match.group(1)):
                    name = clean_name(part)
                    if len(name) > 2 and not re.search(r'\d', name):
                        found.append(IngredientCandidate(
                            name=name, amount=None, unit=None, context=part.strip(),
                            block_score=block.relevance_score, source='list',
                        ))
        return found

    @staticmethod
    def _dedupe_ingredients(candidates) -> tuple:
        """One candidate per name; an amount-bearing match replaces a bare list entry."""
        kept: Dict[str, IngredientCandidate] = {}
        for cand in candidates:
            current = kept.get(cand.name)
            if current is None or (not current.has_amount and cand.has_amount):
                kept[cand.name] = cand
        return tuple(kept.values())

    def _names(self, blocks: Sequence[RankedBlock]) -> tuple:
        bonus = self.rules.name_bonus
        found = []
        seen = set()

        def add(text, source, score):
            text = ' '.join(text.split())
            if 5 < len(text) < 100 and (text, source) not in seen:
                seen.add((text, source))
                found.append(NameCandidate(text, source, score))

        for block in blocks:
            if block.kind == BlockKind.HEADING:
                add(block.text, 'heading', block.relevance_score + bonus['heading'])
            for _, pattern in self.rules.name_patterns:
                for match in pattern.finditer(block.raw_markup):
                    add(match.group(1), 'markup', block.relevance_score + bonus['markup'])

        return tuple(sorted(found, key=lambda c: -c.score))


def extract_patterns(ranked: RankedBlocks, rules: Optional[ExtractionRules] = None,
                     widen: bool = False) -> PatternExtractionResult:
    return PatternExtractor(rules).extract(ranked, widen=widen)
