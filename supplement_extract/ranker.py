"""
Relevance ranking of semantic blocks.

Score = element base score
      + keyword points (per distinct keyword, per category)
      + numeric density (capped)
      + unit-bearing numbers
      + class/id attribute keywords

Each block lands in the first category (in priority order) whose keywords it
matches, otherwise 'other'. Buckets are sorted by score and truncated.
"""

import re
from typing import Dict, List, Optional

from .logger import get_stage_logger
from .models import BlockSet, Category, RankedBlock, RankedBlocks, ScoreBreakdown, SemanticBlock
from .rules import ExtractionRules, load_rules

log = get_stage_logger('ranker')

_NUMBER = re.compile(r'\d+')


class RelevanceRanker:

    def __init__(self, rules: Optional[ExtractionRules] = None):
        self.rules = rules or load_rules()
        self.scoring = self.rules.scoring

    def score(self, block: SemanticBlock) -> ScoreBreakdown:
        text = block.text

        matched = []
        for category, patterns in self.rules.keyword_patterns.items():
            hits = tuple(kw for kw, pattern in patterns.items() if pattern.search(text))
            if hits:
                matched.append((category, hits))
        keyword_score = self.scoring['keyword_points'] * sum(len(h) for _, h in matched)

        number_score = min(len(_NUMBER.findall(text)) * self.scoring['number_points'],
                           self.scoring['number_cap'])
        unit_score = self.scoring['unit_points'] * len(self.rules.unit_token_pattern.findall(text))

        attributes = f"{block.class_name} {block.element_id}".strip()
        attribute_score = 0
        if attributes:
            attribute_score = self.scoring['attribute_points'] * sum(
                1 for p in self.rules.attribute_patterns.values() if p.search(attributes)
            )

        return ScoreBreakdown(
            element=self.rules.element_scores.get(block.tag, 0),
            keywords=keyword_score,
            numbers=number_score,
            units=unit_score,
            attributes=attribute_score,
            matched_keywords=tuple(matched),
        )

    def categorize(self, breakdown: ScoreBreakdown) -> Category:
        for name in self.rules.category_priority:
            if breakdown.matched(name):
                return Category(name)
        return Category.OTHER

    def rank_block(self, block: SemanticBlock) -> RankedBlock:
        breakdown = self.score(block)
        return RankedBlock(
            block=block,
            relevance_score=breakdown.total,
            category=self.categorize(breakdown),
            breakdown=breakdown,
        )

    def rank(self, blocks: BlockSet, log=log) -> RankedBlocks:
        buckets: Dict[Category, List[RankedBlock]] = {c: [] for c in Category}
        for block in blocks.all():
            ranked = self.rank_block(block)
            buckets[ranked.category].append(ranked)

        limit = self.rules.bucket_limit
        kept = {}
        for category, items in buckets.items():
            # sorted() is stable: equal scores keep document order
            kept[category.value] = tuple(
                sorted(items, key=lambda b: -b.relevance_score)[:limit]
            )

        ranked = RankedBlocks(**kept)
        log.event('blocks_ranked', considered=blocks.count, kept=ranked.total, **ranked.counts())
        return ranked


def rank_blocks(blocks: BlockSet, rules: Optional[ExtractionRules] = None) -> RankedBlocks:
    return RelevanceRanker(rules).rank(blocks)
