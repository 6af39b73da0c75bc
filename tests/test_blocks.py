#!/usr/bin/env python3
"""
Block Extraction & Ranking Tests
================================

Run:
    python -m unittest tests.test_blocks
"""

import sys
import unittest
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from supplement_extract.blocks import BlockExtractor
from supplement_extract.models import BlockKind, Category
from supplement_extract.ranker import RelevanceRanker
from tests.fixtures import CAPSULE_PAGE, RULES


class TestBlockExtractor(unittest.TestCase):

    def setUp(self):
        self.extractor = BlockExtractor(RULES)

    def test_capsule_page_blocks(self):
        blocks = self.extractor.extract(CAPSULE_PAGE)
        self.assertEqual(blocks.counts(), {
            'tables': 1, 'lists': 0, 'paragraphs': 2, 'spans': 0, 'containers': 1, 'headings': 1,
        })
        self.assertEqual(blocks.tables[0].structure.n_rows, 2)
        self.assertEqual(blocks.tables[0].structure.rows[0], ('Kreatinmonohydrat', '3000 mg'))

    def test_scripts_are_dropped(self):
        blocks = self.extractor.extract(CAPSULE_PAGE)
        self.assertFalse(any('999' in b.text for b in blocks.all()))

    def test_document_order(self):
        blocks = self.extractor.extract(CAPSULE_PAGE).all()
        positions = [b.position for b in blocks]
        self.assertEqual(positions, sorted(positions))
        self.assertEqual(blocks[0].kind, BlockKind.HEADING)

    def test_short_paragraphs_and_plain_spans_dropped(self):
        markup = "<p>Kort</p><span>hello</span><span class='x'>abc</span><span>12 st</span>"
        blocks = self.extractor.extract(markup)
        self.assertEqual(len(blocks.paragraphs), 0)
        self.assertEqual([s.text for s in blocks.spans], ['12 st'])

    def test_wrapper_containers_dropped(self):
        markup = '<div class="wrap"><p>Some paragraph text here</p></div>'
        blocks = self.extractor.extract(markup)
        self.assertEqual(len(blocks.containers), 0)
        self.assertEqual(len(blocks.paragraphs), 1)

    def test_malformed_markup_still_yields_blocks(self):
        blocks = self.extractor.extract("<div class='price'>Pris 199 kr<p>unclosed paragraph text")
        self.assertFalse(blocks.is_empty())
        self.assertEqual(len(blocks.paragraphs), 1)

    def test_no_markup(self):
        self.assertTrue(self.extractor.extract("").is_empty())
        self.assertTrue(self.extractor.extract("just some text, no tags").is_empty())


class TestRelevanceRanker(unittest.TestCase):

    def setUp(self):
        self.extractor = BlockExtractor(RULES)
        self.ranker = RelevanceRanker(RULES)

    def rank(self, markup):
        return self.ranker.rank(self.extractor.extract(markup))

    def test_categories(self):
        ranked = self.rank(CAPSULE_PAGE)
        self.assertEqual(ranked.top(Category.PRICE).text, 'Pris: 249 kr')
        self.assertEqual(ranked.top(Category.INGREDIENT).tag, 'table')

    def test_table_score(self):
        table = self.rank(CAPSULE_PAGE).top(Category.INGREDIENT)
        # table 15 + one keyword 3 + four numbers 8 + two unit amounts 10 + class attribute 8
        self.assertEqual(table.relevance_score, 44)
        self.assertEqual(table.breakdown.units, 10)

    def test_price_category_wins_priority(self):
        ranked = self.rank("<p>Pris 199 kr for 500 mg</p>")
        self.assertEqual(len(ranked.price), 1)
        self.assertEqual(len(ranked.ingredient), 0)

    def test_keywords_match_whole_tokens(self):
        # 'kr' inside 'Kreatin' is not a price keyword
        ranked = self.rank("<p>Kreatin 5 g per dag</p>")
        self.assertEqual(len(ranked.price), 0)
        self.assertEqual(len(ranked.ingredient), 1)

    def test_buckets_bounded_and_sorted(self):
        markup = ''.join(f"<p>Pris {100 + i} kr {'och ' + str(i) * i if i else ''} idag</p>" for i in range(8))
        ranked = self.rank(markup)
        self.assertEqual(len(ranked.price), 5)
        for category in Category:
            scores = [b.relevance_score for b in ranked.bucket(category)]
            self.assertLessEqual(len(scores), 5)
            self.assertEqual(scores, sorted(scores, reverse=True))

    def test_equal_scores_keep_document_order(self):
        ranked = self.rank("<p>Pris 100 kr idag</p><p>Pris 200 kr idag</p>")
        self.assertEqual([b.text for b in ranked.price], ['Pris 100 kr idag', 'Pris 200 kr idag'])

    def test_unmatched_blocks_go_to_other(self):
        ranked = self.rank('<div class="x">Hello there world</div>')
        self.assertEqual(len(ranked.other), 1)
        self.assertEqual(ranked.total, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
