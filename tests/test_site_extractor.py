#!/usr/bin/env python3
"""
Site Extractor Tests
====================

tillskottsbolaget.se structured extraction and the shared table, price and
container-size logic of SiteExtractor.

Run:
    python -m unittest tests.test_site_extractor
"""

import sys
import unittest
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from supplement_extract.mapping import record_to_structured, structured_to_record, to_legacy_format
from supplement_extract.site_extractors import (
    QuantityTier, TableKind, TillskottsbolagetExtractor, default_site_extractors, find_site_extractor,
)
from tests.fixtures import RULES, SHOP_URL, shop_page


class TestTillskottsbolaget(unittest.TestCase):

    def setUp(self):
        self.extractor = TillskottsbolagetExtractor(RULES)

    def extract(self, url=SHOP_URL, **page):
        return self.extractor.extract(shop_page(**page), url)

    def test_can_handle(self):
        self.assertTrue(self.extractor.can_handle(SHOP_URL))
        self.assertTrue(self.extractor.can_handle("https://tillskottsbolaget.se/sv/x.html"))
        self.assertFalse(self.extractor.can_handle("https://tillskottsbolaget.se.example.com/x"))
        self.assertFalse(self.extractor.can_handle("https://example.com/tillskottsbolaget.se"))
        self.assertFalse(self.extractor.can_handle(""))

    def test_dispatch(self):
        extractors = default_site_extractors(RULES)
        self.assertEqual(find_site_extractor(SHOP_URL, extractors).name, 'tillskottsbolaget')
        self.assertIsNone(find_site_extractor("https://example.com/p/1", extractors))

    def test_full_page(self):
        result = self.extract()
        self.assertEqual(result.product_name, 'C4 Ripped Pre-Workout 400g')
        self.assertEqual(result.product_type, 'preworkout')
        self.assertEqual(result.price, 249)
        self.assertEqual(result.table_kind, TableKind.SUPPLEMENT)
        self.assertEqual(result.serving_size, '20 g')
        self.assertEqual((result.quantity, result.quantity_tier), (400, QuantityTier.HEADER_TEXT))
        self.assertEqual(set(result.ingredients),
                         {'beta_alanine', 'l_citrulline', 'caffeine', 'green_tea_extract'})

    def test_koffein_row(self):
        result = self.extract(rows=[("Koffein", "200 mg")])
        entry = result.ingredients['caffeine']
        self.assertTrue(entry.is_included)
        self.assertEqual(entry.dosage_mg, 200)
        self.assertEqual(entry.unit, 'mg')
        self.assertFalse(entry.calculated)
        self.assertEqual(result.total_caffeine_mg, 200)

    def test_caffeine_total(self):
        result = self.extract(rows=[
            ("Koffein", "150 mg"), ("CaffShock", "100 mg"), ("Grönt te-extrakt", "250 mg"),
        ])
        # 150 direct + 100 blend + 40 % of 250 green tea
        self.assertEqual(result.total_caffeine_mg, 350)
        self.assertEqual(result.ingredients['caffeine'].dosage_mg, 350)
        self.assertTrue(result.ingredients['caffeine'].calculated)
        self.assertEqual(result.ingredients['green_tea_extract'].caffeine_content_mg, 100.0)

    def test_nutritional_table(self):
        result = self.extract(rows=[
            ("Energi", "1500 kJ / 360 kcal"), ("Fett", "0.5 g"), ("Kolhydrater", "55 g"),
            ("Protein", "20 g"), ("Koffein", "200 mg"),
        ])
        self.assertEqual(result.table_kind, TableKind.NUTRITIONAL)
        self.assertEqual(set(result.ingredients), {'caffeine'})
        self.assertEqual(result.nutritional_facts, {'fett_g': 0.5, 'kolhydrater_g': 55, 'protein_g': 20})

    def test_unknown_row_in_supplement_table(self):
        result = self.extract(rows=[("Koffein", "200 mg"), ("Rhodiola Rosea", "300 mg")])
        self.assertEqual([(u.name, u.dosage_mg) for u in result.unrecognized], [("Rhodiola Rosea", 300)])
        self.assertNotIn('rhodiola_rosea', result.ingredients)

    def test_classification_votes(self):
        self.assertEqual(self.extractor.classify_table(["Energi", "Fett", "Kolhydrater", "Protein", "Koffein"]),
                         TableKind.NUTRITIONAL)
        self.assertEqual(self.extractor.classify_table(["Koffein", "Taurin", "Salt"]), TableKind.SUPPLEMENT)
        # tied vote: more macro keyword hits overall
        self.assertEqual(self.extractor.classify_table(["Protein Salt", "Koffein"]), TableKind.NUTRITIONAL)
        self.assertEqual(self.extractor.classify_table(["Protein", "Koffein"]), TableKind.SUPPLEMENT)

    def test_gram_threshold(self):
        small = self.extractor.parse_row("Kreatin", "5 g")
        self.assertTrue(small.is_included)
        self.assertEqual(small.dosage_mg, 5000)
        large = self.extractor.parse_row("Kreatin", "50 g")
        self.assertFalse(large.is_included)

    def test_struck_price_rejected(self):
        result = self.extract(price_box='<del><span class="prisBOLD">349 kr</span></del>'
                                        '<span class="prisBOLD">299 kr</span>')
        self.assertEqual(result.price, 299)
        result = self.extract(price_box='<span class="prisBOLD" style="text-decoration: line-through">349 kr</span>'
                                        '<span class="prisBOLD">299 kr</span>')
        self.assertEqual(result.price, 299)

    def test_struck_class_matched_as_whole_part(self):
        result = self.extract(price_box='<span class="prisBOLD bold-price">249 kr</span>')
        self.assertEqual(result.price, 249)
        result = self.extract(price_box='<span class="prisBOLD product-old-price">349 kr</span>'
                                        '<span class="prisBOLD">299 kr</span>')
        self.assertEqual(result.price, 299)

    def test_price_with_thousands_separator(self):
        self.assertEqual(self.extractor.parse_price_text('1 299 kr'), 1299)
        self.assertEqual(self.extractor.parse_price_text('1\u00a0299 kr'), 1299)
        result = self.extract(price_box='<span class="prisBOLD">1 299 kr</span>')
        self.assertEqual(result.price, 1299)

    def test_missing_price(self):
        result = self.extract(price_box='')
        self.assertIsNone(result.price)
        self.assertIn('Price not found', result.errors)

    def test_quantity_from_metadata(self):
        result = self.extract(title="C4 Ripped Pre-Workout",
                              extra_head='<meta property="product:weight" content="300 g">')
        self.assertEqual((result.quantity, result.quantity_tier), (300, QuantityTier.METADATA))

    def test_quantity_from_url(self):
        result = self.extract(url="https://www.tillskottsbolaget.se/sv/pwo/c4-ripped-500g.html",
                              title="C4 Ripped Pre-Workout")
        self.assertEqual((result.quantity, result.quantity_tier), (500, QuantityTier.URL))

    def test_quantity_default_by_product_type(self):
        result = self.extract(title="Whey Protein Vanilla")
        self.assertEqual(result.product_type, 'protein')
        self.assertEqual((result.quantity, result.quantity_tier), (1000, QuantityTier.PRODUCT_TYPE_DEFAULT))


class TestStructuredFormat(unittest.TestCase):

    def setUp(self):
        self.extractor = TillskottsbolagetExtractor(RULES)

    def structured(self, url=SHOP_URL, **page):
        return self.extractor.to_structured_format(self.extractor.extract(shop_page(**page), url))

    def test_servings_and_confidence(self):
        data = self.structured()
        self.assertEqual(data.servings_per_container, 20)
        self.assertEqual(data.serving_size, '20 g')
        self.assertEqual(data.extraction_metadata.confidence, 0.9)
        self.assertEqual(data.extraction_metadata.quantity_tier, 'header_text')
        self.assertEqual(data.extraction_metadata.extractor_used, 'tillskottsbolaget')

    def test_confidence_penalties(self):
        self.assertEqual(self.structured(price_box='').extraction_metadata.confidence, 0.85)
        url_tier = self.structured(url="https://www.tillskottsbolaget.se/sv/c4-ripped-500g.html",
                                   title="C4 Ripped Pre-Workout")
        self.assertEqual(url_tier.extraction_metadata.confidence, 0.8)
        default_tier = self.structured(title="Whey Protein Vanilla")
        self.assertEqual(default_tier.extraction_metadata.confidence, 0.7)

    def test_record_mapping(self):
        record = structured_to_record(self.structured(), RULES)
        self.assertEqual(record.name, 'C4 Ripped Pre-Workout 400g')
        self.assertEqual(record.price_sek, 249)
        self.assertEqual(record.total_servings, 20)
        self.assertEqual(record.product_type, 'powder')
        self.assertEqual(record.confidence, 90)
        self.assertEqual([i.key for i in record.primary_ingredients], ['l_citrulline'])

    def test_mapping_round_trip_keeps_known_ingredients(self):
        data = self.structured()
        back = record_to_structured(structured_to_record(data, RULES), RULES)
        self.assertEqual(set(back.ingredients), set(data.ingredients))
        for key, entry in data.ingredients.items():
            other = back.ingredients[key]
            self.assertEqual((other.is_included, other.dosage_mg, other.unit, other.sources),
                             (entry.is_included, entry.dosage_mg, entry.unit, entry.sources), key)

    def test_legacy_format(self):
        legacy = to_legacy_format(self.structured())
        self.assertEqual(legacy['active_ingredient'],
                         'Beta-Alanine + L-Citrulline + Caffeine + Green Tea Extract')
        self.assertEqual(legacy['dosage_per_unit'], 3200 + 6000 + 240 + 100)
        self.assertEqual(legacy['total_caffeine_mg'], 240)


if __name__ == "__main__":
    unittest.main(verbosity=2)
