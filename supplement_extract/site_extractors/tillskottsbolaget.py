"""
Structured extractor for tillskottsbolaget.se.

Product pages carry a nutrition table inside div.JS-CleaningFunc__nutrition
and the price inside #PrisFalt (span.prisREA for sale prices, span.prisBOLD
otherwise; the regular price is shown struck through during a sale).
"""

from typing import Optional

from bs4 import BeautifulSoup

from .base import SiteExtractor, StructuredExtractionResult

NUTRITION_SELECTORS = ('div.JS-CleaningFunc__nutrition', '[class*="nutrition"]', '[class*="CleaningFunc"]')
TITLE_SELECTORS = ('h1', '.product-title', '[class*="title"]')
PRICE_SELECTORS = ('span.prisREA', 'span.prisBOLD')
QUANTITY_SELECTORS = ('h1', '.product-title', '.product-name', '.product-info', '.product-description')


class TillskottsbolagetExtractor(SiteExtractor):

    site_domain = "tillskottsbolaget.se"
    name = "tillskottsbolaget"

    def extract(self, markup: str, url: Optional[str] = None) -> StructuredExtractionResult:
        result = StructuredExtractionResult()
        soup = BeautifulSoup(markup or '', 'html.parser')

        for selector in TITLE_SELECTORS:
            title = soup.select_one(selector)
            if title and title.get_text(strip=True):
                result.product_name = ' '.join(title.get_text(' ', strip=True).split())
                break
        result.product_type = self.detect_product_type(result.product_name)

        section = None
        for selector in NUTRITION_SELECTORS:
            section = soup.select_one(selector)
            if section:
                break
        table = section.find('table') if section else None
        if table:
            self.parse_table(table, result)
        else:
            result.errors.append('Nutrition table not found')

        result.price = self.find_price(soup)
        if result.price is None:
            result.errors.append('Price not found')

        header_texts = [el.get_text(' ', strip=True) for s in QUANTITY_SELECTORS for el in soup.select(s)]
        self.resolve_quantity(result, header_texts, soup, url)

        self.log.event(
            'site_extracted',
            table_found=result.table_found,
            table_kind=result.table_kind.value if result.table_kind else None,
            ingredients=len(result.ingredients),
            price=result.price,
            quantity_tier=result.quantity_tier.value,
        )
        return result

    def find_price(self, soup: BeautifulSoup) -> Optional[float]:
        container = soup.select_one('#PrisFalt')
        if not container:
            return None

        for selector in PRICE_SELECTORS:
            for el in container.select(selector):
                if self.is_struck(el, stop=container):
                    continue
                price = self.parse_price_text(el.get_text(' ', strip=True))
                if price is not None:
                    return price

        # any un-struck text in the price box
        for text in container.find_all(string=True):
            if self.is_struck(text.parent, stop=container):
                continue
            price = self.parse_price_text(str(text), allow_bare=False)
            if price is not None:
                return price
        return None
