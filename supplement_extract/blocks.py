"""
Block extraction: split a product page into candidate semantic blocks.

Uses BeautifulSoup's permissive html.parser so broken markup still yields
whatever blocks can be recovered. Never raises; fragments that fail to
process are skipped.
"""

import re
from typing import Dict, List, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag

from .logger import get_stage_logger
from .models import BlockKind, BlockSet, BlockStructure, SemanticBlock
from .rules import ExtractionRules, load_rules

log = get_stage_logger('blocks')

HEADING_TAGS = ('h1', 'h2', 'h3', 'h4', 'h5', 'h6')
LIST_TAGS = ('ul', 'ol')
_DIGIT = re.compile(r'\d')


def _text(el: Tag) -> str:
    return ' '.join(el.get_text(' ', strip=True).split())


class BlockExtractor:
    """Extract tables, lists, paragraphs, spans, containers and headings."""

    def __init__(self, rules: Optional[ExtractionRules] = None):
        self.rules = rules or load_rules()
        self.filters = self.rules.block_filters
        self._keyword_patterns = [
            p for patterns in self.rules.keyword_patterns.values() for p in patterns.values()
        ]

    def extract(self, markup: str, log=log) -> BlockSet:
        if not markup or not markup.strip():
            return BlockSet()

        try:
            soup = BeautifulSoup(markup, 'html.parser')
        except Exception as e:
            log.event('markup_unparseable', error=str(e))
            return BlockSet()

        for noise in soup.find_all(self.filters['noise_tags']):
            noise.decompose()

        found: Dict[BlockKind, List[SemanticBlock]] = {kind: [] for kind in BlockKind}
        skipped = 0

        for position, el in enumerate(soup.find_all(True)):
            try:
                block = self._to_block(el, position)
            except Exception as e:
                skipped += 1
                log.debug(f"Skipping <{el.name}> fragment: {e}")
                continue
            if block:
                found[block.kind].append(block)

        blocks = BlockSet(
            tables=tuple(found[BlockKind.TABLE]),
            lists=tuple(found[BlockKind.LIST]),
            paragraphs=tuple(found[BlockKind.PARAGRAPH]),
            spans=tuple(found[BlockKind.SPAN]),
            containers=tuple(found[BlockKind.CONTAINER]),
            headings=tuple(found[BlockKind.HEADING]),
        )
        log.event('blocks_extracted', total=blocks.count, skipped=skipped, **blocks.counts())
        return blocks

    # -------------------------------------------------------------------------
    # Per-kind filters
    # -------------------------------------------------------------------------

    def _to_block(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        name = el.name
        if name == 'table':
            return self._table(el, position)
        if name in LIST_TAGS:
            return self._list(el, position)
        if name == 'p':
            return self._paragraph(el, position)
        if name == 'span':
            return self._span(el, position)
        if name in self.filters['container_tags']:
            return self._container(el, position)
        if name in HEADING_TAGS:
            return self._heading(el, position)
        return None

    def _table(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        text = _text(el)
        if not text:
            return None
        rows = []
        for tr in el.find_all('tr'):
            cells = tuple(_text(cell) for cell in tr.find_all(['td', 'th']))
            if any(cells):
                rows.append(cells)
        return self._block(BlockKind.TABLE, el, text, position,
                           structure=BlockStructure(rows=tuple(rows)))

    def _list(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        text = _text(el)
        if not text:
            return None
        items = el.find_all('li', recursive=False) or el.find_all('li')
        structure = BlockStructure(items=tuple(t for t in (_text(li) for li in items) if t))
        return self._block(BlockKind.LIST, el, text, position, structure=structure)

    def _paragraph(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        text = _text(el)
        if len(text) < self.filters['min_paragraph_chars']:
            return None
        return self._block(BlockKind.PARAGRAPH, el, text, position)

    def _span(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        text = _text(el)
        if len(text) < self.filters['min_span_chars']:
            return None
        if not (el.get('class') or _DIGIT.search(text) or self._has_keyword(text)):
            return None
        return self._block(BlockKind.SPAN, el, text, position, truncate=True)

    def _container(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        text = _text(el)
        if not self.filters['min_container_chars'] <= len(text) < self.filters['max_container_chars']:
            return None
        if not (el.get('class') or el.get('id') or self._has_keyword(text)):
            return None
        # only keep containers with substantial text of their own
        child_text = ' '.join(_text(child) for child in el.find_all(True, recursive=False))
        if len(text) <= len(child_text) * self.filters['container_unique_ratio']:
            return None
        return self._block(BlockKind.CONTAINER, el, text, position, truncate=True)

    def _heading(self, el: Tag, position: int) -> Optional[SemanticBlock]:
        text = _text(el)
        if not text:
            return None
        return self._block(BlockKind.HEADING, el, text, position)

    # -------------------------------------------------------------------------

    def _has_keyword(self, text: str) -> bool:
        return any(p.search(text) for p in self._keyword_patterns)

    def _block(self, kind, el, text, position, structure=None, truncate=False) -> SemanticBlock:
        markup = str(el)
        if truncate:
            markup = markup[:self.filters['max_markup_chars']]
        classes = el.get('class') or []
        if isinstance(classes, str):
            classes = [classes]
        return SemanticBlock(
            kind=kind,
            tag=el.name,
            text=text,
            raw_markup=markup,
            class_name=' '.join(classes),
            element_id=el.get('id') or '',
            structure=structure,
            position=position,
        )


def extract_blocks(markup: str, rules: Optional[ExtractionRules] = None) -> BlockSet:
    """Convenience wrapper around BlockExtractor."""
    return BlockExtractor(rules).extract(markup)
