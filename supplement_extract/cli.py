#!/usr/bin/env python3
"""
Supplement extraction command line.

Usage:
    supplement-extract extract <file.html> [url] [--mode sequential|parallel]
    supplement-extract fetch <url> [--mode sequential|parallel]
    supplement-extract help
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from .config import Config
from .errors import ExternalServiceError
from .extractor import SupplementExtractor, get_extraction_summary
from .models import ExtractionResult
from .page_loader import load_page

MODES = ('sequential', 'parallel')


def show_help():
    """Show usage help"""
    print("""
💊 SUPPLEMENT EXTRACTOR

Usage:
    supplement-extract <command> [arguments]

Commands:
    extract <file.html> [url]   Extract from a saved product page
    fetch <url>                 Load the page with a headless browser, then extract
    help                        Show this help message

Options:
    --mode sequential|parallel  Force the extraction mode for every site

Examples:
    supplement-extract extract page.html https://www.tillskottsbolaget.se/sv/pwo/c4.html
    supplement-extract fetch https://www.tillskottsbolaget.se/sv/pwo/c4.html --mode parallel

Configuration:
    Set ANTHROPIC_API_KEY, NORMALIZER_ENDPOINT, VISION_ENDPOINT, SITE_MODES
    in the environment or a .env file
    """)


def _pop_mode(args: List[str]) -> Optional[str]:
    if '--mode' not in args:
        return None
    index = args.index('--mode')
    if index + 1 >= len(args) or args[index + 1] not in MODES:
        raise ValueError(f"--mode expects one of: {', '.join(MODES)}")
    mode = args[index + 1]
    del args[index:index + 2]
    return mode


def _build_extractor(mode: Optional[str]) -> SupplementExtractor:
    cfg = Config(EXTRACTION_MODE=mode, SITE_MODES={}) if mode else Config()
    return SupplementExtractor(config=cfg)


def print_result(result: ExtractionResult):
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    summary = get_extraction_summary(result)
    status = "✅" if result.success else "⚠️"
    print(f"\n{status} {summary['source']} | completeness {summary['completeness']}% "
          f"| confidence {summary['confidence']}")
    if summary['fallbacks_used']:
        print(f"   Fallbacks: {', '.join(summary['fallbacks_used'])}")
    for prompt in result.user_input_needed:
        print(f"   ❓ {prompt.field}: {prompt.prompt}")


async def cmd_extract(args: List[str], mode: Optional[str]) -> int:
    if not args:
        print("❌ extract needs a file path")
        return 2
    path = Path(args[0])
    if not path.exists():
        print(f"❌ File not found: {path}")
        return 2
    url = args[1] if len(args) > 1 else ''
    markup = path.read_text(encoding='utf-8', errors='replace')
    result = await _build_extractor(mode).extract(markup, url)
    print_result(result)
    return 0 if result.success else 1


async def cmd_fetch(args: List[str], mode: Optional[str]) -> int:
    if not args:
        print("❌ fetch needs a URL")
        return 2
    extractor = _build_extractor(mode)
    try:
        page = await load_page(args[0], extractor.config)
    except ExternalServiceError as e:
        print(f"❌ {e}")
        return 2
    print(f"📄 Loaded {len(page.html)} characters from {page.url}")
    result = await extractor.extract(page.html, page.url)
    print_result(result)
    return 0 if result.success else 1


async def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        show_help()
        return 0

    try:
        mode = _pop_mode(args)
    except ValueError as e:
        print(f"❌ {e}")
        return 2

    command = args[0].lower()
    if command == "extract":
        return await cmd_extract(args[1:], mode)
    elif command == "fetch":
        return await cmd_fetch(args[1:], mode)
    elif command == "help":
        show_help()
        return 0
    else:
        print(f"❌ Unknown command: {command}")
        show_help()
        return 2


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
