"""
Page loading with Playwright.

Loads a product page in headless Chromium, expands collapsed description
sections (read-more buttons) and returns the rendered markup.
"""

from typing import Optional, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .config import Config, config as default_config
from .errors import ExternalServiceError
from .logger import get_stage_logger
from .models import PageData

# buttons that hide the ingredient table until clicked
READ_MORE_SELECTORS = ('.btn.sup-read-more-btn',)


async def load_page(url: str, cfg: Config = default_config,
                    read_more_selectors: Sequence[str] = READ_MORE_SELECTORS,
                    correlation_id: Optional[str] = None) -> PageData:
    """
    Load `url` and return its rendered markup.

    Raises:
        ExternalServiceError if the page cannot be loaded.
    """
    log = get_stage_logger('page_loader', correlation_id)
    playwright = None
    browser = None
    try:
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(headless=True, args=['--no-sandbox'])
        page = await browser.new_page(viewport={'width': 1280, 'height': 800})
        await page.goto(url, wait_until='networkidle', timeout=cfg.PAGE_LOAD_TIMEOUT_MS)

        for selector in read_more_selectors:
            button = await page.query_selector(selector)
            if button is None:
                continue
            try:
                await button.click()
                await page.wait_for_timeout(2000)
                log.event('read_more_clicked', selector=selector)
            except PlaywrightError as e:
                log.event('read_more_failed', selector=selector, error=str(e)[:200])

        html = await page.content()
        title = await page.title()
    except PlaywrightError as e:
        log.event('page_load_failed', url=url, error=str(e)[:200])
        raise ExternalServiceError(f"Failed to load {url}: {e}", service='playwright') from e
    finally:
        if browser is not None:
            await browser.close()
        if playwright is not None:
            await playwright.stop()

    log.event('page_loaded', url=url, markup_chars=len(html))
    return PageData(url=url, html=html, title=title or None)
