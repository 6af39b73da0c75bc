#!/usr/bin/env python3
"""
Page Loader Tests
=================

load_page() against a mocked Playwright browser.

Run:
    python -m unittest tests.test_page_loader
"""

import io
import sys
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

from playwright.async_api import Error as PlaywrightError

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from supplement_extract import cli, page_loader
from supplement_extract.config import Config
from supplement_extract.errors import ExternalServiceError
from tests.fixtures import SHOP_URL


def fake_browser(button=None, goto_error=None, launch_error=None):
    page = mock.AsyncMock()
    page.query_selector.return_value = button
    page.content.return_value = "<html><h1>C4 Ripped</h1></html>"
    page.title.return_value = "C4 Ripped | Tillskottsbolaget"
    if goto_error:
        page.goto.side_effect = goto_error

    browser = mock.AsyncMock()
    browser.new_page.return_value = page

    playwright = mock.AsyncMock()
    playwright.chromium.launch.return_value = browser
    if launch_error:
        playwright.chromium.launch.side_effect = launch_error

    starter = mock.Mock()
    starter.start = mock.AsyncMock(return_value=playwright)
    return starter, playwright, browser, page


class TestLoadPage(unittest.IsolatedAsyncioTestCase):

    async def test_clicks_read_more_and_returns_markup(self):
        button = mock.AsyncMock()
        starter, playwright, browser, page = fake_browser(button=button)
        with mock.patch.object(page_loader, 'async_playwright', return_value=starter):
            data = await page_loader.load_page(SHOP_URL, Config(PAGE_LOAD_TIMEOUT_MS=5000))

        self.assertEqual(data.url, SHOP_URL)
        self.assertIn('C4 Ripped', data.html)
        self.assertEqual(data.title, 'C4 Ripped | Tillskottsbolaget')
        page.goto.assert_awaited_once_with(SHOP_URL, wait_until='networkidle', timeout=5000)
        page.query_selector.assert_awaited_once_with('.btn.sup-read-more-btn')
        button.click.assert_awaited_once()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()

    async def test_no_read_more_button(self):
        starter, _, _, page = fake_browser(button=None)
        with mock.patch.object(page_loader, 'async_playwright', return_value=starter):
            await page_loader.load_page(SHOP_URL)
        page.wait_for_timeout.assert_not_awaited()

    async def test_load_failure(self):
        starter, playwright, browser, _ = fake_browser(goto_error=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        with mock.patch.object(page_loader, 'async_playwright', return_value=starter):
            with self.assertRaises(ExternalServiceError) as ctx:
                await page_loader.load_page(SHOP_URL)
        self.assertEqual(ctx.exception.service, 'playwright')
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()

    async def test_browser_not_installed(self):
        starter, playwright, browser, _ = fake_browser(
            launch_error=PlaywrightError("Executable doesn't exist at /ms-playwright/chromium")
        )
        with mock.patch.object(page_loader, 'async_playwright', return_value=starter):
            with self.assertRaises(ExternalServiceError):
                await page_loader.load_page(SHOP_URL)
        browser.close.assert_not_awaited()
        playwright.stop.assert_awaited_once()

    async def test_fetch_command_reports_missing_browser(self):
        starter, _, _, _ = fake_browser(launch_error=PlaywrightError("Executable doesn't exist"))
        out = io.StringIO()
        with mock.patch.object(page_loader, 'async_playwright', return_value=starter), \
                mock.patch.object(cli, '_build_extractor', return_value=mock.Mock(config=Config())), \
                redirect_stdout(out):
            code = await cli.main(['fetch', SHOP_URL])
        self.assertEqual(code, 2)
        self.assertIn('Failed to load', out.getvalue())


if __name__ == "__main__":
    unittest.main(verbosity=2)
