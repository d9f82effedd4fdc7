"""
Browser session: one Playwright instance, one browser, one context, one page.

A session belongs to exactly one job attempt sequence and is handed
explicitly to the navigation code; nothing here is stored globally.
Sync Playwright objects are bound to the thread that created them, so every
worker thread launches its own session.
"""

import logging

from playwright.sync_api import sync_playwright

logger = logging.getLogger("mapcrawl")

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

# Mimic a real desktop browser in headless mode — avoid the default
# 800×600 viewport and the "HeadlessChrome" user-agent string.
HEADLESS_VIEWPORT = {"width": 1920, "height": 1080}
HEADLESS_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)


class BrowserSession:
    """Owns the Playwright objects for one job attempt sequence."""

    def __init__(self, playwright, browser, context, page, *, label: str = ""):
        self._playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page
        self.label = label
        self.closed = False

    @classmethod
    def launch(cls, config: dict, *, label: str = "") -> "BrowserSession":
        """Start Playwright and open a fresh browser, context and page."""
        is_headless = config.get("headless", False)
        args = list(LAUNCH_ARGS)
        if is_headless:
            # Prevent navigator.webdriver from returning true (bot detection)
            args.append("--disable-blink-features=AutomationControlled")

        playwright = sync_playwright().start()
        browser = None
        try:
            browser = playwright.chromium.launch(headless=is_headless, args=args)

            ctx_opts: dict = {}
            proxy = config.get("proxy")
            if proxy:
                ctx_opts["proxy"] = {
                    k: v for k, v in proxy.items()
                    if k in ("server", "username", "password", "bypass") and v
                }
            if is_headless:
                ctx_opts["viewport"] = HEADLESS_VIEWPORT
                ctx_opts["user_agent"] = HEADLESS_USER_AGENT

            context = browser.new_context(**ctx_opts)
            page = context.new_page()
            page.set_default_timeout(config.get("element_timeout", 60_000))
        except Exception:
            if browser is not None:
                try:
                    browser.close()
                except Exception:
                    pass
            playwright.stop()
            raise

        logger.info(f"Browser session opened{f' for {label}' if label else ''}")
        return cls(playwright, browser, context, page, label=label)

    def close(self) -> None:
        """Close browser and stop Playwright. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        try:
            self.browser.close()
        except Exception as e:
            logger.debug(f"Browser close raised (already gone?): {e}")
        try:
            self._playwright.stop()
        except Exception as e:
            logger.debug(f"Playwright stop raised: {e}")
        logger.info(f"Browser session closed{f' for {self.label}' if self.label else ''}")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def __repr__(self):
        return f"BrowserSession({self.label or '-'}, closed={self.closed})"


def session_factory(config: dict):
    """Return a zero-argument callable that launches sessions for *config*."""
    def _factory(label: str = "") -> BrowserSession:
        return BrowserSession.launch(config, label=label)
    return _factory
