# tests/conftest.py
import threading
import time
from urllib.parse import urlencode

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from mapcrawl import navigator
from mapcrawl.extractor import DETAIL_SELECTOR
from mapcrawl.utils import apply_defaults

SESSION_CLOSED_MESSAGE = "Target page, context or browser has been closed"


# ---------------------------------------------------------------------
# A tiny fake of the Mapillary pages, driven through Playwright-like calls
# ---------------------------------------------------------------------
class FakeSite:
    """
    users: {username: [item, ...]} where item is a list of views and a
    view is (image_ref, lat, lng).  Any of the three may be None.
    """

    def __init__(self, users=None, leaderboard=None, tab_present=True):
        self.users = users or {}
        self.leaderboard = leaderboard or []
        self.tab_present = tab_present


class FakeMouse:
    def __init__(self, page):
        self.page = page

    def move(self, x, y, steps=1):
        self.page.calls.append(("mouse_move",))


class FakeItem:
    def __init__(self, page, index):
        self.page = page
        self.index = index

    def bounding_box(self):
        self.page.calls.append(("bounding_box", self.index))
        return None if self.index in self.page.offscreen else {"x": 0, "y": 0, "width": 40, "height": 20}

    def scroll_into_view_if_needed(self):
        self.page.calls.append(("scroll", self.index))

    def click(self):
        self.page.calls.append(("item_click", self.index))
        if self.index in self.page.crash_on_items:
            raise PlaywrightError(SESSION_CLOSED_MESSAGE)
        self.page.item = self.index
        self.page.step = 0
        self.page.refresh_url()


class FakeLocator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    def count(self):
        self.page.calls.append(("count", self.selector))
        return len(self.page.items())

    def nth(self, index):
        return FakeItem(self.page, index)


class FakeDetail:
    def __init__(self, image_ref):
        self.image_ref = image_ref

    def evaluate(self, expression):
        return f'url("{self.image_ref}")' if self.image_ref else "none"


class FakeNext:
    def __init__(self, page, enabled):
        self.page = page
        self.enabled = enabled

    def is_visible(self):
        self.page.calls.append(("next_is_visible",))
        return True

    def is_enabled(self):
        self.page.calls.append(("next_is_enabled",))
        return self.enabled

    def get_attribute(self, name):
        self.page.calls.append(("next_get_attribute", name))
        return "mapillary-sequence-step-next" + ("" if self.enabled else " disabled")

    def click(self):
        self.page.calls.append(("next_click",))
        if (self.page.item, self.page.step) in self.page.stalls:
            return  # UI froze: URL never changes
        self.page.step += 1
        self.page.refresh_url()


class FakePage:
    def __init__(self, site, *, goto_delay=0.0, goto_errors=None):
        self.site = site
        self.url = "about:blank"
        self.calls = []
        self.mouse = FakeMouse(self)
        self.username = None
        self.item = None
        self.step = 0
        self.goto_delay = goto_delay
        self.goto_errors = list(goto_errors or [])
        self.detail_missing = set()     # item indexes whose detail element never shows
        self.stalls = set()             # (item, step) where clicking next changes nothing
        self.crash_on_items = set()     # item indexes whose click kills the browser
        self.offscreen = set()          # item indexes without a bounding box

    # ── helpers used by the fakes ────────────────────────────────────
    def items(self):
        if self.username is None:
            return []
        return self.site.users.get(self.username, [])

    def view(self):
        if self.item is None:
            return None
        return self.items()[self.item][self.step]

    def refresh_url(self):
        image_ref, lat, lng = self.view()
        params = {"item": self.item, "step": self.step}
        if lat is not None:
            params["lat"] = lat
        if lng is not None:
            params["lng"] = lng
        self.url = f"https://www.mapillary.com/app/user/{self.username}?{urlencode(params)}"

    def driver_calls(self, name):
        return [c for c in self.calls if c[0] == name]

    # ── Playwright-like surface ──────────────────────────────────────
    def goto(self, url, wait_until=None, timeout=None):
        self.calls.append(("goto", url))
        if self.goto_errors:
            raise self.goto_errors.pop(0)
        if self.goto_delay:
            time.sleep(self.goto_delay)
        self.url = url
        self.item = None
        self.step = 0
        self.username = url.rsplit("/", 1)[-1] if "/user/" in url else None

    def wait_for_selector(self, selector, state=None, timeout=None):
        self.calls.append(("wait_for_selector", selector))
        if selector == navigator.SEQUENCE_ITEM and not self.items():
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        if selector == DETAIL_SELECTOR and (self.item is None or self.item in self.detail_missing):
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        if selector == navigator.ALL_TIME_TAB and not self.site.tab_present:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return object()

    def locator(self, selector):
        return FakeLocator(self, selector)

    def query_selector(self, selector):
        self.calls.append(("query_selector", selector))
        if selector == DETAIL_SELECTOR:
            view = self.view()
            return FakeDetail(view[0]) if view else None
        if selector == navigator.NEXT_STEP:
            if self.item is None:
                return None
            return FakeNext(self, enabled=self.step + 1 < len(self.items()[self.item]))
        return None

    def wait_for_function(self, expression, arg=None, timeout=None):
        self.calls.append(("wait_for_function", arg))
        if self.url == arg:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    def click(self, selector):
        self.calls.append(("click", selector))

    def wait_for_load_state(self, state=None, timeout=None):
        self.calls.append(("wait_for_load_state", state))

    def evaluate(self, expression, arg=None):
        self.calls.append(("evaluate",))
        limit = arg[1] if arg else len(self.site.leaderboard)
        return list(self.site.leaderboard)[:limit]

    def screenshot(self, **kwargs):
        raise PlaywrightError("screenshots are not available in tests")

    def content(self):
        return "<html></html>"


class FakeSession:
    def __init__(self, page, label, events, lock):
        self.page = page
        self.label = label
        self.closed = False
        self._events = events
        self._lock = lock

    def close(self):
        if self.closed:
            return
        self.closed = True
        with self._lock:
            self._events.append(("close", self.label))


class FakeSessionFactory:
    """Stands in for session_factory(config); records open/close order."""

    def __init__(self, site, *, page_setup=None, **page_kwargs):
        self.site = site
        self.page_setup = page_setup
        self.page_kwargs = page_kwargs
        self.events = []
        self.sessions = []
        self._lock = threading.Lock()

    def __call__(self, label=""):
        page = FakePage(self.site, **self.page_kwargs)
        if self.page_setup:
            self.page_setup(page, len(self.sessions))
        session = FakeSession(page, label, self.events, self._lock)
        with self._lock:
            self.events.append(("open", label))
            self.sessions.append(session)
        return session


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def config(tmp_path):
    return apply_defaults({
        "concurrency": 1,
        "max_attempts": 3,
        "base_delay": 0,
        "max_steps": 5,
        "detail_wait_attempts": 2,
        "detail_wait_delay": 0,
        "jitter": {"enabled": False},
        "diagnostics": False,
        "queue_file": str(tmp_path / "jobs.json"),
        "results_file": str(tmp_path / "results.jsonl"),
    })


@pytest.fixture
def site():
    return FakeSite(
        users={
            "alice": [
                [("img-a1", "10.1", "106.1"), ("img-a2", "10.2", "106.2")],
                [("img-a3", "10.3", "106.3")],
            ],
            "bob": [
                [("img-b1", "21.0", "105.8"), ("img-b2", None, None)],
            ],
            "nobody": [],
        },
        leaderboard=["alice", "bob", "  ", "alice", "carol"],
    )


@pytest.fixture
def sleep():
    return RecordingSleep()
