"""
Navigator module: the site workflow as an explicit state machine.

Seeding path (leaderboard → usernames):
  START → LEADERBOARD_LOADED → ALL_TIME_TAB_SELECTED → USERNAMES_COLLECTED

Per-user path (one job attempt):
  START → USER_PAGE_LOADED → SEQUENCE_ITEM_SELECTED → PAGINATION_STEP(n)
        → PAGINATION_EXHAUSTED → (next item: SEQUENCE_ITEM_SELECTED …) → DONE

Guards:
  USER_PAGE_LOADED → SEQUENCE_ITEM_SELECTED   needs ≥ 1 sequence item, else NoItemsFound
  SEQUENCE_ITEM_SELECTED → PAGINATION_STEP(0) needs the detail element; if it never
                                              shows up the item is skipped
  PAGINATION_STEP(n) → PAGINATION_STEP(n+1)   needs an enabled "next" affordance
  PAGINATION_STEP(n) → PAGINATION_EXHAUSTED   affordance disabled/absent, or n == max_steps

The page is passed in explicitly; a navigator never opens or closes sessions.
All pauses go through the injected pacer.
"""

import logging
import time
from dataclasses import dataclass

from playwright.sync_api import Error as PlaywrightError

from mapcrawl.errors import (
    ElementExtractionFailure,
    NoItemsFound,
    SessionLost,
    TransientNavigation,
    classify_driver_error,
    is_session_lost,
)
from mapcrawl.extractor import DETAIL_SELECTOR, Extractor, RecordSet
from mapcrawl.pacing import NullPacer
from mapcrawl.utils import capture_diagnostics

logger = logging.getLogger("mapcrawl")

# -- Selectors -------------------------------------------------------------------
ALL_TIME_TAB      = "#tab-All\\ time"
LEADERBOARD_NAME  = ".flex-auto.h4.truncate"
SEQUENCE_ITEM     = "drawer-sequence-item.ng-star-inserted"
NEXT_STEP         = "div.mapillary-sequence-step-next"

# Mapillary is an SPA — domcontentloaded is enough for the first paint
WAIT_STRATEGY = "domcontentloaded"

_JS_LEADERBOARD_NAMES = """
([selector, limit]) => Array.from(document.querySelectorAll(selector))
    .slice(0, limit)
    .map(el => (el.textContent || '').trim())
"""

_JS_URL_CHANGED = "(previous) => window.location.href !== previous"


class NavState:
    START                  = "start"
    LEADERBOARD_LOADED     = "leaderboard_loaded"
    ALL_TIME_TAB_SELECTED  = "all_time_tab_selected"
    USERNAMES_COLLECTED    = "usernames_collected"
    USER_PAGE_LOADED       = "user_page_loaded"
    SEQUENCE_ITEM_SELECTED = "sequence_item_selected"
    PAGINATION_STEP        = "pagination_step"
    PAGINATION_EXHAUSTED   = "pagination_exhausted"
    DONE                   = "done"


# (from, to, guard) — the legal edges; read by generate_diagrams.py
TRANSITIONS = [
    (NavState.START,                  NavState.LEADERBOARD_LOADED,     "goto leaderboard"),
    (NavState.LEADERBOARD_LOADED,     NavState.ALL_TIME_TAB_SELECTED,  "click 'All time' tab"),
    (NavState.LEADERBOARD_LOADED,     NavState.USERNAMES_COLLECTED,    "tab missing: read default tab"),
    (NavState.ALL_TIME_TAB_SELECTED,  NavState.USERNAMES_COLLECTED,    "read names"),
    (NavState.START,                  NavState.USER_PAGE_LOADED,       "goto user page"),
    (NavState.USER_PAGE_LOADED,       NavState.SEQUENCE_ITEM_SELECTED, "items > 0"),
    (NavState.SEQUENCE_ITEM_SELECTED, NavState.PAGINATION_STEP,        "detail element visible"),
    (NavState.SEQUENCE_ITEM_SELECTED, NavState.SEQUENCE_ITEM_SELECTED, "item skipped"),
    (NavState.PAGINATION_STEP,        NavState.PAGINATION_STEP,        "next enabled, state changed"),
    (NavState.PAGINATION_STEP,        NavState.PAGINATION_EXHAUSTED,   "next disabled or n == max_steps"),
    (NavState.PAGINATION_STEP,        NavState.SEQUENCE_ITEM_SELECTED, "item failed mid-sequence"),
    (NavState.PAGINATION_STEP,        NavState.DONE,                   "last item failed mid-sequence"),
    (NavState.PAGINATION_EXHAUSTED,   NavState.SEQUENCE_ITEM_SELECTED, "more items"),
    (NavState.PAGINATION_EXHAUSTED,   NavState.DONE,                   "last item"),
    (NavState.SEQUENCE_ITEM_SELECTED, NavState.DONE,                   "last item skipped"),
]

_ALLOWED = {(src, dst) for src, dst, _ in TRANSITIONS}


@dataclass
class SequenceCursor:
    """Progress through one item's paginated image sequence."""

    position: int
    max_steps: int
    step_count: int = 0
    has_more: bool = True

    @property
    def terminal(self) -> bool:
        return not self.has_more or self.step_count >= self.max_steps

    def advance(self) -> None:
        if self.terminal:
            raise RuntimeError(f"Cursor already terminal at step {self.step_count}")
        self.step_count += 1

    def exhaust(self) -> None:
        self.has_more = False


# =================================================================================
#  Driver helpers
# =================================================================================

def wait_for_state_change(page, previous_url: str, timeout: int) -> None:
    """
    Block until the page shows a new externally observable state — the
    SPA rewrites the URL (image key, lat/lng) on every step.

    Raises TransientNavigation on timeout, SessionLost if the page died.
    """
    try:
        page.wait_for_function(_JS_URL_CHANGED, arg=previous_url, timeout=timeout)
    except PlaywrightError as e:
        raise classify_driver_error(e, "waiting for next view") from e


def wait_for_selector_with_retry(
    page,
    selector: str,
    *,
    attempts: int,
    delay: float,
    timeout: int,
    sleep=time.sleep,
):
    """
    Wait for *selector* to be visible, up to *attempts* tries *delay*
    seconds apart.  Returns the element handle.

    Raises TransientNavigation when every try timed out.
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            return page.wait_for_selector(selector, state="visible", timeout=timeout)
        except PlaywrightError as e:
            if is_session_lost(e):
                raise SessionLost(f"waiting for {selector}: {e}") from e
            last_error = e
            logger.warning(
                f"  Attempt {attempt}/{attempts} failed for selector {selector}."
                + (f" Retrying in {delay}s..." if attempt < attempts else "")
            )
            if attempt < attempts:
                sleep(delay)
    raise TransientNavigation(
        f"All {attempts} attempts to wait for {selector} failed: {last_error}"
    )


# =================================================================================
#  State machine base
# =================================================================================

class _Navigator:
    """Shared state / history bookkeeping for both workflow paths."""

    def __init__(self, page, config: dict, *, pacer=None, label: str = ""):
        self.page = page
        self.config = config
        self.pacer = pacer or NullPacer()
        self.label = label
        self.state = NavState.START
        self.state_entered_at = time.time()
        self.history: list = []               # [(timestamp, state, message), ...]
        self.phase_times: dict = {}           # {state_name: total_seconds_spent}

    def transition(self, new_state: str, message: str = "") -> None:
        """Move to *new_state*, recording timing + history."""
        old = self.state
        if (old, new_state) not in _ALLOWED:
            raise RuntimeError(f"Illegal transition {old} → {new_state}")
        now = time.time()
        elapsed = now - self.state_entered_at
        self.phase_times[old] = self.phase_times.get(old, 0) + elapsed
        self.state = new_state
        self.state_entered_at = now
        self.history.append((now, new_state, message or f"from {old} ({elapsed:.1f}s)"))
        logger.debug(f"  [{self.label}] {old} → {new_state} {message}")

    @property
    def states_visited(self) -> list:
        return [state for _, state, _ in self.history]

    def _goto(self, url: str) -> None:
        try:
            self.page.goto(url, wait_until=WAIT_STRATEGY, timeout=self.config["nav_timeout"])
        except PlaywrightError as e:
            raise classify_driver_error(e, f"loading {url}") from e

    def _diagnose(self, label: str) -> None:
        if self.config.get("diagnostics"):
            capture_diagnostics(self.page, f"{self.label}_{label}")


# =================================================================================
#  Seeding path
# =================================================================================

class LeaderboardCrawl(_Navigator):
    """Read the top usernames from the 'All time' leaderboard."""

    def __init__(self, page, config: dict, *, pacer=None):
        super().__init__(page, config, pacer=pacer, label="leaderboard")

    def run(self) -> list[str]:
        url = self.config["leaderboard_url"]
        logger.info(f"Navigating to leaderboard: {url}")
        self._goto(url)
        self.transition(NavState.LEADERBOARD_LOADED)

        try:
            logger.info("Waiting for 'All time' tab...")
            self.page.wait_for_selector(
                ALL_TIME_TAB, state="visible", timeout=self.config["nav_timeout"]
            )
            self.pacer.pause("tab")
            logger.info("Clicking 'All time' tab...")
            self.page.click(ALL_TIME_TAB)
            self.page.wait_for_load_state("networkidle", timeout=self.config["nav_timeout"])
            self.transition(NavState.ALL_TIME_TAB_SELECTED)
        except PlaywrightError as e:
            if is_session_lost(e):
                raise SessionLost(f"selecting 'All time' tab: {e}") from e
            # Keep going with whatever tab is showing
            logger.error(f"Error interacting with 'All time' tab: {e}")
            self._diagnose("all_time_tab")

        try:
            raw = self.page.evaluate(
                _JS_LEADERBOARD_NAMES, [LEADERBOARD_NAME, self.config["leaderboard_limit"]]
            )
        except PlaywrightError as e:
            raise classify_driver_error(e, "reading leaderboard") from e

        usernames = []
        for name in raw or []:
            name = (name or "").strip()
            if name and name not in usernames:
                usernames.append(name)

        self.transition(NavState.USERNAMES_COLLECTED, f"{len(usernames)} names")
        logger.info(f"Leaderboard yielded {len(usernames)} username(s)")
        return usernames


# =================================================================================
#  Per-user path
# =================================================================================

class UserCrawl(_Navigator):
    """
    Walk every sequence item on a user's page and collect image records.

    One instance == one job attempt: the RecordSet it fills is fresh and
    is discarded if the attempt fails.
    """

    def __init__(
        self, page, username: str, config: dict, *, pacer=None, sleep=time.sleep, on_item=None
    ):
        super().__init__(page, config, pacer=pacer, label=username)
        self.username = username
        self.on_item = on_item
        self.extractor = Extractor(RecordSet(), selector=DETAIL_SELECTOR)
        self._sleep = sleep
        self.items_total = 0
        self.items_skipped = 0
        self.cursors: list[SequenceCursor] = []

    @property
    def records(self) -> RecordSet:
        return self.extractor.records

    @property
    def user_url(self) -> str:
        return self.config["user_url_template"].format(username=self.username)

    def run(self) -> RecordSet:
        """Drive the full per-user workflow. Returns the attempt's RecordSet."""
        logger.info(f"Processing crawl for user: {self.username}")
        self._goto(self.user_url)
        self.transition(NavState.USER_PAGE_LOADED)
        self.pacer.pause("user_page")

        items = self._locate_items()
        self.pacer.pause("items")

        for index in range(self.items_total):
            try:
                self._walk_item(index, items.nth(index))
            except ElementExtractionFailure as e:
                self.items_skipped += 1
                logger.error(f"  Error processing element: {e}")
                self._diagnose(f"item{index}")
            if self.on_item is not None:
                self.on_item()

        self.transition(NavState.DONE, f"{len(self.records)} records")
        logger.info(
            f"Crawl finished for {self.username}: {len(self.records)} unique image(s) "
            f"from {self.items_total} item(s), {self.items_skipped} skipped"
        )
        return self.records

    # ── Guards ───────────────────────────────────────────────────────────

    def _locate_items(self):
        """USER_PAGE_LOADED guard: at least one sequence item must render."""
        try:
            self.page.wait_for_selector(
                SEQUENCE_ITEM, state="visible", timeout=self.config["element_timeout"]
            )
        except PlaywrightError as e:
            if is_session_lost(e):
                raise SessionLost(f"waiting for sequence items: {e}") from e
            logger.debug(f"  Sequence items never became visible: {e}")

        try:
            items = self.page.locator(SEQUENCE_ITEM)
            self.items_total = items.count()
        except PlaywrightError as e:
            raise classify_driver_error(e, "counting sequence items") from e

        logger.info(f"Found {self.items_total} sequence item(s).")
        if not self.items_total:
            self._diagnose("no_items")
            raise NoItemsFound(self.username)
        return items

    def _next_affordance(self):
        """Return the 'next' element if it is present, visible and enabled, else None."""
        element = self.page.query_selector(NEXT_STEP)
        if element is None:
            return None
        if not element.is_visible() or not element.is_enabled():
            return None
        if "disabled" in (element.get_attribute("class") or ""):
            return None
        return element

    # ── Item workflow ───────────────────────────────────────────────────

    def _walk_item(self, index: int, item) -> SequenceCursor:
        """
        SEQUENCE_ITEM_SELECTED → PAGINATION_STEP(0..n) → PAGINATION_EXHAUSTED
        for one item.  Driver failures become ElementExtractionFailure unless
        the session itself is gone.
        """
        cursor = SequenceCursor(position=index, max_steps=self.config["max_steps"])
        self.cursors.append(cursor)
        self.transition(NavState.SEQUENCE_ITEM_SELECTED, f"item {index}")
        try:
            self._select_item(item)
            wait_for_selector_with_retry(
                self.page,
                DETAIL_SELECTOR,
                attempts=self.config["detail_wait_attempts"],
                delay=self.config["detail_wait_delay"],
                timeout=self.config["element_timeout"],
                sleep=self._sleep,
            )
            self._paginate(cursor)
        except SessionLost:
            raise
        except PlaywrightError as e:
            if is_session_lost(e):
                raise SessionLost(f"item {index}: {e}") from e
            raise ElementExtractionFailure(index, str(e)) from e
        except TransientNavigation as e:
            raise ElementExtractionFailure(index, str(e)) from e
        return cursor

    def _select_item(self, item) -> None:
        logger.debug("  Processing element...")
        box = item.bounding_box()
        if not box:
            logger.debug("  Element is not visible in viewport — scrolling")
            item.scroll_into_view_if_needed()
        self.pacer.pause("item")
        self.pacer.hover(self.page, box)
        self.pacer.pause("item")
        item.click()
        self.pacer.pause("item")

    def _paginate(self, cursor: SequenceCursor) -> None:
        """Extract at each step; advance while 'next' is enabled and under max_steps."""
        while True:
            self.transition(
                NavState.PAGINATION_STEP, f"item {cursor.position} step {cursor.step_count}"
            )
            self.extractor.extract(self.page)

            if cursor.step_count >= cursor.max_steps:
                logger.info("  Reached max next clicks limit.")
                break

            next_element = self._next_affordance()
            if next_element is None:
                logger.debug("  No enabled next step — sequence exhausted")
                cursor.exhaust()
                break

            previous_url = self.page.url
            logger.debug("  Next...")
            next_element.click()
            self.pacer.pause("next")
            wait_for_state_change(self.page, previous_url, self.config["step_timeout"])
            cursor.advance()

        self.transition(
            NavState.PAGINATION_EXHAUSTED,
            f"item {cursor.position} after {cursor.step_count} step(s)",
        )
