"""
Human-like pacing between automated actions.

The navigation code never sleeps on its own; it asks a Pacer.  RandomPacer
adds bounded random pauses and mouse wiggles; NullPacer does nothing so
tests run fast and deterministically.
"""

import logging
import random
import time

logger = logging.getLogger("mapcrawl")

# Named pause windows in milliseconds (min, max)
PAUSES = {
    "tab":       (1000, 2000),
    "user_page": (1000, 25000),
    "items":     (500, 1000),
    "item":      (500, 1000),
    "next":      (1000, 2000),
    "mouse":     (200, 500),
}

MOUSE_MOVES = 5
MOUSE_SPREAD_PX = 20


class NullPacer:
    """Pacer that never waits."""

    def pause(self, kind: str) -> None:
        pass

    def hover(self, page, box) -> None:
        pass


class RandomPacer:
    """
    Sleep a random time inside the named window, scaled by *scale*.

    Args:
        scale: Multiplier applied to every window (0 disables waiting
               but still moves the mouse).
        rng:   Source of randomness; a seeded random.Random for replays.
        sleep: Sleep function (seconds).
    """

    def __init__(self, scale: float = 1.0, *, rng=None, sleep=time.sleep):
        self.scale = scale
        self._rng = rng or random.Random()
        self._sleep = sleep

    def pause(self, kind: str) -> None:
        low, high = PAUSES.get(kind, PAUSES["item"])
        ms = self._rng.randint(low, high) * self.scale
        if ms <= 0:
            return
        logger.debug(f"Sleeping for {ms:.0f} ms ({kind})")
        self._sleep(ms / 1000.0)

    def hover(self, page, box) -> None:
        """Wiggle the mouse around the centre of *box* (a bounding-box dict)."""
        if not box:
            return
        x = box["x"] + box["width"] / 2
        y = box["y"] + box["height"] / 2
        for _ in range(MOUSE_MOVES):
            dx = self._rng.random() * MOUSE_SPREAD_PX - MOUSE_SPREAD_PX / 2
            dy = self._rng.random() * MOUSE_SPREAD_PX - MOUSE_SPREAD_PX / 2
            page.mouse.move(x + dx, y + dy, steps=5)
            self.pause("mouse")


def build_pacer(config: dict):
    """Return the pacer described by config['jitter']."""
    jitter = config.get("jitter") or {}
    if not jitter.get("enabled", True):
        return NullPacer()
    return RandomPacer(scale=jitter.get("scale", 1.0))
