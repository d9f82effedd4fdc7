"""
Extractor / deduper: turn the currently displayed image into at most one
new ExtractionRecord.

The image reference comes from the detail element's CSS background-image,
the coordinates from the lat / lng query parameters of the page URL.
Nothing here knows about retries or sessions.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger("mapcrawl")

UNKNOWN = "Unknown"

# The element that carries the full-size image as a CSS background
DETAIL_SELECTOR = "div.mapillary-cover-background"

_BACKGROUND_URL_RE = re.compile(r"""url\(\s*(['"]?)(.*?)\1\s*\)""")

_JS_BACKGROUND_IMAGE = "(el) => el.style.backgroundImage || getComputedStyle(el).backgroundImage"


@dataclass(frozen=True)
class Observation:
    """What the page shows right now."""

    image_ref: str | None
    lat: str | None
    long: str | None


@dataclass(frozen=True)
class ExtractionRecord:
    image_ref: str
    lat: str = UNKNOWN
    long: str = UNKNOWN

    def to_document(self) -> dict:
        """Shape stored in the results file."""
        return {
            "Image": self.image_ref,
            "Coordinates": {"Lat": self.lat, "Long": self.long},
        }


class RecordSet:
    """Ordered, append-only set of records keyed by image_ref.

    Scoped to a single job attempt; never shared.
    """

    def __init__(self):
        self._records: list[ExtractionRecord] = []
        self._seen: set[str] = set()

    def add(self, observation: Observation) -> ExtractionRecord | None:
        """Append a record for *observation* unless it is empty or already seen."""
        image_ref = observation.image_ref
        if not image_ref:
            return None
        if image_ref in self._seen:
            logger.debug(f"  Duplicate image skipped: {image_ref[:60]}")
            return None
        record = ExtractionRecord(
            image_ref=image_ref,
            lat=observation.lat or UNKNOWN,
            long=observation.long or UNKNOWN,
        )
        self._seen.add(image_ref)
        self._records.append(record)
        return record

    def __contains__(self, image_ref) -> bool:
        return image_ref in self._seen

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    @property
    def records(self) -> list[ExtractionRecord]:
        return list(self._records)


def parse_background_url(style: str | None) -> str | None:
    """Pull the URL out of a CSS value like 'url("https://…")'."""
    if not style:
        return None
    match = _BACKGROUND_URL_RE.search(style)
    if not match:
        return None
    return match.group(2) or None


def parse_coordinates(url: str | None) -> tuple:
    """Return (lat, lng) from the page URL's query string; None when absent."""
    if not url:
        return None, None
    query = parse_qs(urlparse(url).query)
    lat = (query.get("lat") or [None])[0]
    lng = (query.get("lng") or [None])[0]
    return lat or None, lng or None


def observe(page, selector: str = DETAIL_SELECTOR) -> Observation:
    """Read the image reference and coordinates currently displayed on *page*."""
    lat, lng = parse_coordinates(page.url)
    element = page.query_selector(selector)
    image_ref = None
    if element is not None:
        image_ref = parse_background_url(element.evaluate(_JS_BACKGROUND_IMAGE))
    return Observation(image_ref=image_ref, lat=lat, long=lng)


class Extractor:
    """Feeds page observations into one RecordSet."""

    def __init__(self, records: RecordSet | None = None, *, selector: str = DETAIL_SELECTOR):
        self.records = records if records is not None else RecordSet()
        self.selector = selector

    def extract(self, page) -> ExtractionRecord | None:
        observation = observe(page, self.selector)
        record = self.records.add(observation)
        if record is not None:
            logger.info(
                f"  + image #{len(self.records)} lat={record.lat} long={record.long}"
            )
        elif not observation.image_ref:
            logger.debug("  No image reference on current view — nothing recorded")
        return record
