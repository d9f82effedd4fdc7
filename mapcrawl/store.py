"""
Result store — one JSON document per line, guarded by filelock.

save() always inserts: a redelivered job produces a second document for
the same username.  Callers that need exactly-once results must key on
(username, created_at) downstream.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from filelock import FileLock

from mapcrawl.extractor import ExtractionRecord

logger = logging.getLogger("mapcrawl")


@dataclass
class UserResult:
    username: str
    records: list
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> dict:
        return {
            "Username": self.username,
            "Clusters": [r.to_document() for r in self.records],
            "CreatedAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_document(cls, doc: dict) -> "UserResult":
        records = [
            ExtractionRecord(
                image_ref=c["Image"],
                lat=c.get("Coordinates", {}).get("Lat", "Unknown"),
                long=c.get("Coordinates", {}).get("Long", "Unknown"),
            )
            for c in doc.get("Clusters", [])
        ]
        return cls(
            username=doc["Username"],
            records=records,
            created_at=datetime.fromisoformat(doc["CreatedAt"]),
        )


class ResultStore:
    """Append-only JSON-lines document store."""

    def __init__(self, filepath: str):
        self._filepath = filepath
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = FileLock(filepath + ".lock", timeout=30)

    def save(self, result: UserResult) -> None:
        """Insert one document. Raises OSError if the file cannot be written."""
        line = json.dumps(result.to_document(), ensure_ascii=False)
        started = time.time()
        with self._lock:
            with open(self._filepath, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.info(
            f"Saved {len(result.records)} record(s) for {result.username} "
            f"({(time.time() - started) * 1000:.0f} ms)"
        )

    def _iter_documents(self):
        if not os.path.exists(self._filepath):
            return
        with self._lock:
            with open(self._filepath, "r", encoding="utf-8") as f:
                lines = f.readlines()
        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt line {lineno} in {self._filepath}")

    def find(self, username: str) -> list:
        """All documents stored for *username*, oldest first."""
        return [d for d in self._iter_documents() if d.get("Username") == username]

    def count(self) -> int:
        return sum(1 for _ in self._iter_documents())
