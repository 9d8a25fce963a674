"""
Dedup keys and the two-level dedup index.

A dedup key is the SHA-256 of a module's normalized key fields, so
"(11) 99999-8888" and "11999998888" produce the same key. The index answers
"does this entity already exist?" from two places: the target dataset
(pre-fetched in one batched query per chunk) and an in-memory set of keys
admitted earlier in the same run, which spans every chunk of the run.
"""
import hashlib
import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from import_engine.db import records
from import_engine.domain.imports.modules import ModuleSchema
from import_engine.utils.phone import digits_only, normalize_phone

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"


def normalize_text(value: Any) -> str:
    """Accent-fold, lower-case, drop punctuation and collapse whitespace."""
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    text = re.sub(r"[^\w\s]", " ", text)
    return " ".join(text.split())


def normalize_key_part(kind: str, value: Any) -> str:
    if value is None:
        return ""
    if kind == "phone":
        return normalize_phone(value) or ""
    if kind == "document":
        digits = digits_only(value)
        return digits.zfill(11) if digits else ""
    return normalize_text(value)


def build_dedup_key(schema: ModuleSchema, record: Dict[str, Any]) -> str:
    """Derive the dedup key of a normalized record for its module."""
    parts = [normalize_key_part(schema.field(name).kind, record.get(name)) for name in schema.key_fields]
    return hashlib.sha256(KEY_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


class DedupIndex:
    """
    Per-run dedup index for one job.

    `prefetch` loads the stored half for a chunk's keys; `lookup` and
    `record` then work purely in memory.
    """

    def __init__(self, module: str, job_id: str):
        self.module = module
        self.job_id = job_id
        self._in_flight: Set[str] = set()
        self._stored: Dict[str, Tuple[str, Optional[int]]] = {}

    def prefetch(self, keys: Iterable[str]) -> None:
        """Batched existence check for the keys of one chunk."""
        pending = [key for key in keys if key not in self._in_flight]
        self._stored = records.fetch_existing_keys(self.module, pending)
        if self._stored:
            logger.debug("Dedup prefetch: %d of %d key(s) already stored", len(self._stored), len(pending))

    def lookup(self, key: str) -> bool:
        """True when the key was already admitted by this run or is stored."""
        return key in self._in_flight or key in self._stored

    def record(self, key: str) -> None:
        self._in_flight.add(key)

    def is_stored(self, key: str) -> bool:
        return key in self._stored

    def is_replay(self, key: str, row_number: int) -> bool:
        """
        True when the stored copy of the key was written by this job for this
        very source row, i.e. the row belongs to a chunk that was persisted but
        never checkpointed.
        """
        if key in self._in_flight:
            return False
        owner = self._stored.get(key)
        return owner is not None and owner[0] == self.job_id and owner[1] == row_number

    def mark_stored(self, key: str, job_id: str, row_number: Optional[int]) -> None:
        """Remember a key found stored after the prefetch (e.g. a concurrent insert)."""
        self._stored[key] = (job_id, row_number)
