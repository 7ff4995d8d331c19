"""
Document store — the only shared mutable resource.

The repositories speak a small, Mongo-flavoured vocabulary against it:

  find_one / find_many   filter documents, optionally sorted
  insert_one             add a document
  update_one             atomic set + inc + push + unset on one document
  count / count_by       plain and grouped counts

Every operation runs under a single asyncio.Lock, which makes each call
atomic per document. Nothing spans two calls: read-modify-write callers
that need protection must put a guard field (e.g. ``version``) in the
update filter.

Persistence is optional: pass ``persist_path`` and the whole store is
written as JSON after every mutation and reloaded on start.
"""

from __future__ import annotations

import asyncio
import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from loguru import logger

Document = dict[str, Any]
Filter = Mapping[str, Any]
SortSpec = Sequence[tuple[str, int]]

TEXT_SCORE = "$score"

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


# ---------------------------------------------------------------------------
# Errors and update primitives
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """Base for store-level failures; surfaced to callers untouched."""


class DuplicateKeyError(StoreError):
    def __init__(self, index: str, key: dict[str, Any]) -> None:
        super().__init__(f"Duplicate key for index '{index}': {key}")
        self.index = index
        self.key = key


@dataclass(frozen=True)
class PushSpec:
    """
    Append ``items`` to an array field.

    ``keep_last`` bounds the array after the append (oldest dropped first),
    mirroring ``$push`` with ``$each`` and a negative ``$slice``.
    """

    items: tuple[Any, ...]
    keep_last: int | None = None


@dataclass
class Index:
    name: str
    keys: tuple[str, ...]
    unique: bool = False
    partial: dict[str, Any] | None = None


@dataclass
class TextIndex:
    name: str
    weights: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Filter matching
# ---------------------------------------------------------------------------


def _equals(doc_value: Any, expected: Any) -> bool:
    # A scalar matches an array field when the array contains it.
    if isinstance(doc_value, list) and not isinstance(expected, list):
        return expected in doc_value
    return doc_value == expected


def _compare(doc_value: Any, op: str, operand: Any) -> bool:
    if op == "$ne":
        return not _equals(doc_value, operand)
    if op == "$in":
        return any(_equals(doc_value, candidate) for candidate in operand)
    if op == "$nin":
        return not any(_equals(doc_value, candidate) for candidate in operand)
    if doc_value is None:
        return False
    if op == "$lt":
        return doc_value < operand
    if op == "$lte":
        return doc_value <= operand
    if op == "$gt":
        return doc_value > operand
    if op == "$gte":
        return doc_value >= operand
    raise StoreError(f"Unsupported operator: {op}")


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(k.startswith("$") for k in value)


def matches(doc: Document, query: Filter) -> bool:
    """True when ``doc`` satisfies every clause of ``query`` ($text excluded)."""
    for key, condition in query.items():
        if key == "$text":
            continue
        value = doc.get(key)
        if _is_operator_dict(condition):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def _tokens(text: Any) -> list[str]:
    if not isinstance(text, str):
        return []
    return [t.lower() for t in _TOKEN_RE.findall(text)]


def text_score(doc: Document, index: TextIndex, search: str) -> int:
    """Weighted count of search-term hits over the indexed fields."""
    terms = set(_tokens(search))
    score = 0
    for field_name, weight in index.weights.items():
        hits = sum(1 for token in _tokens(doc.get(field_name)) if token in terms)
        score += hits * weight
    return score


def _sort_value(value: Any) -> tuple:
    # Missing values sort first ascending, as in MongoDB.
    return (0,) if value is None else (1, value)


def sort_documents(docs: list[Document], sort: SortSpec) -> list[Document]:
    ordered = list(docs)
    for key, direction in reversed(list(sort)):
        ordered.sort(key=lambda d: _sort_value(d.get(key)), reverse=direction < 0)
    return ordered


# ---------------------------------------------------------------------------
# JSON codec
# ---------------------------------------------------------------------------


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(raw: dict[str, Any]) -> Any:
    if set(raw) == {"$date"}:
        return datetime.fromisoformat(raw["$date"])
    return raw


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


class Collection:
    """A named set of documents inside an :class:`InMemoryDocumentStore`."""

    def __init__(self, name: str, store: "InMemoryDocumentStore") -> None:
        self.name = name
        self._store = store
        self._docs: dict[str, Document] = {}
        self._indexes: dict[str, Index] = {}
        self._text_index: TextIndex | None = None

    # ------------------------------------------------------------------
    # Index declarations
    # ------------------------------------------------------------------

    def create_index(
        self,
        keys: Iterable[str],
        unique: bool = False,
        partial: dict[str, Any] | None = None,
        name: str | None = None,
    ) -> Index:
        keys = tuple(keys)
        index = Index(name=name or "_".join(keys), keys=keys, unique=unique, partial=partial)
        self._indexes[index.name] = index
        logger.debug("Index {}.{} on {} (unique={})", self.name, index.name, keys, unique)
        return index

    def create_text_index(self, weights: dict[str, int], name: str = "text") -> TextIndex:
        self._text_index = TextIndex(name=name, weights=dict(weights))
        return self._text_index

    @property
    def indexes(self) -> list[Index]:
        return list(self._indexes.values())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(self, query: Filter) -> Document | None:
        async with self._store.lock:
            for doc in self._docs.values():
                if matches(doc, query) and self._text_match(doc, query):
                    return copy.deepcopy(doc)
        return None

    async def find_many(self, query: Filter, sort: SortSpec | None = None) -> list[Document]:
        async with self._store.lock:
            found = [
                copy.deepcopy(d)
                for d in self._docs.values()
                if matches(d, query) and self._text_match(d, query)
            ]
        if sort:
            if any(key == TEXT_SCORE for key, _ in sort):
                search = self._search_terms(query)
                for doc in found:
                    doc[TEXT_SCORE] = text_score(doc, self._require_text_index(), search)
                found = sort_documents(found, sort)
                for doc in found:
                    doc.pop(TEXT_SCORE, None)
            else:
                found = sort_documents(found, sort)
        return found

    async def count(self, query: Filter) -> int:
        async with self._store.lock:
            return sum(
                1 for d in self._docs.values() if matches(d, query) and self._text_match(d, query)
            )

    async def count_by(self, query: Filter, field_name: str) -> dict[Any, int]:
        """Group the matching documents by ``field_name`` and count each group."""
        counts: dict[Any, int] = {}
        async with self._store.lock:
            for doc in self._docs.values():
                if matches(doc, query):
                    key = doc.get(field_name)
                    counts[key] = counts.get(key, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_one(self, doc: Document) -> Document:
        async with self._store.lock:
            doc_id = doc["id"]
            if doc_id in self._docs:
                raise DuplicateKeyError("id", {"id": doc_id})
            stored = copy.deepcopy(doc)
            self._check_unique(stored, exclude_id=None)
            self._docs[doc_id] = stored
            self._store.save()
            return copy.deepcopy(stored)

    async def update_one(
        self,
        query: Filter,
        set_fields: Mapping[str, Any] | None = None,
        push: Mapping[str, PushSpec] | None = None,
        unset: Iterable[str] | None = None,
        inc: Mapping[str, int] | None = None,
    ) -> Document | None:
        """
        Apply set, inc, push and unset to the first matching document in one step.

        Returns the updated document, or None if nothing matched (in which
        case nothing was written).
        """
        async with self._store.lock:
            target = next(
                (d for d in self._docs.values() if matches(d, query) and self._text_match(d, query)),
                None,
            )
            if target is None:
                return None

            updated = copy.deepcopy(target)
            for key, value in (set_fields or {}).items():
                updated[key] = copy.deepcopy(value)
            for key, amount in (inc or {}).items():
                updated[key] = (updated.get(key) or 0) + amount
            for key in unset or ():
                updated[key] = None
            for key, spec in (push or {}).items():
                values = list(updated.get(key) or [])
                values.extend(copy.deepcopy(list(spec.items)))
                if spec.keep_last is not None and len(values) > spec.keep_last:
                    values = values[len(values) - spec.keep_last :]
                updated[key] = values

            self._check_unique(updated, exclude_id=updated["id"])
            self._docs[updated["id"]] = updated
            self._store.save()
            return copy.deepcopy(updated)

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _check_unique(self, doc: Document, exclude_id: str | None) -> None:
        for index in self._indexes.values():
            if not index.unique:
                continue
            if index.partial and not matches(doc, index.partial):
                continue
            key = {k: doc.get(k) for k in index.keys}
            for other in self._docs.values():
                if other["id"] == exclude_id:
                    continue
                if index.partial and not matches(other, index.partial):
                    continue
                if all(other.get(k) == v for k, v in key.items()):
                    raise DuplicateKeyError(index.name, key)

    def _require_text_index(self) -> TextIndex:
        if self._text_index is None:
            raise StoreError(f"Collection '{self.name}' has no text index")
        return self._text_index

    @staticmethod
    def _search_terms(query: Filter) -> str:
        text = query.get("$text") or {}
        return text.get("$search", "")

    def _text_match(self, doc: Document, query: Filter) -> bool:
        if "$text" not in query:
            return True
        return text_score(doc, self._require_text_index(), self._search_terms(query)) > 0


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class InMemoryDocumentStore:
    """
    Args:
        persist_path: If given, the store is saved after every mutation.
                      Pass ``None`` to keep everything in memory (useful in tests).
    """

    def __init__(self, persist_path: Path | None = None) -> None:
        self._collections: dict[str, Collection] = {}
        self._persist_path = persist_path
        self.lock = asyncio.Lock()

        if persist_path and persist_path.exists() and persist_path.stat().st_size:
            self._load(persist_path)
            logger.info("Store loaded from {}", persist_path)

    def collection(self, name: str) -> Collection:
        if name not in self._collections:
            self._collections[name] = Collection(name, self)
        return self._collections[name]

    def save(self) -> None:
        if not self._persist_path:
            return
        data = {name: list(c._docs.values()) for name, c in self._collections.items()}
        self._persist_path.write_text(json.dumps(data, indent=2, default=_encode))
        logger.debug("Persisted → {}", self._persist_path)

    def _load(self, path: Path) -> None:
        data = json.loads(path.read_text(), object_hook=_decode)
        for name, docs in data.items():
            coll = self.collection(name)
            for doc in docs:
                coll._docs[doc["id"]] = doc
