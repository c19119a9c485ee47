"""Document store used by the business logic layer.

The store is the only capability the transaction coordinator needs from
persistence: filtered reads, push-based subscriptions, an all-or-nothing
multi-document write and a commit clock. Two implementations share the
same write pipeline:

* :class:`MemoryStore` keeps collections in dictionaries (tests, demos).
* :class:`WorkbookStore` keeps them on the sheets of the master workbook via
  :mod:`barstock.data_manager`.

``run_atomic_write`` validates every operation against a staged copy of the
affected collections before touching the backing storage, so a rejected
operation (missing document, existing document, failed ``expect``
precondition) leaves nothing behind. ``expect`` preconditions are how callers
turn a read-check-write sequence into a compare-and-swap.
"""

from __future__ import annotations

import operator
import threading
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import SheetName, WriteKind


class StoreFailure(Exception):
    """Raised when the store cannot read or commit a write."""


class WriteConflict(StoreFailure):
    """Raised when an atomic write is rejected before anything is applied."""


class _ServerTimestamp:
    """Placeholder replaced by the commit time when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()

_OPERATORS: Mapping[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass(frozen=True)
class Filter:
    """Field comparison applied to every document of a query."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, document: Any) -> bool:
        candidate = getattr(document, self.field, None)
        if candidate is None:
            return False
        try:
            return _OPERATORS[self.op](candidate, self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class WriteOp:
    """One mutation inside an atomic write."""

    kind: WriteKind
    collection: SheetName
    doc_id: str
    document: Any = None
    fields: Optional[Mapping[str, Any]] = None
    expect: Optional[Mapping[str, Any]] = None

    @classmethod
    def create(cls, collection: SheetName, document: Any) -> "WriteOp":
        return cls(WriteKind.CREATE, collection, data_manager.document_id(collection, document), document=document)

    @classmethod
    def ensure(cls, collection: SheetName, document: Any) -> "WriteOp":
        return cls(WriteKind.ENSURE, collection, data_manager.document_id(collection, document), document=document)

    @classmethod
    def update(
        cls,
        collection: SheetName,
        doc_id: str,
        *,
        expect: Optional[Mapping[str, Any]] = None,
        **changes: Any,
    ) -> "WriteOp":
        return cls(WriteKind.UPDATE, collection, doc_id, fields=changes, expect=expect)

    @classmethod
    def delete(cls, collection: SheetName, doc_id: str, *, expect: Optional[Mapping[str, Any]] = None) -> "WriteOp":
        return cls(WriteKind.DELETE, collection, doc_id, expect=expect)


@dataclass
class Subscription:
    """Handle returned by :meth:`DocumentStore.subscribe`."""

    store: "DocumentStore"
    collection: SheetName
    callback: Callable[[List[Any]], None]
    filters: Tuple[Filter, ...] = ()
    active: bool = field(default=True)

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self.store._remove_subscription(self)


# (collection, doc_id) -> (document before the write, document after the write)
Changes = Dict[Tuple[SheetName, str], Tuple[Optional[Any], Optional[Any]]]


class DocumentStore:
    """Shared read, subscribe and atomic write pipeline.

    Subclasses provide :meth:`_load` (current documents of a collection in
    stable order) and :meth:`_commit` (apply a validated change set).
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self._subscriptions: List[Subscription] = []

    # -- backend hooks --------------------------------------------------

    def _load(self, collection: SheetName) -> Dict[str, Any]:
        raise NotImplementedError

    def _commit(self, changes: Changes) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        """Persist pending changes; stores without a backing file have none."""

    # -- reads ------------------------------------------------------------

    def get_all(self, collection: SheetName | str, filters: Sequence[Filter] = ()) -> List[Any]:
        """Return every document of ``collection`` matching all ``filters``."""

        sheet = SheetName(collection)
        with self._lock:
            documents = list(self._load(sheet).values())
        return [doc for doc in documents if all(f.matches(doc) for f in filters)]

    def get(self, collection: SheetName | str, doc_id: str) -> Optional[Any]:
        """Return one document by id, or ``None``."""

        with self._lock:
            return self._load(SheetName(collection)).get(doc_id)

    def server_timestamp(self) -> datetime:
        """Return the store clock as an aware UTC ``datetime``."""

        return data_manager.to_instant(self._clock())

    def new_id(self, prefix: str) -> str:
        """Allocate a sortable identifier: prefix, commit-clock digits, random suffix."""

        return f"{prefix}{self.server_timestamp().strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6]}"

    # -- subscriptions ------------------------------------------------------

    def subscribe(
        self,
        collection: SheetName | str,
        callback: Callable[[List[Any]], None],
        filters: Sequence[Filter] = (),
    ) -> Subscription:
        """Register ``callback`` for snapshots of ``collection``.

        The current snapshot is delivered immediately; a new one follows every
        committed write that touches the collection.
        """

        subscription = Subscription(self, SheetName(collection), callback, tuple(filters))
        with self._lock:
            self._subscriptions.append(subscription)
        log.debug("Subscribed to '%s' (%d active)", subscription.collection.value, len(self._subscriptions))
        self._deliver(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _deliver(self, subscription: Subscription) -> None:
        snapshot = self.get_all(subscription.collection, subscription.filters)
        try:
            subscription.callback(snapshot)
        except Exception:
            log.exception("Subscriber for '%s' failed", subscription.collection.value)

    def _notify(self, collections: Iterable[SheetName]) -> None:
        touched = set(collections)
        with self._lock:
            targets = [s for s in self._subscriptions if s.collection in touched]
        for subscription in targets:
            if subscription.active:
                self._deliver(subscription)

    # -- writes -------------------------------------------------------------

    def run_atomic_write(self, ops: Sequence[WriteOp]) -> datetime:
        """Apply ``ops`` together or not at all and return the commit time.

        Raises:
            WriteConflict: If any operation is invalid against current state;
                nothing is written.
            StoreFailure: If the backend cannot persist the change set; the
                backend restores its previous state before raising.
        """

        if not ops:
            return self.server_timestamp()

        with self._lock:
            commit_time = self.server_timestamp()
            staged: Dict[SheetName, Dict[str, Any]] = {}
            changes: Changes = {}
            for op in ops:
                self._stage(op, staged, changes, commit_time)
            effective = {key: pair for key, pair in changes.items() if pair[0] is not pair[1]}
            if effective:
                self._commit(effective)

        if effective:
            log.debug("Committed %d document change(s) at %s", len(effective), commit_time.isoformat())
            self._notify(collection for collection, _ in effective)
        return commit_time

    def _stage(
        self,
        op: WriteOp,
        staged: Dict[SheetName, Dict[str, Any]],
        changes: Changes,
        commit_time: datetime,
    ) -> None:
        collection = SheetName(op.collection)
        if collection not in staged:
            staged[collection] = dict(self._load(collection))
        documents = staged[collection]
        current = documents.get(op.doc_id)
        key = (collection, op.doc_id)

        if op.kind in (WriteKind.CREATE, WriteKind.ENSURE):
            if current is not None:
                if op.kind is WriteKind.ENSURE:
                    return
                raise WriteConflict(f"{collection.value} document already exists: {op.doc_id}")
            codec = data_manager.get_codec(collection)
            if not isinstance(op.document, codec.row_type):
                raise WriteConflict(f"{collection.value} expects {codec.row_type.__name__} documents")
            if data_manager.document_id(collection, op.document) != op.doc_id:
                raise WriteConflict(f"{collection.value} document id mismatch: {op.doc_id}")
            updated = _stamp(op.document, commit_time)
        else:
            if current is None:
                raise WriteConflict(f"{collection.value} document not found: {op.doc_id}")
            for name, expected in (op.expect or {}).items():
                actual = getattr(current, name)
                if actual != expected:
                    raise WriteConflict(
                        f"{collection.value} document {op.doc_id} changed: "
                        f"{name} is {actual!r}, expected {expected!r}"
                    )
            if op.kind is WriteKind.DELETE:
                updated = None
            else:
                try:
                    updated = _stamp(replace(current, **dict(op.fields or {})), commit_time)
                except TypeError as exc:
                    raise WriteConflict(f"Invalid update for {collection.value} {op.doc_id}: {exc}") from exc

        if updated is None:
            documents.pop(op.doc_id, None)
        else:
            documents[op.doc_id] = updated
        before = changes[key][0] if key in changes else current
        changes[key] = (before, updated)


def _stamp(document: Any, commit_time: datetime) -> Any:
    """Replace ``SERVER_TIMESTAMP`` placeholders with the commit time."""

    stamped = {f.name: commit_time for f in fields(document) if getattr(document, f.name) is SERVER_TIMESTAMP}
    return replace(document, **stamped) if stamped else document


class MemoryStore(DocumentStore):
    """Dictionary-backed store; documents keep insertion order."""

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        documents: Optional[Mapping[SheetName | str, Iterable[Any]]] = None,
    ) -> None:
        super().__init__(clock=clock)
        self._data: Dict[SheetName, Dict[str, Any]] = {sheet: {} for sheet in SheetName}
        for collection, records in (documents or {}).items():
            sheet = SheetName(collection)
            for record in records:
                self._data[sheet][data_manager.document_id(sheet, record)] = record

    def _load(self, collection: SheetName) -> Dict[str, Any]:
        return self._data[collection]

    def _commit(self, changes: Changes) -> None:
        for (collection, doc_id), (_, after) in changes.items():
            if after is None:
                self._data[collection].pop(doc_id, None)
            else:
                self._data[collection][doc_id] = after


class WorkbookStore(DocumentStore):
    """Store backed by the sheets of the master workbook.

    Documents are read once per sheet and cached until a commit touches the
    sheet. With ``autosave`` every commit is written to ``data_file``; when
    the apply or the save fails the workbook is reloaded from disk so the
    in-memory view never shows a partial write.
    """

    def __init__(
        self,
        data_file: Path,
        workbook: Optional[Workbook] = None,
        *,
        autosave: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        super().__init__(clock=clock)
        self.data_file = Path(data_file)
        self.workbook = workbook if workbook is not None else data_manager.open_workbook(self.data_file)
        self.autosave = autosave
        self._cache: Dict[SheetName, Dict[str, Any]] = {}

    def _load(self, collection: SheetName) -> Dict[str, Any]:
        bucket = self._cache.get(collection)
        if bucket is None:
            try:
                bucket = {
                    data_manager.document_id(collection, record): record
                    for record in data_manager.iter_rows(self.workbook, collection)
                }
            except (KeyError, ValueError) as exc:
                raise StoreFailure(f"Cannot read sheet '{collection.value}': {exc}") from exc
            self._cache[collection] = bucket
            log.debug("Populated '%s' cache with %d rows", collection.value, len(bucket))
        return bucket

    def _commit(self, changes: Changes) -> None:
        touched = {collection for collection, _ in changes}
        try:
            for (collection, doc_id), (before, after) in changes.items():
                if before is None and after is not None:
                    data_manager.append_row(self.workbook, collection, after)
                elif after is None and before is not None:
                    data_manager.delete_row(self.workbook, collection, doc_id)
                elif after is not None:
                    data_manager.replace_row(self.workbook, collection, after)
            if self.autosave:
                self.flush()
        except Exception as exc:
            log.error("Workbook commit failed, reloading '%s': %s", self.data_file, exc)
            self.reload()
            raise StoreFailure(f"Could not write workbook '{self.data_file}': {exc}") from exc
        for collection in touched:
            self._cache.pop(collection, None)

    def flush(self) -> None:
        """Write the in-memory workbook to ``data_file``."""

        data_manager.save_workbook(self.workbook, self.data_file)

    def reload(self) -> None:
        """Discard unsaved changes and the row cache."""

        self.workbook = data_manager.refresh_workbook(self.data_file)
        self._cache.clear()
