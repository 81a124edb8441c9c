"""
Document store collaborator.

The reminder core only needs a key-addressable collection store with equality
and single-range filtering, atomic bounded batches and one atomic
check-and-set. ``SqlDocumentStore`` provides that on top of SQLAlchemy, with
one table per collection (see ``unified_models``).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic_core import to_jsonable_python
from sqlalchemy import DateTime, JSON, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from cadence.utils.timezone import coerce_instant, to_utc_aware
from .errors import BatchTooLargeError, StoreError, UnknownCollectionError
from .unified_models import COLLECTIONS

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@dataclass(frozen=True)
class Range:
    """A range filter on one field; unset bounds are open"""
    field: str
    gte: Any = None
    lte: Any = None
    gt: Any = None
    lt: Any = None


@dataclass(frozen=True)
class Upsert:
    collection: str
    doc_id: str
    data: Mapping[str, Any]
    merge: bool = False


@dataclass(frozen=True)
class Delete:
    collection: str
    doc_id: str


def chunked(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class DocumentStore(ABC):
    batch_limit: int = 500

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    def query(
        self,
        collection: str,
        equals: Optional[Mapping[str, Any]] = None,
        range_: Optional[Range] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """
        Equality filters (a list/tuple/set value means "field in values") combined
        with at most one range filter. order_by takes a field name, prefixed with
        "-" for descending order.
        """

    @abstractmethod
    def batch_write(self, upserts: Sequence[Upsert] = (), deletes: Sequence[Delete] = ()) -> None:
        """Apply all operations atomically. Raises BatchTooLargeError above batch_limit."""

    @abstractmethod
    def set_if_changed(self, collection: str, doc_id: str, field: str, value: Any) -> bool:
        """
        Atomically set field=value unless the document already holds that value.
        Creates the document when missing. Returns True when this call made the change.
        """

    def write_chunked(self, upserts: Sequence[Upsert] = (), deletes: Sequence[Delete] = ()) -> None:
        """
        Write any number of operations. A set that fits in one batch is committed
        atomically; larger sets commit every upsert chunk before any delete chunk,
        so an interrupted run leaves extra entries rather than missing ones.
        """
        upserts, deletes = list(upserts), list(deletes)
        if len(upserts) + len(deletes) <= self.batch_limit:
            if upserts or deletes:
                self.batch_write(upserts, deletes)
            return
        for chunk in chunked(upserts, self.batch_limit):
            self.batch_write(upserts=chunk)
        for chunk in chunked(deletes, self.batch_limit):
            self.batch_write(deletes=chunk)


class SqlDocumentStore(DocumentStore):
    """DocumentStore backed by SQLAlchemy tables"""

    def __init__(self, session_factory: sessionmaker, batch_limit: int = 500, collections=None):
        self._session_factory = session_factory
        self.batch_limit = batch_limit
        self._collections = collections or COLLECTIONS

    # --- conversion helpers ---
    def _model(self, collection: str):
        try:
            return self._collections[collection]
        except KeyError:
            raise UnknownCollectionError(collection) from None

    def _column(self, model, field: str):
        column = model.__table__.columns.get(field)
        if column is None:
            raise StoreError(f"unknown field {field!r} on {model.__tablename__}")
        return column

    def _to_column_value(self, column, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(column.type, DateTime):
            return coerce_instant(value)
        if isinstance(column.type, JSON):
            return to_jsonable_python(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _to_document(self, model, row) -> Document:
        doc: Document = {}
        for column in model.__table__.columns:
            value = getattr(row, column.name)
            if isinstance(value, datetime):
                value = to_utc_aware(value)
            doc[column.name] = value
        return doc

    @staticmethod
    def _column_default(column) -> Any:
        default = column.default
        if default is None:
            return None
        if default.is_callable:
            return default.arg(None)
        return default.arg

    # --- DocumentStore API ---
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        model = self._model(collection)
        try:
            with self._session_factory() as session:
                row = session.get(model, doc_id)
                return self._to_document(model, row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"get {collection}/{doc_id} failed: {exc}") from exc

    def query(
        self,
        collection: str,
        equals: Optional[Mapping[str, Any]] = None,
        range_: Optional[Range] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        model = self._model(collection)
        stmt = select(model)
        for field, value in (equals or {}).items():
            column = self._column(model, field)
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_([self._to_column_value(column, v) for v in value]))
            elif value is None:
                stmt = stmt.where(column.is_(None))
            else:
                stmt = stmt.where(column == self._to_column_value(column, value))
        if range_ is not None:
            column = self._column(model, range_.field)
            if range_.gte is not None:
                stmt = stmt.where(column >= self._to_column_value(column, range_.gte))
            if range_.gt is not None:
                stmt = stmt.where(column > self._to_column_value(column, range_.gt))
            if range_.lte is not None:
                stmt = stmt.where(column <= self._to_column_value(column, range_.lte))
            if range_.lt is not None:
                stmt = stmt.where(column < self._to_column_value(column, range_.lt))
        if order_by:
            descending = order_by.startswith("-")
            column = self._column(model, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                return [self._to_document(model, row) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"query on {collection} failed: {exc}") from exc

    def batch_write(self, upserts: Sequence[Upsert] = (), deletes: Sequence[Delete] = ()) -> None:
        size = len(upserts) + len(deletes)
        if size > self.batch_limit:
            raise BatchTooLargeError(size, self.batch_limit)
        if size == 0:
            return
        try:
            with self._session_factory() as session, session.begin():
                for op in upserts:
                    self._apply_upsert(session, op)
                for op in deletes:
                    row = session.get(self._model(op.collection), op.doc_id)
                    if row is not None:
                        session.delete(row)
        except SQLAlchemyError as exc:
            raise StoreError(f"batch of {size} operations failed: {exc}") from exc

    def _apply_upsert(self, session, op: Upsert) -> None:
        model = self._model(op.collection)
        values = {
            field: self._to_column_value(self._column(model, field), value)
            for field, value in op.data.items()
            if field != "id"
        }
        row = session.get(model, op.doc_id)
        if row is None:
            session.add(model(id=op.doc_id, **values))
            return
        if not op.merge:
            for column in model.__table__.columns:
                if column.name != "id" and column.name not in values:
                    setattr(row, column.name, self._column_default(column))
        for field, value in values.items():
            setattr(row, field, value)

    def set_if_changed(self, collection: str, doc_id: str, field: str, value: Any) -> bool:
        model = self._model(collection)
        column = self._column(model, field)
        stored = self._to_column_value(column, value)
        try:
            with self._session_factory() as session, session.begin():
                row = session.execute(
                    select(model).where(model.id == doc_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    session.add(model(id=doc_id, **{field: stored}))
                    return True
                if getattr(row, field) == stored:
                    return False
                setattr(row, field, stored)
                return True
        except SQLAlchemyError as exc:
            raise StoreError(f"check-and-set on {collection}/{doc_id} failed: {exc}") from exc
