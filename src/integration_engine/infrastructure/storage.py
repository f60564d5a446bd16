"""Thin storage interface used by engine components.

Every component talks to the database through a Storage so the engine never holds a
session across calls; each operation is a short transaction.
"""
from __future__ import annotations
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence, Type, TypeVar
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from integration_engine.errors import DuplicateRecordError, NotFoundError
from integration_engine.infrastructure import db

logger = logging.getLogger(__name__)

M = TypeVar("M")


class Storage:
    def __init__(self, session_factory=None):
        self._factory = session_factory

    def _session(self) -> Session:
        factory = self._factory or db.get_session_factory()
        return factory()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Commit on success, rollback on error. Unique violations surface as DuplicateRecordError."""
        session = self._session()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise DuplicateRecordError(str(e.orig)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def repo(self, model: Type[M]) -> "Repository[M]":
        return Repository(self, model)


class Repository:
    """Single-table helpers. All writes are single-row atomic statements."""

    def __init__(self, storage: Storage, model):
        self.storage = storage
        self.model = model

    def get(self, pk) -> Any:
        with self.storage.session() as s:
            return s.get(self.model, pk)

    def require(self, pk) -> Any:
        obj = self.get(pk)
        if obj is None:
            raise NotFoundError(f"{self.model.__name__} {pk} not found")
        return obj

    def add(self, obj):
        with self.storage.session() as s:
            s.add(obj)
            s.flush()
            s.refresh(obj)
        return obj

    def find_one(self, *criteria) -> Any:
        with self.storage.session() as s:
            return s.execute(select(self.model).where(*criteria).limit(1)).scalars().first()

    def list(self, *criteria, order_by: Sequence = (), limit: Optional[int] = None) -> list:
        stmt = select(self.model).where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if limit:
            stmt = stmt.limit(limit)
        with self.storage.session() as s:
            return list(s.execute(stmt).scalars())

    def count(self, *criteria) -> int:
        with self.storage.session() as s:
            return s.execute(select(func.count()).select_from(self.model).where(*criteria)).scalar_one()

    def update(self, pk, **values) -> Any:
        with self.storage.session() as s:
            obj = s.get(self.model, pk)
            if obj is None:
                raise NotFoundError(f"{self.model.__name__} {pk} not found")
            for k, v in values.items():
                setattr(obj, k, v)
            s.flush()
            s.refresh(obj)
            return obj

    def update_where(self, *criteria, **values) -> int:
        """Conditional UPDATE; returns affected row count (0 means the guard failed)."""
        with self.storage.session() as s:
            res = s.execute(update(self.model).where(*criteria).values(**values).execution_options(synchronize_session=False))
            return res.rowcount or 0

    def increment(self, pk, **deltas) -> int:
        """Atomic column += delta, evaluated in SQL."""
        pk_col = self.model.__mapper__.primary_key[0]
        values = {k: getattr(self.model, k) + d for k, d in deltas.items()}
        return self.update_where(pk_col == pk, **values)
