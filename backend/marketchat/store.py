"""Row-store collaborator used by the chat core.

Filters are plain equality matches over columns. Every record handed back
carries a string ``id``; callers never see backend-specific id types.
"""
import threading
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from fastapi.concurrency import run_in_threadpool
from pymongo.database import Database
from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .models import TABLES

Record = Dict[str, Any]


class PersistenceError(Exception):
    """The row store was unreachable or rejected the operation."""


class RowStore(Protocol):
    async def insert(self, table: str, record: Record) -> Record: ...

    async def insert_many(self, table: str, records: List[Record]) -> List[Record]: ...

    async def update(self, table: str, filter: Record, patch: Record) -> int: ...

    async def select_one(self, table: str, filter: Record) -> Optional[Record]: ...

    async def select(
        self, table: str, filter: Record, order_by: Optional[str] = None
    ) -> List[Record]: ...


class MongoRowStore:
    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _query(filter: Record) -> Record:
        query = dict(filter)
        if "id" in query:
            value = query.pop("id")
            if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
                value = ObjectId(value)
            query["_id"] = value
        return query

    @staticmethod
    def _to_doc(record: Record) -> Record:
        doc = dict(record)
        if "id" in doc:
            doc["_id"] = doc.pop("id")
        return doc

    @staticmethod
    def _to_record(doc: Record) -> Record:
        out = dict(doc)
        out["id"] = str(out.pop("_id"))
        return out

    def _insert_many(self, table: str, records: List[Record]) -> List[Record]:
        docs = [self._to_doc(r) for r in records]
        if not docs:
            return []
        try:
            self.db[table].insert_many(docs)
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e
        return [self._to_record(d) for d in docs]

    def _update(self, table: str, filter: Record, patch: Record) -> int:
        try:
            result = self.db[table].update_many(self._query(filter), {"$set": patch})
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e
        return result.matched_count

    def _select(self, table: str, filter: Record, order_by: Optional[str]) -> List[Record]:
        try:
            cursor = self.db[table].find(self._query(filter))
            if order_by:
                cursor = cursor.sort(order_by, 1)
            return [self._to_record(d) for d in cursor]
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e

    def _select_one(self, table: str, filter: Record) -> Optional[Record]:
        try:
            doc = self.db[table].find_one(self._query(filter))
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e
        return self._to_record(doc) if doc else None

    async def insert(self, table: str, record: Record) -> Record:
        rows = await run_in_threadpool(self._insert_many, table, [record])
        return rows[0]

    async def insert_many(self, table: str, records: List[Record]) -> List[Record]:
        return await run_in_threadpool(self._insert_many, table, records)

    async def update(self, table: str, filter: Record, patch: Record) -> int:
        return await run_in_threadpool(self._update, table, filter, patch)

    async def select_one(self, table: str, filter: Record) -> Optional[Record]:
        return await run_in_threadpool(self._select_one, table, filter)

    async def select(
        self, table: str, filter: Record, order_by: Optional[str] = None
    ) -> List[Record]:
        return await run_in_threadpool(self._select, table, filter, order_by)


class SqlRowStore:
    def __init__(self, engine):
        self.engine = engine
        # sqlite connections (StaticPool in particular) are not safe to share
        # between threadpool workers concurrently.
        self._lock = threading.Lock()

    @staticmethod
    def _model(table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise PersistenceError(f"unknown table {table!r}")

    def _where(self, table: str, filter: Record):
        model = self._model(table)
        stmt = select(model)
        for column, value in filter.items():
            stmt = stmt.where(getattr(model, column) == value)
        return stmt

    def _insert_many(self, table: str, records: List[Record]) -> List[Record]:
        model = self._model(table)
        rows = [model(**r) for r in records]
        with self._lock:
            try:
                with Session(self.engine) as s:
                    s.add_all(rows)
                    s.commit()
                    for row in rows:
                        s.refresh(row)
                    return [row.model_dump() for row in rows]
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e

    def _update(self, table: str, filter: Record, patch: Record) -> int:
        with self._lock:
            try:
                with Session(self.engine) as s:
                    rows = s.exec(self._where(table, filter)).all()
                    for row in rows:
                        for column, value in patch.items():
                            setattr(row, column, value)
                        s.add(row)
                    s.commit()
                    return len(rows)
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e

    def _select(self, table: str, filter: Record, order_by: Optional[str]) -> List[Record]:
        stmt = self._where(table, filter)
        if order_by:
            stmt = stmt.order_by(getattr(self._model(table), order_by))
        with self._lock:
            try:
                with Session(self.engine) as s:
                    return [row.model_dump() for row in s.exec(stmt).all()]
            except SQLAlchemyError as e:
                raise PersistenceError(str(e)) from e

    async def insert(self, table: str, record: Record) -> Record:
        rows = await run_in_threadpool(self._insert_many, table, [record])
        return rows[0]

    async def insert_many(self, table: str, records: List[Record]) -> List[Record]:
        return await run_in_threadpool(self._insert_many, table, records)

    async def update(self, table: str, filter: Record, patch: Record) -> int:
        return await run_in_threadpool(self._update, table, filter, patch)

    async def select_one(self, table: str, filter: Record) -> Optional[Record]:
        rows = await run_in_threadpool(self._select, table, filter, None)
        return rows[0] if rows else None

    async def select(
        self, table: str, filter: Record, order_by: Optional[str] = None
    ) -> List[Record]:
        return await run_in_threadpool(self._select, table, filter, order_by)
