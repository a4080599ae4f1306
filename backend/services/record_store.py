"""
Accruals Hub - Record Store Adapter

Tabular storage for tenant stores: each store holds named tables, each table
has an ordered header row and data rows. Rows carry a stable record id that is
resolved to the current position immediately before every mutating call, so a
deletion elsewhere in the table never makes a caller write to the wrong row.

Implementations:
- InMemoryRecordStore: process-local, used by tests and local runs
- MongoRecordStore: motor-backed, rows keep an explicit position field
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any, Iterable

from services.errors import ErrorCode, HubError
from services.records import StoreRow, COL_RECORD_ID

logger = logging.getLogger(__name__)


# Row 1 is the header row, data rows start at 2
FIRST_DATA_POSITION = 2


def new_record_id() -> str:
    return uuid.uuid4().hex[:16]


def filter_known_columns(headers: List[str], values: Dict[str, Any], table: str) -> Dict[str, str]:
    """Keep only values whose column exists in the table. Unknown columns are logged and dropped."""
    known = {}
    for column, value in values.items():
        if column in headers:
            known[column] = "" if value is None else str(value)
        else:
            logger.warning("Column '%s' not found in table '%s', ignoring", column, table)
    return known


# =============================================================================
# ABSTRACT STORE
# =============================================================================

class RecordStore(ABC):
    """Interface for tenant record stores."""

    @abstractmethod
    async def create_store(self, name: str, store_id: Optional[str] = None) -> str:
        """Create an empty store (optionally with a fixed id) and return its id."""
        pass

    @abstractmethod
    async def delete_store(self, store_id: str) -> None:
        pass

    @abstractmethod
    async def store_exists(self, store_id: str) -> bool:
        pass

    @abstractmethod
    async def list_tables(self, store_id: str) -> List[str]:
        pass

    @abstractmethod
    async def ensure_table(self, store_id: str, table: str, headers: List[str]) -> bool:
        """Create the table with headers if missing. Returns True when created."""
        pass

    @abstractmethod
    async def set_headers(self, store_id: str, table: str, headers: List[str]) -> None:
        pass

    @abstractmethod
    async def get_headers(self, store_id: str, table: str) -> List[str]:
        pass

    @abstractmethod
    async def read_rows(self, store_id: str, table: str) -> List[StoreRow]:
        """All data rows ordered by position."""
        pass

    @abstractmethod
    async def append_row(self, store_id: str, table: str, values: Dict[str, Any]) -> StoreRow:
        pass

    @abstractmethod
    async def update_cells(self, store_id: str, table: str, record_id: str, updates: Dict[str, Any]) -> StoreRow:
        pass

    @abstractmethod
    async def delete_row(self, store_id: str, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    async def clear_table(self, store_id: str, table: str) -> int:
        """Delete all data rows, keeping the header. Returns the number removed."""
        pass

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    async def get_row(self, store_id: str, table: str, record_id: str) -> Optional[StoreRow]:
        for row in await self.read_rows(store_id, table):
            if row.record_id == record_id:
                return row
        return None

    async def find_rows(self, store_id: str, table: str, column: str, value: str) -> List[StoreRow]:
        """Rows whose `column` equals `value` (after trimming)."""
        value = (value or "").strip()
        if not value:
            return []
        return [
            row for row in await self.read_rows(store_id, table)
            if row.get(column).strip() == value
        ]

    async def delete_rows_where(self, store_id: str, table: str, column: str, value: str) -> List[StoreRow]:
        """Delete matching rows bottom-up and return what was removed."""
        matches = await self.find_rows(store_id, table, column, value)
        removed = []
        for row in sorted(matches, key=lambda r: r.position, reverse=True):
            if await self.delete_row(store_id, table, row.record_id):
                removed.append(row)
        return removed

    async def ensure_tables(self, store_id: str, layout: Dict[str, List[str]]) -> List[str]:
        created = []
        for table, headers in layout.items():
            if await self.ensure_table(store_id, table, headers):
                created.append(table)
        return created


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class _Table:
    def __init__(self, headers: List[str]):
        self.headers = list(headers)
        self.rows: List[StoreRow] = []


class InMemoryRecordStore(RecordStore):
    """Record store kept in process memory."""

    def __init__(self):
        self._stores: Dict[str, Dict[str, Any]] = {}

    def _store(self, store_id: str) -> Dict[str, Any]:
        store = self._stores.get(store_id)
        if store is None:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Record store not found: {store_id}")
        return store

    def _table(self, store_id: str, table: str) -> _Table:
        tables = self._store(store_id)["tables"]
        if table not in tables:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Table '{table}' not found in store {store_id}")
        return tables[table]

    @staticmethod
    def _renumber(tbl: _Table) -> None:
        for index, row in enumerate(tbl.rows):
            row.position = FIRST_DATA_POSITION + index

    @staticmethod
    def _copy(row: StoreRow) -> StoreRow:
        return StoreRow(record_id=row.record_id, position=row.position, values=dict(row.values))

    async def create_store(self, name: str, store_id: Optional[str] = None) -> str:
        store_id = store_id or f"store_{uuid.uuid4().hex[:12]}"
        if store_id in self._stores:
            return store_id
        self._stores[store_id] = {"name": name, "tables": {}}
        return store_id

    async def delete_store(self, store_id: str) -> None:
        self._store(store_id)
        del self._stores[store_id]

    async def store_exists(self, store_id: str) -> bool:
        return store_id in self._stores

    async def list_tables(self, store_id: str) -> List[str]:
        return list(self._store(store_id)["tables"].keys())

    async def ensure_table(self, store_id: str, table: str, headers: List[str]) -> bool:
        tables = self._store(store_id)["tables"]
        if table in tables:
            return False
        tables[table] = _Table(headers)
        return True

    async def set_headers(self, store_id: str, table: str, headers: List[str]) -> None:
        self._table(store_id, table).headers = list(headers)

    async def get_headers(self, store_id: str, table: str) -> List[str]:
        return list(self._table(store_id, table).headers)

    async def read_rows(self, store_id: str, table: str) -> List[StoreRow]:
        return [self._copy(row) for row in self._table(store_id, table).rows]

    async def append_row(self, store_id: str, table: str, values: Dict[str, Any]) -> StoreRow:
        tbl = self._table(store_id, table)
        record_id = new_record_id()
        known = filter_known_columns(tbl.headers, values, table)
        if COL_RECORD_ID in tbl.headers and not known.get(COL_RECORD_ID):
            known[COL_RECORD_ID] = record_id
        row = StoreRow(
            record_id=record_id,
            position=FIRST_DATA_POSITION + len(tbl.rows),
            values={header: known.get(header, "") for header in tbl.headers},
        )
        tbl.rows.append(row)
        return self._copy(row)

    async def update_cells(self, store_id: str, table: str, record_id: str, updates: Dict[str, Any]) -> StoreRow:
        tbl = self._table(store_id, table)
        for row in tbl.rows:
            if row.record_id == record_id:
                row.values.update(filter_known_columns(tbl.headers, updates, table))
                return self._copy(row)
        raise HubError(ErrorCode.FILE_NOT_FOUND, f"Row {record_id} not found in '{table}'")

    async def delete_row(self, store_id: str, table: str, record_id: str) -> bool:
        tbl = self._table(store_id, table)
        for index, row in enumerate(tbl.rows):
            if row.record_id == record_id:
                del tbl.rows[index]
                self._renumber(tbl)
                return True
        return False

    async def clear_table(self, store_id: str, table: str) -> int:
        tbl = self._table(store_id, table)
        count = len(tbl.rows)
        tbl.rows = []
        return count

    # Test and intake helper: insert a Working row the way the intake producer would
    async def seed_rows(self, store_id: str, table: str, rows: Iterable[Dict[str, Any]]) -> List[StoreRow]:
        return [await self.append_row(store_id, table, values) for values in rows]


# =============================================================================
# MONGODB STORE
# =============================================================================

class MongoRecordStore(RecordStore):
    """
    Record store on MongoDB.

    Collections:
        record_stores: {store_id, name, created_utc}
        store_tables:  {store_id, table, headers}
        store_rows:    {store_id, table, record_id, position, values}
    """

    def __init__(self, db):
        self.db = db

    async def create_indexes(self) -> None:
        await self.db.record_stores.create_index("store_id", unique=True)
        await self.db.store_tables.create_index([("store_id", 1), ("table", 1)], unique=True)
        await self.db.store_rows.create_index([("store_id", 1), ("table", 1), ("position", 1)])
        await self.db.store_rows.create_index("record_id", unique=True)

    async def _require_table(self, store_id: str, table: str) -> Dict[str, Any]:
        doc = await self.db.store_tables.find_one({"store_id": store_id, "table": table}, {"_id": 0})
        if not doc:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Table '{table}' not found in store {store_id}")
        return doc

    @staticmethod
    def _to_row(doc: Dict[str, Any]) -> StoreRow:
        return StoreRow(record_id=doc["record_id"], position=doc["position"], values=doc.get("values", {}))

    async def create_store(self, name: str, store_id: Optional[str] = None) -> str:
        store_id = store_id or f"store_{uuid.uuid4().hex[:12]}"
        await self.db.record_stores.update_one(
            {"store_id": store_id},
            {"$setOnInsert": {
                "store_id": store_id,
                "name": name,
                "created_utc": datetime.now(timezone.utc).isoformat(),
            }},
            upsert=True
        )
        return store_id

    async def delete_store(self, store_id: str) -> None:
        await self.db.store_rows.delete_many({"store_id": store_id})
        await self.db.store_tables.delete_many({"store_id": store_id})
        await self.db.record_stores.delete_one({"store_id": store_id})

    async def store_exists(self, store_id: str) -> bool:
        return await self.db.record_stores.count_documents({"store_id": store_id}) > 0

    async def list_tables(self, store_id: str) -> List[str]:
        if not await self.store_exists(store_id):
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Record store not found: {store_id}")
        docs = await self.db.store_tables.find({"store_id": store_id}, {"_id": 0, "table": 1}).to_list(100)
        return [d["table"] for d in docs]

    async def ensure_table(self, store_id: str, table: str, headers: List[str]) -> bool:
        existing = await self.db.store_tables.find_one({"store_id": store_id, "table": table})
        if existing:
            return False
        await self.db.store_tables.insert_one({"store_id": store_id, "table": table, "headers": list(headers)})
        return True

    async def set_headers(self, store_id: str, table: str, headers: List[str]) -> None:
        await self._require_table(store_id, table)
        await self.db.store_tables.update_one(
            {"store_id": store_id, "table": table},
            {"$set": {"headers": list(headers)}}
        )

    async def get_headers(self, store_id: str, table: str) -> List[str]:
        doc = await self._require_table(store_id, table)
        return list(doc.get("headers", []))

    async def read_rows(self, store_id: str, table: str) -> List[StoreRow]:
        await self._require_table(store_id, table)
        cursor = self.db.store_rows.find({"store_id": store_id, "table": table}, {"_id": 0}).sort("position", 1)
        return [self._to_row(doc) async for doc in cursor]

    async def append_row(self, store_id: str, table: str, values: Dict[str, Any]) -> StoreRow:
        headers = await self.get_headers(store_id, table)
        last = await self.db.store_rows.find_one(
            {"store_id": store_id, "table": table},
            {"_id": 0, "position": 1},
            sort=[("position", -1)]
        )
        position = (last["position"] + 1) if last else FIRST_DATA_POSITION
        record_id = new_record_id()
        known = filter_known_columns(headers, values, table)
        if COL_RECORD_ID in headers and not known.get(COL_RECORD_ID):
            known[COL_RECORD_ID] = record_id
        doc = {
            "store_id": store_id,
            "table": table,
            "record_id": record_id,
            "position": position,
            "values": {header: known.get(header, "") for header in headers},
        }
        await self.db.store_rows.insert_one(dict(doc))
        return self._to_row(doc)

    async def update_cells(self, store_id: str, table: str, record_id: str, updates: Dict[str, Any]) -> StoreRow:
        headers = await self.get_headers(store_id, table)
        known = filter_known_columns(headers, updates, table)
        sets = {f"values.{column}": value for column, value in known.items()}
        query = {"store_id": store_id, "table": table, "record_id": record_id}
        if sets:
            result = await self.db.store_rows.update_one(query, {"$set": sets})
            if result.matched_count == 0:
                raise HubError(ErrorCode.FILE_NOT_FOUND, f"Row {record_id} not found in '{table}'")
        doc = await self.db.store_rows.find_one(query, {"_id": 0})
        if not doc:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Row {record_id} not found in '{table}'")
        return self._to_row(doc)

    async def delete_row(self, store_id: str, table: str, record_id: str) -> bool:
        doc = await self.db.store_rows.find_one_and_delete(
            {"store_id": store_id, "table": table, "record_id": record_id}
        )
        if not doc:
            return False
        # Close the gap so positions stay contiguous
        await self.db.store_rows.update_many(
            {"store_id": store_id, "table": table, "position": {"$gt": doc["position"]}},
            {"$inc": {"position": -1}}
        )
        return True

    async def clear_table(self, store_id: str, table: str) -> int:
        await self._require_table(store_id, table)
        result = await self.db.store_rows.delete_many({"store_id": store_id, "table": table})
        return result.deleted_count
