"""
Member storage backends.

Every backend implements the same coroutine interface (``MemberStore``) so the
registry can run against a volatile dict, a JSON file, SQLite or PostgreSQL
without knowing which one it has.
"""

import abc
import asyncio
import json
import logging
import os
import sqlite3
import threading
from contextlib import nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles
import aiofiles.os

from members import (
    DuplicateOwnerError,
    IdSpaceExhaustedError,
    MemberStatus,
    MembershipRecord,
    StoreUnavailableError,
    format_issued_on,
    generate_member_id,
    make_internal_id,
    require_text,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "role", "status")


def _normalize_id(member_id: Any) -> str:
    return "" if member_id is None else str(member_id).strip()


class MemberStore(abc.ABC):
    def __init__(
        self,
        *,
        id_factory: Callable[[], str] = generate_member_id,
        clock: Callable[[], datetime] = datetime.now,
        max_id_attempts: int = 10,
        internal_id_prefix: str = "UOI",
    ):
        if max_id_attempts < 1:
            raise ValueError("max_id_attempts must be at least 1")
        self._id_factory = id_factory
        self._clock = clock
        self.max_id_attempts = max_id_attempts
        self.internal_id_prefix = internal_id_prefix
        self._owner_lock = asyncio.Lock()

    async def initialize(self) -> None:
        pass

    async def create(self, name: str, role: str, owner_ref: Optional[str] = None) -> MembershipRecord:
        name = require_text(name, "Name")
        role = require_text(role, "Role")
        if owner_ref is None:
            return await self._create_new(name, role, None)

        owner_ref = str(owner_ref)
        async with self._owner_lock:
            try:
                return await self._register_owner(name, role, owner_ref)
            except DuplicateOwnerError:
                # another process inserted a record for this owner between our lookup and insert
                logger.warning(f"Owner {owner_ref} was registered concurrently, retrying as re-registration")
                return await self._register_owner(name, role, owner_ref)

    async def _register_owner(self, name: str, role: str, owner_ref: str) -> MembershipRecord:
        existing = await self.get_by_owner(owner_ref)
        if existing is None:
            return await self._create_new(name, role, owner_ref)

        changes = {"role": role, "status": MemberStatus.ACTIVE}
        if not await self._update_fields(existing.id, changes):
            return await self._create_new(name, role, owner_ref)
        logger.info(f"Re-registered owner {owner_ref} on existing member {existing.id}")
        return existing.with_changes(**changes)

    async def _create_new(self, name: str, role: str, owner_ref: Optional[str]) -> MembershipRecord:
        now = self._clock()
        issued_on = format_issued_on(now)
        internal_id = make_internal_id(now, self.internal_id_prefix)

        for attempt in range(1, self.max_id_attempts + 1):
            record = MembershipRecord(
                id=str(self._id_factory()),
                name=name,
                role=role,
                status=MemberStatus.ACTIVE,
                issued_on=issued_on,
                internal_id=internal_id,
                owner_ref=owner_ref,
            )
            if await self._insert(record):
                logger.info(f"Created member {record.id} ({record.name})")
                return record
            logger.warning(f"Member id {record.id} is taken (attempt {attempt}/{self.max_id_attempts})")

        raise IdSpaceExhaustedError(
            f"Could not allocate a free member id after {self.max_id_attempts} attempts."
        )

    async def update_status(self, member_id: str, status: Any) -> bool:
        parsed = MemberStatus.parse(status)
        return await self._update_fields(_normalize_id(member_id), {"status": parsed})

    async def update_role(self, member_id: str, role: str) -> bool:
        role = require_text(role, "Role")
        return await self._update_fields(_normalize_id(member_id), {"role": role})

    @abc.abstractmethod
    async def get_by_id(self, member_id: str) -> Optional[MembershipRecord]:
        ...

    @abc.abstractmethod
    async def get_by_owner(self, owner_ref: str) -> Optional[MembershipRecord]:
        ...

    @abc.abstractmethod
    async def delete(self, member_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def list_all(self) -> List[MembershipRecord]:
        ...

    @abc.abstractmethod
    async def _insert(self, record: MembershipRecord) -> bool:
        """Persist a new record; False when its id is already taken."""

    @abc.abstractmethod
    async def _update_fields(self, member_id: str, fields: Dict[str, Any]) -> bool:
        """Apply fields to an existing record; False when it does not exist."""


class MemoryMemberStore(MemberStore):
    """Volatile store. Everything is lost on restart."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._records: Dict[str, MembershipRecord] = {}
        self._lock = asyncio.Lock()

    async def get_by_id(self, member_id: str) -> Optional[MembershipRecord]:
        return self._records.get(_normalize_id(member_id))

    async def get_by_owner(self, owner_ref: str) -> Optional[MembershipRecord]:
        owner_ref = str(owner_ref)
        return next((r for r in list(self._records.values()) if r.owner_ref == owner_ref), None)

    async def list_all(self) -> List[MembershipRecord]:
        return list(self._records.values())

    async def delete(self, member_id: str) -> bool:
        async with self._lock:
            return self._records.pop(_normalize_id(member_id), None) is not None

    async def _insert(self, record: MembershipRecord) -> bool:
        async with self._lock:
            if record.id in self._records:
                return False
            self._records[record.id] = record
            return True

    async def _update_fields(self, member_id: str, fields: Dict[str, Any]) -> bool:
        async with self._lock:
            current = self._records.get(member_id)
            if current is None:
                return False
            self._records[member_id] = current.with_changes(**fields)
            return True


class JsonMemberStore(MemberStore):
    """Key-value store kept in a single JSON file, keyed by member id."""

    def __init__(self, path, **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._lock:
            if not self.path.exists():
                await self._save({})
                logger.info(f"Created member file {self.path}")

    async def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            raise StoreUnavailableError(f"Could not read member file {self.path}: {e}") from e
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"Member file {self.path} is corrupt: {e}") from e
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"Member file {self.path} does not contain an object.")
        return data

    async def _save(self, data: Dict[str, Dict[str, Any]]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=4))
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreUnavailableError(f"Could not write member file {self.path}: {e}") from e

    def _decode(self, entry: Dict[str, Any]) -> MembershipRecord:
        try:
            return MembershipRecord.from_dict(entry)
        except (KeyError, TypeError) as e:
            raise StoreUnavailableError(f"Member file {self.path} holds a malformed record: {e}") from e

    async def get_by_id(self, member_id: str) -> Optional[MembershipRecord]:
        entry = (await self._load()).get(_normalize_id(member_id))
        return self._decode(entry) if entry is not None else None

    async def get_by_owner(self, owner_ref: str) -> Optional[MembershipRecord]:
        owner_ref = str(owner_ref)
        for entry in (await self._load()).values():
            if entry.get("owner_ref") is not None and str(entry["owner_ref"]) == owner_ref:
                return self._decode(entry)
        return None

    async def list_all(self) -> List[MembershipRecord]:
        return [self._decode(entry) for entry in (await self._load()).values()]

    async def delete(self, member_id: str) -> bool:
        async with self._lock:
            data = await self._load()
            if data.pop(_normalize_id(member_id), None) is None:
                return False
            await self._save(data)
            return True

    async def _insert(self, record: MembershipRecord) -> bool:
        async with self._lock:
            data = await self._load()
            if record.id in data:
                return False
            data[record.id] = record.to_dict()
            await self._save(data)
            return True

    async def _update_fields(self, member_id: str, fields: Dict[str, Any]) -> bool:
        async with self._lock:
            data = await self._load()
            entry = data.get(member_id)
            if entry is None:
                return False
            updated = self._decode(entry).with_changes(**fields)
            data[member_id] = updated.to_dict()
            await self._save(data)
            return True


SCHEMA = """
CREATE TABLE IF NOT EXISTS members (
    id TEXT PRIMARY KEY,
    owner_ref TEXT UNIQUE,
    name TEXT NOT NULL,
    role TEXT NOT NULL,
    status TEXT NOT NULL,
    issued_on TEXT NOT NULL,
    internal_id TEXT NOT NULL
)
"""

COLUMNS = ("id", "owner_ref", "name", "role", "status", "issued_on", "internal_id")
SELECT_COLUMNS = ", ".join(COLUMNS)


class SQLMemberStore(MemberStore):
    """
    Shared logic for the relational backends.

    Statements are written with ``?`` placeholders and rewritten per driver.
    A connection is opened and closed around every statement, and blocking
    driver calls run in a worker thread.
    """

    placeholder = "?"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.db_lock = threading.Lock()

    @abc.abstractmethod
    def _connect(self):
        ...

    def _driver_errors(self) -> tuple:
        return (sqlite3.Error,)

    def _integrity_errors(self) -> tuple:
        return (sqlite3.IntegrityError,)

    def _execute_sync(self, statement: str, params=(), *, fetch: Optional[str] = None, write: bool = False):
        statement = statement.replace("?", self.placeholder)
        try:
            with self.db_lock if write else nullcontext():
                conn = self._connect()
                try:
                    cursor = conn.cursor()
                    cursor.execute(statement, params)
                    if fetch == "one":
                        result = cursor.fetchone()
                    elif fetch == "all":
                        result = cursor.fetchall()
                    else:
                        result = cursor.rowcount
                    conn.commit()
                    return result
                finally:
                    conn.close()
        except self._integrity_errors() as e:
            # ids never conflict here (ON CONFLICT DO NOTHING), so this is the owner_ref constraint
            raise DuplicateOwnerError(f"This account already has a membership record: {e}") from e
        except self._driver_errors() as e:
            logger.error(f"Member database error: {e}")
            raise StoreUnavailableError(f"Member database is unavailable: {e}") from e

    async def _execute(self, statement: str, params=(), *, fetch: Optional[str] = None, write: bool = False):
        return await asyncio.to_thread(self._execute_sync, statement, params, fetch=fetch, write=write)

    @staticmethod
    def _row_to_record(row) -> MembershipRecord:
        return MembershipRecord.from_dict(dict(zip(COLUMNS, row)))

    async def initialize(self) -> None:
        await self._execute(SCHEMA, write=True)
        logger.info(f"{type(self).__name__} schema ready")

    async def get_by_id(self, member_id: str) -> Optional[MembershipRecord]:
        row = await self._execute(
            f"SELECT {SELECT_COLUMNS} FROM members WHERE id = ?", (_normalize_id(member_id),), fetch="one"
        )
        return self._row_to_record(row) if row else None

    async def get_by_owner(self, owner_ref: str) -> Optional[MembershipRecord]:
        row = await self._execute(
            f"SELECT {SELECT_COLUMNS} FROM members WHERE owner_ref = ?", (str(owner_ref),), fetch="one"
        )
        return self._row_to_record(row) if row else None

    async def list_all(self) -> List[MembershipRecord]:
        rows = await self._execute(f"SELECT {SELECT_COLUMNS} FROM members", fetch="all")
        return [self._row_to_record(row) for row in rows]

    async def delete(self, member_id: str) -> bool:
        count = await self._execute("DELETE FROM members WHERE id = ?", (_normalize_id(member_id),), write=True)
        return count > 0

    async def _insert(self, record: MembershipRecord) -> bool:
        values = record.to_dict()
        count = await self._execute(
            f"INSERT INTO members ({SELECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) ON CONFLICT (id) DO NOTHING",
            tuple(values[c] for c in COLUMNS),
            write=True,
        )
        return count > 0

    async def _update_fields(self, member_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        columns = list(fields)
        params = [fields[c].value if isinstance(fields[c], MemberStatus) else fields[c] for c in columns]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        count = await self._execute(
            f"UPDATE members SET {assignments} WHERE id = ?", (*params, member_id), write=True
        )
        return count > 0


class SQLiteMemberStore(SQLMemberStore):
    def __init__(self, db_path, **kwargs):
        super().__init__(**kwargs)
        self.db_path = str(db_path)

    def _connect(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return sqlite3.connect(self.db_path, timeout=10)


class PostgresMemberStore(SQLMemberStore):
    placeholder = "%s"

    def __init__(self, dsn: str, **kwargs):
        super().__init__(**kwargs)
        self.dsn = dsn

    def _connect(self):
        import psycopg

        return psycopg.connect(self.dsn, connect_timeout=10)

    def _driver_errors(self) -> tuple:
        import psycopg

        return (psycopg.Error,)

    def _integrity_errors(self) -> tuple:
        import psycopg

        return (psycopg.IntegrityError,)


def open_store(settings) -> MemberStore:
    """Build the backend selected by ``settings.store_backend``."""
    options = {
        "max_id_attempts": settings.id_generation_attempts,
        "internal_id_prefix": settings.internal_id_prefix,
    }
    backend = (settings.store_backend or "").lower()
    if backend == "memory":
        return MemoryMemberStore(**options)
    if backend == "json":
        return JsonMemberStore(settings.json_store_path, **options)
    if backend == "sqlite":
        return SQLiteMemberStore(settings.sqlite_path, **options)
    if backend == "postgres":
        if not settings.database_url:
            raise ValueError("STORE_BACKEND=postgres requires DATABASE_URL.")
        return PostgresMemberStore(settings.database_url, **options)
    raise ValueError(f"Unknown STORE_BACKEND {settings.store_backend!r} (expected memory, json, sqlite or postgres).")
