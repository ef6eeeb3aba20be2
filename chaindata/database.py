"""SQLite entity store for the chaindata registry."""

import aiosqlite
import os
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, Type
from contextlib import asynccontextmanager

from chaindata.config import get_settings
from chaindata.models import Chain, EvmNetwork, TokenBase, token_adapter


class TableSpec(NamedTuple):
    """Where an entity family lives and which of its fields can be filtered on."""
    name: str
    columns: Tuple[str, ...]
    parse: Callable[[str], Any]


# Entities are stored as json documents; relation ids are mirrored into
# indexed columns so they can be used as filters.
TABLES: Dict[type, TableSpec] = {
    Chain: TableSpec("chains", ("relay_id", "native_token_id"), Chain.model_validate_json),
    EvmNetwork: TableSpec(
        "evm_networks", ("name", "substrate_chain_id", "native_token_id"), EvmNetwork.model_validate_json
    ),
    TokenBase: TableSpec(
        "tokens", ("type", "chain_id", "evm_network_id", "coingecko_id"), token_adapter.validate_json
    ),
}


def table_for(model: type) -> TableSpec:
    """Resolve the table of an entity class (token variants share one table)."""
    for cls in model.__mro__:
        if cls in TABLES:
            return TABLES[cls]
    raise TypeError(f"{model.__name__} is not a persisted entity")


class EntityStore:
    """Async, transactional, entity-addressed SQLite store."""

    def __init__(self, db_path: Optional[str] = None):
        settings = get_settings()
        self.db_path = db_path or settings.database_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._transaction_depth = 0

    async def connect(self):
        """Initialize database connection and create tables."""
        # Ensure directory exists
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

        # Autocommit mode: transactions are opened explicitly by transaction()
        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row

        # Enable WAL mode so API readers never block the pipeline writer
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @asynccontextmanager
    async def get_connection(self):
        """Get database connection context manager."""
        if not self._connection:
            await self.connect()
        yield self._connection

    async def _create_tables(self):
        """Create one table per entity family if they don't exist."""
        async with self.get_connection() as conn:
            for spec in TABLES.values():
                columns = "".join(f", {column} TEXT" for column in spec.columns)
                await conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {spec.name} (id TEXT PRIMARY KEY{columns}, data TEXT NOT NULL)"
                )
                for column in spec.columns:
                    await conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{spec.name}_{column} ON {spec.name}({column})"
                    )

    @asynccontextmanager
    async def transaction(self):
        """
        Run a block of store operations atomically.

        Nested calls join the outermost transaction. Any exception rolls
        back everything written since the outermost transaction began.
        """
        async with self.get_connection() as conn:
            if self._transaction_depth > 0:
                self._transaction_depth += 1
                try:
                    yield self
                finally:
                    self._transaction_depth -= 1
                return

            await conn.execute("BEGIN")
            self._transaction_depth = 1
            try:
                yield self
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
            finally:
                self._transaction_depth = 0

    @staticmethod
    def _where(spec: TableSpec, filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        for key, value in filters.items():
            if key != "id" and key not in spec.columns:
                raise ValueError(f"Cannot filter {spec.name} by {key}")
            if value is None:
                clauses.append(f"{key} IS NULL")
            else:
                clauses.append(f"{key} = ?")
                params.append(value)
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    async def find(self, model: Type, **filters) -> List[Any]:
        """
        Find entities of a family, optionally filtered by id or relation columns.

        Args:
            model: Entity class (any token variant selects the token table)
            **filters: column=value pairs; None matches unset relations

        Returns:
            Entities ordered by id
        """
        spec = table_for(model)
        if "type" in spec.columns and "type" in getattr(model, "model_fields", {}):
            # a concrete token variant only finds tokens of its own kind
            filters = {"type": model.model_fields["type"].default, **filters}
        where, params = self._where(spec, filters)
        async with self.get_connection() as conn:
            cursor = await conn.execute(f"SELECT data FROM {spec.name}{where} ORDER BY id", params)
            rows = await cursor.fetchall()
            return [spec.parse(row["data"]) for row in rows]

    async def find_one(self, model: Type, **filters) -> Optional[Any]:
        """Find the first entity matching the filters, or None."""
        found = await self.find(model, **filters)
        return found[0] if found else None

    async def save(self, entities: Any):
        """Upsert one entity or a batch of entities."""
        if not isinstance(entities, (list, tuple)):
            entities = [entities]
        grouped: Dict[str, Tuple[TableSpec, List[Tuple]]] = {}
        for entity in entities:
            spec = table_for(type(entity))
            row = (entity.id, *[getattr(entity, column, None) for column in spec.columns], entity.model_dump_json())
            grouped.setdefault(spec.name, (spec, []))[1].append(row)

        async with self.get_connection() as conn:
            for spec, rows in grouped.values():
                columns = ", ".join(("id", *spec.columns, "data"))
                placeholders = ", ".join("?" for _ in range(len(spec.columns) + 2))
                await conn.executemany(
                    f"INSERT OR REPLACE INTO {spec.name} ({columns}) VALUES ({placeholders})", rows
                )

    async def delete(self, model: Type, ids: Iterable[str]):
        """Delete entities of a family by id."""
        ids = list(ids)
        if not ids:
            return
        spec = table_for(model)
        async with self.get_connection() as conn:
            await conn.executemany(f"DELETE FROM {spec.name} WHERE id = ?", [(i,) for i in ids])

    async def count(self, model: Type) -> int:
        """Count entities of a family."""
        spec = table_for(model)
        async with self.get_connection() as conn:
            cursor = await conn.execute(f"SELECT COUNT(*) as count FROM {spec.name}")
            row = await cursor.fetchone()
            return row["count"] if row else 0


# Global store instance
db = EntityStore()
