"""Query layer over the matchmaker tables.

All SQL lives here. A Store either draws connections from the pool per call
or, inside ``transaction()``, is bound to a single connection so that several
writes commit or roll back together.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from uuid import UUID

from asyncpg.pool import Pool

logger = logging.getLogger(__name__)

# Columns a ledger event may change on an existing row, with their SQL types
DEMAND_UPDATE_COLUMNS = {
    'state': 'TEXT',
    'latest_token_id': 'INT8',
    'original_token_id': 'INT8'
}
MATCH2_UPDATE_COLUMNS = {
    'state': 'TEXT',
    'latest_token_id': 'INT8',
    'original_token_id': 'INT8',
    'replaces_id': 'UUID'
}

DEMAND_INSERT_COLUMNS = [
    'id', 'owner', 'subtype', 'state', 'parameters_attachment_id',
    'latest_token_id', 'original_token_id'
]
MATCH2_INSERT_COLUMNS = [
    'id', 'optimiser', 'member_a', 'member_b', 'state', 'demand_a_id',
    'demand_b_id', 'replaces_id', 'latest_token_id', 'original_token_id'
]
DEMAND_COMMENT_INSERT_COLUMNS = ['id', 'owner', 'state', 'demand', 'attachment_id', 'transaction_id']

def _affected(status: str) -> int:
    """Number of rows reported by an asyncpg command status such as 'UPDATE 1'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0

def _row(row) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None

def _set_clause(table: str, columns: Dict[str, str], record: Dict[str, Any], start: int):
    """Build SET assignments and a changed-values guard for the columns present in record.

    original_token_id is only ever filled, never replaced.
    """
    assignments = []
    guards = []
    values = []
    index = start
    for column, sql_type in columns.items():
        if column not in record:
            continue
        values.append(record[column])
        param = f"${index}::{sql_type}"
        if column == 'original_token_id':
            assignments.append(f"{column} = COALESCE({table}.{column}, {param})")
            guards.append(f"({table}.{column} IS NULL AND {param} IS NOT NULL)")
        else:
            assignments.append(f"{column} = {param}")
            guards.append(f"{table}.{column} IS DISTINCT FROM {param}")
        index += 1
    return assignments, guards, values

class Store:
    """Database access for demands, match2s, transactions, attachments and checkpoints."""

    def __init__(self, pool: Optional[Pool] = None, conn=None) -> None:
        """Initialize the store.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            conn: Connection to bind to; used by transaction()
        """
        self.pool = pool
        self._conn = conn

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool and self._conn is None:
            from database import get_pool
            self.pool = await get_pool()

    @asynccontextmanager
    async def _acquire(self):
        if self._conn is not None:
            yield self._conn
            return
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator['Store']:
        """Yield a Store bound to one connection inside a database transaction."""
        if self._conn is not None:
            async with self._conn.transaction():
                yield self
            return
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield Store(self.pool, conn)

    # Attachments

    async def insert_attachment(self, filename: Optional[str], size: Optional[int], ipfs_hash: str) -> Dict[str, Any]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO attachment (filename, size, ipfs_hash)
                VALUES ($1, $2, $3)
                RETURNING *
                ''',
                filename,
                size,
                ipfs_hash
            )
            return dict(row)

    async def get_attachment(self, attachment_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            return _row(await conn.fetchrow('SELECT * FROM attachment WHERE id = $1', attachment_id))

    async def upsert_attachment(self, record: Dict[str, Any]) -> int:
        """Insert an attachment seen on the ledger. Existing rows are left untouched."""
        async with self._acquire() as conn:
            status = await conn.execute(
                '''
                INSERT INTO attachment (id, filename, size, ipfs_hash)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO NOTHING
                ''',
                record['id'],
                record.get('filename'),
                record.get('size'),
                record['ipfs_hash']
            )
            return _affected(status)

    # Demands

    async def insert_demand(
        self,
        owner: str,
        subtype: str,
        state: str,
        parameters_attachment_id: UUID
    ) -> Dict[str, Any]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO demand (owner, subtype, state, parameters_attachment_id)
                VALUES ($1, $2, $3, $4)
                RETURNING *
                ''',
                owner,
                subtype,
                state,
                parameters_attachment_id
            )
            return dict(row)

    async def get_demand(self, demand_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            return _row(await conn.fetchrow('SELECT * FROM demand WHERE id = $1', demand_id))

    async def get_demand_with_attachment(self, demand_id: UUID) -> Optional[Dict[str, Any]]:
        """Get a demand joined with its parameters attachment (filename, ipfs_hash)."""
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT d.*, a.ipfs_hash, a.filename
                FROM demand d
                JOIN attachment a ON a.id = d.parameters_attachment_id
                WHERE d.id = $1
                ''',
                demand_id
            )
            return _row(row)

    async def list_demands(
        self,
        subtype: Optional[str] = None,
        updated_since: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM demand
                WHERE ($1::TEXT IS NULL OR subtype = $1)
                AND ($2::TIMESTAMPTZ IS NULL OR updated_at > $2)
                ORDER BY created_at
                ''',
                subtype,
                updated_since
            )
            return [dict(row) for row in rows]

    async def upsert_demand(self, record: Dict[str, Any]) -> int:
        """Insert a demand created on the ledger, or bring an existing row up to date."""
        if any(record.get(column) is None for column in ('owner', 'subtype', 'parameters_attachment_id')):
            logger.warning(f"Insert record for demand {record['id']} is incomplete, applying as update")
            return await self.update_demand(record)

        async with self._acquire() as conn:
            status = await conn.execute(
                f'''
                INSERT INTO demand ({', '.join(DEMAND_INSERT_COLUMNS)})
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    state = EXCLUDED.state,
                    latest_token_id = EXCLUDED.latest_token_id,
                    original_token_id = COALESCE(demand.original_token_id, EXCLUDED.original_token_id),
                    updated_at = now()
                WHERE demand.state IS DISTINCT FROM EXCLUDED.state
                OR demand.latest_token_id IS DISTINCT FROM EXCLUDED.latest_token_id
                OR (demand.original_token_id IS NULL AND EXCLUDED.original_token_id IS NOT NULL)
                ''',
                *[record.get(column) for column in DEMAND_INSERT_COLUMNS]
            )
            return _affected(status)

    async def update_demand(self, record: Dict[str, Any]) -> int:
        """Update an existing demand by id. An unknown id updates nothing."""
        return await self._update('demand', DEMAND_UPDATE_COLUMNS, record)

    # Match2s

    async def insert_match2(
        self,
        optimiser: str,
        member_a: str,
        member_b: str,
        state: str,
        demand_a_id: UUID,
        demand_b_id: UUID,
        replaces_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO match2 (optimiser, member_a, member_b, state, demand_a_id, demand_b_id, replaces_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                ''',
                optimiser,
                member_a,
                member_b,
                state,
                demand_a_id,
                demand_b_id,
                replaces_id
            )
            return dict(row)

    async def get_match2(self, match2_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            return _row(await conn.fetchrow('SELECT * FROM match2 WHERE id = $1', match2_id))

    async def list_match2s(self, updated_since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM match2
                WHERE ($1::TIMESTAMPTZ IS NULL OR updated_at > $1)
                ORDER BY created_at
                ''',
                updated_since
            )
            return [dict(row) for row in rows]

    async def upsert_match2(self, record: Dict[str, Any]) -> int:
        """Insert a match2 created on the ledger, or bring an existing row up to date."""
        required = ('optimiser', 'member_a', 'member_b', 'demand_a_id', 'demand_b_id')
        if any(record.get(column) is None for column in required):
            logger.warning(f"Insert record for match2 {record['id']} is incomplete, applying as update")
            return await self.update_match2(record)

        async with self._acquire() as conn:
            status = await conn.execute(
                f'''
                INSERT INTO match2 ({', '.join(MATCH2_INSERT_COLUMNS)})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    state = EXCLUDED.state,
                    latest_token_id = EXCLUDED.latest_token_id,
                    original_token_id = COALESCE(match2.original_token_id, EXCLUDED.original_token_id),
                    updated_at = now()
                WHERE match2.state IS DISTINCT FROM EXCLUDED.state
                OR match2.latest_token_id IS DISTINCT FROM EXCLUDED.latest_token_id
                OR (match2.original_token_id IS NULL AND EXCLUDED.original_token_id IS NOT NULL)
                ''',
                *[record.get(column) for column in MATCH2_INSERT_COLUMNS]
            )
            return _affected(status)

    async def update_match2(self, record: Dict[str, Any]) -> int:
        """Update an existing match2 by id. An unknown id updates nothing."""
        return await self._update('match2', MATCH2_UPDATE_COLUMNS, record)

    async def _update(self, table: str, columns: Dict[str, str], record: Dict[str, Any]) -> int:
        assignments, guards, values = _set_clause(table, columns, record, start=2)
        if not assignments:
            return 0

        async with self._acquire() as conn:
            status = await conn.execute(
                f'''
                UPDATE {table}
                SET {', '.join(assignments)}, updated_at = now()
                WHERE id = $1
                AND ({' OR '.join(guards)})
                ''',
                record['id'],
                *values
            )
            updated = _affected(status)
            if not updated:
                logger.debug(f"No change applied to {table} {record['id']}")
            return updated

    # Demand comments

    async def insert_demand_comment(
        self,
        owner: str,
        demand: UUID,
        attachment_id: UUID,
        state: str,
        transaction_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO demand_comment (owner, demand, attachment_id, state, transaction_id)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                ''',
                owner,
                demand,
                attachment_id,
                state,
                transaction_id
            )
            return dict(row)

    async def get_demand_comment_for_transaction(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            return _row(await conn.fetchrow(
                'SELECT * FROM demand_comment WHERE transaction_id = $1',
                transaction_id
            ))

    async def upsert_demand_comment(self, record: Dict[str, Any]) -> int:
        if any(record.get(column) is None for column in ('owner', 'demand', 'attachment_id')):
            return await self.update_demand_comment(record)

        async with self._acquire() as conn:
            status = await conn.execute(
                f'''
                INSERT INTO demand_comment ({', '.join(DEMAND_COMMENT_INSERT_COLUMNS)})
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO NOTHING
                ''',
                *[record.get(column) for column in DEMAND_COMMENT_INSERT_COLUMNS]
            )
            return _affected(status)

    async def update_demand_comment(self, record: Dict[str, Any]) -> int:
        """Update a comment's state, located by transaction id when the record carries one."""
        key = 'transaction_id' if record.get('transaction_id') is not None else 'id'
        async with self._acquire() as conn:
            status = await conn.execute(
                f'''
                UPDATE demand_comment
                SET state = $2, updated_at = now()
                WHERE {key} = $1
                AND state IS DISTINCT FROM $2
                ''',
                record[key],
                record['state']
            )
            return _affected(status)

    # Transactions

    async def insert_transaction(
        self,
        api_type: str,
        transaction_type: str,
        local_id: UUID,
        state: str,
        hash: str
    ) -> Dict[str, Any]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO "transaction" (api_type, transaction_type, local_id, state, hash)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                ''',
                api_type,
                transaction_type,
                local_id,
                state,
                hash
            )
            return dict(row)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            return _row(await conn.fetchrow('SELECT * FROM "transaction" WHERE id = $1', transaction_id))

    async def list_transactions(
        self,
        api_type: Optional[str] = None,
        state: Optional[str] = None,
        updated_since: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM "transaction"
                WHERE ($1::TEXT IS NULL OR api_type = $1)
                AND ($2::TEXT IS NULL OR state = $2)
                AND ($3::TIMESTAMPTZ IS NULL OR updated_at > $3)
                ORDER BY created_at
                ''',
                api_type,
                state,
                updated_since
            )
            return [dict(row) for row in rows]

    async def list_transactions_by_local_id(
        self,
        local_id: UUID,
        transaction_type: Optional[str] = None,
        updated_since: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM "transaction"
                WHERE local_id = $1
                AND ($2::TEXT IS NULL OR transaction_type = $2)
                AND ($3::TIMESTAMPTZ IS NULL OR updated_at > $3)
                ORDER BY created_at
                ''',
                local_id,
                transaction_type,
                updated_since
            )
            return [dict(row) for row in rows]

    async def get_transactions_by_hashes(self, hashes: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Map extrinsic hash (without 0x) to the local transaction submitted with it."""
        hashes = list(hashes)
        if not hashes:
            return {}
        async with self._acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM "transaction" WHERE hash = ANY($1::TEXT[])',
                hashes
            )
            return {row['hash']: dict(row) for row in rows}

    async def update_transaction_state(
        self,
        transaction_id: UUID,
        state: str,
        from_state: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Move a transaction to state. Returns the updated row, or None if nothing changed.

        Args:
            transaction_id: Transaction to update
            state: New state
            from_state: Only update when the row currently has this state
        """
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE "transaction"
                SET state = $2, updated_at = now()
                WHERE id = $1
                AND state IS DISTINCT FROM $2
                AND ($3::TEXT IS NULL OR state = $3)
                RETURNING *
                ''',
                transaction_id,
                state,
                from_state
            )
            return _row(row)

    # Indexer checkpoints

    async def get_last_processed_block(self) -> Optional[Dict[str, Any]]:
        async with self._acquire() as conn:
            return _row(await conn.fetchrow(
                'SELECT hash, parent, height FROM processed_blocks ORDER BY height DESC LIMIT 1'
            ))

    async def insert_processed_block(self, block: Dict[str, Any]) -> int:
        async with self._acquire() as conn:
            status = await conn.execute(
                '''
                INSERT INTO processed_blocks (hash, parent, height)
                VALUES ($1, $2, $3)
                ON CONFLICT (hash) DO NOTHING
                ''',
                block['hash'],
                block['parent'],
                block['height']
            )
            return _affected(status)

    async def find_local_id_for_token(self, token_id: int) -> Optional[UUID]:
        """Local id of the demand or match2 whose latest token is token_id, demands first."""
        async with self._acquire() as conn:
            return await conn.fetchval(
                '''
                SELECT id FROM (
                    SELECT id, 0 AS category FROM demand WHERE latest_token_id = $1
                    UNION ALL
                    SELECT id, 1 AS category FROM match2 WHERE latest_token_id = $1
                ) AS tokens
                ORDER BY category
                LIMIT 1
                ''',
                token_id
            )
