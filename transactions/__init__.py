"""Transactions module for ledger submissions.

Every submission attempt is recorded as a transaction row before the
extrinsic is sent, keyed by the extrinsic hash. The indexer is what
authoritatively moves a row to finalised or failed; the optional finality
watch only gets there sooner.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import UUID

from config import settings_conf
from database import Store
from errors import NotFoundError, ServiceUnavailableError
from ledger import DispatchError, Extrinsic, LedgerClient, NodeConnectionError
from ledger.payload import Payload
from models import (
    TransactionApiType,
    TransactionResponse,
    TransactionState,
    TransactionType,
    parse_datetime,
    parse_uuid,
)

logger = logging.getLogger(__name__)

def to_response(transaction: Dict[str, Any]) -> TransactionResponse:
    return TransactionResponse(
        id=transaction['id'],
        api_type=transaction['api_type'],
        transaction_type=transaction['transaction_type'],
        local_id=transaction['local_id'],
        state=transaction['state'],
        submitted_at=transaction['created_at'],
        updated_at=transaction['updated_at']
    )

class TransactionManager:
    """Submits payloads to the ledger and tracks the resulting transaction rows."""

    def __init__(self, ledger: LedgerClient, store: Optional[Store] = None, watch_finality: Optional[bool] = None):
        """Initialize transaction manager.

        Args:
            ledger: Connected ledger client
            store: Storage, defaults to the shared pool
            watch_finality: Watch each submission for its outcome, defaults to the watch_finality setting
        """
        self.ledger = ledger
        self.store = store or Store()
        self.watch_finality = settings_conf()['watch_finality'] if watch_finality is None else watch_finality
        self._watchers: Set[asyncio.Task] = set()

    async def prepare(
        self,
        payload: Payload,
        api_type: TransactionApiType,
        transaction_type: TransactionType,
        local_id: UUID
    ) -> Tuple[Dict[str, Any], Extrinsic]:
        """Sign payload and record a submitted transaction row for it without sending it."""
        try:
            extrinsic = await self.ledger.prepare(payload)
        except NodeConnectionError as e:
            raise ServiceUnavailableError('ledger', str(e)) from e

        try:
            transaction = await self.store.insert_transaction(
                TransactionApiType(api_type).value,
                transaction_type.value,
                local_id,
                TransactionState.SUBMITTED.value,
                extrinsic.hash
            )
        except Exception:
            await self.ledger.release(extrinsic)
            raise
        logger.info(
            f"Recorded {transaction_type.value} transaction {transaction['id']} "
            f"for {api_type} {local_id} ({extrinsic.hash})"
        )
        return transaction, extrinsic

    async def send(self, transaction: Dict[str, Any], extrinsic: Extrinsic) -> Dict[str, Any]:
        """Send a prepared extrinsic.

        A rejection by the node marks the transaction failed. If the node
        cannot be reached the row is left submitted for the indexer.

        Raises:
            ServiceUnavailableError: The node could not be reached after retries
        """
        start = None
        try:
            if self.watch_finality:
                start = await self.ledger.get_best_block_number()
            await self.ledger.submit(extrinsic)
        except DispatchError as e:
            logger.warning(f"Transaction {transaction['id']} rejected: {e}")
            return await self.mark_result(transaction['id'], False, e) or transaction
        except NodeConnectionError as e:
            logger.error(f"Transaction {transaction['id']} could not be sent, leaving it submitted: {e}")
            raise ServiceUnavailableError('ledger', str(e)) from e

        if self.watch_finality:
            task = asyncio.create_task(self._watch(transaction['id'], extrinsic, start))
            self._watchers.add(task)
            task.add_done_callback(self._watchers.discard)
        return transaction

    async def abandon(self, transaction: Dict[str, Any], extrinsic: Extrinsic) -> None:
        """Fail a prepared transaction that will not be sent and release its extrinsic."""
        await self.ledger.release(extrinsic)
        await self.mark_result(transaction['id'], False)

    async def submit(
        self,
        payload: Payload,
        api_type: TransactionApiType,
        transaction_type: TransactionType,
        local_id: UUID
    ) -> Dict[str, Any]:
        transaction, extrinsic = await self.prepare(payload, api_type, transaction_type, local_id)
        return await self.send(transaction, extrinsic)

    async def mark_result(
        self,
        transaction_id: UUID,
        success: bool,
        error: Optional[DispatchError] = None
    ) -> Optional[Dict[str, Any]]:
        """Resolve a still-submitted transaction. Rows already resolved are left alone."""
        state = TransactionState.FINALISED if success else TransactionState.FAILED
        updated = await self.store.update_transaction_state(
            transaction_id,
            state.value,
            from_state=TransactionState.SUBMITTED.value
        )
        if updated:
            logger.info(f"Transaction {transaction_id} {state.value}" + (f": {error}" if error else ''))
        return updated

    async def _watch(self, transaction_id: UUID, extrinsic: Extrinsic, start: Optional[int]) -> None:
        async def on_result(success: bool, error: Optional[DispatchError]) -> None:
            await self.mark_result(transaction_id, success, error)

        try:
            await self.ledger.watch_finality(extrinsic, on_result, start=start)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Finality watch for transaction {transaction_id} stopped: {e}")

    async def close(self) -> None:
        """Cancel outstanding finality watches"""
        for task in list(self._watchers):
            task.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)

    async def get(self, transaction_id) -> TransactionResponse:
        transaction = await self.store.get_transaction(parse_uuid(transaction_id, 'transaction id'))
        if not transaction:
            raise NotFoundError('transaction')
        return to_response(transaction)

    async def list(
        self,
        api_type: Optional[TransactionApiType] = None,
        state: Optional[TransactionState] = None,
        updated_since=None
    ) -> List[TransactionResponse]:
        transactions = await self.store.list_transactions(
            TransactionApiType(api_type).value if api_type else None,
            TransactionState(state).value if state else None,
            parse_datetime(updated_since)
        )
        return [to_response(transaction) for transaction in transactions]

    async def get_for_entity(
        self,
        local_id: UUID,
        transaction_id,
        transaction_type: TransactionType
    ) -> TransactionResponse:
        """A transaction of transaction_type submitted for local_id"""
        transaction = await self.store.get_transaction(parse_uuid(transaction_id, 'transaction id'))
        if (
            not transaction
            or transaction['local_id'] != local_id
            or transaction['transaction_type'] != transaction_type.value
        ):
            raise NotFoundError(transaction_type.value)
        return to_response(transaction)

    async def list_for_entity(
        self,
        local_id: UUID,
        transaction_type: Optional[TransactionType] = None,
        updated_since=None
    ) -> List[TransactionResponse]:
        transactions = await self.store.list_transactions_by_local_id(
            local_id,
            transaction_type.value if transaction_type else None,
            parse_datetime(updated_since)
        )
        return [to_response(transaction) for transaction in transactions]

__all__ = ['TransactionManager', 'to_response']
