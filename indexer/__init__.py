"""Block indexer reconciling local storage with finalised ledger state.

The indexer walks finalised blocks in height order from the last committed
checkpoint. For each block it:
- Matches extrinsic outcomes to locally submitted transactions
- Runs the event processor of every ProcessRan event
- Merges the results into one ChangeSet

Up to ``indexer_batch_size`` blocks are applied in a single storage
transaction together with their checkpoint rows, so a crash never leaves
entity rows ahead of or behind the checkpoint.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import backoff
import pydantic

from config import settings_conf
from database import Store
from ledger import LedgerClient
from models import ProcessName, ProcessRun, TokenInput, TransactionState
from . import event_processors
from .changeset import (
    ChangeSet,
    find_local_id_in_change_set,
    is_empty,
    merge_change_sets,
    summarize,
    update,
)
from .event_processors import ProcessorError

logger = logging.getLogger(__name__)

class IndexerState(str, Enum):
    IDLE = "idle"
    CATCHING_UP = "catching-up"
    APPLYING = "applying"
    ERROR = "error"

class ConsistencyError(Exception):
    """Raised when the next block does not extend the checkpoint. Indexing cannot continue."""
    pass

FATAL_ERRORS = (ConsistencyError, ProcessorError)

class BlockIndexer:
    """Replays finalised blocks into storage"""

    def __init__(
        self,
        ledger: LedgerClient,
        store: Optional[Store] = None,
        batch_size: Optional[int] = None,
        poll_period: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        processors: Optional[Dict[ProcessName, Callable[[ProcessRun], ChangeSet]]] = None
    ):
        """Initialize the indexer.

        Args:
            ledger: Connected ledger client
            store: Storage, defaults to the shared pool
            batch_size: Blocks merged into one storage transaction
            poll_period: Seconds between checks for new finalised blocks
            retry_max_delay: Cap in seconds on the delay between failed passes
            processors: Event processors by process name
        """
        settings = settings_conf()
        self.ledger = ledger
        self.store = store or Store()
        self.batch_size = batch_size or settings['indexer_batch_size']
        self.poll_period = poll_period or settings['indexer_poll_period']
        self.retry_max_delay = retry_max_delay or settings['indexer_retry_max_delay']
        self.processors = processors or event_processors.EVENT_PROCESSORS

        self.state = IndexerState.IDLE
        self.running = False
        self.header_queue: asyncio.Queue = asyncio.Queue()
        self.last_processed: Optional[Dict[str, Any]] = None
        self._reset_retry()

    def _reset_retry(self) -> None:
        self._retry_delays = backoff.expo(max_value=self.retry_max_delay)
        next(self._retry_delays)

    def _next_retry_delay(self) -> float:
        return min(next(self._retry_delays), self.retry_max_delay)

    async def get_checkpoint(self) -> Dict[str, Any]:
        """Last committed block. Without one, the current finalised head becomes the checkpoint."""
        checkpoint = await self.store.get_last_processed_block()
        if checkpoint is not None:
            return checkpoint

        head_hash = await self.ledger.get_last_finalised_block_hash()
        header = await self.ledger.get_header(head_hash)
        await self.store.insert_processed_block(header)
        logger.info(f"No checkpoint found, starting from finalised block {header['height']} ({header['hash']})")
        return header

    async def process_next_blocks(self) -> Optional[str]:
        """Apply the next batch of finalised blocks after the checkpoint.

        Returns:
            Hash of the last block applied, or None when already at the finalised head

        Raises:
            ConsistencyError: A block's parent is not the previous block
            ProcessorError: A ProcessRan event could not be processed
        """
        checkpoint = await self.get_checkpoint()
        head_hash = await self.ledger.get_last_finalised_block_hash()
        head = await self.ledger.get_header(head_hash)
        if head['height'] <= checkpoint['height']:
            self.state = IndexerState.IDLE
            return None

        self.state = IndexerState.CATCHING_UP
        last_height = min(head['height'], checkpoint['height'] + self.batch_size)
        change: ChangeSet = {}
        blocks: List[Dict[str, Any]] = []
        parent = checkpoint

        for height in range(checkpoint['height'] + 1, last_height + 1):
            block_hash = await self.ledger.get_block_hash(height)
            header = await self.ledger.get_header(block_hash)
            if header['parent'] != parent['hash']:
                raise ConsistencyError(
                    f"Block {height} ({header['hash']}) has parent {header['parent']}, "
                    f"expected {parent['hash']} at height {parent['height']}"
                )
            change = merge_change_sets(change, await self.build_change_set(header, change))
            blocks.append(header)
            parent = header

        self.state = IndexerState.APPLYING
        await self.apply_change_set(change, blocks)
        self.last_processed = blocks[-1]
        self.state = IndexerState.CATCHING_UP if last_height < head['height'] else IndexerState.IDLE
        return blocks[-1]['hash']

    async def build_change_set(self, header: Dict[str, Any], pending: ChangeSet) -> ChangeSet:
        """ChangeSet for one block. pending holds the changes of earlier blocks in the batch."""
        events = await self.ledger.get_block_events(header['hash'])
        transactions = await self.store.get_transactions_by_hashes({e['extrinsic_hash'] for e in events})
        change: ChangeSet = {}

        for event in events:
            transaction = transactions.get(event['extrinsic_hash'])

            if event['event'] == 'ProcessRan':
                run = await self._process_run(event, transaction, merge_change_sets(pending, change))
                processor = self.processors.get(run.process)
                if processor is None:
                    raise ProcessorError(f"Unknown process {run.process.value}")
                change = merge_change_sets(change, processor(run))
                continue

            if transaction is None:
                continue
            if event['event'] == 'ExtrinsicSuccess':
                state = TransactionState.FINALISED
            elif event['event'] == 'ExtrinsicFailed':
                state = TransactionState.FAILED
                logger.warning(f"Transaction {transaction['id']} failed in block {header['height']}: {event.get('error')}")
            else:
                continue
            change = merge_change_sets(change, {
                'transactions': {transaction['id']: update(transaction['id'], state=state.value)}
            })

        return change

    async def _process_run(
        self,
        event: Dict[str, Any],
        transaction: Optional[Dict[str, Any]],
        context: ChangeSet
    ) -> ProcessRun:
        inputs = []
        for token_id in event['inputs']:
            local_id = find_local_id_in_change_set(context, token_id)
            if local_id is None:
                local_id = await self.store.find_local_id_for_token(token_id)
            inputs.append(TokenInput(id=token_id, local_id=local_id))

        outputs = [await self.ledger.get_token(token_id) for token_id in event['outputs']]

        try:
            return ProcessRun(
                process=event['process'],
                version=event.get('version', 1),
                sender=event['sender'],
                hash=event['extrinsic_hash'],
                transaction=transaction,
                inputs=inputs,
                outputs=outputs
            )
        except pydantic.ValidationError as e:
            raise ProcessorError(f"Unrecognised ProcessRan event {event.get('process')}: {e}") from e

    async def apply_change_set(self, change: ChangeSet, blocks: List[Dict[str, Any]]) -> None:
        """Write change and the checkpoint rows for blocks in one storage transaction"""
        async with self.store.transaction() as store:
            for record in (change.get('attachments') or {}).values():
                await store.upsert_attachment(record)

            for record in (change.get('demands') or {}).values():
                if record['type'] == 'insert':
                    await store.upsert_demand(record)
                else:
                    await store.update_demand(record)

            for record in (change.get('matches') or {}).values():
                if record['type'] == 'insert':
                    await store.upsert_match2(record)
                else:
                    await store.update_match2(record)

            for record in (change.get('demand_comments') or {}).values():
                if record['type'] == 'insert':
                    await store.upsert_demand_comment(record)
                else:
                    await store.update_demand_comment(record)

            for record in (change.get('transactions') or {}).values():
                await store.update_transaction_state(record['id'], record['state'])

            for block in blocks:
                await store.insert_processed_block(block)

        if blocks:
            first, last = blocks[0], blocks[-1]
            span = f"{first['height']}" if first is last else f"{first['height']}-{last['height']}"
            level = logging.DEBUG if is_empty(change) else logging.INFO
            logger.log(level, f"Applied block {span} ({last['hash']}): {summarize(change)}")

    async def catch_up(self) -> None:
        """Process blocks until at the finalised head, retrying transient failures"""
        while self.running:
            try:
                if await self.process_next_blocks() is None:
                    return
                self._reset_retry()
            except FATAL_ERRORS as e:
                self.state = IndexerState.ERROR
                self.running = False
                logger.critical(f"Indexing halted, operator intervention required: {e}")
                raise
            except Exception as e:
                self.state = IndexerState.ERROR
                delay = self._next_retry_delay()
                logger.error(f"Indexer pass failed, retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)

    async def watch_headers(self) -> None:
        """Feed finalised headers from the ledger into the queue"""
        async for header in self.ledger.finalised_headers(self.poll_period):
            await self.header_queue.put(header)

    async def process_headers(self) -> None:
        """Catch up whenever a header arrives, or every poll period"""
        while self.running:
            try:
                header = await asyncio.wait_for(self.header_queue.get(), timeout=self.poll_period)
                logger.debug(f"Finalised head {header['height']} ({header['hash']})")
                self.header_queue.task_done()
            except asyncio.TimeoutError:
                pass
            await self.catch_up()

    async def start(self) -> None:
        """Run the indexer until stopped or a fatal error occurs"""
        self.running = True
        logger.info("Starting block indexer...")
        header_task = asyncio.create_task(self.watch_headers())
        try:
            await self.catch_up()
            await self.process_headers()
        finally:
            header_task.cancel()
            await asyncio.gather(header_task, return_exceptions=True)

    def stop(self) -> None:
        logger.info("Stopping block indexer...")
        self.running = False

__all__ = ['BlockIndexer', 'IndexerState', 'ConsistencyError', 'ProcessorError']
