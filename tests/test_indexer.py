"""Scenario tests for the block indexer against the simulated ledger."""
import asyncio
import copy
from unittest.mock import patch

import pytest

from indexer import BlockIndexer, ConsistencyError, IndexerState
from indexer.changeset import token_uuid
from indexer.event_processors import ProcessorError
from ledger import payload
from tests.fakes import FakeStore, seal_and_index
from tests.flows import accepted_final_match, on_chain_demand, proposed_match

@pytest.mark.asyncio
async def test_demand_create_is_indexed(demands, store, ledger, indexer, parameters):
    demand = await demands.create('order', parameters['id'])
    transaction = await demands.create_on_chain(demand.id)

    assert store.tables['transaction'][transaction.id]['state'] == 'submitted'
    await seal_and_index(ledger, indexer)

    row = store.tables['demand'][demand.id]
    assert row['state'] == 'created'
    assert row['latest_token_id'] == 1
    assert row['original_token_id'] == 1
    assert store.tables['transaction'][transaction.id]['state'] == 'finalised'
    assert indexer.state == IndexerState.IDLE

@pytest.mark.asyncio
async def test_concurrent_accepts_one_wins(demands, matches, store, ledger, indexer, parameters):
    _, _, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)

    first, second = await asyncio.gather(matches.accept(match2_id), matches.accept(match2_id))
    await seal_and_index(ledger, indexer)

    states = {
        store.tables['transaction'][first.id]['state'],
        store.tables['transaction'][second.id]['state']
    }
    assert states == {'finalised', 'failed'}
    assert store.tables['match2'][match2_id]['state'] == 'acceptedA'

@pytest.mark.asyncio
async def test_match2_accept_final_allocates_both_demands(demands, matches, store, ledger, indexer, parameters):
    demand_a, demand_b, match2_id = await accepted_final_match(demands, matches, ledger, indexer, parameters)

    assert store.tables['match2'][match2_id]['state'] == 'acceptedFinal'
    assert store.tables['demand'][demand_a]['state'] == 'allocated'
    assert store.tables['demand'][demand_b]['state'] == 'allocated'
    assert all(row['state'] == 'finalised' for row in store.rows('transaction'))

@pytest.mark.asyncio
async def test_rematch2_cascade(demands, matches, store, ledger, indexer, parameters):
    demand_a, old_demand_b, old_match = await accepted_final_match(demands, matches, ledger, indexer, parameters)
    original_token = store.tables['demand'][demand_a]['original_token_id']
    new_demand_b = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')

    rematch = await matches.propose(demand_a, new_demand_b, replaces_id=old_match)
    await matches.propose_on_chain(rematch.id)
    await seal_and_index(ledger, indexer)
    assert store.tables['match2'][rematch.id]['state'] == 'proposed'
    assert store.tables['match2'][old_match]['state'] == 'acceptedFinal'

    await matches.accept(rematch.id)
    await seal_and_index(ledger, indexer)
    await matches.accept(rematch.id)
    await seal_and_index(ledger, indexer)

    assert store.tables['match2'][old_match]['state'] == 'cancelled'
    assert store.tables['demand'][old_demand_b]['state'] == 'cancelled'
    assert store.tables['demand'][new_demand_b]['state'] == 'allocated'
    assert store.tables['demand'][demand_a]['state'] == 'allocated'
    assert store.tables['demand'][demand_a]['original_token_id'] == original_token
    assert store.tables['match2'][rematch.id]['state'] == 'acceptedFinal'
    assert store.tables['match2'][rematch.id]['replaces_id'] == old_match

@pytest.mark.asyncio
async def test_reapplying_a_change_set_is_idempotent(demands, matches, store, ledger, indexer, parameters):
    demand_a = await on_chain_demand(demands, ledger, indexer, parameters, 'order')
    demand_b = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')
    match2 = await matches.propose(demand_a, demand_b)
    await matches.propose_on_chain(match2.id)
    header = ledger.seal_block()

    change = await indexer.build_change_set(header, {})
    await indexer.apply_change_set(change, [header])
    snapshot = copy.deepcopy(store.tables)
    await indexer.apply_change_set(change, [header])

    assert store.tables == snapshot
    assert store.tables['match2'][match2.id]['state'] == 'proposed'

@pytest.mark.asyncio
async def test_parent_mismatch_halts_without_mutation(demands, store, ledger, indexer, parameters):
    demand = await demands.create('order', parameters['id'])
    await demands.create_on_chain(demand.id)
    ledger.seal_block(parent='0xdead')
    snapshot = copy.deepcopy(store.tables)

    with pytest.raises(ConsistencyError):
        await indexer.process_next_blocks()

    assert store.tables == snapshot
    assert store.tables['demand'][demand.id]['state'] == 'pending'

@pytest.mark.asyncio
async def test_checkpoint_height_increases(demands, store, ledger, indexer, parameters):
    for subtype in ('order', 'capacity', 'order'):
        await on_chain_demand(demands, ledger, indexer, parameters, subtype)
    ledger.seal_block()
    await indexer.process_next_blocks()

    heights = [row['height'] for row in store.rows('processed_blocks')]
    assert heights == [0, 1, 2, 3, 4]
    assert (await store.get_last_processed_block())['height'] == 4

def foreign_demand(subtype, owner='5Bob', latest_token_id=None, original_token_id=None):
    return {
        'owner': owner,
        'subtype': subtype,
        'state': 'created',
        'ipfs_hash': f"Qm{subtype}",
        'latest_token_id': latest_token_id,
        'original_token_id': original_token_id
    }

@pytest.mark.asyncio
async def test_batch_resolves_tokens_minted_earlier_in_the_batch(store, ledger):
    indexer = BlockIndexer(ledger, store, batch_size=10, poll_period=0.01, retry_max_delay=0.01)
    await indexer.get_checkpoint()

    await ledger.submit_as('5Bob', payload.demand_create(foreign_demand('order')))
    await ledger.submit_as('5Bob', payload.demand_create(foreign_demand('capacity')))
    ledger.seal_block()
    match2 = {'optimiser': '5Carol', 'member_a': '5Bob', 'member_b': '5Bob', 'original_token_id': None}
    await ledger.submit_as('5Carol', payload.match2_propose(
        match2,
        foreign_demand('order', latest_token_id=1, original_token_id=1),
        foreign_demand('capacity', latest_token_id=2, original_token_id=2)
    ))
    ledger.seal_block()
    ledger.seal_block()

    assert await indexer.process_next_blocks() == ledger.blocks[3]['hash']
    assert await indexer.process_next_blocks() is None

    order = store.tables['demand'][token_uuid('demand', 1)]
    capacity = store.tables['demand'][token_uuid('demand', 2)]
    match2_row = store.tables['match2'][token_uuid('match2', 5)]
    assert (order['latest_token_id'], order['original_token_id']) == (3, 1)
    assert (capacity['latest_token_id'], capacity['original_token_id']) == (4, 2)
    assert match2_row['state'] == 'proposed'
    assert (match2_row['demand_a_id'], match2_row['demand_b_id']) == (order['id'], capacity['id'])
    assert [row['height'] for row in store.rows('processed_blocks')] == [0, 1, 2, 3]

@pytest.mark.asyncio
async def test_failed_apply_rolls_back(demands, store, ledger, indexer, parameters):
    demand = await demands.create('order', parameters['id'])
    transaction = await demands.create_on_chain(demand.id)
    ledger.seal_block()
    store.fail_on = 'insert_processed_block'

    with pytest.raises(RuntimeError):
        await indexer.process_next_blocks()

    assert store.tables['demand'][demand.id]['state'] == 'pending'
    assert store.tables['transaction'][transaction.id]['state'] == 'submitted'
    assert (await store.get_last_processed_block())['height'] == 0

    store.fail_on = None
    await indexer.process_next_blocks()
    assert store.tables['demand'][demand.id]['state'] == 'created'

@pytest.mark.asyncio
async def test_foreign_processes_are_inserted(demands, store, ledger, indexer, parameters):
    await on_chain_demand(demands, ledger, indexer, parameters, 'order')
    foreign = {
        'id': None,
        'owner': '5Bob',
        'subtype': 'capacity',
        'ipfs_hash': 'QmBob',
        'original_token_id': None
    }
    await ledger.submit_as('5Bob', payload.demand_create(foreign))
    await seal_and_index(ledger, indexer)

    demand_id = token_uuid('demand', 2)
    row = store.tables['demand'][demand_id]
    assert row['owner'] == '5Bob'
    assert row['subtype'] == 'capacity'
    assert row['state'] == 'created'
    assert store.tables['attachment'][row['parameters_attachment_id']]['ipfs_hash'] == 'QmBob'
    assert (await demands.get(demand_id)).owner == 'bob'

@pytest.mark.asyncio
async def test_mirror_converges(demands, matches, store, ledger, indexer, parameters):
    mirror = FakeStore()
    mirror_indexer = BlockIndexer(ledger, mirror, batch_size=3, poll_period=0.01, retry_max_delay=0.01)
    await mirror_indexer.get_checkpoint()

    demand_a, demand_b, match2_id = await accepted_final_match(demands, matches, ledger, indexer, parameters)
    while await mirror_indexer.process_next_blocks() is not None:
        pass

    for table, local_id, kind in (
        ('demand', demand_a, 'demand'),
        ('demand', demand_b, 'demand'),
        ('match2', match2_id, 'match2')
    ):
        local = store.tables[table][local_id]
        mirrored = mirror.tables[table][token_uuid(kind, local['original_token_id'])]
        assert mirrored['state'] == local['state']
        assert mirrored['latest_token_id'] == local['latest_token_id']
    assert mirror.tables['transaction'] == {}
    assert (await mirror.get_last_processed_block())['hash'] == ledger.blocks[-1]['hash']

@pytest.mark.asyncio
async def test_unmapped_input_halts_catch_up(store, ledger, indexer):
    ledger.tokens[99] = {'roles': {}, 'metadata': {}, 'burnt': False}
    rejected = payload.Payload(process='match2-reject', inputs=[99], outputs=[])
    await ledger.submit_as('5Bob', rejected)
    ledger.seal_block()

    with pytest.raises(ProcessorError):
        await indexer.catch_up()

    assert indexer.state == IndexerState.ERROR
    assert indexer.running is False
    assert (await store.get_last_processed_block())['height'] == 0

@pytest.mark.asyncio
async def test_catch_up_retries_transient_errors(indexer):
    with patch.object(indexer, 'process_next_blocks', side_effect=[RuntimeError('node gone'), 'hash', None]) as mock:
        await indexer.catch_up()

    assert mock.call_count == 3

@pytest.mark.asyncio
async def test_start_indexes_until_stopped(demands, store, ledger, indexer, parameters):
    demand = await demands.create('order', parameters['id'])
    await demands.create_on_chain(demand.id)
    ledger.seal_block()

    task = asyncio.create_task(indexer.start())
    for _ in range(100):
        if store.tables['demand'][demand.id]['state'] == 'created':
            break
        await asyncio.sleep(0.01)
    indexer.stop()
    await asyncio.wait_for(task, timeout=1)

    assert store.tables['demand'][demand.id]['state'] == 'created'
