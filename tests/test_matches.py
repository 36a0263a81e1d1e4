"""Tests for match2 proposal, acceptance, rejection and cancellation."""
from uuid import uuid4

import pytest

from errors import ConflictError, NotFoundError, ValidationError
from models import Match2State, TransactionType
from tests.fakes import seal_and_index
from tests.flows import accepted_final_match, on_chain_demand, proposed_match

@pytest.mark.asyncio
async def test_propose_match2(demands, matches, ledger, indexer, parameters):
    demand_a = await on_chain_demand(demands, ledger, indexer, parameters, 'order')
    demand_b = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')

    match2 = await matches.propose(str(demand_a), str(demand_b))

    assert match2.state == Match2State.PROPOSED
    assert (match2.optimiser, match2.member_a, match2.member_b) == ('alice', 'alice', 'alice')
    assert (match2.demand_a, match2.demand_b) == (demand_a, demand_b)
    assert match2.replaces is None
    assert [m.id for m in await matches.list()] == [match2.id]

@pytest.mark.asyncio
async def test_propose_validation(demands, matches, parameters):
    order = await demands.create('order', parameters['id'])
    capacity = await demands.create('capacity', parameters['id'])

    with pytest.raises(ValidationError):
        await matches.propose(capacity.id, order.id)
    with pytest.raises(ValidationError):
        await matches.propose(order.id, uuid4())
    with pytest.raises(ValidationError):
        await matches.propose('nope', capacity.id)

@pytest.mark.asyncio
async def test_propose_on_chain_requires_demands_on_chain(demands, matches, parameters):
    order = await demands.create('order', parameters['id'])
    capacity = await demands.create('capacity', parameters['id'])
    match2 = await matches.propose(order.id, capacity.id)

    with pytest.raises(ConflictError):
        await matches.propose_on_chain(match2.id)

@pytest.mark.asyncio
async def test_allocated_demand_cannot_be_matched_again(demands, matches, ledger, indexer, parameters):
    demand_a, _, _ = await accepted_final_match(demands, matches, ledger, indexer, parameters)
    capacity = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')

    with pytest.raises(ConflictError):
        await matches.propose(demand_a, capacity)

@pytest.mark.asyncio
async def test_accept_requires_ownership(demands, matches, identity, ledger, indexer, parameters):
    _, _, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)
    identity.address = '5Carol'

    with pytest.raises(ConflictError):
        await matches.accept(match2_id)

@pytest.mark.asyncio
async def test_accept_by_member_b_first(demands, matches, store, identity, ledger, indexer, parameters):
    _, demand_b, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)
    store.tables['demand'][demand_b]['owner'] = '5Bob'
    identity.address = '5Bob'

    await matches.accept(match2_id)
    await seal_and_index(ledger, indexer)

    assert (await matches.get(match2_id)).state == Match2State.ACCEPTED_B

    # Member B cannot also give member A's acceptance
    with pytest.raises(ConflictError):
        await matches.accept(match2_id)

@pytest.mark.asyncio
async def test_accept_final_conflicts(demands, matches, ledger, indexer, parameters):
    _, _, match2_id = await accepted_final_match(demands, matches, ledger, indexer, parameters)

    with pytest.raises(ConflictError):
        await matches.accept(match2_id)
    with pytest.raises(ConflictError):
        await matches.reject(match2_id)

@pytest.mark.asyncio
async def test_reject(demands, matches, store, ledger, indexer, parameters):
    demand_a, demand_b, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)
    token = store.tables['match2'][match2_id]['latest_token_id']

    transaction = await matches.reject(match2_id)
    await seal_and_index(ledger, indexer)

    assert (await matches.get(match2_id)).state == Match2State.REJECTED
    assert store.tables['match2'][match2_id]['latest_token_id'] == token
    assert store.tables['demand'][demand_a]['state'] == 'created'
    assert store.tables['demand'][demand_b]['state'] == 'created'
    fetched = await matches.get_transaction(match2_id, transaction.id, TransactionType.REJECTION)
    assert fetched.state.value == 'finalised'

@pytest.mark.asyncio
async def test_reject_requires_membership(demands, matches, identity, ledger, indexer, parameters):
    _, _, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)
    identity.address = '5Carol'

    with pytest.raises(ConflictError):
        await matches.reject(match2_id)

@pytest.mark.asyncio
async def test_cancel(demands, matches, attachments, store, ledger, indexer, parameters):
    demand_a, demand_b, match2_id = await accepted_final_match(demands, matches, ledger, indexer, parameters)
    reason = await attachments.create('reason.txt', b'vehicle broke down')

    await matches.cancel(match2_id, reason['id'])
    await seal_and_index(ledger, indexer)

    assert store.tables['match2'][match2_id]['state'] == 'cancelled'
    assert store.tables['demand'][demand_a]['state'] == 'cancelled'
    assert store.tables['demand'][demand_b]['state'] == 'cancelled'
    latest = store.tables['match2'][match2_id]['latest_token_id']
    assert ledger.tokens[latest]['metadata']['comment'] == reason['ipfs_hash']
    transactions = await matches.list_transactions(match2_id, TransactionType.CANCELLATION)
    assert [t.state.value for t in transactions] == ['finalised']

@pytest.mark.asyncio
async def test_cancel_requires_accepted_final(demands, matches, attachments, ledger, indexer, parameters):
    _, _, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)
    reason = await attachments.create('reason.txt', b'changed my mind')

    with pytest.raises(ConflictError):
        await matches.cancel(match2_id, reason['id'])

@pytest.mark.asyncio
async def test_rematch_requires_accepted_final_replacement(demands, matches, ledger, indexer, parameters):
    demand_a, _, match2_id = await proposed_match(demands, matches, ledger, indexer, parameters)
    capacity = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')

    # demandA is not yet allocated
    with pytest.raises(ConflictError):
        await matches.propose(demand_a, capacity, replaces_id=match2_id)

@pytest.mark.asyncio
async def test_rematch_requires_same_order(demands, matches, ledger, indexer, parameters):
    _, _, match2_id = await accepted_final_match(demands, matches, ledger, indexer, parameters)
    other_order, _, other_match = await accepted_final_match(demands, matches, ledger, indexer, parameters)
    capacity = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')

    with pytest.raises(ValidationError):
        await matches.propose(other_order, capacity, replaces_id=match2_id)

    rematch = await matches.propose(other_order, capacity, replaces_id=other_match)
    assert rematch.replaces == other_match

@pytest.mark.asyncio
async def test_get_unknown_match2(matches):
    with pytest.raises(NotFoundError):
        await matches.get(uuid4())
