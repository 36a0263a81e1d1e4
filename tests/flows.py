"""Multi-step flows shared by the scenario tests."""
from tests.fakes import seal_and_index

async def on_chain_demand(demands, ledger, indexer, parameters, subtype='order'):
    """Create a demand and index its demand-create. Returns the demand id."""
    demand = await demands.create(subtype, parameters['id'])
    await demands.create_on_chain(demand.id)
    await seal_and_index(ledger, indexer)
    return demand.id

async def proposed_match(demands, matches, ledger, indexer, parameters):
    """Order and capacity with an on-chain proposed match2. Returns (demand_a, demand_b, match2) ids."""
    demand_a = await on_chain_demand(demands, ledger, indexer, parameters, 'order')
    demand_b = await on_chain_demand(demands, ledger, indexer, parameters, 'capacity')
    match2 = await matches.propose(demand_a, demand_b)
    await matches.propose_on_chain(match2.id)
    await seal_and_index(ledger, indexer)
    return demand_a, demand_b, match2.id

async def accepted_final_match(demands, matches, ledger, indexer, parameters):
    """As proposed_match, then accepted by both members (both owned by the same member)."""
    demand_a, demand_b, match2 = await proposed_match(demands, matches, ledger, indexer, parameters)
    await matches.accept(match2)
    await seal_and_index(ledger, indexer)
    await matches.accept(match2)
    await seal_and_index(ledger, indexer)
    return demand_a, demand_b, match2
