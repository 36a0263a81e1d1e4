"""Tests for the event processors."""
import pytest
from uuid import uuid4

from indexer.changeset import attachment_uuid, token_uuid
from indexer.event_processors import EVENT_PROCESSORS, ProcessorError, process
from models import ProcessName, ProcessRun, TokenInput, TokenOutput

HASH = 'ab' * 32

def demand_token(token_id, state='created', subtype='order', owner='5Bob'):
    return TokenOutput(
        id=token_id,
        roles={'Owner': owner},
        metadata={'version': '1', 'type': 'DEMAND', 'state': state, 'subtype': subtype, 'parameters': 'QmParams'}
    )

def match2_token(token_id, state='proposed'):
    return TokenOutput(
        id=token_id,
        roles={'Optimiser': '5Carol', 'MemberA': '5Alice', 'MemberB': '5Bob'},
        metadata={'version': '1', 'type': 'MATCH2', 'state': state, 'demandA': 1, 'demandB': 2}
    )

def run(process, inputs=(), outputs=(), transaction=None):
    return ProcessRun(
        process=process,
        sender='5Bob',
        hash=HASH,
        transaction=transaction,
        inputs=list(inputs),
        outputs=list(outputs)
    )

def test_every_process_has_a_processor():
    assert set(EVENT_PROCESSORS) == set(ProcessName)

def test_local_demand_create_updates_the_local_demand():
    local_id = uuid4()
    transaction = {'id': uuid4(), 'local_id': local_id}

    change = process(run(ProcessName.DEMAND_CREATE, outputs=[demand_token(7)], transaction=transaction))

    assert change == {
        'demands': {
            local_id: {
                'type': 'update',
                'id': local_id,
                'state': 'created',
                'latest_token_id': 7,
                'original_token_id': 7
            }
        }
    }

def test_foreign_demand_create_inserts_demand_and_attachment():
    change = process(run(ProcessName.DEMAND_CREATE, outputs=[demand_token(7, subtype='capacity')]))

    demand_id = token_uuid('demand', 7)
    attachment_id = attachment_uuid(7, 'parameters')
    assert change['attachments'][attachment_id]['ipfs_hash'] == 'QmParams'
    demand = change['demands'][demand_id]
    assert demand['type'] == 'insert'
    assert demand['owner'] == '5Bob'
    assert demand['subtype'] == 'capacity'
    assert demand['parameters_attachment_id'] == attachment_id
    assert demand['original_token_id'] == 7

def test_foreign_match2_propose_inserts_match_over_local_demands():
    demand_a, demand_b = uuid4(), uuid4()

    change = process(run(
        ProcessName.MATCH2_PROPOSE,
        inputs=[TokenInput(id=1, local_id=demand_a), TokenInput(id=2, local_id=demand_b)],
        outputs=[demand_token(3), demand_token(4, subtype='capacity'), match2_token(5)]
    ))

    assert change['demands'][demand_a]['latest_token_id'] == 3
    assert change['demands'][demand_b]['latest_token_id'] == 4
    match2 = change['matches'][token_uuid('match2', 5)]
    assert match2['type'] == 'insert'
    assert (match2['optimiser'], match2['member_a'], match2['member_b']) == ('5Carol', '5Alice', '5Bob')
    assert (match2['demand_a_id'], match2['demand_b_id']) == (demand_a, demand_b)
    assert match2['state'] == 'proposed'

def test_local_match2_propose_updates_local_match():
    demand_a, demand_b, match2_id = uuid4(), uuid4(), uuid4()

    change = process(run(
        ProcessName.MATCH2_PROPOSE,
        inputs=[TokenInput(id=1, local_id=demand_a), TokenInput(id=2, local_id=demand_b)],
        outputs=[demand_token(3), demand_token(4, subtype='capacity'), match2_token(5)],
        transaction={'id': uuid4(), 'local_id': match2_id}
    ))

    assert change['matches'][match2_id] == {
        'type': 'update',
        'id': match2_id,
        'state': 'proposed',
        'latest_token_id': 5,
        'original_token_id': 5
    }

def test_match2_accept_final_allocates_demands():
    demand_a, demand_b, match2_id = uuid4(), uuid4(), uuid4()

    change = process(run(
        ProcessName.MATCH2_ACCEPT_FINAL,
        inputs=[TokenInput(id=3, local_id=demand_a), TokenInput(id=4, local_id=demand_b), TokenInput(id=6, local_id=match2_id)],
        outputs=[
            demand_token(7, state='allocated'),
            demand_token(8, state='allocated', subtype='capacity'),
            match2_token(9, state='acceptedFinal')
        ]
    ))

    assert change['demands'][demand_a]['state'] == 'allocated'
    assert change['demands'][demand_b]['state'] == 'allocated'
    assert change['matches'][match2_id] == {
        'type': 'update',
        'id': match2_id,
        'state': 'acceptedFinal',
        'latest_token_id': 9
    }

def test_match2_reject_keeps_token():
    match2_id = uuid4()

    change = process(run(ProcessName.MATCH2_REJECT, inputs=[TokenInput(id=5, local_id=match2_id)]))

    assert change == {'matches': {match2_id: {'type': 'update', 'id': match2_id, 'state': 'rejected'}}}

def test_rematch2_accept_final_cascades():
    demand_a, old_demand_b, old_match, new_demand_b, rematch = (uuid4() for _ in range(5))

    change = process(run(
        ProcessName.REMATCH2_ACCEPT_FINAL,
        inputs=[
            TokenInput(id=10, local_id=demand_a),
            TokenInput(id=11, local_id=old_demand_b),
            TokenInput(id=12, local_id=old_match),
            TokenInput(id=13, local_id=new_demand_b),
            TokenInput(id=14, local_id=rematch)
        ],
        outputs=[
            demand_token(15, state='allocated'),
            demand_token(16, state='cancelled', subtype='capacity'),
            match2_token(17, state='cancelled'),
            demand_token(18, state='allocated', subtype='capacity'),
            match2_token(19, state='acceptedFinal')
        ]
    ))

    assert {key: record['state'] for key, record in change['demands'].items()} == {
        demand_a: 'allocated',
        old_demand_b: 'cancelled',
        new_demand_b: 'allocated'
    }
    assert change['matches'][old_match]['state'] == 'cancelled'
    assert change['matches'][rematch]['state'] == 'acceptedFinal'
    assert 'original_token_id' not in change['demands'][demand_a]

def test_foreign_rematch2_propose_sets_replaces():
    demand_a, old_match, new_demand_b = uuid4(), uuid4(), uuid4()

    change = process(run(
        ProcessName.REMATCH2_PROPOSE,
        inputs=[
            TokenInput(id=1, local_id=demand_a),
            TokenInput(id=2, local_id=old_match),
            TokenInput(id=3, local_id=new_demand_b)
        ],
        outputs=[
            demand_token(4, state='allocated'),
            match2_token(5, state='acceptedFinal'),
            demand_token(6, subtype='capacity'),
            match2_token(7)
        ]
    ))

    rematch = change['matches'][token_uuid('match2', 7)]
    assert rematch['replaces_id'] == old_match
    assert rematch['demand_b_id'] == new_demand_b
    assert change['matches'][old_match]['state'] == 'acceptedFinal'

def test_foreign_demand_comment_inserts_comment():
    demand_id = uuid4()
    comment = TokenOutput(id=9, roles={'Owner': '5Bob'}, metadata={'type': 'DEMAND_COMMENT', 'comment': 'QmComment'})

    change = process(run(
        ProcessName.DEMAND_COMMENT,
        inputs=[TokenInput(id=8, local_id=demand_id)],
        outputs=[demand_token(10), comment]
    ))

    record = change['demand_comments'][token_uuid('demand_comment', 9)]
    assert record['demand'] == demand_id
    assert record['attachment_id'] == attachment_uuid(9, 'comment')
    assert change['attachments'][attachment_uuid(9, 'comment')]['ipfs_hash'] == 'QmComment'
    assert change['demands'][demand_id]['latest_token_id'] == 10

def test_unmapped_input_fails_loudly():
    with pytest.raises(ProcessorError):
        process(run(ProcessName.MATCH2_ACCEPT, inputs=[TokenInput(id=1)], outputs=[match2_token(2)]))

def test_wrong_output_count_fails_loudly():
    with pytest.raises(ProcessorError):
        process(run(ProcessName.DEMAND_CREATE, outputs=[demand_token(1), demand_token(2)]))

def test_missing_state_metadata_fails_loudly():
    token = TokenOutput(id=3, roles={'Owner': '5Bob'}, metadata={'subtype': 'order'})
    with pytest.raises(ProcessorError):
        process(run(ProcessName.DEMAND_CREATE, outputs=[token]))
