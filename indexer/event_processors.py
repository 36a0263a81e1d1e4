"""Translate decoded ProcessRan events into ChangeSet fragments.

One processor per process kind. Processors are pure: every local id they
need has already been resolved onto the run's inputs, and the run carries the
local transaction row when this instance submitted the extrinsic. Entities
created by this instance are updated by their local id; entities created by
other members are inserted under ids derived from their first token.
"""
import logging
from typing import Callable, Dict, List, Tuple
from uuid import UUID

from models import DemandCommentState, Match2State, ProcessName, ProcessRun, TokenOutput
from .changeset import ChangeSet, attachment_uuid, insert, token_uuid, update

logger = logging.getLogger(__name__)

class ProcessorError(Exception):
    """Raised when a ProcessRan event does not have the shape its process requires"""
    pass

def _expect(run: ProcessRun, inputs: int, outputs: int) -> None:
    if len(run.inputs) != inputs or len(run.outputs) != outputs:
        raise ProcessorError(
            f"{run.process.value} in {run.hash} expects {inputs} inputs and {outputs} outputs, "
            f"got {len(run.inputs)} and {len(run.outputs)}"
        )

def _local_id(run: ProcessRun, index: int) -> UUID:
    token = run.inputs[index]
    if token.local_id is None:
        raise ProcessorError(f"{run.process.value} in {run.hash}: input token {token.id} has no local entity")
    return token.local_id

def _metadata(run: ProcessRun, output: TokenOutput, key: str):
    if output.metadata.get(key) is None:
        raise ProcessorError(f"{run.process.value} in {run.hash}: token {output.id} has no {key} metadata")
    return output.metadata[key]

def _role(run: ProcessRun, output: TokenOutput, role: str) -> str:
    if not output.roles.get(role):
        raise ProcessorError(f"{run.process.value} in {run.hash}: token {output.id} has no {role} role")
    return output.roles[role]

def _advance(run: ProcessRun, shape: List[Tuple[str, int, int]]) -> ChangeSet:
    """Move each (category, input, output) entity to its output token and state"""
    change: ChangeSet = {}
    for category, input_index, output_index in shape:
        output = run.outputs[output_index]
        local_id = _local_id(run, input_index)
        change.setdefault(category, {})[local_id] = update(
            local_id,
            state=_metadata(run, output, 'state'),
            latest_token_id=output.id
        )
    return change

def _new_match2(run: ProcessRun, output: TokenOutput, demand_a_id: UUID, demand_b_id: UUID, **fields):
    """Record for a match2 first minted as output"""
    state = _metadata(run, output, 'state')
    if run.transaction is not None:
        local_id = run.transaction['local_id']
        return update(local_id, state=state, latest_token_id=output.id, original_token_id=output.id)

    return insert(
        token_uuid('match2', output.id),
        optimiser=_role(run, output, 'Optimiser'),
        member_a=_role(run, output, 'MemberA'),
        member_b=_role(run, output, 'MemberB'),
        state=state,
        demand_a_id=demand_a_id,
        demand_b_id=demand_b_id,
        latest_token_id=output.id,
        original_token_id=output.id,
        **fields
    )

def demand_create(run: ProcessRun) -> ChangeSet:
    _expect(run, 0, 1)
    output = run.outputs[0]
    state = _metadata(run, output, 'state')

    if run.transaction is not None:
        local_id = run.transaction['local_id']
        return {
            'demands': {
                local_id: update(local_id, state=state, latest_token_id=output.id, original_token_id=output.id)
            }
        }

    attachment_id = attachment_uuid(output.id, 'parameters')
    demand_id = token_uuid('demand', output.id)
    return {
        'attachments': {
            attachment_id: insert(attachment_id, ipfs_hash=_metadata(run, output, 'parameters'), filename=None, size=None)
        },
        'demands': {
            demand_id: insert(
                demand_id,
                owner=_role(run, output, 'Owner'),
                subtype=_metadata(run, output, 'subtype'),
                state=state,
                parameters_attachment_id=attachment_id,
                latest_token_id=output.id,
                original_token_id=output.id
            )
        }
    }

def demand_comment(run: ProcessRun) -> ChangeSet:
    _expect(run, 1, 2)
    change = _advance(run, [('demands', 0, 0)])
    comment = run.outputs[1]

    if run.transaction is not None:
        transaction_id = run.transaction['id']
        change['demand_comments'] = {
            transaction_id: update(transaction_id, transaction_id=transaction_id, state=DemandCommentState.CREATED.value)
        }
        return change

    attachment_id = attachment_uuid(comment.id, 'comment')
    comment_id = token_uuid('demand_comment', comment.id)
    change['attachments'] = {
        attachment_id: insert(attachment_id, ipfs_hash=_metadata(run, comment, 'comment'), filename=None, size=None)
    }
    change['demand_comments'] = {
        comment_id: insert(
            comment_id,
            owner=_role(run, comment, 'Owner'),
            demand=_local_id(run, 0),
            attachment_id=attachment_id,
            state=DemandCommentState.CREATED.value,
            transaction_id=None
        )
    }
    return change

def match2_propose(run: ProcessRun) -> ChangeSet:
    _expect(run, 2, 3)
    change = _advance(run, [('demands', 0, 0), ('demands', 1, 1)])
    match2 = _new_match2(run, run.outputs[2], _local_id(run, 0), _local_id(run, 1))
    change['matches'] = {match2['id']: match2}
    return change

def match2_accept(run: ProcessRun) -> ChangeSet:
    _expect(run, 1, 1)
    return _advance(run, [('matches', 0, 0)])

def match2_accept_final(run: ProcessRun) -> ChangeSet:
    _expect(run, 3, 3)
    return _advance(run, [('demands', 0, 0), ('demands', 1, 1), ('matches', 2, 2)])

def match2_reject(run: ProcessRun) -> ChangeSet:
    _expect(run, 1, 0)
    match2_id = _local_id(run, 0)
    return {'matches': {match2_id: update(match2_id, state=Match2State.REJECTED.value)}}

def match2_cancel(run: ProcessRun) -> ChangeSet:
    _expect(run, 3, 3)
    return _advance(run, [('demands', 0, 0), ('demands', 1, 1), ('matches', 2, 2)])

def rematch2_propose(run: ProcessRun) -> ChangeSet:
    _expect(run, 3, 4)
    change = _advance(run, [('demands', 0, 0), ('matches', 1, 1), ('demands', 2, 2)])
    rematch2 = _new_match2(
        run,
        run.outputs[3],
        _local_id(run, 0),
        _local_id(run, 2),
        replaces_id=_local_id(run, 1)
    )
    change['matches'][rematch2['id']] = rematch2
    return change

def rematch2_accept_final(run: ProcessRun) -> ChangeSet:
    _expect(run, 5, 5)
    return _advance(run, [
        ('demands', 0, 0),
        ('demands', 1, 1),
        ('matches', 2, 2),
        ('demands', 3, 3),
        ('matches', 4, 4)
    ])

EVENT_PROCESSORS: Dict[ProcessName, Callable[[ProcessRun], ChangeSet]] = {
    ProcessName.DEMAND_CREATE: demand_create,
    ProcessName.DEMAND_COMMENT: demand_comment,
    ProcessName.MATCH2_PROPOSE: match2_propose,
    ProcessName.MATCH2_ACCEPT: match2_accept,
    ProcessName.MATCH2_ACCEPT_FINAL: match2_accept_final,
    ProcessName.MATCH2_REJECT: match2_reject,
    ProcessName.MATCH2_CANCEL: match2_cancel,
    ProcessName.REMATCH2_PROPOSE: rematch2_propose,
    ProcessName.REMATCH2_ACCEPT_FINAL: rematch2_accept_final,
}

_unhandled = set(ProcessName) - set(EVENT_PROCESSORS)
if _unhandled:
    raise RuntimeError(f"No event processor for {sorted(p.value for p in _unhandled)}")

def process(run: ProcessRun) -> ChangeSet:
    """Run the processor for run.process"""
    processor = EVENT_PROCESSORS.get(run.process)
    if processor is None:
        raise ProcessorError(f"Unknown process {run.process}")
    change = processor(run)
    logger.debug(f"Processed {run.process.value} from {run.sender} in {run.hash}")
    return change
