"""Builders for the run_process payloads submitted to the ledger.

Each builder takes local rows (as returned by the Store) and produces the
process name, the consumed token ids and the tokens to mint. Every minted
token carries its entity's ``state`` and the ``originalId`` of the entity it
represents, which is how the indexer follows an entity across token burns.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models import DemandState, Match2State, ProcessName

PROCESS_VERSION = 1
TOKEN_VERSION = '1'


class MetadataKind(str, Enum):
    LITERAL = "LITERAL"
    FILE = "FILE"
    TOKEN_ID = "TOKEN_ID"
    NONE = "NONE"


class MetadataValue(BaseModel):
    type: MetadataKind
    value: Optional[Any] = None


class Output(BaseModel):
    roles: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class Payload(BaseModel):
    process: ProcessName
    version: int = PROCESS_VERSION
    inputs: List[int] = Field(default_factory=list)
    outputs: List[Output] = Field(default_factory=list)


def literal(value) -> MetadataValue:
    return MetadataValue(type=MetadataKind.LITERAL, value=str(value))

def file(ipfs_hash: str) -> MetadataValue:
    return MetadataValue(type=MetadataKind.FILE, value=ipfs_hash)

def token_id(value: Optional[int]) -> MetadataValue:
    if value is None:
        return MetadataValue(type=MetadataKind.NONE)
    return MetadataValue(type=MetadataKind.TOKEN_ID, value=int(value))

def _value(state) -> str:
    return state.value if isinstance(state, Enum) else str(state)

def _demand_output(demand: Dict[str, Any], state) -> Output:
    """Output token for a demand. demand must include the parameters ipfs_hash."""
    metadata = {
        'version': literal(TOKEN_VERSION),
        'type': literal('DEMAND'),
        'state': literal(_value(state)),
        'subtype': literal(_value(demand['subtype'])),
        'parameters': file(demand['ipfs_hash'])
    }
    if demand.get('original_token_id') is not None:
        metadata['originalId'] = token_id(demand['original_token_id'])
    return Output(roles={'Owner': demand['owner']}, metadata=metadata)

def _match2_output(
    match2: Dict[str, Any],
    state,
    demand_a: Dict[str, Any],
    demand_b: Dict[str, Any],
    replaces: Optional[Dict[str, Any]] = None
) -> Output:
    metadata = {
        'version': literal(TOKEN_VERSION),
        'type': literal('MATCH2'),
        'state': literal(_value(state)),
        'demandA': token_id(demand_a['original_token_id']),
        'demandB': token_id(demand_b['original_token_id'])
    }
    if match2.get('original_token_id') is not None:
        metadata['originalId'] = token_id(match2['original_token_id'])
    if replaces is not None:
        metadata['replaces'] = token_id(replaces['original_token_id'])
    return Output(
        roles={
            'Optimiser': match2['optimiser'],
            'MemberA': match2['member_a'],
            'MemberB': match2['member_b']
        },
        metadata=metadata
    )

def demand_create(demand: Dict[str, Any]) -> Payload:
    return Payload(
        process=ProcessName.DEMAND_CREATE,
        outputs=[_demand_output(demand, DemandState.CREATED)]
    )

def demand_comment(demand: Dict[str, Any], comment: Dict[str, Any]) -> Payload:
    """Comment on an on-chain demand. comment must include the attachment ipfs_hash."""
    return Payload(
        process=ProcessName.DEMAND_COMMENT,
        inputs=[demand['latest_token_id']],
        outputs=[
            _demand_output(demand, demand['state']),
            Output(
                roles={'Owner': comment['owner']},
                metadata={
                    'version': literal(TOKEN_VERSION),
                    'type': literal('DEMAND_COMMENT'),
                    'comment': file(comment['ipfs_hash'])
                }
            )
        ]
    )

def match2_propose(match2: Dict[str, Any], demand_a: Dict[str, Any], demand_b: Dict[str, Any]) -> Payload:
    return Payload(
        process=ProcessName.MATCH2_PROPOSE,
        inputs=[demand_a['latest_token_id'], demand_b['latest_token_id']],
        outputs=[
            _demand_output(demand_a, demand_a['state']),
            _demand_output(demand_b, demand_b['state']),
            _match2_output(match2, Match2State.PROPOSED, demand_a, demand_b)
        ]
    )

def match2_accept(
    match2: Dict[str, Any],
    new_state: Match2State,
    demand_a: Dict[str, Any],
    demand_b: Dict[str, Any],
    replaces: Optional[Dict[str, Any]] = None
) -> Payload:
    """First acceptance by member A or B."""
    return Payload(
        process=ProcessName.MATCH2_ACCEPT,
        inputs=[match2['latest_token_id']],
        outputs=[_match2_output(match2, new_state, demand_a, demand_b, replaces)]
    )

def match2_accept_final(match2: Dict[str, Any], demand_a: Dict[str, Any], demand_b: Dict[str, Any]) -> Payload:
    return Payload(
        process=ProcessName.MATCH2_ACCEPT_FINAL,
        inputs=[demand_a['latest_token_id'], demand_b['latest_token_id'], match2['latest_token_id']],
        outputs=[
            _demand_output(demand_a, DemandState.ALLOCATED),
            _demand_output(demand_b, DemandState.ALLOCATED),
            _match2_output(match2, Match2State.ACCEPTED_FINAL, demand_a, demand_b)
        ]
    )

def match2_reject(match2: Dict[str, Any]) -> Payload:
    """Rejection burns the match2 token without minting a replacement."""
    return Payload(
        process=ProcessName.MATCH2_REJECT,
        inputs=[match2['latest_token_id']]
    )

def match2_cancel(
    match2: Dict[str, Any],
    demand_a: Dict[str, Any],
    demand_b: Dict[str, Any],
    comment: Dict[str, Any]
) -> Payload:
    """Cancel an acceptedFinal match2, releasing both demands. comment is the reason attachment."""
    cancelled = _match2_output(match2, Match2State.CANCELLED, demand_a, demand_b)
    cancelled.metadata['comment'] = file(comment['ipfs_hash'])
    return Payload(
        process=ProcessName.MATCH2_CANCEL,
        inputs=[demand_a['latest_token_id'], demand_b['latest_token_id'], match2['latest_token_id']],
        outputs=[
            _demand_output(demand_a, DemandState.CANCELLED),
            _demand_output(demand_b, DemandState.CANCELLED),
            cancelled
        ]
    )

def rematch2_propose(
    rematch2: Dict[str, Any],
    demand_a: Dict[str, Any],
    replaced: Dict[str, Any],
    replaced_demand_b: Dict[str, Any],
    new_demand_b: Dict[str, Any]
) -> Payload:
    """Propose rematch2 replacing an acceptedFinal match2's capacity with new_demand_b."""
    return Payload(
        process=ProcessName.REMATCH2_PROPOSE,
        inputs=[demand_a['latest_token_id'], replaced['latest_token_id'], new_demand_b['latest_token_id']],
        outputs=[
            _demand_output(demand_a, demand_a['state']),
            _match2_output(replaced, replaced['state'], demand_a, replaced_demand_b),
            _demand_output(new_demand_b, new_demand_b['state']),
            _match2_output(rematch2, Match2State.PROPOSED, demand_a, new_demand_b, replaced)
        ]
    )

def rematch2_accept_final(
    rematch2: Dict[str, Any],
    demand_a: Dict[str, Any],
    replaced: Dict[str, Any],
    replaced_demand_b: Dict[str, Any],
    new_demand_b: Dict[str, Any]
) -> Payload:
    return Payload(
        process=ProcessName.REMATCH2_ACCEPT_FINAL,
        inputs=[
            demand_a['latest_token_id'],
            replaced_demand_b['latest_token_id'],
            replaced['latest_token_id'],
            new_demand_b['latest_token_id'],
            rematch2['latest_token_id']
        ],
        outputs=[
            _demand_output(demand_a, DemandState.ALLOCATED),
            _demand_output(replaced_demand_b, DemandState.CANCELLED),
            _match2_output(replaced, Match2State.CANCELLED, demand_a, replaced_demand_b),
            _demand_output(new_demand_b, DemandState.ALLOCATED),
            _match2_output(rematch2, Match2State.ACCEPTED_FINAL, demand_a, new_demand_b, replaced)
        ]
    )
