"""Match2 module pairing an order (demand A) with a capacity (demand B).

State transitions enforced before submission:
- proposed -> acceptedA | acceptedB -> acceptedFinal
- proposed | acceptedA | acceptedB -> rejected
- acceptedFinal -> cancelled

A rematch2 replaces the capacity of an acceptedFinal match2. Its final
acceptance cancels the replaced match2 and its capacity in the same process.
These checks are advisory: the indexer applies what the ledger actually
accepted, and a losing concurrent submission ends up as a failed transaction.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from attachments import AttachmentManager
from database import Store
from errors import ConflictError, NotFoundError, ValidationError
from ledger import payload
from models import (
    DemandState,
    DemandSubtype,
    Match2Response,
    Match2State,
    TransactionApiType,
    TransactionResponse,
    TransactionType,
    parse_datetime,
    parse_uuid,
)
from services import IdentityClient
from transactions import TransactionManager, to_response

logger = logging.getLogger(__name__)

ACCEPTABLE_STATES = (Match2State.PROPOSED.value, Match2State.ACCEPTED_A.value, Match2State.ACCEPTED_B.value)

def validate_pre_local(demand: Optional[Dict[str, Any]], subtype: DemandSubtype, key: str, allocated: bool = False):
    """Check a demand may take part in a match2.

    Args:
        demand: Demand row or None
        subtype: Required subtype
        key: Name used in error messages
        allocated: Whether the demand must already be allocated (the order of a rematch2)
    """
    if not demand:
        raise ValidationError(f"{key} not found")
    if demand['subtype'] != subtype.value:
        raise ValidationError(f"{key} must be {subtype.value}")
    if allocated and demand['state'] != DemandState.ALLOCATED.value:
        raise ConflictError(f"{key} must be {DemandState.ALLOCATED.value}")
    if not allocated and demand['state'] == DemandState.ALLOCATED.value:
        raise ConflictError(f"{key} is already {DemandState.ALLOCATED.value}")

def validate_pre_on_chain(demand: Optional[Dict[str, Any]], subtype: DemandSubtype, key: str, allocated: bool = False):
    validate_pre_local(demand, subtype, key, allocated)
    if demand['latest_token_id'] is None:
        raise ConflictError(f"{key} must be on chain")

class Match2Manager:
    """Manages match2s, rematch2s and their on-chain transactions."""

    def __init__(
        self,
        transactions: TransactionManager,
        store: Optional[Store] = None,
        identity: Optional[IdentityClient] = None,
        attachments: Optional[AttachmentManager] = None
    ):
        self.transactions = transactions
        self.store = store or transactions.store
        self.identity = identity or IdentityClient()
        self.attachments = attachments or AttachmentManager(self.store)

    async def _response(self, match2: Dict[str, Any], auth_token: Optional[str] = None) -> Match2Response:
        optimiser, member_a, member_b = await asyncio.gather(
            self.identity.get_alias(match2['optimiser'], auth_token),
            self.identity.get_alias(match2['member_a'], auth_token),
            self.identity.get_alias(match2['member_b'], auth_token)
        )
        return Match2Response(
            id=match2['id'],
            state=match2['state'],
            optimiser=optimiser,
            member_a=member_a,
            member_b=member_b,
            demand_a=match2['demand_a_id'],
            demand_b=match2['demand_b_id'],
            replaces=match2.get('replaces_id'),
            created_at=match2['created_at'],
            updated_at=match2['updated_at']
        )

    async def _get_match2(self, match2_id) -> Dict[str, Any]:
        match2 = await self.store.get_match2(parse_uuid(match2_id, 'match2 id'))
        if not match2:
            raise NotFoundError('match2')
        return match2

    async def _get_demands(self, match2: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        return (
            await self.store.get_demand_with_attachment(match2['demand_a_id']),
            await self.store.get_demand_with_attachment(match2['demand_b_id'])
        )

    async def _get_replaced(self, match2: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """The acceptedFinal match2 a rematch2 replaces, with its capacity"""
        replaced = await self.store.get_match2(match2['replaces_id'])
        if not replaced:
            raise NotFoundError('replaced match2')
        if replaced['state'] != Match2State.ACCEPTED_FINAL.value:
            raise ConflictError(f"Replaced match2 must have state: {Match2State.ACCEPTED_FINAL.value}")
        if replaced['demand_a_id'] != match2['demand_a_id']:
            raise ValidationError("DemandA must be the same as the replaced match2's demandA")
        if replaced['latest_token_id'] is None:
            raise ConflictError("Replaced match2 must be on chain")
        replaced_demand_b = await self.store.get_demand_with_attachment(replaced['demand_b_id'])
        return replaced, replaced_demand_b

    async def propose(
        self,
        demand_a_id,
        demand_b_id,
        replaces_id=None,
        auth_token: Optional[str] = None
    ) -> Match2Response:
        """Propose a match2 as optimiser, or a rematch2 when replaces_id is given"""
        demand_a_id = parse_uuid(demand_a_id, 'demandA')
        demand_b_id = parse_uuid(demand_b_id, 'demandB')
        replaces_id = parse_uuid(replaces_id, 'replaces') if replaces_id is not None else None

        demand_a = await self.store.get_demand(demand_a_id)
        validate_pre_local(demand_a, DemandSubtype.ORDER, 'DemandA', allocated=replaces_id is not None)
        demand_b = await self.store.get_demand(demand_b_id)
        validate_pre_local(demand_b, DemandSubtype.CAPACITY, 'DemandB')

        if replaces_id is not None:
            replaced = await self.store.get_match2(replaces_id)
            if not replaced:
                raise ValidationError("Replaced match2 not found")
            if replaced['state'] != Match2State.ACCEPTED_FINAL.value:
                raise ConflictError(f"Replaced match2 must have state: {Match2State.ACCEPTED_FINAL.value}")
            if replaced['demand_a_id'] != demand_a_id:
                raise ValidationError("DemandA must be the same as the replaced match2's demandA")

        member = await self.identity.get_member_by_self(auth_token)
        match2 = await self.store.insert_match2(
            member['address'],
            demand_a['owner'],
            demand_b['owner'],
            Match2State.PROPOSED.value,
            demand_a_id,
            demand_b_id,
            replaces_id
        )
        logger.info(f"Proposed match2 {match2['id']}" + (f" replacing {replaces_id}" if replaces_id else ''))
        return await self._response(match2, auth_token)

    async def get(self, match2_id, auth_token: Optional[str] = None) -> Match2Response:
        return await self._response(await self._get_match2(match2_id), auth_token)

    async def list(self, updated_since=None, auth_token: Optional[str] = None) -> List[Match2Response]:
        match2s = await self.store.list_match2s(parse_datetime(updated_since))
        return list(await asyncio.gather(*[self._response(match2, auth_token) for match2 in match2s]))

    async def propose_on_chain(self, match2_id) -> TransactionResponse:
        """Submit match2-propose, or rematch2-propose for a rematch2

        Raises:
            NotFoundError: No such match2
            ConflictError: The match2 is not proposed or a demand is not on chain
        """
        match2 = await self._get_match2(match2_id)
        if match2['state'] != Match2State.PROPOSED.value:
            raise ConflictError(f"Match2 must have state: {Match2State.PROPOSED.value}")

        rematch = match2['replaces_id'] is not None
        demand_a, demand_b = await self._get_demands(match2)
        validate_pre_on_chain(demand_a, DemandSubtype.ORDER, 'DemandA', allocated=rematch)
        validate_pre_on_chain(demand_b, DemandSubtype.CAPACITY, 'DemandB')

        if rematch:
            replaced, replaced_demand_b = await self._get_replaced(match2)
            process = payload.rematch2_propose(match2, demand_a, replaced, replaced_demand_b, demand_b)
        else:
            process = payload.match2_propose(match2, demand_a, demand_b)

        transaction = await self.transactions.submit(
            process,
            TransactionApiType.MATCH2,
            TransactionType.PROPOSAL,
            match2['id']
        )
        return to_response(transaction)

    async def accept(self, match2_id, auth_token: Optional[str] = None) -> TransactionResponse:
        """Accept as the member owning the demand whose acceptance is outstanding

        Raises:
            NotFoundError: No such match2
            ConflictError: Already acceptedFinal, not acceptable in its state, or not owned by this member
        """
        match2 = await self._get_match2(match2_id)
        state = match2['state']
        if state == Match2State.ACCEPTED_FINAL.value:
            raise ConflictError(f"Already {Match2State.ACCEPTED_FINAL.value}")
        if state not in ACCEPTABLE_STATES:
            raise ConflictError(f"Match2 cannot be accepted in state: {state}")
        if match2['latest_token_id'] is None:
            raise ConflictError("Match2 must be on chain")

        rematch = match2['replaces_id'] is not None
        demand_a, demand_b = await self._get_demands(match2)
        validate_pre_on_chain(demand_a, DemandSubtype.ORDER, 'DemandA', allocated=rematch)
        validate_pre_on_chain(demand_b, DemandSubtype.CAPACITY, 'DemandB')
        replaced, replaced_demand_b = await self._get_replaced(match2) if rematch else (None, None)

        member = await self.identity.get_member_by_self(auth_token)
        owns_demand_a = demand_a['owner'] == member['address']
        owns_demand_b = demand_b['owner'] == member['address']

        if state == Match2State.PROPOSED.value:
            if not owns_demand_a and not owns_demand_b:
                raise ConflictError("You do not own an acceptable demand")
            new_state = Match2State.ACCEPTED_A if owns_demand_a else Match2State.ACCEPTED_B
            process = payload.match2_accept(match2, new_state, demand_a, demand_b, replaced)
        else:
            outstanding = owns_demand_b if state == Match2State.ACCEPTED_A.value else owns_demand_a
            if not outstanding:
                raise ConflictError("You do not own an acceptable demand")
            if rematch:
                process = payload.rematch2_accept_final(match2, demand_a, replaced, replaced_demand_b, demand_b)
            else:
                process = payload.match2_accept_final(match2, demand_a, demand_b)

        transaction = await self.transactions.submit(
            process,
            TransactionApiType.MATCH2,
            TransactionType.ACCEPT,
            match2['id']
        )
        return to_response(transaction)

    async def reject(self, match2_id, auth_token: Optional[str] = None) -> TransactionResponse:
        """Reject a match2 that is not yet acceptedFinal, as one of its participants"""
        match2 = await self._get_match2(match2_id)
        if match2['state'] not in ACCEPTABLE_STATES:
            raise ConflictError(f"Match2 cannot be rejected in state: {match2['state']}")
        if match2['latest_token_id'] is None:
            raise ConflictError("Match2 must be on chain")

        member = await self.identity.get_member_by_self(auth_token)
        if member['address'] not in (match2['optimiser'], match2['member_a'], match2['member_b']):
            raise ConflictError("You are not a member of this match2")

        transaction = await self.transactions.submit(
            payload.match2_reject(match2),
            TransactionApiType.MATCH2,
            TransactionType.REJECTION,
            match2['id']
        )
        return to_response(transaction)

    async def cancel(self, match2_id, attachment_id, auth_token: Optional[str] = None) -> TransactionResponse:
        """Cancel an acceptedFinal match2 as member A or B, giving the reason as an attachment"""
        match2 = await self._get_match2(match2_id)
        if match2['state'] != Match2State.ACCEPTED_FINAL.value:
            raise ConflictError(f"Match2 must have state: {Match2State.ACCEPTED_FINAL.value}")

        member = await self.identity.get_member_by_self(auth_token)
        if member['address'] not in (match2['member_a'], match2['member_b']):
            raise ConflictError("You are not a member of this match2")
        comment = await self.attachments.get_metadata(parse_uuid(attachment_id, 'attachmentId'))

        demand_a, demand_b = await self._get_demands(match2)
        transaction = await self.transactions.submit(
            payload.match2_cancel(match2, demand_a, demand_b, comment),
            TransactionApiType.MATCH2,
            TransactionType.CANCELLATION,
            match2['id']
        )
        return to_response(transaction)

    async def get_transaction(self, match2_id, transaction_id, transaction_type: TransactionType) -> TransactionResponse:
        match2 = await self._get_match2(match2_id)
        return await self.transactions.get_for_entity(match2['id'], transaction_id, transaction_type)

    async def list_transactions(
        self,
        match2_id,
        transaction_type: TransactionType,
        updated_since=None
    ) -> List[TransactionResponse]:
        match2 = await self._get_match2(match2_id)
        return await self.transactions.list_for_entity(match2['id'], transaction_type, updated_since)

__all__ = ['Match2Manager', 'validate_pre_local', 'validate_pre_on_chain']
