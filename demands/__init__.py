"""Demands module for orders and capacities.

Demands are created locally in the pending state, then created on-chain by
their owner. Once on-chain they can be commented on and matched.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from attachments import AttachmentManager
from database import Store
from errors import ConflictError, NotFoundError, ValidationError
from ledger import payload
from models import (
    DemandCommentState,
    DemandResponse,
    DemandState,
    DemandSubtype,
    TransactionResponse,
    TransactionType,
    parse_datetime,
    parse_uuid,
)
from services import IdentityClient
from transactions import TransactionManager, to_response

logger = logging.getLogger(__name__)

class DemandManager:
    """Manages demands and their on-chain transactions."""

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

    async def _response(self, demand: Dict[str, Any], auth_token: Optional[str] = None) -> DemandResponse:
        alias = await self.identity.get_alias(demand['owner'], auth_token)
        return DemandResponse(
            id=demand['id'],
            owner=alias,
            subtype=demand['subtype'],
            state=demand['state'],
            parameters_attachment_id=demand['parameters_attachment_id'],
            created_at=demand['created_at'],
            updated_at=demand['updated_at']
        )

    async def _get_demand(self, demand_id, subtype: Optional[DemandSubtype] = None) -> Dict[str, Any]:
        demand = await self.store.get_demand_with_attachment(parse_uuid(demand_id, 'demand id'))
        if not demand or (subtype and demand['subtype'] != DemandSubtype(subtype).value):
            raise NotFoundError(DemandSubtype(subtype).value if subtype else 'demand')
        return demand

    async def create(
        self,
        subtype: DemandSubtype,
        parameters_attachment_id,
        auth_token: Optional[str] = None
    ) -> DemandResponse:
        """Create a pending demand owned by this member"""
        try:
            subtype = DemandSubtype(subtype)
        except ValueError as e:
            raise ValidationError(f"Invalid subtype: {subtype}") from e
        attachment = await self.attachments.get_metadata(parse_uuid(parameters_attachment_id, 'parametersAttachmentId'))

        member = await self.identity.get_member_by_self(auth_token)
        demand = await self.store.insert_demand(
            member['address'],
            subtype.value,
            DemandState.PENDING.value,
            attachment['id']
        )
        logger.info(f"Created {subtype.value} {demand['id']}")
        return await self._response(demand, auth_token)

    async def get(self, demand_id, subtype: Optional[DemandSubtype] = None, auth_token: Optional[str] = None) -> DemandResponse:
        return await self._response(await self._get_demand(demand_id, subtype), auth_token)

    async def list(
        self,
        subtype: Optional[DemandSubtype] = None,
        updated_since=None,
        auth_token: Optional[str] = None
    ) -> List[DemandResponse]:
        demands = await self.store.list_demands(
            DemandSubtype(subtype).value if subtype else None,
            parse_datetime(updated_since)
        )
        return list(await asyncio.gather(*[self._response(demand, auth_token) for demand in demands]))

    async def create_on_chain(self, demand_id, subtype: Optional[DemandSubtype] = None) -> TransactionResponse:
        """Submit the demand-create process for a pending demand

        Raises:
            NotFoundError: No such demand
            ConflictError: The demand is not pending
        """
        demand = await self._get_demand(demand_id, subtype)
        if demand['state'] != DemandState.PENDING.value:
            raise ConflictError(f"Demand must have state: {DemandState.PENDING.value}")

        transaction = await self.transactions.submit(
            payload.demand_create(demand),
            demand['subtype'],
            TransactionType.CREATION,
            demand['id']
        )
        return to_response(transaction)

    async def comment(
        self,
        demand_id,
        attachment_id,
        subtype: Optional[DemandSubtype] = None,
        auth_token: Optional[str] = None
    ) -> TransactionResponse:
        """Submit a comment referencing attachment_id on an on-chain demand

        Raises:
            NotFoundError: No such demand or attachment
            ConflictError: The demand is not on-chain
        """
        demand = await self._get_demand(demand_id, subtype)
        if demand['latest_token_id'] is None:
            raise ConflictError(f"{demand['subtype'].capitalize()} must be on chain")
        attachment = await self.attachments.get_metadata(parse_uuid(attachment_id, 'attachmentId'))
        member = await self.identity.get_member_by_self(auth_token)

        transaction, extrinsic = await self.transactions.prepare(
            payload.demand_comment(demand, {'owner': member['address'], 'ipfs_hash': attachment['ipfs_hash']}),
            demand['subtype'],
            TransactionType.COMMENT,
            demand['id']
        )
        try:
            await self.store.insert_demand_comment(
                member['address'],
                demand['id'],
                attachment['id'],
                DemandCommentState.PENDING.value,
                transaction['id']
            )
        except Exception:
            await self.transactions.abandon(transaction, extrinsic)
            raise
        return to_response(await self.transactions.send(transaction, extrinsic))

    async def get_transaction(
        self,
        demand_id,
        transaction_id,
        transaction_type: TransactionType,
        subtype: Optional[DemandSubtype] = None
    ) -> TransactionResponse:
        demand = await self._get_demand(demand_id, subtype)
        return await self.transactions.get_for_entity(demand['id'], transaction_id, transaction_type)

    async def list_transactions(
        self,
        demand_id,
        transaction_type: TransactionType,
        subtype: Optional[DemandSubtype] = None,
        updated_since=None
    ) -> List[TransactionResponse]:
        demand = await self._get_demand(demand_id, subtype)
        return await self.transactions.list_for_entity(demand['id'], transaction_type, updated_since)

__all__ = ['DemandManager']
