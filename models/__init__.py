"""Shared enums and models for demands, match2s, transactions and ledger processes."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from errors import ValidationError


class DemandSubtype(str, Enum):
    ORDER = "order"
    CAPACITY = "capacity"


class DemandState(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    ALLOCATED = "allocated"
    CANCELLED = "cancelled"


class DemandCommentState(str, Enum):
    PENDING = "pending"
    CREATED = "created"


class Match2State(str, Enum):
    PENDING = "pending"
    PROPOSED = "proposed"
    ACCEPTED_A = "acceptedA"
    ACCEPTED_B = "acceptedB"
    ACCEPTED_FINAL = "acceptedFinal"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TransactionState(str, Enum):
    SUBMITTED = "submitted"
    FINALISED = "finalised"
    FAILED = "failed"


class TransactionType(str, Enum):
    CREATION = "creation"
    PROPOSAL = "proposal"
    ACCEPT = "accept"
    REJECTION = "rejection"
    CANCELLATION = "cancellation"
    COMMENT = "comment"


class TransactionApiType(str, Enum):
    ORDER = "order"
    CAPACITY = "capacity"
    MATCH2 = "match2"


class ProcessName(str, Enum):
    """Ledger process kinds understood by the indexer."""
    DEMAND_CREATE = "demand-create"
    DEMAND_COMMENT = "demand-comment"
    MATCH2_PROPOSE = "match2-propose"
    MATCH2_ACCEPT = "match2-accept"
    MATCH2_ACCEPT_FINAL = "match2-acceptFinal"
    MATCH2_REJECT = "match2-reject"
    MATCH2_CANCEL = "match2-cancel"
    REMATCH2_PROPOSE = "rematch2-propose"
    REMATCH2_ACCEPT_FINAL = "rematch2-acceptFinal"


class DemandResponse(BaseModel):
    id: UUID
    owner: str
    subtype: DemandSubtype
    state: DemandState
    parameters_attachment_id: UUID
    created_at: datetime
    updated_at: datetime


class Match2Response(BaseModel):
    id: UUID
    state: Match2State
    optimiser: str
    member_a: str
    member_b: str
    demand_a: UUID
    demand_b: UUID
    replaces: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class TransactionResponse(BaseModel):
    id: UUID
    api_type: TransactionApiType
    transaction_type: TransactionType
    local_id: UUID
    state: TransactionState
    submitted_at: datetime
    updated_at: datetime


class DemandCommentResponse(BaseModel):
    id: UUID
    owner: str
    state: DemandCommentState
    attachment_id: UUID
    created_at: datetime


class TokenInput(BaseModel):
    """A token consumed by a process, with the local entity it represents if known."""
    id: int
    local_id: Optional[UUID] = None


class TokenOutput(BaseModel):
    """A token minted by a process, with its decoded roles and metadata."""
    id: int
    roles: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessRun(BaseModel):
    """A decoded ProcessRan event, ready for an event processor."""
    process: ProcessName
    version: int = 1
    sender: str
    hash: str
    transaction: Optional[Dict[str, Any]] = None
    inputs: List[TokenInput] = Field(default_factory=list)
    outputs: List[TokenOutput] = Field(default_factory=list)


def parse_uuid(value, name: str = 'id') -> UUID:
    """Parse a UUID argument, raising ValidationError when malformed."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {name}: {value}") from e


def parse_datetime(value, name: str = 'updated_since') -> Optional[datetime]:
    """Parse an optional ISO 8601 timestamp. Naive timestamps are taken as UTC."""
    if value is None or isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError as e:
            raise ValidationError(f"Invalid {name}: {value}") from e
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
