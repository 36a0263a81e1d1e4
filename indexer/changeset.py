"""Accumulated storage mutations derived from ledger events.

A ChangeSet maps each category to ``{id: record}`` where every record carries
``type`` ('insert' or 'update') and ``id`` plus the fields to write. Merging
is a field union in which the later fragment wins and an insert tag is never
demoted to an update.
"""
from typing import Any, Dict, Optional
from uuid import UUID, uuid5

CATEGORIES = ('attachments', 'demands', 'matches', 'demand_comments', 'transactions')

# Fixed namespace for ids of rows created from other members' tokens
TOKEN_NAMESPACE = UUID('3c6f8a4e-5d2b-5f0e-9a47-1b2c8e6d7f90')

ChangeSet = Dict[str, Dict[Any, Dict[str, Any]]]

def token_uuid(kind: str, token_id: int) -> UUID:
    """Deterministic id for an entity first seen as token_id"""
    return uuid5(TOKEN_NAMESPACE, f"{kind}:{token_id}")

def attachment_uuid(token_id: int, key: str) -> UUID:
    """Deterministic id for the attachment stored in token_id's metadata key"""
    return uuid5(TOKEN_NAMESPACE, f"attachment:{token_id}:{key}")

def insert(record_id, **fields) -> Dict[str, Any]:
    return {'type': 'insert', 'id': record_id, **fields}

def update(record_id, **fields) -> Dict[str, Any]:
    return {'type': 'update', 'id': record_id, **fields}

def _merge_records(base: Dict[str, Any], change: Dict[str, Any]) -> Dict[str, Any]:
    operation = 'insert' if 'insert' in (base.get('type'), change.get('type')) else 'update'
    return {**base, **change, 'type': operation}

def merge_change_sets(base: ChangeSet, change: ChangeSet) -> ChangeSet:
    """Merge change into base, returning a new ChangeSet. Neither argument is mutated."""
    result: ChangeSet = {}
    for category in CATEGORIES:
        base_records = base.get(category) or {}
        change_records = change.get(category) or {}
        if not base_records and not change_records:
            continue

        merged = dict(base_records)
        for key, record in change_records.items():
            merged[key] = _merge_records(merged[key], record) if key in merged else dict(record)
        result[category] = merged
    return result

def find_local_id_in_change_set(change: ChangeSet, token_id: int) -> Optional[UUID]:
    """Local id of the demand or match2 whose accumulated latest token is token_id.

    Demands are searched before matches.
    """
    for category in ('demands', 'matches'):
        for record in (change.get(category) or {}).values():
            if record.get('latest_token_id') == token_id:
                return record['id']
    return None

def is_empty(change: ChangeSet) -> bool:
    return not any(change.get(category) for category in CATEGORIES)

def summarize(change: ChangeSet) -> str:
    return ', '.join(
        f"{category}={len(change.get(category) or {})}"
        for category in CATEGORIES
        if change.get(category)
    ) or 'no changes'
