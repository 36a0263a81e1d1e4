"""Schema v1 - Initial database schema.

This version includes tables for:
- Attachments referenced by demands and comments
- Demands (orders and capacities) and their comments
- Match2 pairings, including rematches
- Ledger submission tracking
- Indexer checkpoints
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'attachment',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'filename', 'type': 'TEXT'},
                {'name': 'size', 'type': 'INT8'},
                {'name': 'ipfs_hash', 'type': 'TEXT', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        },
        {
            'name': 'demand',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'owner', 'type': 'TEXT', 'nullable': False},
                {'name': 'subtype', 'type': 'TEXT', 'nullable': False},
                {'name': 'state', 'type': 'TEXT', 'nullable': False},
                {'name': 'parameters_attachment_id', 'type': 'UUID', 'nullable': False},
                {'name': 'latest_token_id', 'type': 'INT8'},
                {'name': 'original_token_id', 'type': 'INT8'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['parameters_attachment_id'], 'references': 'attachment(id)'}
            ],
            'indexes': [
                {'name': 'idx_demand_subtype', 'columns': ['subtype']},
                {'name': 'idx_demand_latest_token', 'columns': ['latest_token_id']},
                {'name': 'idx_demand_updated_at', 'columns': ['updated_at']}
            ]
        },
        {
            'name': 'match2',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'optimiser', 'type': 'TEXT', 'nullable': False},
                {'name': 'member_a', 'type': 'TEXT', 'nullable': False},
                {'name': 'member_b', 'type': 'TEXT', 'nullable': False},
                {'name': 'state', 'type': 'TEXT', 'nullable': False},
                {'name': 'demand_a_id', 'type': 'UUID', 'nullable': False},
                {'name': 'demand_b_id', 'type': 'UUID', 'nullable': False},
                {'name': 'replaces_id', 'type': 'UUID'},
                {'name': 'latest_token_id', 'type': 'INT8'},
                {'name': 'original_token_id', 'type': 'INT8'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['demand_a_id'], 'references': 'demand(id)'},
                {'columns': ['demand_b_id'], 'references': 'demand(id)'},
                {'columns': ['replaces_id'], 'references': 'match2(id)'}
            ],
            'indexes': [
                {'name': 'idx_match2_latest_token', 'columns': ['latest_token_id']},
                {'name': 'idx_match2_updated_at', 'columns': ['updated_at']}
            ]
        },
        {
            'name': 'transaction',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'api_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'transaction_type', 'type': 'TEXT', 'nullable': False},
                {'name': 'local_id', 'type': 'UUID', 'nullable': False},
                {'name': 'state', 'type': 'TEXT', 'nullable': False},
                {'name': 'hash', 'type': 'TEXT', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_transaction_hash', 'columns': ['hash']},
                {'name': 'idx_transaction_local_id', 'columns': ['local_id']},
                {'name': 'idx_transaction_updated_at', 'columns': ['updated_at']}
            ]
        },
        {
            'name': 'demand_comment',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'owner', 'type': 'TEXT', 'nullable': False},
                {'name': 'state', 'type': 'TEXT', 'nullable': False},
                {'name': 'demand', 'type': 'UUID', 'nullable': False},
                {'name': 'attachment_id', 'type': 'UUID', 'nullable': False},
                {'name': 'transaction_id', 'type': 'UUID'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['demand'], 'references': 'demand(id)'},
                {'columns': ['attachment_id'], 'references': 'attachment(id)'}
            ],
            'indexes': [
                {'name': 'idx_demand_comment_transaction', 'columns': ['transaction_id'], 'unique': True}
            ]
        },
        {
            'name': 'processed_blocks',
            'columns': [
                {'name': 'hash', 'type': 'TEXT', 'primary_key': True},
                {'name': 'parent', 'type': 'TEXT', 'nullable': False},
                {'name': 'height', 'type': 'INT8', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_processed_blocks_height', 'columns': ['height'], 'unique': True}
            ]
        }
    ]
}
