"""Schema v1 - Initial settlement schema.

This version includes tables for:
- Trade proposals and their item ledgers
- Listings and listing transactions (reservation to sale)
- Finalization handshakes shared by trades and listing sales
- Append-only history records
- Notifications, chat messages and read markers
- Collaborator data: sticker inventory, listing participants, ignore lists
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'proposals',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'collection_id', 'type': 'INT8'},
                {'name': 'from_user', 'type': 'TEXT', 'nullable': False},
                {'name': 'to_user', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'message', 'type': 'TEXT'},
                {'name': 'version', 'type': 'INT8', 'nullable': False, 'default': '1'},
                {'name': 'archived_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': ['from_user <> to_user'],
            'indexes': [
                {'name': 'idx_proposals_from_user', 'columns': ['from_user', 'created_at']},
                {'name': 'idx_proposals_to_user', 'columns': ['to_user', 'created_at']},
                {'name': 'idx_proposals_status', 'columns': ['status']}
            ]
        },
        {
            'name': 'proposal_items',
            'columns': [
                {'name': 'proposal_id', 'type': 'UUID', 'nullable': False},
                {'name': 'sticker_id', 'type': 'INT8', 'nullable': False},
                {'name': 'direction', 'type': 'TEXT', 'nullable': False},
                {'name': 'quantity', 'type': 'INT8', 'nullable': False}
            ],
            'primary_key': ['proposal_id', 'sticker_id', 'direction'],
            'checks': ['quantity > 0', "direction IN ('offer', 'request')"],
            'foreign_keys': [
                {'columns': ['proposal_id'], 'references': 'proposals(id)'}
            ]
        },
        {
            'name': 'listings',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'collection_id', 'type': 'INT8'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'active'"},
                {'name': 'version', 'type': 'INT8', 'nullable': False, 'default': '1'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_listings_seller', 'columns': ['seller_id']},
                {'name': 'idx_listings_status', 'columns': ['status']}
            ]
        },
        {
            'name': 'listing_transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'listing_id', 'type': 'UUID', 'nullable': False},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'reserved'"},
                {'name': 'note', 'type': 'TEXT'},
                {'name': 'reserved_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'completed_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'cancelled_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'cancellation_reason', 'type': 'TEXT'},
                {'name': 'version', 'type': 'INT8', 'nullable': False, 'default': '1'},
                {'name': 'archived_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'checks': ['seller_id <> buyer_id'],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'listings(id)'}
            ],
            'indexes': [
                {'name': 'idx_listing_tx_listing', 'columns': ['listing_id', 'reserved_at']},
                # At most one live transaction per listing
                {
                    'name': 'idx_listing_tx_one_active',
                    'columns': ['listing_id'],
                    'unique': True,
                    'where': "status IN ('reserved', 'pending_completion')"
                }
            ]
        },
        {
            'name': 'finalizations',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'transaction_kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'transaction_id', 'type': 'UUID', 'nullable': False},
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'finalized_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'rejected_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'accepted_by', 'type': 'TEXT'},
                {'name': 'accepted_at', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': [
                {'name': 'idx_finalizations_tx', 'columns': ['transaction_kind', 'transaction_id']},
                # At most one pending/accepted handshake per transaction
                {
                    'name': 'idx_finalizations_one_active',
                    'columns': ['transaction_kind', 'transaction_id'],
                    'unique': True,
                    'where': "status IN ('pending', 'accepted')"
                }
            ]
        },
        {
            'name': 'history_records',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'transaction_kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'transaction_id', 'type': 'UUID', 'nullable': False},
                {'name': 'outcome', 'type': 'TEXT', 'nullable': False},
                {'name': 'participants', 'type': 'TEXT[]', 'nullable': False},
                {'name': 'completed_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'cancelled_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'metadata', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {
                    'name': 'idx_history_one_per_tx',
                    'columns': ['transaction_kind', 'transaction_id'],
                    'unique': True
                },
                {'name': 'idx_history_created', 'columns': ['created_at']}
            ]
        },
        {
            'name': 'notifications',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False},
                {'name': 'actor_id', 'type': 'TEXT'},
                {'name': 'trade_id', 'type': 'UUID'},
                {'name': 'listing_id', 'type': 'UUID'},
                {'name': 'payload', 'type': 'JSONB', 'nullable': False, 'default': "'{}'"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'read_at', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': [
                {'name': 'idx_notifications_user', 'columns': ['user_id', 'created_at']}
            ]
        },
        {
            'name': 'chat_messages',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'conversation', 'type': 'TEXT', 'nullable': False},
                {'name': 'sender_id', 'type': 'TEXT'},
                {'name': 'body', 'type': 'TEXT', 'nullable': False},
                {'name': 'is_system', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'visible_to', 'type': 'TEXT[]', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'indexes': [
                {'name': 'idx_chat_messages_conversation', 'columns': ['conversation', 'created_at']}
            ]
        },
        {
            'name': 'chat_read_markers',
            'columns': [
                {'name': 'conversation', 'type': 'TEXT', 'nullable': False},
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'last_read_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['conversation', 'user_id']
        },
        {
            'name': 'user_stickers',
            'columns': [
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'sticker_id', 'type': 'INT8', 'nullable': False},
                {'name': 'count', 'type': 'INT8', 'nullable': False, 'default': '0'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['user_id', 'sticker_id']
        },
        {
            'name': 'listing_participants',
            'columns': [
                {'name': 'listing_id', 'type': 'UUID', 'nullable': False},
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['listing_id', 'user_id'],
            'foreign_keys': [
                {'columns': ['listing_id'], 'references': 'listings(id)'}
            ]
        },
        {
            'name': 'ignored_users',
            'columns': [
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'ignored_user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['user_id', 'ignored_user_id']
        }
    ],
    'triggers': [
        {
            'name': 'trg_history_records_immutable',
            'table': 'history_records',
            'timing': 'BEFORE',
            'event': 'UPDATE OR DELETE',
            'function_name': 'history_records_immutable',
            'function_body': '''
                BEGIN
                    RAISE EXCEPTION 'history_records rows are append-only';
                END;
            '''
        }
    ],
    'migrations': []
}
