"""
Codecs for the shared table.

- keys: deterministic key derivation and node id encoding
- items: domain attributes <-> storage columns, write directives
"""

from .items import (
    CREATED_COLUMN,
    TTL_COLUMN,
    TYPE_COLUMN,
    UPDATED_COLUMN,
    VERSION_COLUMN,
    ComputedModel,
    Increment,
    Item,
    WriteDirective,
    check_type_tag,
    marshall_for_blind_write,
    marshall_for_create,
    marshall_for_touch,
    marshall_for_update,
    resolve_computed_fields,
    unmarshall,
)
from .keys import (
    PrimaryKey,
    decode_node_id,
    derive_index_key,
    derive_primary_key,
    encode_node_id,
    sort_key_prefix,
)

__all__ = [
    # Keys
    "PrimaryKey",
    "derive_primary_key",
    "derive_index_key",
    "sort_key_prefix",
    "encode_node_id",
    "decode_node_id",
    # Items
    "Item",
    "Increment",
    "WriteDirective",
    "marshall_for_create",
    "marshall_for_update",
    "marshall_for_blind_write",
    "marshall_for_touch",
    "unmarshall",
    "check_type_tag",
    "ComputedModel",
    "resolve_computed_fields",
    "TYPE_COLUMN",
    "CREATED_COLUMN",
    "UPDATED_COLUMN",
    "VERSION_COLUMN",
    "TTL_COLUMN",
]
