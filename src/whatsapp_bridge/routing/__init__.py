"""
Bridge Routing

Identifier normalization and gateway instance resolution.
"""

from whatsapp_bridge.routing.identifiers import (
    digits_only,
    extract_phone_from_jid,
    format_jid,
    is_group_jid,
    is_lid_jid,
)
from whatsapp_bridge.routing.instance_resolver import (
    INSTANCE_TAG_PREFIX,
    InstanceResolver,
    instance_id_from_tags,
    instance_tag,
)

__all__ = [
    "digits_only",
    "extract_phone_from_jid",
    "format_jid",
    "is_group_jid",
    "is_lid_jid",
    "INSTANCE_TAG_PREFIX",
    "InstanceResolver",
    "instance_id_from_tags",
    "instance_tag",
]
