"""
WhatsApp JID Utilities

Handles every JID flavour the gateway emits: @s.whatsapp.net, @c.us, @g.us,
@lid, @broadcast, @newsletter. All functions are total: bad input gives an
empty string or False, never an exception.
"""

import re

GROUP_SUFFIX = "@g.us"
LID_SUFFIX = "@lid"
PRIVATE_SUFFIX = "@c.us"

_NON_DIGITS = re.compile(r"\D")


def _as_text(value) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def extract_phone_from_jid(jid: str | None) -> str:
    """
    Return the local part of a JID.

    Splits on the first "@" regardless of suffix so new JID flavours
    need no changes here.

    >>> extract_phone_from_jid("31612345678@s.whatsapp.net")
    '31612345678'
    >>> extract_phone_from_jid("267215769174167@lid")
    '267215769174167'
    >>> extract_phone_from_jid(None)
    ''
    """
    return _as_text(jid).split("@", 1)[0]


def is_group_jid(jid: str | None) -> bool:
    """True if the JID is a group chat."""
    return _as_text(jid).endswith(GROUP_SUFFIX)


def is_lid_jid(jid: str | None) -> bool:
    """
    True if the JID uses the device-linked @lid format.

    The local part is a platform id, not a dialable number.
    """
    return _as_text(jid).endswith(LID_SUFFIX)


def digits_only(value: str | None) -> str:
    return _NON_DIGITS.sub("", _as_text(value))


def format_jid(phone: str, kind: str = "private") -> str:
    """
    Build a JID from a phone number.

    >>> format_jid("+31 612 345 678")
    '31612345678@c.us'
    >>> format_jid("31612345678", "group")
    '31612345678@g.us'
    """
    cleaned = digits_only(phone)
    return f"{cleaned}{GROUP_SUFFIX}" if kind == "group" else f"{cleaned}{PRIVATE_SUFFIX}"
