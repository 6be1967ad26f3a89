# backend/consultcore/core/enums.py
"""
Core enums for the booking lifecycle engine.

Roles are relative to a booking: the same user may be the requester of one
booking and the provider of another. Capabilities are checked against the
closed allow-list below instead of being scattered through the services.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class PartyRole(str, Enum):
    """The two parties of a booking."""

    REQUESTER = "requester"
    PROVIDER = "provider"


class Capability(str, Enum):
    """Actions an actor can attempt on a booking."""

    CREATE_PAYMENT = "create_payment"
    CANCEL = "cancel"
    START_SESSION = "start_session"
    ISSUE_COMPLETION_OTP = "issue_completion_otp"
    COMPLETE = "complete"
    VIEW_CHAT = "view_chat"
    VIEW_BOOKING = "view_booking"
    VIEW_PAYMENT = "view_payment"


CAPABILITY_ROLES: Dict[Capability, FrozenSet[PartyRole]] = {
    Capability.CREATE_PAYMENT: frozenset({PartyRole.REQUESTER}),
    Capability.CANCEL: frozenset({PartyRole.REQUESTER, PartyRole.PROVIDER}),
    Capability.START_SESSION: frozenset({PartyRole.REQUESTER, PartyRole.PROVIDER}),
    Capability.ISSUE_COMPLETION_OTP: frozenset({PartyRole.REQUESTER}),
    Capability.COMPLETE: frozenset({PartyRole.REQUESTER}),
    Capability.VIEW_CHAT: frozenset({PartyRole.REQUESTER, PartyRole.PROVIDER}),
    Capability.VIEW_BOOKING: frozenset({PartyRole.REQUESTER, PartyRole.PROVIDER}),
    Capability.VIEW_PAYMENT: frozenset({PartyRole.REQUESTER, PartyRole.PROVIDER}),
}


def resolve_party_role(booking: Any, actor_id: Optional[str]) -> Optional[PartyRole]:
    """Return the actor's role on the booking, or None for outsiders."""
    if not actor_id:
        return None
    if actor_id == booking.requester_id:
        return PartyRole.REQUESTER
    if actor_id == booking.provider_id:
        return PartyRole.PROVIDER
    return None


def is_allowed(role: Optional[PartyRole], capability: Capability) -> bool:
    if role is None:
        return False
    return role in CAPABILITY_ROLES.get(capability, frozenset())
