"""API route modules"""

from duo_relay.api.routes import (
    users,
    contacts,
    messages,
    invite,
    signaling,
)

__all__ = ["users", "contacts", "messages", "invite", "signaling"]
