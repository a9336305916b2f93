from .engine import Database
from .models import (
    Base,
    Counterparty,
    Deal,
    MailAccount,
    Organization,
    OutboundRequest,
    ParseRecord,
    RawMessage,
    SuggestedContact,
    User,
)

__all__ = [
    "Base",
    "Counterparty",
    "Database",
    "Deal",
    "MailAccount",
    "Organization",
    "OutboundRequest",
    "ParseRecord",
    "RawMessage",
    "SuggestedContact",
    "User",
]
