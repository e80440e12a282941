from .closeio import (
    ATTRIBUTE_PREFIX,
    EXTERNAL_ID_ATTRIBUTE,
    AttributeValue,
    LeadCustomField,
    LeadStatus,
    ObjectType,
    WritePolicy,
)
from .envelopes import (
    Classification,
    Envelope,
    FilterResults,
    OpsResult,
)
from .messages import (
    AccountUpdateMessage,
    PlatformEvent,
    Segment,
    UserUpdateMessage,
)
from .settings import (
    OutboundMapping,
    SyncSettings,
    USE_DEFAULT_STATUS,
)

__all__ = [
    "ATTRIBUTE_PREFIX", "EXTERNAL_ID_ATTRIBUTE",
    "AttributeValue", "LeadCustomField", "LeadStatus", "ObjectType", "WritePolicy",
    "Classification", "Envelope", "FilterResults", "OpsResult",
    "AccountUpdateMessage", "PlatformEvent", "Segment", "UserUpdateMessage",
    "OutboundMapping", "SyncSettings", "USE_DEFAULT_STATUS",
]
