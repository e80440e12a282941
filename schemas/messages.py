"""Platform change notification schemas."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _require_id(record: Dict[str, Any]) -> Dict[str, Any]:
    if not record.get("id"):
        raise ValueError("record must carry a non-empty 'id'")
    return record


class Segment(BaseModel):
    id: str
    name: Optional[str] = None


class PlatformEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_id: str
    event: Optional[str] = None
    created_at: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)


class AccountUpdateMessage(BaseModel):
    message_id: Optional[str] = None
    account: Dict[str, Any]
    account_segments: List[Segment] = Field(default_factory=list)
    events: List[PlatformEvent] = Field(default_factory=list)

    @field_validator("account")
    @classmethod
    def check_account(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _require_id(value)

    @property
    def entity_id(self) -> str:
        return self.account["id"]


class UserUpdateMessage(BaseModel):
    message_id: Optional[str] = None
    user: Dict[str, Any]
    account: Dict[str, Any] = Field(default_factory=dict)
    segments: List[Segment] = Field(default_factory=list)
    account_segments: List[Segment] = Field(default_factory=list)
    events: List[PlatformEvent] = Field(default_factory=list)

    @field_validator("user")
    @classmethod
    def check_user(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _require_id(value)

    @property
    def entity_id(self) -> str:
        return self.user["id"]
