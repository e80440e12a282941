"""Close.io reference data and inbound attribute schemas."""
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

ATTRIBUTE_PREFIX = "closeio/"
EXTERNAL_ID_ATTRIBUTE = "closeio/id"


class ObjectType(str, Enum):
    LEAD = "Lead"
    CONTACT = "Contact"


class WritePolicy(str, Enum):
    SET = "set"
    SET_IF_NULL = "setIfNull"


class LeadStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    label: str


class LeadCustomField(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    type: Optional[str] = None


class AttributeValue(BaseModel):
    """A single platform attribute write."""
    value: Any = None
    operation: WritePolicy = WritePolicy.SET
