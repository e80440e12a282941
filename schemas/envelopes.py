"""Envelope schemas: the per-entity unit of work threaded through a sync batch."""
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from schemas.closeio import ObjectType
from schemas.messages import AccountUpdateMessage, UserUpdateMessage


class Classification(str, Enum):
    SKIP = "skip"
    INSERT = "insert"
    UPDATE = "update"


class OpsResult(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class Envelope(BaseModel):
    """Carries both representations of one entity plus its routing state.

    `internal` is the platform snapshot (a User is merged with its Account
    under the "account" key), `write` the Close.io payload to send and
    `read` the Close.io record returned once dispatch succeeded.
    """

    object_type: ObjectType
    message: Union[AccountUpdateMessage, UserUpdateMessage]
    internal: Dict[str, Any]
    cached_external_id: Optional[str] = None
    write: Dict[str, Any] = Field(default_factory=dict)
    read: Optional[Dict[str, Any]] = None
    classification: Optional[Classification] = None
    skip_reason: Optional[str] = None
    ops_result: Optional[OpsResult] = None
    error: Optional[str] = None

    @property
    def internal_id(self) -> str:
        return self.internal["id"]

    @property
    def entity_label(self) -> str:
        return "account" if self.object_type == ObjectType.LEAD else "user"

    def _classify(self, classification: Classification) -> None:
        if self.classification is not None:
            raise ValueError(
                f"{self.entity_label} {self.internal_id} already classified as "
                f"{self.classification.value}"
            )
        self.classification = classification

    def skip(self, reason: str) -> None:
        if not reason:
            raise ValueError("skip reason must be a non-empty string")
        self._classify(Classification.SKIP)
        self.skip_reason = reason

    def mark_update(self, external_id: str) -> None:
        self._classify(Classification.UPDATE)
        self.write["id"] = external_id

    def mark_insert(self) -> None:
        self._classify(Classification.INSERT)

    def fail(self, error: str) -> None:
        self.ops_result = OpsResult.ERROR
        self.error = error


class FilterResults(BaseModel):
    to_skip: List[Envelope] = Field(default_factory=list)
    to_insert: List[Envelope] = Field(default_factory=list)
    to_update: List[Envelope] = Field(default_factory=list)
