"""Connector settings schemas."""
from typing import List, Optional

from pydantic import BaseModel, Field

USE_DEFAULT_STATUS = ("N/A", "default")


class OutboundMapping(BaseModel):
    platform_field_name: Optional[str] = None
    service_field_name: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        return bool(self.platform_field_name and self.service_field_name)


class SyncSettings(BaseModel):
    api_key: Optional[str] = None
    synchronized_account_segments: List[str] = Field(default_factory=list)
    lead_identifier_platform: str = "domain"
    lead_identifier_service: str = "url"
    lead_status: str = "N/A"
    lead_attributes_outbound: List[OutboundMapping] = Field(default_factory=list)
    lead_attributes_inbound: List[str] = Field(default_factory=list)
    contact_attributes_outbound: List[OutboundMapping] = Field(default_factory=list)
    contact_attributes_inbound: List[str] = Field(default_factory=list)
    last_sync_at: Optional[int] = None

    def normalized(self) -> "SyncSettings":
        """Return a copy where the lead identifier is always mapped both ways."""
        settings = self.model_copy(deep=True)
        platform_id = settings.lead_identifier_platform
        service_id = settings.lead_identifier_service
        identifier_rule = OutboundMapping(
            platform_field_name=platform_id,
            service_field_name=service_id,
        )
        if identifier_rule not in settings.lead_attributes_outbound:
            settings.lead_attributes_outbound.append(identifier_rule)
        if service_id not in settings.lead_attributes_inbound:
            settings.lead_attributes_inbound.append(service_id)
        return settings
