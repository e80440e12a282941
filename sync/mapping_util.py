"""Bidirectional attribute mapping between platform records and Close.io objects.

Outbound: platform Account/User snapshot -> Close.io Lead/Contact write payload.
Inbound: Close.io Lead/Contact -> platform identity + attribute writes.

Inbound field lists are compiled into typed rules when the util is built,
so per-record mapping never re-inspects field names.
"""
import logging
import re
from typing import Any, Dict, List, Sequence, Union
from urllib.parse import urlparse

from pydantic import BaseModel

from schemas import (
    ATTRIBUTE_PREFIX,
    EXTERNAL_ID_ATTRIBUTE,
    USE_DEFAULT_STATUS,
    AttributeValue,
    LeadCustomField,
    LeadStatus,
    ObjectType,
    OutboundMapping,
    SyncSettings,
    WritePolicy,
)
from sync import messages
from sync.errors import MappingError

logger = logging.getLogger(__name__)

MULTI_VALUED_FIELDS = ("emails", "phones", "urls")
EXCLUDED_FIELDS = ("opportunities",)
CUSTOM_FIELD_PREFIX = "custom."
ANONYMOUS_ID_PREFIX = "closeio:"

# Fields that make a write payload meaningful without any configured rule
_DEFAULT_FIELDS = {
    ObjectType.LEAD: ("name", "url"),
    ObjectType.CONTACT: ("name",),
}


def normalize_url(raw: Any) -> Any:
    """Return the hostname of an absolute URL, or the input unchanged."""
    try:
        hostname = urlparse(raw).hostname
    except (AttributeError, TypeError, ValueError):
        return raw
    return hostname or raw


def snake_case(value: str) -> str:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", value)
    return "_".join(word.lower() for word in re.findall(r"[A-Za-z0-9]+", spaced))


def get_path(record: Dict[str, Any], path: str) -> Any:
    """Read a flat key, falling back to a dotted path into nested dicts."""
    if path in record:
        return record[path]
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


# ---------------------------------------------------------------------------
# Inbound rules
# ---------------------------------------------------------------------------


class ScalarRule(BaseModel):
    field: str
    attribute: str


class CustomFieldRule(ScalarRule):
    custom_field_id: str


class MultiValuedRule(BaseModel):
    field: str

    @property
    def item_key(self) -> str:
        return self.field[:-1]


class StatusRule(BaseModel):
    field: str = "status_id"


class AddressRule(BaseModel):
    field: str = "addresses"


class ExcludedRule(BaseModel):
    field: str


InboundRule = Union[CustomFieldRule, ScalarRule, MultiValuedRule, StatusRule, AddressRule, ExcludedRule]


def compile_inbound_rules(
    fields: Sequence[str],
    custom_fields: Sequence[LeadCustomField] = (),
) -> List[InboundRule]:
    registry = {f"{CUSTOM_FIELD_PREFIX}{c.id}": c for c in custom_fields}
    rules: List[InboundRule] = []
    for field in fields:
        if field in MULTI_VALUED_FIELDS:
            rules.append(MultiValuedRule(field=field))
        elif field == "status_id":
            rules.append(StatusRule(field=field))
        elif field == "addresses":
            rules.append(AddressRule(field=field))
        elif field in EXCLUDED_FIELDS:
            rules.append(ExcludedRule(field=field))
        elif field in registry:
            custom_field = registry[field]
            rules.append(CustomFieldRule(
                field=field,
                attribute=snake_case(custom_field.name),
                custom_field_id=custom_field.id,
            ))
        else:
            if field.startswith(CUSTOM_FIELD_PREFIX):
                logger.debug("Cannot find custom field %s, keeping its raw name", field)
            rules.append(ScalarRule(field=field, attribute=field))
    return rules


class MappingUtil:
    """Maps records between the platform and Close.io.

    Args:
        settings: Normalized connector settings (attribute rules, lead
            identifier and creation status).
        lead_statuses: Close.io lead status reference data.
        lead_custom_fields: Close.io custom field registry.
    """

    normalize_url = staticmethod(normalize_url)

    def __init__(
        self,
        settings: SyncSettings,
        lead_statuses: Sequence[Union[LeadStatus, Dict[str, Any]]] = (),
        lead_custom_fields: Sequence[Union[LeadCustomField, Dict[str, Any]]] = (),
    ):
        self.lead_creation_status_id = settings.lead_status
        self.lead_identifier_platform = settings.lead_identifier_platform
        self.lead_identifier_service = settings.lead_identifier_service
        self.lead_statuses = {
            s.id: s for s in (LeadStatus.model_validate(s) for s in lead_statuses)
        }
        self.lead_custom_fields = [LeadCustomField.model_validate(c) for c in lead_custom_fields]

        self.outbound_rules: Dict[ObjectType, List[OutboundMapping]] = {
            ObjectType.LEAD: [m for m in settings.lead_attributes_outbound if m.is_usable],
            ObjectType.CONTACT: [m for m in settings.contact_attributes_outbound if m.is_usable],
        }
        self.inbound_rules: Dict[ObjectType, List[InboundRule]] = {
            ObjectType.LEAD: compile_inbound_rules(
                settings.lead_attributes_inbound, self.lead_custom_fields
            ),
            ObjectType.CONTACT: compile_inbound_rules(
                settings.contact_attributes_inbound, self.lead_custom_fields
            ),
        }

    @staticmethod
    def _object_type(object_type: Union[ObjectType, str], record: Dict[str, Any]) -> ObjectType:
        try:
            return ObjectType(object_type)
        except ValueError:
            raise MappingError(
                messages.MAPPING_UNSUPPORTEDTYPEOUTBOUND(str(object_type)).message,
                str(object_type),
                record.get("id"),
            ) from None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def map_outbound(
        self, object_type: Union[ObjectType, str], internal: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Build the Close.io write payload for a platform Account or User."""
        object_type = self._object_type(object_type, internal)
        write: Dict[str, Any] = {}
        if internal.get("name") is not None:
            write["name"] = internal["name"]

        if object_type == ObjectType.LEAD:
            if internal.get("domain"):
                write["url"] = normalize_url(internal["domain"])
            if internal.get(EXTERNAL_ID_ATTRIBUTE):
                write["id"] = internal[EXTERNAL_ID_ATTRIBUTE]
            elif self.lead_creation_status_id not in USE_DEFAULT_STATUS:
                write["status_id"] = self.lead_creation_status_id
        else:
            account = internal.get("account") or {}
            write["lead_id"] = account.get(EXTERNAL_ID_ATTRIBUTE) or None
            if internal.get(EXTERNAL_ID_ATTRIBUTE):
                write["id"] = internal[EXTERNAL_ID_ATTRIBUTE]

        rules = self.outbound_rules[object_type]
        if not rules and not any(write.get(f) for f in _DEFAULT_FIELDS[object_type]):
            raise MappingError(
                messages.MAPPING_NOUSABLEFIELDS(object_type.value).message,
                object_type.value,
                internal.get("id"),
            )

        for rule in rules:
            value = get_path(internal, rule.platform_field_name)
            if value is None:
                continue
            if rule.platform_field_name == "domain":
                value = normalize_url(value)
            target = rule.service_field_name
            list_name, _, subtype = target.partition(".")
            if list_name in MULTI_VALUED_FIELDS:
                write.setdefault(list_name, []).append(
                    {"type": subtype, list_name[:-1]: value}
                )
            else:
                write[target] = value
        return write

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def map_inbound_identity(
        self, object_type: Union[ObjectType, str], record: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Derive the platform identity for a Close.io Lead or Contact.

        The anonymous id is always present so records without an email or
        domain still resolve to the same platform entity.
        """
        object_type = self._object_type(object_type, record)
        if not record.get("id"):
            raise MappingError("Close.io record has no id", object_type.value)

        ident: Dict[str, Any] = {}
        if object_type == ObjectType.CONTACT:
            emails = record.get("emails") or []
            if emails and emails[0].get("email"):
                ident["email"] = emails[0]["email"]
        else:
            value = record.get(self.lead_identifier_service)
            if self.lead_identifier_platform == "domain":
                if isinstance(value, str):
                    ident["domain"] = normalize_url(value)
            elif value is not None:
                ident[self.lead_identifier_platform] = value
        ident["anonymous_id"] = f"{ANONYMOUS_ID_PREFIX}{record['id']}"
        return ident

    def map_inbound_attributes(
        self, object_type: Union[ObjectType, str], record: Dict[str, Any]
    ) -> Dict[str, AttributeValue]:
        """Map a Close.io record to platform attribute writes."""
        object_type = self._object_type(object_type, record)
        attributes: Dict[str, AttributeValue] = {}
        for rule in self.inbound_rules[object_type]:
            self._apply_inbound_rule(rule, record, attributes)

        if record.get("id") is not None:
            attributes[EXTERNAL_ID_ATTRIBUTE] = AttributeValue(value=record["id"])

        name = attributes.get(f"{ATTRIBUTE_PREFIX}name")
        if name is not None and isinstance(name.value, str) and name.value:
            attributes["name"] = AttributeValue(
                value=name.value, operation=WritePolicy.SET_IF_NULL
            )

        if object_type == ObjectType.CONTACT:
            attributes[f"{ATTRIBUTE_PREFIX}lead_id"] = AttributeValue(value=record.get("lead_id"))

        if "date_created" in record:
            attributes[f"{ATTRIBUTE_PREFIX}created_at"] = AttributeValue(
                value=record["date_created"], operation=WritePolicy.SET_IF_NULL
            )
        if "date_updated" in record:
            attributes[f"{ATTRIBUTE_PREFIX}updated_at"] = AttributeValue(
                value=record["date_updated"]
            )
        return attributes

    def _apply_inbound_rule(
        self,
        rule: InboundRule,
        record: Dict[str, Any],
        attributes: Dict[str, AttributeValue],
    ) -> None:
        if isinstance(rule, ExcludedRule):
            return

        if isinstance(rule, MultiValuedRule):
            for item in record.get(rule.field) or []:
                attributes[f"{ATTRIBUTE_PREFIX}{rule.item_key}_{item.get('type')}"] = AttributeValue(
                    value=item.get(rule.item_key)
                )
        elif isinstance(rule, StatusRule):
            status = self.lead_statuses.get(record.get(rule.field))
            if status is not None:
                attributes[f"{ATTRIBUTE_PREFIX}status"] = AttributeValue(value=status.label)
        elif isinstance(rule, AddressRule):
            # Only the first address is kept; its label becomes part of the name
            addresses = record.get(rule.field) or []
            if addresses:
                address = addresses[0]
                prefix = f"{ATTRIBUTE_PREFIX}address_{address.get('label') or 'office'}"
                for key, value in address.items():
                    if key != "label":
                        attributes[f"{prefix}_{key}"] = AttributeValue(value=value)
        else:
            value = get_path(record, rule.field)
            if value is not None:
                attributes[f"{ATTRIBUTE_PREFIX}{rule.attribute}"] = AttributeValue(value=value)

