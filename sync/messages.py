"""Operator-facing message catalog for skip reasons and mapping failures."""
from typing import NamedTuple


class SharedMessage(NamedTuple):
    id: str
    message: str


def OPERATION_SKIP_NOMATCHACCOUNTSEGMENTS() -> SharedMessage:
    return SharedMessage(
        "OPERATION_SKIP_NOMATCHACCOUNTSEGMENTS",
        "Account skipped (segment mismatch): it doesn't belong to any of the synchronized account segments.",
    )


def OPERATION_SKIP_NOMATCHACCOUNTSEGMENTSUSER() -> SharedMessage:
    return SharedMessage(
        "OPERATION_SKIP_NOMATCHACCOUNTSEGMENTSUSER",
        "User skipped (segment mismatch): the linked account doesn't belong to any of the synchronized account segments.",
    )


def OPERATION_SKIP_NOLINKEDACCOUNT() -> SharedMessage:
    return SharedMessage(
        "OPERATION_SKIP_NOLINKEDACCOUNT",
        "User skipped: not linked to an account that exists in Close.io, a contact cannot be created without its lead.",
    )


def MAPPING_UNSUPPORTEDTYPEOUTBOUND(object_type: str) -> SharedMessage:
    return SharedMessage(
        "MAPPING_UNSUPPORTEDTYPEOUTBOUND",
        f"Cannot map object of type '{object_type}' to Close.io.",
    )


def MAPPING_NOUSABLEFIELDS(object_type: str) -> SharedMessage:
    return SharedMessage(
        "MAPPING_NOUSABLEFIELDS",
        f"No outbound attribute mapping is configured for '{object_type}' and the record has no default fields to send.",
    )


def OPERATION_SKIP_IDENTITYLOOKUPFAILED() -> SharedMessage:
    return SharedMessage(
        "OPERATION_SKIP_IDENTITYLOOKUPFAILED",
        "Skipped: the cached Close.io id could not be looked up, retrying with the next change.",
    )
