"""Helpers for picking apart Active Directory distinguished names."""
from __future__ import annotations

from typing import List, Tuple


def split_dn(distinguished_name: str) -> List[Tuple[str, str]]:
    """Split a DN into ``(attribute, value)`` pairs, honouring ``\\,`` escapes."""

    components: List[Tuple[str, str]] = []
    if not distinguished_name:
        return components

    current: List[str] = []
    escaped = False
    raw_parts: List[str] = []
    for char in distinguished_name:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            current.append(char)
            escaped = True
        elif char == ",":
            raw_parts.append("".join(current))
            current = []
        else:
            current.append(char)
    raw_parts.append("".join(current))

    for part in raw_parts:
        attribute, sep, value = part.strip().partition("=")
        if not sep:
            continue
        components.append((attribute.strip(), value.strip()))
    return components


def _unescape(value: str) -> str:
    result: List[str] = []
    escaped = False
    for char in value:
        if escaped:
            result.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        else:
            result.append(char)
    return "".join(result)


def _join(components: List[Tuple[str, str]]) -> str:
    return ",".join(f"{attribute}={value}" for attribute, value in components)


def extract_common_name(distinguished_name: str) -> str:
    """Return the leading ``CN=`` value of a DN, or an empty string.

    ``CN=LSS-App-Office,OU=Groups,DC=example,DC=com`` yields ``LSS-App-Office``.
    DNs that do not start with a common name (an OU, a domain root) yield ``""``.
    """

    components = split_dn(distinguished_name or "")
    if not components:
        return ""
    attribute, value = components[0]
    if attribute.upper() != "CN":
        return ""
    return _unescape(value)


def organizational_unit_from_dn(distinguished_name: str) -> str:
    """Return the OU path an object lives in, starting at its first ``OU=`` component.

    The object's own ``CN=`` prefix (and any intermediate containers) is dropped:
    ``CN=PC01,OU=Floor2,OU=Workstations,DC=example,DC=com`` yields
    ``OU=Floor2,OU=Workstations,DC=example,DC=com``. Objects that sit directly
    in a container such as ``CN=Computers`` have no OU and yield ``""``.
    """

    components = split_dn(distinguished_name or "")
    for index, (attribute, _value) in enumerate(components):
        if index == 0:
            continue
        if attribute.upper() == "OU":
            return _join(components[index:])
    return ""


def parent_dn(distinguished_name: str) -> str:
    components = split_dn(distinguished_name or "")
    return _join(components[1:])


def domain_to_base_dn(domain: str) -> str:
    """``example.com`` -> ``DC=example,DC=com``."""

    labels = [label for label in (domain or "").strip().split(".") if label]
    return ",".join(f"DC={label}" for label in labels)


def escape_filter_value(value: str) -> str:
    """Escape a value for use inside an LDAP search filter (RFC 4515)."""

    replacements = {
        "\\": r"\5c",
        "*": r"\2a",
        "(": r"\28",
        ")": r"\29",
        "\0": r"\00",
    }
    return "".join(replacements.get(char, char) for char in value)


__all__ = [
    "domain_to_base_dn",
    "escape_filter_value",
    "extract_common_name",
    "organizational_unit_from_dn",
    "parent_dn",
    "split_dn",
]
