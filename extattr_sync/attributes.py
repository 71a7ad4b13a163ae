"""
Extension attribute slot handling.

This module knows the 15 extension attribute slots, the clear marker, and how an
attribute map is reshaped for the Graph payload and the Exchange cmdlet parameters.
"""

import re
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

SLOT_COUNT = 15
ATTRIBUTE_PREFIX = 'extensionAttribute'
CUSTOM_ATTRIBUTE_PREFIX = 'CustomAttribute'

ATTRIBUTE_SLOTS = tuple(f"{ATTRIBUTE_PREFIX}{i}" for i in range(1, SLOT_COUNT + 1))

# Explicit "unset this attribute"; omitting a key means "leave unchanged"
CLEAR = None

_SLOT_PATTERN = re.compile(rf'^{ATTRIBUTE_PREFIX}(\d+)$')


def slot_index(name: str) -> Optional[int]:
    """
    Return the slot number for an attribute name.

    Args:
        name: Attribute name such as 'extensionAttribute7'

    Returns:
        Slot number in 1..15, or None if the name is not a recognized slot
    """
    match = _SLOT_PATTERN.match(str(name))
    if not match:
        return None

    index = int(match.group(1))
    if 1 <= index <= SLOT_COUNT and name == f"{ATTRIBUTE_PREFIX}{index}":
        return index
    return None


def is_attribute_slot(name: str) -> bool:
    """Check whether a name is one of the 15 recognized slots."""
    return slot_index(name) is not None


def filter_attributes(mapping: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Keep only recognized slot names, dropping anything else with a warning.

    Args:
        mapping: Caller supplied attribute name -> value mapping

    Returns:
        AttributeMap containing recognized slots only
    """
    attributes = {}
    for name, value in mapping.items():
        if not is_attribute_slot(name):
            logger.warning(f"Ignoring unrecognized attribute '{name}'")
            continue
        attributes[name] = CLEAR if value is None else str(value)
    return attributes


def map_to_custom_attributes(mapping: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Translate extensionAttributeN keys into Exchange CustomAttributeN parameters.

    Values are preserved, including the clear marker. Keys that are not a
    recognized slot are left out and reported, never raised.

    Args:
        mapping: AttributeMap keyed by extensionAttributeN

    Returns:
        Parameter dictionary keyed by CustomAttributeN (may be empty)
    """
    parameters = {}
    for name, value in mapping.items():
        index = slot_index(name)
        if index is None:
            logger.info(f"Attribute '{name}' has no Exchange counterpart, skipping")
            continue
        parameters[f"{CUSTOM_ATTRIBUTE_PREFIX}{index}"] = value

    return parameters


def build_primary_payload(mapping: Dict[str, Any]) -> Dict[str, Dict[str, Optional[str]]]:
    """Shape an AttributeMap into the Graph user attribute bag."""
    return {
        'onPremisesExtensionAttributes': {
            name: value for name, value in mapping.items() if is_attribute_slot(name)
        }
    }


def describe_attributes(mapping: Dict[str, Any]) -> str:
    """Render an AttributeMap for log lines, showing clears explicitly."""
    parts = []
    for name in sorted(mapping, key=lambda n: slot_index(n) or 0):
        value = mapping[name]
        parts.append(f"{name}=<clear>" if value is CLEAR else f"{name}='{value}'")
    return ', '.join(parts)
