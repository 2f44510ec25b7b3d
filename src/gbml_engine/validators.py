"""
Input validation for addresses and amounts.

This is the wallet-validation collaborator the router and workflow rely on:
addresses are checked and EIP-55 checksummed via web3 before any routing
happens, and disbursement amounts are checked as decimal strings.

Usage:
    from gbml_engine.validators import validate_eth_address, validate_amount_string

    to = validate_eth_address(raw_to, field_name="to")
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Pattern

from web3 import Web3

from .exceptions import ValidationError

# Ethereum address pattern (0x followed by 40 hex chars)
ETH_ADDRESS_PATTERN: Pattern[str] = re.compile(r"^0x[a-fA-F0-9]{40}$")

# Plain decimal literal: digits with an optional fractional part, no exponent
AMOUNT_PATTERN: Pattern[str] = re.compile(r"^\d+(\.\d+)?$")


def validate_string(
    value: Any,
    field_name: str = "value",
    max_length: Optional[int] = None,
    pattern: Optional[Pattern[str]] = None,
) -> str:
    """Validate and strip a required string value.

    Raises:
        ValidationError: If value is missing, not a string, too long or
            does not match ``pattern``.
    """
    if value is None:
        raise ValidationError(f"{field_name} is required", field=field_name)

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name)

    value = value.strip()
    if not value:
        raise ValidationError(f"{field_name} cannot be empty", field=field_name)

    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters",
            field=field_name,
        )

    if pattern is not None and not pattern.match(value):
        raise ValidationError(f"{field_name} has invalid format", field=field_name)

    return value


def is_valid_address(value: Any) -> bool:
    """Return True if ``value`` is a well-formed EVM address."""
    if not isinstance(value, str) or not ETH_ADDRESS_PATTERN.match(value):
        return False
    # Mixed-case input must carry a correct EIP-55 checksum
    if value[2:] != value[2:].lower() and value[2:] != value[2:].upper():
        return Web3.is_checksum_address(value)
    return True


def validate_eth_address(value: Any, field_name: str = "address") -> str:
    """Validate an EVM address and return its checksummed form.

    Raises:
        ValidationError: If the address is malformed or has a bad checksum
    """
    address = validate_string(value, field_name=field_name, pattern=ETH_ADDRESS_PATTERN)
    if not is_valid_address(address):
        raise ValidationError(
            f"{field_name} is not a valid checksummed address",
            field=field_name,
        )
    return Web3.to_checksum_address(address)


def validate_amount_string(value: Any, field_name: str = "amount") -> str:
    """Validate a positive decimal amount literal and return it stripped.

    Integers and ``Decimal`` values are accepted and rendered as strings;
    floats are rejected because their literal is not exact.

    Raises:
        ValidationError: If the value is not a positive plain decimal
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            f"{field_name} must be a decimal string",
            field=field_name,
        )
    if isinstance(value, (int, Decimal)):
        value = str(value)

    amount = validate_string(value, field_name=field_name, max_length=100)
    if not AMOUNT_PATTERN.match(amount):
        raise ValidationError(
            f"{field_name} must be a plain positive decimal number",
            field=field_name,
        )

    try:
        parsed = Decimal(amount)
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a valid decimal number", field=field_name)

    if parsed <= 0:
        raise ValidationError(f"{field_name} must be greater than zero", field=field_name)

    return amount


def validate_decimals(value: Any, field_name: str = "decimals") -> int:
    """Validate a token decimals value (uint8)."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    try:
        decimals = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    if decimals < 0 or decimals > 255:
        raise ValidationError(
            f"Invalid {field_name} value: {value}. Must be between 0 and 255.",
            field=field_name,
        )
    return decimals


__all__ = [
    "ETH_ADDRESS_PATTERN",
    "AMOUNT_PATTERN",
    "validate_string",
    "is_valid_address",
    "validate_eth_address",
    "validate_amount_string",
    "validate_decimals",
]
