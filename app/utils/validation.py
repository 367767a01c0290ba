"""
Validation utilities for EVM addresses and reward amounts.
"""

import re
from typing import Optional

import structlog
from web3 import Web3

from app.core.exceptions import ValidationError


logger = structlog.get_logger(__name__)

EVM_ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class EvmValidator:
    """Validator for EVM ledger data."""

    @staticmethod
    def is_valid_address(address: Optional[str]) -> bool:
        """
        Validate the shape of an EVM address (0x followed by 40 hex digits).

        Mixed-case addresses are not required to carry a valid checksum;
        the ledger accepts any casing.
        """
        if not address or not isinstance(address, str):
            return False
        return bool(EVM_ADDRESS_PATTERN.match(address))

    @staticmethod
    def to_checksum(address: str) -> str:
        """Checksum form of a valid address, as the token contract expects it."""
        if not EvmValidator.is_valid_address(address):
            raise ValidationError(f"Invalid EVM address: {address}", {"address": address})
        return Web3.to_checksum_address(address.lower())


class AmountValidator:

    @staticmethod
    def parse_amount(value) -> int:
        """Parse a token amount from an int or decimal string. Floats are rejected."""
        if isinstance(value, bool) or isinstance(value, float):
            raise ValidationError("Token amounts must be integers or decimal strings", {"value": str(value)})
        try:
            amount = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid token amount: {value}", {"value": str(value)})
        if amount < 0:
            raise ValidationError("Token amounts cannot be negative", {"value": str(value)})
        return amount


def is_valid_evm_address(address: Optional[str]) -> bool:
    """Convenience function for address validation."""
    return EvmValidator.is_valid_address(address)
