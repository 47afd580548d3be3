"""
Sensitive Field Policy Module

The single, inspectable list of account and address attributes treated as
sensitive. Field-level encryption picks its targets from this policy and the
display masking helpers below use the same list.
"""

import copy
from dataclasses import dataclass
from typing import Optional, Tuple

from .models import Account, Address


CUSTOM_FIELDS_MASK = {"_masked": "Contains sensitive data"}


@dataclass(frozen=True)
class SensitiveFieldPolicy:
    """Which account fields are encrypted at rest and masked for display"""
    # Plain string fields on the account itself
    account_fields: Tuple[str, ...] = ("email", "phone")
    # Address-valued fields whose sub-fields are protected
    address_fields: Tuple[str, ...] = ("billing_address", "shipping_address")
    # Sub-fields of an address that are protected
    address_subfields: Tuple[str, ...] = ("street", "postal_code")
    # Free-form map encrypted as one opaque unit
    blob_fields: Tuple[str, ...] = ("custom_fields",)

    @property
    def all_fields(self) -> Tuple[str, ...]:
        return self.account_fields + self.address_fields + self.blob_fields + self.address_subfields

    def is_sensitive_field(self, field_name: str) -> bool:
        """True for top-level or nested address fields listed in the policy"""
        return field_name in self.all_fields

    def sensitive_subset(self, data: dict) -> dict:
        """Keys of data that the policy protects"""
        return {k: v for k, v in data.items() if self.is_sensitive_field(k)}


DEFAULT_POLICY = SensitiveFieldPolicy()


def mask_sensitive_data(value: Optional[str], field_name: str) -> Optional[str]:
    """
    Mask a sensitive value for display or logging.

    Args:
        value: Plaintext value
        field_name: Field the value belongs to, selects the masking strategy

    Returns:
        Masked value; empty/None values are returned unchanged
    """
    if not value:
        return value

    if field_name == "email":
        local_part, _, domain = value.partition("@")
        if not domain:
            return value
        return f"{local_part[:1]}{'*' * 6}@{domain}"

    if field_name == "phone":
        if len(value) <= 4:
            return "*" * len(value)
        return f"{'*' * (len(value) - 4)}{value[-4:]}"

    if field_name == "street":
        parts = value.split(" ")
        if len(parts) <= 1:
            return "*" * len(value)
        return f"{parts[0]} {'*' * 9}"

    if field_name == "postal_code":
        return f"{value[:1]}{'*' * (len(value) - 1)}"

    return "*" * len(value)


def mask_account(account: Account, policy: SensitiveFieldPolicy = DEFAULT_POLICY) -> Account:
    """Return a copy of a decrypted account with every sensitive field masked"""
    if account is None:
        return account

    masked = copy.deepcopy(account)

    for name in policy.account_fields:
        setattr(masked, name, mask_sensitive_data(getattr(masked, name), name))

    for name in policy.address_fields:
        address: Optional[Address] = getattr(masked, name)
        if address is None:
            continue
        for sub in policy.address_subfields:
            setattr(address, sub, mask_sensitive_data(getattr(address, sub), sub))

    for name in policy.blob_fields:
        if getattr(masked, name):
            setattr(masked, name, dict(CUSTOM_FIELDS_MASK))

    return masked
