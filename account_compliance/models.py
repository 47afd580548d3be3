"""
Account Data Model Module

Business accounts, their addresses and the parent/child relationship edges
between them, plus the field-level validation rules applied before any
account reaches encryption or storage.
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .storage import StorageRecord


class AccountType(Enum):
    """Kind of business account"""
    CUSTOMER = "CUSTOMER"
    PROSPECT = "PROSPECT"
    PARTNER = "PARTNER"
    COMPETITOR = "COMPETITOR"
    OTHER = "OTHER"


class AccountStatus(Enum):
    """Account lifecycle status"""
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    PENDING = "PENDING"
    CLOSED = "CLOSED"


class RelationshipType(Enum):
    """Type of link between two accounts"""
    PARENT_CHILD = "PARENT_CHILD"
    AFFILIATE = "AFFILIATE"
    PARTNER = "PARTNER"
    SUBSIDIARY = "SUBSIDIARY"
    OTHER = "OTHER"


ADDRESS_FIELDS = ("street", "city", "state", "postal_code", "country")

# Attributes a caller may set on create or update
ACCOUNT_INPUT_FIELDS = frozenset({
    'name', 'industry', 'type', 'status', 'website', 'phone', 'email',
    'billing_address', 'shipping_address', 'description', 'annual_revenue',
    'employee_count', 'tags', 'custom_fields',
})

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_PATTERN = re.compile(r'^\+?[0-9]{10,15}$')


@dataclass
class Address:
    """Postal address; all five parts are required together"""
    street: str
    city: str
    state: str
    postal_code: str
    country: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Address':
        return cls(**{name: data.get(name) for name in ADDRESS_FIELDS})


@dataclass
class Account(StorageRecord):
    """
    Business account (customer, partner, prospect...)

    Sensitive fields (email, phone, address street/postal code and the
    custom-field map) hold ciphertext tokens while at rest.
    """
    name: str
    industry: str
    type: AccountType
    status: AccountStatus
    website: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    description: Optional[str] = None
    annual_revenue: Optional[float] = None
    employee_count: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    created_by: str = ""
    updated_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with enum values"""
        result = super().to_dict()
        result['type'] = self.type.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create Account from dictionary, restoring enums, addresses and timestamps"""
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        if isinstance(data.get('type'), str):
            data['type'] = AccountType(data['type'])
        if isinstance(data.get('status'), str):
            data['status'] = AccountStatus(data['status'])
        for key in ('billing_address', 'shipping_address'):
            if isinstance(data.get(key), dict):
                data[key] = Address.from_dict(data[key])
        data['tags'] = list(data.get('tags') or [])
        data['custom_fields'] = dict(data.get('custom_fields') or {})
        return cls(**data)


@dataclass
class AccountRelationship(StorageRecord):
    """Directed edge: parent_account_id -> child_account_id"""
    parent_account_id: str
    child_account_id: str
    relationship_type: RelationshipType
    created_by: str = ""
    updated_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['relationship_type'] = self.relationship_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountRelationship':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        if isinstance(data.get('relationship_type'), str):
            data['relationship_type'] = RelationshipType(data['relationship_type'])
        return cls(**data)


@dataclass
class AccountRelationships:
    """All edges touching one account"""
    parent_relationships: List[AccountRelationship] = field(default_factory=list)
    child_relationships: List[AccountRelationship] = field(default_factory=list)

    @property
    def all(self) -> List[AccountRelationship]:
        return self.parent_relationships + self.child_relationships

    def to_dict(self) -> Dict[str, Any]:
        return {
            'parent_relationships': [r.to_dict() for r in self.parent_relationships],
            'child_relationships': [r.to_dict() for r in self.child_relationships],
        }


@dataclass
class RelationshipChange:
    """One edge to add, seen from the account being updated"""
    target_account_id: str
    relationship_type: Optional[RelationshipType]
    is_parent: bool  # True when the target becomes the parent

    def edge_for(self, account_id: str):
        """Return (parent_id, child_id) for this change applied to account_id"""
        if self.is_parent:
            return self.target_account_id, account_id
        return account_id, self.target_account_id


@dataclass
class RelationshipUpdate:
    """Batch of relationship additions and removals for one account"""
    add: List[RelationshipChange] = field(default_factory=list)
    remove: List[str] = field(default_factory=list)

    def validate(self) -> List[str]:
        errors = []
        if not self.add and not self.remove:
            errors.append('At least one relationship operation (add or remove) must be provided')
            return errors

        for index, change in enumerate(self.add):
            if not change.target_account_id or not change.target_account_id.strip():
                errors.append(f'Target account ID is required for relationship at index {index}')
            if not isinstance(change.relationship_type, RelationshipType):
                errors.append(f'Relationship type is required for relationship at index {index}')

        for index, relationship_id in enumerate(self.remove):
            if not relationship_id or not relationship_id.strip():
                errors.append(f'Relationship ID is required for removal at index {index}')

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'add': [
                {
                    'target_account_id': c.target_account_id,
                    'relationship_type': c.relationship_type.value if c.relationship_type else None,
                    'is_parent': c.is_parent,
                }
                for c in self.add
            ],
            'remove': list(self.remove),
        }


# Validation

def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return bool(parsed.scheme and parsed.netloc)


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(re.sub(r'[\s()-]', '', phone)))


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_address(address: Any, prefix: str = '') -> List[str]:
    """Validate an Address (or address dict); all five parts are required"""
    if isinstance(address, Address):
        address = address.to_dict()
    if not isinstance(address, dict):
        return [f'{prefix} address must be an object'.strip()]

    error_prefix = f'{prefix} ' if prefix else ''
    labels = {
        'street': 'Street',
        'city': 'City',
        'state': 'State',
        'postal_code': 'Postal code',
        'country': 'Country',
    }
    return [
        f'{error_prefix}{labels[name]} is required'
        for name in ADDRESS_FIELDS
        if _blank(address.get(name))
    ]


def validate_account_data(data: Dict[str, Any], partial: bool = False) -> List[str]:
    """
    Validate account input.

    Args:
        data: Account fields keyed by attribute name
        partial: True for update deltas, which only validate the fields they carry

    Returns:
        List of validation error messages, empty if valid
    """
    errors = []

    if not partial or 'name' in data:
        if _blank(data.get('name')):
            errors.append('Account name is required')

    if not partial or 'industry' in data:
        if _blank(data.get('industry')):
            errors.append('Industry is required')

    if not partial or 'type' in data:
        if not _enum_member(AccountType, data.get('type')):
            errors.append('Account type is required')

    if not partial or 'status' in data:
        if not _enum_member(AccountStatus, data.get('status')):
            errors.append('Account status is required')

    email = data.get('email')
    if email and not is_valid_email(email):
        errors.append('Invalid email format')

    website = data.get('website')
    if website and not is_valid_url(website):
        errors.append('Invalid website URL format')

    phone = data.get('phone')
    if phone and not is_valid_phone(phone):
        errors.append('Invalid phone number format')

    for key, prefix in (('billing_address', 'billing'), ('shipping_address', 'shipping')):
        if data.get(key) is not None:
            errors.extend(validate_address(data[key], prefix))

    tags = data.get('tags')
    if tags is not None and not isinstance(tags, (list, tuple, set)):
        errors.append('Invalid tags format')

    custom_fields = data.get('custom_fields')
    if custom_fields is not None and not isinstance(custom_fields, dict):
        errors.append('Invalid custom_fields format')

    return errors


def validate_account_update(data: Dict[str, Any]) -> List[str]:
    """Validate an update delta; only the fields present are checked"""
    return validate_account_data(data, partial=True)


def validate_account(account: Account) -> List[str]:
    """Validate a fully built Account"""
    return validate_account_data(account_to_input(account))


def account_to_input(account: Account) -> Dict[str, Any]:
    """Plain attribute dict of an Account (enums and addresses kept as objects)"""
    return {
        'name': account.name,
        'industry': account.industry,
        'type': account.type,
        'status': account.status,
        'website': account.website,
        'phone': account.phone,
        'email': account.email,
        'billing_address': account.billing_address,
        'shipping_address': account.shipping_address,
        'tags': account.tags,
        'custom_fields': account.custom_fields,
    }


def normalize_account_input(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Coerce validated input into storage-ready attribute values.

    Enums become members, address dicts become Address objects and
    tag collections become lists. The caller's dict is not mutated.
    """
    result = dict(data)
    if 'type' in result:
        result['type'] = _enum_member(AccountType, result['type'])
    if 'status' in result:
        result['status'] = _enum_member(AccountStatus, result['status'])
    for key in ('billing_address', 'shipping_address'):
        if isinstance(result.get(key), dict):
            result[key] = Address.from_dict(result[key])
    if result.get('tags') is not None:
        result['tags'] = list(result['tags'])
    if result.get('custom_fields') is not None:
        result['custom_fields'] = dict(result['custom_fields'])
    return result


def serialize_account_input(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Storage form of a create/update delta.

    Unknown keys are dropped, enums become their values and addresses
    become dicts, matching the layout produced by Account.to_dict().
    """
    values = normalize_account_input(data)
    result = {}
    for key, value in values.items():
        if key not in ACCOUNT_INPUT_FIELDS:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Address):
            value = value.to_dict()
        result[key] = value
    return result


def new_account(data: Dict[str, Any], user_id: str, account_id: str) -> Account:
    """Build an Account from validated creation input"""
    now = datetime.now(timezone.utc)
    values = normalize_account_input(data)
    values = {k: v for k, v in values.items() if k in ACCOUNT_INPUT_FIELDS}
    values.setdefault('tags', [])
    values.setdefault('custom_fields', {})
    if values['tags'] is None:
        values['tags'] = []
    if values['custom_fields'] is None:
        values['custom_fields'] = {}
    return Account(
        id=account_id,
        created_at=now,
        updated_at=now,
        created_by=user_id,
        updated_by=user_id,
        **values
    )


def _enum_member(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None
