"""
Audit Trail Module

Append-only audit log of entity lifecycle events. Payloads are sanitized
(sensitive keys redacted) and size-capped before storage, and entries are
hash-chained per entity for tamper detection. The only deletion path is
bulk erasure of one entity's trail.
"""

import asyncio
import hashlib
import json
import math
import re
import uuid
from dataclasses import dataclass, is_dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .async_storage import AsyncStorageInterface
from .storage import StorageRecord


REDACTED = "[REDACTED]"
DEPTH_EXCEEDED = "[MAX_DEPTH_EXCEEDED]"

# Matched case-insensitively as substrings of normalized key names
DEFAULT_SENSITIVE_TERMS = (
    "password", "secret", "token", "apikey", "creditcard",
    "ssn", "socialsecuritynumber", "dob", "dateofbirth",
    "email", "phone", "street", "postalcode",
)

# Terms too short to match as substrings; these must be a whole word of the key
WHOLE_WORD_TERMS = frozenset({"dob"})

KEY_WORD_PATTERN = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?![a-z])|\d+")

DEFAULT_MAX_DETAIL_CHARS = 10000
DEFAULT_MAX_DEPTH = 32


class AuditAction(Enum):
    """Kinds of audited operations"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ACCESS = "access"


# Sanitization

def normalize_key(key: Any) -> str:
    """Lower-case a key and drop separators so date_of_birth matches dateOfBirth"""
    return str(key).lower().replace("_", "").replace("-", "").replace(" ", "")


def key_words(key: Any) -> List[str]:
    """Split a key into lower-case words at separators and camelCase boundaries"""
    return [word.lower() for word in KEY_WORD_PATTERN.findall(str(key))]


def is_sensitive_key(key: Any, terms: Iterable[str] = DEFAULT_SENSITIVE_TERMS) -> bool:
    """
    True when any sensitive term is a substring of the normalized key, or,
    for WHOLE_WORD_TERMS, one of its words (userDob yes, adobe_id no)
    """
    normalized = normalize_key(key)
    words = None
    for term in terms:
        term = normalize_key(term)
        if term in WHOLE_WORD_TERMS:
            if words is None:
                words = key_words(key)
            if term in words:
                return True
        elif term in normalized:
            return True
    return False


def value_tag(value: Any) -> str:
    """Classify a value as one of null/bool/number/string/array/object/other"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "other"


def _to_plain(value: Any) -> Any:
    """Convert non-JSON values to a JSON-compatible form"""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return str(value)


def sanitize_payload(value: Any, terms: Iterable[str] = DEFAULT_SENSITIVE_TERMS,
                     max_depth: int = DEFAULT_MAX_DEPTH, _depth: int = 0) -> Any:
    """
    Build a redacted, JSON-compatible copy of value.

    Object keys matching a sensitive term are replaced by REDACTED; nesting
    deeper than max_depth is replaced by DEPTH_EXCEEDED. The input is never
    mutated.
    """
    tag = value_tag(value)

    if tag == "other":
        value = _to_plain(value)
        tag = value_tag(value)

    if tag in ("null", "bool", "string"):
        return value
    if tag == "number":
        if isinstance(value, float) and not math.isfinite(value):
            return str(value)
        return value

    if _depth >= max_depth:
        return DEPTH_EXCEEDED

    terms = tuple(terms)
    if tag == "array":
        return [sanitize_payload(item, terms, max_depth, _depth + 1) for item in value]

    return {
        str(key): REDACTED if is_sensitive_key(key, terms)
        else sanitize_payload(item, terms, max_depth, _depth + 1)
        for key, item in value.items()
    }


def limit_payload_size(data: Any, max_chars: int = DEFAULT_MAX_DETAIL_CHARS) -> Any:
    """Replace payloads whose JSON form exceeds max_chars with a truncated summary"""
    serialized = json.dumps(data, separators=(',', ':'), default=str)
    if len(serialized) <= max_chars:
        return data

    return {
        "_truncated": True,
        "_original_size": len(serialized),
        "summary": serialized[:max_chars] + "...",
    }


# Records

@dataclass
class AuditEntry(StorageRecord):
    """Immutable audit entry, hash-chained within its entity trail"""
    entity_type: str
    entity_id: str
    user_id: str
    action: AuditAction
    details: Dict[str, Any]
    sequence: int
    previous_hash: str = ""
    current_hash: str = ""
    user_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return self.created_at, self.sequence

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'user_id': self.user_id,
            'action': self.action.value,
            'details': self.details,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        if isinstance(data.get('action'), str):
            data['action'] = AuditAction(data['action'])
        return cls(**data)


@dataclass
class Page:
    """One page of a newest-first listing"""
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass
class AuditExport:
    """Portable export of one entity's audit trail, oldest entry first"""
    entity_type: str
    entity_id: str
    entries: List[AuditEntry]
    export_date: datetime
    exported_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'entries': [entry.to_dict() for entry in self.entries],
            'export_date': self.export_date.isoformat(),
            'exported_by': self.exported_by,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditExport':
        return cls(
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            entries=[AuditEntry.from_dict(e) for e in data['entries']],
            export_date=datetime.fromisoformat(data['export_date']),
            exported_by=data['exported_by'],
        )


def paginate(items: List[Any], page: int = 1, page_size: int = 10) -> Page:
    page = max(page or 1, 1)
    page_size = max(page_size or 10, 1)
    start = (page - 1) * page_size
    return Page(
        items=items[start:start + page_size],
        total=len(items),
        page=page,
        page_size=page_size,
        total_pages=math.ceil(len(items) / page_size),
    )


class AuditTrail:
    """
    Append-only audit trail backed by an async store.

    Appends are serialized through one lock so that sequence numbers (the
    tiebreak for equal timestamps) and per-entity hash chains stay consistent.
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        table_name: str = "audit_entries",
        user_names: Optional[Dict[str, str]] = None,
        sensitive_terms: Iterable[str] = DEFAULT_SENSITIVE_TERMS,
        max_detail_chars: int = DEFAULT_MAX_DETAIL_CHARS,
        max_depth: int = DEFAULT_MAX_DEPTH,
        default_page_size: int = 10,
        ip_address: str = "127.0.0.1",
        user_agent: str = "AuditTrail/1.0",
    ):
        self.storage = storage
        self.table_name = table_name
        self.sensitive_terms = tuple(sensitive_terms)
        self.max_detail_chars = max_detail_chars
        self.max_depth = max_depth
        self.default_page_size = default_page_size
        self.default_ip_address = ip_address
        self.default_user_agent = user_agent
        self._user_names: Dict[str, str] = dict(user_names or {})
        self._sequence: Optional[int] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, storage: AsyncStorageInterface, config=None, **kwargs) -> 'AuditTrail':
        if config is None:
            from .config import get_config
            config = get_config()
        return cls(
            storage,
            max_detail_chars=config.audit_max_detail_chars,
            max_depth=config.audit_max_depth,
            default_page_size=config.audit_default_page_size,
            ip_address=config.audit_ip_address,
            user_agent=config.audit_user_agent,
            **kwargs
        )

    def set_user_name(self, user_id: str, user_name: str) -> None:
        """Register the display name resolved onto entries for user_id"""
        self._user_names[user_id] = user_name

    def sanitize(self, data: Any) -> Any:
        """Redact and size-cap a payload"""
        if data is None:
            return None
        sanitized = sanitize_payload(data, self.sensitive_terms, self.max_depth)
        return limit_payload_size(sanitized, self.max_detail_chars)

    # Logging

    async def log_creation(self, entity_type: str, entity_id: str, data: Any, user_id: str,
                           ip_address: Optional[str] = None,
                           user_agent: Optional[str] = None) -> AuditEntry:
        """Log entity creation with a sanitized snapshot"""
        return await self._append(entity_type, entity_id, user_id, AuditAction.CREATE,
                                  {'created_entity': self.sanitize(data)}, ip_address, user_agent)

    async def log_update(self, entity_type: str, entity_id: str, changes: Any, user_id: str,
                         ip_address: Optional[str] = None,
                         user_agent: Optional[str] = None) -> AuditEntry:
        """Log entity update with the sanitized delta"""
        return await self._append(entity_type, entity_id, user_id, AuditAction.UPDATE,
                                  {'changes': self.sanitize(changes)}, ip_address, user_agent)

    async def log_deletion(self, entity_type: str, entity_id: str, data: Any, user_id: str,
                           ip_address: Optional[str] = None,
                           user_agent: Optional[str] = None) -> AuditEntry:
        """Log entity deletion"""
        details = {'deleted_entity_id': entity_id}
        if data:
            details['context'] = self.sanitize(data)
        return await self._append(entity_type, entity_id, user_id, AuditAction.DELETE,
                                  details, ip_address, user_agent)

    async def log_access(self, entity_type: str, entity_id: str, data: Any, user_id: str,
                         ip_address: Optional[str] = None,
                         user_agent: Optional[str] = None) -> AuditEntry:
        """Log entity access; data may carry a reason such as data_export"""
        details = {'access_type': 'read'}
        if data:
            sanitized = self.sanitize(data)
            if isinstance(sanitized, dict):
                details.update(sanitized)
            else:
                details['context'] = sanitized
        return await self._append(entity_type, entity_id, user_id, AuditAction.ACCESS,
                                  details, ip_address, user_agent)

    async def _append(self, entity_type: str, entity_id: str, user_id: str, action: AuditAction,
                      details: Dict[str, Any], ip_address: Optional[str],
                      user_agent: Optional[str]) -> AuditEntry:
        async with self._lock:
            if self._sequence is None:
                self._sequence = await self._load_last_sequence()
            previous = await self._load_entity_entries(entity_type, entity_id)

            now = datetime.now(timezone.utc)
            entry = AuditEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                user_name=self._user_names.get(user_id),
                action=action,
                details=details,
                sequence=self._sequence + 1,
                previous_hash=previous[-1].current_hash if previous else "",
                ip_address=ip_address or self.default_ip_address,
                user_agent=user_agent or self.default_user_agent,
            )
            entry.current_hash = entry.calculate_hash()

            await self.storage.save(self.table_name, entry.id, entry.to_dict())
            self._sequence = entry.sequence
            return entry

    async def _load_last_sequence(self) -> int:
        records = await self.storage.load_all(self.table_name)
        return max((r.get('sequence', 0) for r in records), default=0)

    async def _load_entity_entries(self, entity_type: str, entity_id: str) -> List[AuditEntry]:
        """Entries for one entity, oldest first"""
        records = await self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id,
        })
        return sorted((AuditEntry.from_dict(r) for r in records), key=lambda e: e.sort_key)

    async def _load_where(self, predicate) -> List[AuditEntry]:
        records = await self.storage.load_all(self.table_name)
        entries = [AuditEntry.from_dict(r) for r in records]
        return sorted((e for e in entries if predicate(e)), key=lambda e: e.sort_key, reverse=True)

    # Queries

    async def get_audit_trail(self, entity_type: str, entity_id: str,
                              page: int = 1, page_size: Optional[int] = None) -> Page:
        """Entries for one entity, newest first"""
        entries = await self._load_entity_entries(entity_type, entity_id)
        entries.reverse()
        return paginate(entries, page, page_size or self.default_page_size)

    async def get_entries_by_user(self, user_id: str, page: int = 1,
                                  page_size: Optional[int] = None) -> Page:
        entries = await self._load_where(lambda e: e.user_id == user_id)
        return paginate(entries, page, page_size or self.default_page_size)

    async def get_entries_by_action(self, action: AuditAction, page: int = 1,
                                    page_size: Optional[int] = None) -> Page:
        entries = await self._load_where(lambda e: e.action == action)
        return paginate(entries, page, page_size or self.default_page_size)

    async def get_entries_by_date_range(self, start_time: datetime, end_time: datetime,
                                        page: int = 1, page_size: Optional[int] = None) -> Page:
        """Entries with start_time <= timestamp <= end_time, newest first"""
        entries = await self._load_where(lambda e: start_time <= e.created_at <= end_time)
        return paginate(entries, page, page_size or self.default_page_size)

    async def count_entries(self) -> int:
        return await self.storage.count(self.table_name)

    # Export and erasure

    async def export_audit_data(self, entity_type: str, entity_id: str,
                                exported_by: str = "system") -> AuditExport:
        """Every entry for one entity, oldest first, with export metadata"""
        entries = await self._load_entity_entries(entity_type, entity_id)
        return AuditExport(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=entries,
            export_date=datetime.now(timezone.utc),
            exported_by=exported_by,
        )

    async def delete_audit_data(self, entity_type: str, entity_id: str) -> int:
        """
        Purge every entry for one entity.

        Idempotent: a second call finds nothing and returns 0.
        """
        async with self._lock:
            return await self.storage.delete_where(self.table_name, {
                'entity_type': entity_type,
                'entity_id': entity_id,
            })

    async def verify_integrity(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        """
        Verify hashes and chain continuity of one entity trail

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        entries = await self._load_entity_entries(entity_type, entity_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash,
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash,
                })
            previous_hash = entry.current_hash

        return result
