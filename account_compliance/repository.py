"""
Account Repository Module

Storage access for accounts and their relationship edges. Account records
are handled in their stored dict form (sensitive fields already encrypted);
encryption and authorization happen in the orchestrator above this layer.
"""

from collections import deque
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from .async_storage import AsyncStorageInterface
from .errors import NotFoundError
from .models import AccountRelationship, AccountRelationships


class AccountRepository:
    """Account and relationship persistence over an async store"""

    ACCOUNTS_TABLE = "accounts"
    RELATIONSHIPS_TABLE = "account_relationships"

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    # Accounts

    async def find_by_id(self, account_id: str) -> Optional[Dict[str, Any]]:
        return await self.storage.load(self.ACCOUNTS_TABLE, account_id)

    async def exists(self, account_id: str) -> bool:
        return await self.storage.exists(self.ACCOUNTS_TABLE, account_id)

    async def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Persist a new account record (must carry its id)"""
        await self.storage.save(self.ACCOUNTS_TABLE, record['id'], record)
        return record

    async def update(self, account_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge changes into a stored record

        Raises:
            NotFoundError: if the account does not exist
        """
        record = await self.find_by_id(account_id)
        if record is None:
            raise NotFoundError("account", account_id)

        record.update(changes)
        record['id'] = account_id
        await self.storage.save(self.ACCOUNTS_TABLE, account_id, record)
        return record

    async def delete(self, account_id: str) -> bool:
        """Remove the account record only; edges are left untouched"""
        return await self.storage.delete(self.ACCOUNTS_TABLE, account_id)

    async def query(self, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose stored values equal every filter value"""
        return await self.storage.find(self.ACCOUNTS_TABLE, filters)

    async def list_all(self) -> List[Dict[str, Any]]:
        return await self.storage.load_all(self.ACCOUNTS_TABLE)

    async def search(self, query: Optional[str] = None, filters: Optional[Dict[str, Any]] = None,
                     sort_by: Optional[str] = None, descending: bool = False) -> List[Dict[str, Any]]:
        """
        Free-text search with filters and sorting over stored records.

        Only plaintext columns take part: the query matches name, industry,
        website, description and tags case-insensitively. Filters on name and
        industry are substring matches, a tags filter matches any tag, and
        every other filter is an equality test. Records missing the sort
        field come last in either direction.
        """
        records = await self.list_all()

        for key, value in (filters or {}).items():
            if value is None:
                continue
            records = [r for r in records if _filter_matches(r, key, value)]

        if query:
            needle = query.lower()
            records = [r for r in records if _query_matches(r, needle)]

        if sort_by:
            present = [r for r in records if r.get(sort_by) is not None]
            missing = [r for r in records if r.get(sort_by) is None]
            present.sort(key=lambda r: _sort_key(r[sort_by]), reverse=descending)
            records = present + missing

        return records

    async def find_by_tag(self, tag: str) -> List[Dict[str, Any]]:
        """Accounts carrying the tag, compared case-insensitively"""
        wanted = tag.lower()
        return [r for r in await self.list_all()
                if any(str(t).lower() == wanted for t in r.get('tags') or [])]

    async def find_many(self, account_ids: Iterable[str]) -> List[Dict[str, Any]]:
        """Load the listed accounts, skipping ids that no longer exist"""
        records = []
        for account_id in account_ids:
            record = await self.find_by_id(account_id)
            if record is not None:
                records.append(record)
        return records

    # Relationships

    async def get_relationship(self, relationship_id: str) -> Optional[AccountRelationship]:
        data = await self.storage.load(self.RELATIONSHIPS_TABLE, relationship_id)
        if data is None:
            return None
        return AccountRelationship.from_dict(data)

    async def find_relationship(self, parent_id: str, child_id: str) -> Optional[AccountRelationship]:
        records = await self.storage.find(self.RELATIONSHIPS_TABLE, {
            'parent_account_id': parent_id,
            'child_account_id': child_id,
        })
        if not records:
            return None
        return AccountRelationship.from_dict(records[0])

    async def get_relationships(self, account_id: str) -> AccountRelationships:
        """Edges where the account is the child (parent_relationships) or the parent"""
        as_child = await self.storage.find(self.RELATIONSHIPS_TABLE, {'child_account_id': account_id})
        as_parent = await self.storage.find(self.RELATIONSHIPS_TABLE, {'parent_account_id': account_id})
        return AccountRelationships(
            parent_relationships=[AccountRelationship.from_dict(r) for r in as_child],
            child_relationships=[AccountRelationship.from_dict(r) for r in as_parent],
        )

    async def add_relationship(self, relationship: AccountRelationship) -> AccountRelationship:
        await self.storage.save(self.RELATIONSHIPS_TABLE, relationship.id, relationship.to_dict())
        return relationship

    async def remove_relationship(self, relationship_id: str) -> bool:
        return await self.storage.delete(self.RELATIONSHIPS_TABLE, relationship_id)

    async def delete_relationships_for(self, account_id: str) -> int:
        """
        Delete every edge touching the account, in both directions.

        Idempotent: an account without edges deletes nothing and returns 0.
        """
        removed = await self.storage.delete_where(self.RELATIONSHIPS_TABLE, {'parent_account_id': account_id})
        removed += await self.storage.delete_where(self.RELATIONSHIPS_TABLE, {'child_account_id': account_id})
        return removed

    async def get_parent_ids(self, account_id: str) -> List[str]:
        records = await self.storage.find(self.RELATIONSHIPS_TABLE, {'child_account_id': account_id})
        return [r['parent_account_id'] for r in records]

    async def get_child_ids(self, account_id: str) -> List[str]:
        records = await self.storage.find(self.RELATIONSHIPS_TABLE, {'parent_account_id': account_id})
        return [r['child_account_id'] for r in records]

    async def collect_ancestors(self, account_id: str,
                                pending: Iterable[AccountRelationship] = (),
                                excluded_ids: Iterable[str] = ()) -> List[AccountRelationship]:
        """
        Gather the parent edges reachable upward from account_id.

        Args:
            account_id: Starting account
            pending: Edges not yet stored that should be treated as present
            excluded_ids: Stored edge ids to ignore (about to be removed)

        Returns:
            Every edge traversed, suitable for a cycle check
        """
        pending = list(pending)
        excluded = set(excluded_ids)

        edges: List[AccountRelationship] = []
        visited: Set[str] = set()
        queue = deque([account_id])
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)

            records = await self.storage.find(self.RELATIONSHIPS_TABLE, {'child_account_id': current})
            parents = [AccountRelationship.from_dict(r) for r in records if r['id'] not in excluded]
            parents.extend(r for r in pending if r.child_account_id == current)

            for relationship in parents:
                edges.append(relationship)
                queue.append(relationship.parent_account_id)

        return edges


SEARCH_FIELDS = ('name', 'industry', 'website', 'description')
SUBSTRING_FILTERS = ('name', 'industry')


def _query_matches(record: Dict[str, Any], needle: str) -> bool:
    for name in SEARCH_FIELDS:
        value = record.get(name)
        if isinstance(value, str) and needle in value.lower():
            return True
    return any(needle in str(tag).lower() for tag in record.get('tags') or [])


def _filter_matches(record: Dict[str, Any], key: str, value: Any) -> bool:
    if key in SUBSTRING_FILTERS:
        return str(value).lower() in str(record.get(key) or '').lower()
    if key == 'tags':
        wanted = {str(t).lower() for t in (value if isinstance(value, (list, tuple, set)) else [value])}
        return any(str(t).lower() in wanted for t in record.get('tags') or [])
    if isinstance(value, Enum):
        value = value.value
    return record.get(key) == value


def _sort_key(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value
