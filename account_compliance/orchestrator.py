"""
Compliance Orchestrator Module

The single path through which accounts and their relationships are read
and mutated. Every operation checks permissions first, encrypts sensitive
fields before they reach the store, decrypts them on the way out, and
records the operation in the audit trail. Also implements the data-subject
export and the complete-erasure workflow.
"""

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .audit import AuditEntry, AuditTrail, Page, paginate
from .encryption import AccountCipher, DecryptionReport
from .errors import (
    CircularReferenceError, CompliancePartialFailureError, NotFoundError,
    PermissionDeniedError, ValidationError,
)
from .logging_config import log_action
from .models import (
    Account, AccountRelationship, AccountRelationships, RelationshipChange,
    RelationshipType, RelationshipUpdate, new_account, serialize_account_input,
    validate_account_data, validate_account_update,
)
from .permissions import PermissionGate
from .relationships import RelationshipGraph
from .repository import AccountRepository

logger = logging.getLogger(__name__)


ENTITY_TYPE = "account"

DEFAULT_PAGE_SIZE = 10

# Stored columns a search may sort on
SORTABLE_FIELDS = frozenset({
    'name', 'industry', 'type', 'status', 'website', 'annual_revenue',
    'employee_count', 'created_at', 'updated_at',
})

UndoStep = Callable[[], Awaitable[Any]]


class EntityLocks:
    """One asyncio.Lock per entity id; multiple ids are taken in sorted order"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, *entity_ids: str):
        async with AsyncExitStack() as stack:
            for entity_id in sorted(set(entity_ids)):
                await stack.enter_async_context(self.get(entity_id))
            yield

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class AccountDataExport:
    """Everything held about one account, for a data-subject access request"""
    account: Account
    relationships: AccountRelationships
    audit_trail: List[AuditEntry]
    export_date: datetime
    exported_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account': self.account.to_dict(),
            'relationships': self.relationships.to_dict(),
            'audit_trail': [entry.to_dict() for entry in self.audit_trail],
            'export_date': self.export_date.isoformat(),
            'exported_by': self.exported_by,
        }


@dataclass
class ErasureResult:
    """Outcome of a complete erasure"""
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'message': self.message}


class ComplianceOrchestrator:
    """
    Account read/write path with encryption, authorization and auditing.

    Mutations hold the per-account lock of every account they touch, so
    concurrent changes to the same account are serialized. Relationship
    edges are additionally written under one graph-wide lock, taken after
    the account locks, because a cycle can close across accounts that no
    single batch touches. Reads do not lock.

    A mutation whose store writes or audit append fail partway is rolled
    back by compensating writes before the error propagates, so no change
    stays persisted without its audit entry.
    """

    def __init__(
        self,
        repository: AccountRepository,
        audit: AuditTrail,
        permissions: PermissionGate,
        cipher: AccountCipher,
        graph: Optional[RelationshipGraph] = None,
        locks: Optional[EntityLocks] = None,
        erasure_citation: Optional[str] = None,
    ):
        if erasure_citation is None:
            from .config import get_config
            erasure_citation = get_config().erasure_citation

        self.repository = repository
        self.audit = audit
        self.permissions = permissions
        self.cipher = cipher
        self.graph = graph or RelationshipGraph()
        self.locks = locks or EntityLocks()
        self.erasure_citation = erasure_citation
        self._graph_lock = asyncio.Lock()

    def _require(self, allowed: bool, user_id: str, action: str,
                 entity_id: Optional[str] = None) -> None:
        if allowed:
            return
        log_action(
            logger, "warning", f"Permission denied: {action} {ENTITY_TYPE}",
            user_id=user_id, action=action, resource=entity_id or ENTITY_TYPE
        )
        raise PermissionDeniedError(user_id, action, ENTITY_TYPE, entity_id)

    async def _roll_back(self, undo: List[UndoStep], user_id: str, action: str,
                         account_id: str) -> None:
        """Run compensating writes newest first; a failing step is logged and the rest still run"""
        for step in reversed(undo):
            try:
                await step()
            except Exception as e:
                log_action(logger, "error", f"Rollback step failed: {e}", user_id=user_id,
                           action=action, resource=account_id)
        log_action(logger, "warning", "Rolled back partially applied change", user_id=user_id,
                   action=action, resource=account_id, extra={'steps': len(undo)})

    async def _load_record(self, account_id: str) -> Dict[str, Any]:
        record = await self.repository.find_by_id(account_id)
        if record is None:
            raise NotFoundError(ENTITY_TYPE, account_id)
        return record

    def decrypt_account(self, record: Dict[str, Any]) -> Tuple[Account, DecryptionReport]:
        """
        Decrypt a stored record.

        Fields that fail to decrypt keep their stored value; the report
        says which fields those are.
        """
        report = self.cipher.decrypt_record(record)
        for name in report.failures:
            log_action(
                logger, "error", f"Failed to decrypt field {name}; returning stored value",
                action="decrypt", resource=record.get('id'),
                extra={'field': name}
            )
        return Account.from_dict(report.value), report

    # Accounts

    async def create_account(self, data: Dict[str, Any], user_id: str,
                             ip_address: Optional[str] = None,
                             user_agent: Optional[str] = None) -> Account:
        """
        Create an account

        Args:
            data: Account attributes (plaintext)
            user_id: Acting user

        Returns:
            The created account, decrypted

        Raises:
            PermissionDeniedError: user may not create accounts
            ValidationError: invalid input
        """
        self._require(self.permissions.can_create(user_id, ENTITY_TYPE), user_id, "create")

        errors = validate_account_data(data)
        if errors:
            raise ValidationError(errors)

        account = new_account(data, user_id, str(uuid.uuid4()))
        plaintext = account.to_dict()
        record = self.cipher.encrypt_record(plaintext)

        async with self.locks.hold(account.id):
            undo = [partial(self.repository.delete, account.id)]
            try:
                await self.repository.create(record)
                await self.audit.log_creation(ENTITY_TYPE, account.id, plaintext, user_id,
                                              ip_address, user_agent)
            except BaseException:
                await self._roll_back(undo, user_id, "create", account.id)
                raise

        log_action(logger, "info", "Account created", user_id=user_id,
                   action="create", resource=account.id)
        return account

    async def get_account(self, account_id: str, user_id: str,
                          ip_address: Optional[str] = None,
                          user_agent: Optional[str] = None) -> Account:
        """
        Read one account, decrypted

        Raises:
            PermissionDeniedError: user may not view the account
            NotFoundError: account does not exist
        """
        self._require(self.permissions.can_view(user_id, ENTITY_TYPE, account_id),
                      user_id, "view", account_id)

        record = await self._load_record(account_id)
        account, _ = self.decrypt_account(record)
        await self.audit.log_access(ENTITY_TYPE, account_id, None, user_id, ip_address, user_agent)
        return account

    async def list_accounts(self, user_id: str, filters: Optional[Dict[str, Any]] = None) -> List[Account]:
        """
        Accounts visible to the user, decrypted.

        Filters compare stored values for equality; filtering on an
        encrypted field is a ValidationError. Each returned account is
        access-audited.
        """
        if filters:
            self._reject_encrypted_columns(filters)
            records = await self.repository.query(filters)
        else:
            records = await self.repository.list_all()

        visible = self.permissions.filter_by_permission(user_id, ENTITY_TYPE, records)
        return await self._read_many(visible, user_id, "list")

    async def search_accounts(self, user_id: str, query: Optional[str] = None,
                              filters: Optional[Dict[str, Any]] = None,
                              sort_by: Optional[str] = None, descending: bool = False,
                              page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        """
        Search accounts visible to the user

        Args:
            user_id: Acting user
            query: Free text matched against name, industry, website,
                description and tags
            filters: Column filters; name and industry match substrings
            sort_by: Column to order by (see SORTABLE_FIELDS)
            descending: Reverse the sort order
            page: 1-based page number
            page_size: Accounts per page

        Returns:
            Page of decrypted accounts; totals count only visible accounts

        Raises:
            ValidationError: filter or sort on an encrypted or unknown column
        """
        if filters:
            self._reject_encrypted_columns(filters)
        if sort_by is not None and sort_by not in SORTABLE_FIELDS:
            raise ValidationError([f"Invalid sort field: {sort_by}"])

        records = await self.repository.search(query, filters, sort_by, descending)
        return await self._visible_page(records, user_id, page, page_size, "search")

    async def find_accounts_by_tag(self, user_id: str, tag: str, page: int = 1,
                                   page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        """Page of visible accounts carrying the tag (case-insensitive)"""
        if not tag or not tag.strip():
            raise ValidationError(["Tag is required"])

        records = await self.repository.find_by_tag(tag.strip())
        return await self._visible_page(records, user_id, page, page_size, "tag")

    def _reject_encrypted_columns(self, filters: Dict[str, Any]) -> None:
        # Ciphertext never equals a plaintext filter value
        encrypted = sorted(key for key in filters if self.cipher.policy.is_sensitive_field(key))
        if encrypted:
            raise ValidationError([f"Invalid filter field: {key} is encrypted" for key in encrypted])

    async def _visible_page(self, records: List[Dict[str, Any]], user_id: str,
                            page: int, page_size: int, listing: str) -> Page:
        visible = self.permissions.filter_by_permission(user_id, ENTITY_TYPE, records)
        result = paginate(visible, page, page_size)
        result.items = await self._read_many(result.items, user_id, listing)
        return result

    async def _read_many(self, records: List[Dict[str, Any]], user_id: str,
                         listing: str) -> List[Account]:
        """Decrypt a batch of records, auditing a read on each account returned"""
        accounts = []
        for record in records:
            accounts.append(self.decrypt_account(record)[0])
            await self.audit.log_access(ENTITY_TYPE, record['id'], {'listing': listing}, user_id)
        return accounts

    async def update_account(self, account_id: str, changes: Dict[str, Any], user_id: str,
                             ip_address: Optional[str] = None,
                             user_agent: Optional[str] = None) -> Account:
        """
        Apply a partial update

        Args:
            account_id: Account to update
            changes: Attributes to change (plaintext)
            user_id: Acting user

        Returns:
            The updated account, decrypted

        Raises:
            PermissionDeniedError: user may not update the account
            ValidationError: invalid delta
            NotFoundError: account does not exist
        """
        self._require(self.permissions.can_update(user_id, ENTITY_TYPE, account_id),
                      user_id, "update", account_id)

        errors = validate_account_update(changes)
        if errors:
            raise ValidationError(errors)

        delta = serialize_account_input(changes)
        encrypted = self.cipher.encrypt_record(delta)
        encrypted['updated_by'] = user_id
        encrypted['updated_at'] = datetime.now(timezone.utc).isoformat()

        async with self.locks.hold(account_id):
            previous = await self._load_record(account_id)
            undo = [partial(self.repository.create, previous)]
            try:
                record = await self.repository.update(account_id, encrypted)
                await self.audit.log_update(ENTITY_TYPE, account_id, delta, user_id,
                                            ip_address, user_agent)
            except BaseException:
                await self._roll_back(undo, user_id, "update", account_id)
                raise

        log_action(logger, "info", "Account updated", user_id=user_id,
                   action="update", resource=account_id,
                   extra={'fields': sorted(delta)})
        return self.decrypt_account(record)[0]

    async def delete_account(self, account_id: str, user_id: str,
                             ip_address: Optional[str] = None,
                             user_agent: Optional[str] = None) -> bool:
        """
        Ordinary delete: removes the account record only.

        Relationship edges and the audit trail are kept.

        Raises:
            PermissionDeniedError: user may not delete the account
            NotFoundError: account does not exist
        """
        self._require(self.permissions.can_delete(user_id, ENTITY_TYPE, account_id),
                      user_id, "delete", account_id)

        async with self.locks.hold(account_id):
            previous = await self._load_record(account_id)
            undo = [partial(self.repository.create, previous)]
            try:
                await self.repository.delete(account_id)
                await self.audit.log_deletion(ENTITY_TYPE, account_id, None, user_id,
                                              ip_address, user_agent)
            except BaseException:
                await self._roll_back(undo, user_id, "delete", account_id)
                raise

        log_action(logger, "info", "Account deleted", user_id=user_id,
                   action="delete", resource=account_id)
        return True

    # Relationships

    async def get_account_relationships(self, account_id: str, user_id: str) -> AccountRelationships:
        self._require(self.permissions.can_view(user_id, ENTITY_TYPE, account_id),
                      user_id, "view", account_id)

        if not await self.repository.exists(account_id):
            raise NotFoundError(ENTITY_TYPE, account_id)
        return await self.repository.get_relationships(account_id)

    async def get_child_accounts(self, account_id: str, user_id: str, page: int = 1,
                                 page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        """Page of direct children visible to the user"""
        return await self._related_accounts(account_id, user_id, "children", page, page_size)

    async def get_parent_accounts(self, account_id: str, user_id: str, page: int = 1,
                                  page_size: int = DEFAULT_PAGE_SIZE) -> Page:
        """Page of direct parents visible to the user"""
        return await self._related_accounts(account_id, user_id, "parents", page, page_size)

    async def _related_accounts(self, account_id: str, user_id: str, direction: str,
                                page: int, page_size: int) -> Page:
        self._require(self.permissions.can_view(user_id, ENTITY_TYPE, account_id),
                      user_id, "view", account_id)

        if not await self.repository.exists(account_id):
            raise NotFoundError(ENTITY_TYPE, account_id)

        if direction == "children":
            related_ids = await self.repository.get_child_ids(account_id)
        else:
            related_ids = await self.repository.get_parent_ids(account_id)

        records = await self.repository.find_many(related_ids)
        visible = self.permissions.filter_by_permission(user_id, ENTITY_TYPE, records)
        await self.audit.log_access(ENTITY_TYPE, account_id, {'related': direction}, user_id)

        result = paginate(visible, page, page_size)
        result.items = [self.decrypt_account(record)[0] for record in result.items]
        return result

    async def update_account_relationships(self, account_id: str,
                                           update: Union[RelationshipUpdate, Dict[str, Any]],
                                           user_id: str) -> AccountRelationships:
        """
        Add and remove relationship edges for one account.

        The whole batch is validated before anything is written: every
        target must exist, every added edge must be structurally valid and
        must not close a cycle, and every removed edge must touch the
        account. Edges that already exist are skipped.

        Raises:
            PermissionDeniedError: user may not update the account
            ValidationError: malformed batch or foreign edge removal
            NotFoundError: account, target or edge does not exist
            CircularReferenceError: an added edge would create a cycle
        """
        self._require(self.permissions.can_update(user_id, ENTITY_TYPE, account_id),
                      user_id, "update", account_id)

        if isinstance(update, dict):
            update = _parse_relationship_update(update)
        errors = update.validate()
        if errors:
            raise ValidationError(errors)

        target_ids = [change.target_account_id for change in update.add]
        async with self.locks.hold(account_id, *target_ids), self._graph_lock:
            if not await self.repository.exists(account_id):
                raise NotFoundError(ENTITY_TYPE, account_id)

            removals = await self._plan_removals(account_id, update.remove)
            additions = await self._plan_additions(account_id, update.add, user_id,
                                                   [r.id for r in removals])

            # Undo steps are registered before each write; both are idempotent
            undo: List[UndoStep] = []
            try:
                for relationship in removals:
                    undo.append(partial(self.repository.add_relationship, relationship))
                    await self.repository.remove_relationship(relationship.id)
                for relationship in additions:
                    undo.append(partial(self.repository.remove_relationship, relationship.id))
                    await self.repository.add_relationship(relationship)

                await self.audit.log_update(ENTITY_TYPE, account_id,
                                            {'relationships': update.to_dict()}, user_id)
            except BaseException:
                await self._roll_back(undo, user_id, "update_relationships", account_id)
                raise

        log_action(logger, "info", "Account relationships updated", user_id=user_id,
                   action="update_relationships", resource=account_id,
                   extra={'added': len(additions), 'removed': len(removals)})
        return await self.repository.get_relationships(account_id)

    async def _plan_removals(self, account_id: str,
                             relationship_ids: List[str]) -> List[AccountRelationship]:
        planned: Dict[str, AccountRelationship] = {}
        for relationship_id in relationship_ids:
            if relationship_id in planned:
                continue
            relationship = await self.repository.get_relationship(relationship_id)
            if relationship is None:
                raise NotFoundError("relationship", relationship_id)
            if account_id not in (relationship.parent_account_id, relationship.child_account_id):
                raise ValidationError([
                    f"Relationship {relationship_id} does not belong to account {account_id}"
                ])
            planned[relationship_id] = relationship
        return list(planned.values())

    async def _plan_additions(self, account_id: str, changes: List[RelationshipChange],
                              user_id: str, removals: List[str]) -> List[AccountRelationship]:
        planned: List[AccountRelationship] = []
        for change in changes:
            if not await self.repository.exists(change.target_account_id):
                raise NotFoundError(ENTITY_TYPE, change.target_account_id)

            parent_id, child_id = change.edge_for(account_id)
            now = datetime.now(timezone.utc)
            relationship = AccountRelationship(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                parent_account_id=parent_id,
                child_account_id=child_id,
                relationship_type=change.relationship_type,
                created_by=user_id,
                updated_by=user_id,
            )

            errors = self.graph.validate(relationship)
            if errors:
                raise ValidationError(errors)

            existing = await self.repository.find_relationship(parent_id, child_id)
            if (existing is not None and existing.id not in removals) or any(
                    r.parent_account_id == parent_id and r.child_account_id == child_id for r in planned):
                continue

            ancestry = await self.repository.collect_ancestors(parent_id, planned, removals)
            if self.graph.would_create_circular_reference(ancestry, parent_id, child_id):
                log_action(logger, "warning", "Rejected circular relationship",
                           user_id=user_id, action="update_relationships", resource=account_id,
                           extra={'parent_id': parent_id, 'child_id': child_id})
                raise CircularReferenceError(parent_id, child_id)

            planned.append(relationship)
        return planned

    # Compliance

    async def get_account_audit_trail(self, account_id: str, user_id: str,
                                      page: int = 1, page_size: Optional[int] = None) -> Page:
        """Audit entries for the account, newest first"""
        self._require(self.permissions.can_view(user_id, ENTITY_TYPE, account_id),
                      user_id, "view", account_id)
        return await self.audit.get_audit_trail(ENTITY_TYPE, account_id, page, page_size)

    async def export_account_data(self, account_id: str, user_id: str) -> AccountDataExport:
        """
        Assemble everything held about the account.

        The export itself is audited as the final step, so a later export
        includes the earlier one.

        Raises:
            PermissionDeniedError: user may not view the account
            NotFoundError: account does not exist
        """
        self._require(self.permissions.can_view(user_id, ENTITY_TYPE, account_id),
                      user_id, "view", account_id)

        record = await self._load_record(account_id)
        account, _ = self.decrypt_account(record)
        relationships = await self.repository.get_relationships(account_id)
        audit_export = await self.audit.export_audit_data(ENTITY_TYPE, account_id, user_id)

        export = AccountDataExport(
            account=account,
            relationships=relationships,
            audit_trail=audit_export.entries,
            export_date=audit_export.export_date,
            exported_by=user_id,
        )

        await self.audit.log_access(ENTITY_TYPE, account_id, {'reason': 'data_export'}, user_id)
        log_action(logger, "info", "Account data exported", user_id=user_id,
                   action="export", resource=account_id)
        return export

    async def completely_remove_account_data(self, account_id: str, user_id: str) -> ErasureResult:
        """
        Erase the account, every relationship edge touching it and its
        entire audit trail.

        All three steps are attempted and each is idempotent, so erasing an
        already-erased account succeeds and a failed erasure can be retried.

        Raises:
            PermissionDeniedError: user may not delete the account
            CompliancePartialFailureError: one or more steps failed
        """
        self._require(self.permissions.can_delete(user_id, ENTITY_TYPE, account_id),
                      user_id, "delete", account_id)

        failed: Dict[str, str] = {}
        name = None

        async with self.locks.hold(account_id):
            try:
                record = await self.repository.find_by_id(account_id)
                if record is not None:
                    name = record.get('name')
                await self.repository.delete(account_id)
            except Exception as e:
                failed['account'] = str(e)

            try:
                async with self._graph_lock:
                    await self.repository.delete_relationships_for(account_id)
            except Exception as e:
                failed['relationships'] = str(e)

            try:
                await self.audit.delete_audit_data(ENTITY_TYPE, account_id)
            except Exception as e:
                failed['audit'] = str(e)

        if failed:
            for step, reason in failed.items():
                log_action(logger, "error", f"Erasure step {step} failed: {reason}",
                           user_id=user_id, action="erase", resource=account_id,
                           extra={'step': step})
            raise CompliancePartialFailureError(account_id, failed)

        log_action(logger, "info", "Account data completely removed", user_id=user_id,
                   action="erase", resource=account_id)

        subject = f"Account {name} ({account_id})" if name else f"Account {account_id}"
        return ErasureResult(
            success=True,
            message=(
                f"{subject} has been completely removed from the system, including "
                f"all relationships and audit history, in compliance with {self.erasure_citation}"
            ),
        )


def _parse_relationship_update(data: Dict[str, Any]) -> RelationshipUpdate:
    """Build a RelationshipUpdate from its dict form; bad types surface in validate()"""
    changes = []
    for item in data.get('add') or []:
        relationship_type = item.get('relationship_type')
        if not isinstance(relationship_type, RelationshipType):
            try:
                relationship_type = RelationshipType(relationship_type)
            except ValueError:
                relationship_type = None
        changes.append(RelationshipChange(
            target_account_id=item.get('target_account_id') or "",
            relationship_type=relationship_type,
            is_parent=bool(item.get('is_parent')),
        ))
    return RelationshipUpdate(add=changes, remove=list(data.get('remove') or []))
