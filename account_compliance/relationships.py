"""
Relationship Graph Module

Structural validation of parent/child account edges and cycle detection.
The graph owns no storage: callers fetch the relevant slice of edges (the
proposed parent's ancestry) and apply an edge only when it validates.
"""

from collections import deque
from typing import Any, Dict, Iterable, List, Set

from .models import AccountRelationship, RelationshipType


class RelationshipGraph:
    """Validates relationship edges and rejects cycles"""

    def validate(self, relationship: Any) -> List[str]:
        """
        Validate one edge.

        Args:
            relationship: AccountRelationship or dict with parent_account_id,
                child_account_id and relationship_type

        Returns:
            List of validation error messages, empty if valid
        """
        if isinstance(relationship, AccountRelationship):
            relationship = relationship.to_dict()

        errors = []
        parent_id = relationship.get('parent_account_id')
        child_id = relationship.get('child_account_id')

        if not parent_id:
            errors.append('Parent account ID is required')
        if not child_id:
            errors.append('Child account ID is required')

        relationship_type = relationship.get('relationship_type')
        if isinstance(relationship_type, str):
            try:
                relationship_type = RelationshipType(relationship_type)
            except ValueError:
                relationship_type = None
        if not isinstance(relationship_type, RelationshipType):
            errors.append('Relationship type is required')

        if parent_id and child_id and parent_id == child_id:
            errors.append('Parent and child account IDs cannot be the same')

        return errors

    def would_create_circular_reference(self, relationships: Iterable[Any],
                                        parent_id: str, child_id: str) -> bool:
        """
        Check whether adding parent_id -> child_id would close a cycle.

        Walks parent edges upward starting from parent_id's own parents,
        across any number of hops; reaching child_id means child_id is
        already an ancestor of parent_id.

        Args:
            relationships: Known edges, at least the ancestry of parent_id
            parent_id: Proposed parent
            child_id: Proposed child
        """
        if parent_id == child_id:
            return True

        parents_of = self._parent_index(relationships)

        visited: Set[str] = set()
        queue = deque(parents_of.get(parent_id, ()))
        while queue:
            current = queue.popleft()
            if current == child_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            queue.extend(parents_of.get(current, ()))

        return False

    @staticmethod
    def _parent_index(relationships: Iterable[Any]) -> Dict[str, List[str]]:
        """Map child id -> parent ids"""
        index: Dict[str, List[str]] = {}
        for relationship in relationships:
            if isinstance(relationship, AccountRelationship):
                parent, child = relationship.parent_account_id, relationship.child_account_id
            else:
                parent, child = relationship['parent_account_id'], relationship['child_account_id']
            index.setdefault(child, []).append(parent)
        return index
