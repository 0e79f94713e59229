"""
Query specifications for identity stores.

Each query type collects optional filter predicates for one entity type. Unset
fields mean "no constraint"; all set fields are combined with a logical AND.
Attribute filters match only when the candidate's value list for a name is
exactly equal to the requested list (same values, same order).
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from identity_store.model import (
    AttributeValues,
    Group,
    IdentityType,
    Role,
    User,
    key_of,
    normalize_values,
)

logger = logging.getLogger(__name__)


class Range:
    """Pagination window made of an offset and an optional limit."""

    def __init__(self, offset: int = 0, limit: Optional[int] = None):
        if offset < 0:
            raise ValueError("Range offset cannot be negative")
        if limit is not None and limit < 0:
            raise ValueError("Range limit cannot be negative")
        self.offset = offset
        self.limit = limit

    @classmethod
    def of(cls, offset: int, limit: int) -> 'Range':
        return cls(offset, limit)

    def apply(self, results: Sequence[Any]) -> List[Any]:
        """Slice an already filtered result list."""
        end = None if self.limit is None else self.offset + self.limit
        return list(results[self.offset:end])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Range):
            return NotImplemented
        return (self.offset, self.limit) == (other.offset, other.limit)

    def __repr__(self) -> str:
        return f"Range(offset={self.offset}, limit={self.limit})"


class IdentityQuery:
    """
    Base query with the attribute filters, sorting and range every query shares.

    Queries created through a store (or the identity manager) are bound to it
    and can be run with execute().
    """

    def __init__(self, store: Any = None):
        self._store = store
        self.attribute_filters: Dict[str, List[str]] = {}
        self.sort_ascending: Optional[bool] = None
        self.range: Optional[Range] = None

    def set_attribute_filter(self, name: str, values: AttributeValues) -> 'IdentityQuery':
        self.attribute_filters[name] = normalize_values(values)
        return self

    add_attribute_filter = set_attribute_filter

    def sort(self, ascending: bool = True) -> 'IdentityQuery':
        self.sort_ascending = ascending
        return self

    def set_range(self, query_range: Optional[Range]) -> 'IdentityQuery':
        self.range = query_range
        return self

    def reset(self) -> 'IdentityQuery':
        """Clear every filter, keeping the store binding."""
        store = self._store
        self.__init__(store)
        return self

    def execute(self) -> List[Any]:
        if self._store is None:
            raise RuntimeError(f"{self.__class__.__name__} is not bound to an identity store")
        return self._store.execute_query(self, self.range)

    def has_attribute_filters(self) -> bool:
        return bool(self.attribute_filters)


class UserQuery(IdentityQuery):
    """Filters for users: key, names, email, enabled flag, role, group and attributes."""

    def __init__(self, store: Any = None):
        super().__init__(store)
        self.name: Optional[str] = None
        self.first_name: Optional[str] = None
        self.last_name: Optional[str] = None
        self.email: Optional[str] = None
        self.enabled: Optional[bool] = None
        self.role: Optional[str] = None
        self.related_group: Optional[str] = None

    def set_name(self, name: str) -> 'UserQuery':
        self.name = name
        return self

    def set_first_name(self, first_name: str) -> 'UserQuery':
        self.first_name = first_name
        return self

    def set_last_name(self, last_name: str) -> 'UserQuery':
        self.last_name = last_name
        return self

    def set_email(self, email: str) -> 'UserQuery':
        self.email = email
        return self

    def set_enabled(self, enabled: bool) -> 'UserQuery':
        self.enabled = enabled
        return self

    def set_role(self, role: Union[Role, str]) -> 'UserQuery':
        self.role = key_of(role)
        return self

    def set_related_group(self, group: Union[Group, str]) -> 'UserQuery':
        self.related_group = key_of(group)
        return self

    def has_direct_filters(self) -> bool:
        return any(value is not None for value in (
            self.name, self.first_name, self.last_name, self.email, self.enabled
        ))

    def has_relational_filters(self) -> bool:
        return self.role is not None or self.related_group is not None

    def matches_fields(self, user: User) -> bool:
        """Evaluate the direct-field predicates against a user."""
        if self.name is not None and user.key != self.name:
            return False
        if self.enabled is not None and user.enabled != self.enabled:
            return False
        if self.email is not None and user.email != self.email:
            return False
        if self.first_name is not None and user.first_name != self.first_name:
            return False
        if self.last_name is not None and user.last_name != self.last_name:
            return False
        return True


class GroupQuery(IdentityQuery):
    """Filters for groups: name, parent group, role, related user and attributes."""

    def __init__(self, store: Any = None):
        super().__init__(store)
        self.name: Optional[str] = None
        self.parent_group: Optional[str] = None
        self.role: Optional[str] = None
        self.related_user: Optional[str] = None

    def set_name(self, name: str) -> 'GroupQuery':
        self.name = name
        return self

    def set_parent_group(self, parent: Union[Group, str]) -> 'GroupQuery':
        self.parent_group = key_of(parent)
        return self

    def set_role(self, role: Union[Role, str]) -> 'GroupQuery':
        self.role = key_of(role)
        return self

    def set_related_user(self, user: Union[User, str]) -> 'GroupQuery':
        self.related_user = key_of(user)
        return self

    def has_direct_filters(self) -> bool:
        return self.name is not None or self.parent_group is not None

    def has_relational_filters(self) -> bool:
        return self.role is not None or self.related_user is not None

    def matches_fields(self, group: Group) -> bool:
        if self.name is not None and group.key != self.name:
            return False
        if self.parent_group is not None:
            parent = group.parent_group
            if parent is None or parent.key != self.parent_group:
                return False
        return True


class RoleQuery(IdentityQuery):
    """Filters for roles: name, owner (user), group and attributes."""

    def __init__(self, store: Any = None):
        super().__init__(store)
        self.name: Optional[str] = None
        self.owner: Optional[str] = None
        self.group: Optional[str] = None

    def set_name(self, name: str) -> 'RoleQuery':
        self.name = name
        return self

    def set_owner(self, owner: Union[User, str]) -> 'RoleQuery':
        self.owner = key_of(owner)
        return self

    def set_group(self, group: Union[Group, str]) -> 'RoleQuery':
        self.group = key_of(group)
        return self

    def has_direct_filters(self) -> bool:
        return self.name is not None

    def has_relational_filters(self) -> bool:
        return self.owner is not None or self.group is not None

    def matches_fields(self, role: Role) -> bool:
        return self.name is None or role.key == self.name


class MembershipQuery(IdentityQuery):
    """Filters for memberships; each unset part of the triple means "any"."""

    def __init__(self, store: Any = None):
        super().__init__(store)
        self.role: Optional[str] = None
        self.user: Optional[str] = None
        self.group: Optional[str] = None

    def set_role(self, role: Union[Role, str]) -> 'MembershipQuery':
        self.role = key_of(role)
        return self

    def set_user(self, user: Union[User, str]) -> 'MembershipQuery':
        self.user = key_of(user)
        return self

    def set_group(self, group: Union[Group, str]) -> 'MembershipQuery':
        self.group = key_of(group)
        return self


def attributes_match(entity: IdentityType, attribute_filters: Dict[str, List[str]]) -> bool:
    """
    Check an entity against attribute filters using exact-sequence semantics.

    Args:
        entity: Candidate entity with its attributes populated
        attribute_filters: Mapping of attribute name to the required value list

    Returns:
        True if, for every filter, the entity's values equal the requested values
    """
    for name, expected in attribute_filters.items():
        if entity.get_attribute_values(name) != list(expected):
            return False
    return True


def filter_by_attributes(entities: Iterable[IdentityType],
                         attribute_filters: Dict[str, List[str]]) -> List[IdentityType]:
    if not attribute_filters:
        return list(entities)
    return [entity for entity in entities if attributes_match(entity, attribute_filters)]


def unique(entities: Iterable[IdentityType]) -> List[IdentityType]:
    """Drop duplicate entities, keeping the first occurrence."""
    seen = set()
    result = []
    for entity in entities:
        if entity not in seen:
            seen.add(entity)
            result.append(entity)
    return result


def sort_by_key(entities: List[IdentityType], ascending: Optional[bool]) -> List[IdentityType]:
    if ascending is None:
        return entities
    return sorted(entities, key=lambda entity: entity.key, reverse=not ascending)
