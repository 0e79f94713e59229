"""
Identity store contract and error taxonomy.

This module defines the abstract base class every identity store backend must
implement, the exceptions raised at the store boundary, and the helpers the
backends share (ownership checks, query dispatch, password delegation).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from identity_store.credentials import PasswordEncoder, PlainTextPasswordEncoder
from identity_store.logging_setup import security_logger
from identity_store.model import (
    AttributeValues,
    Group,
    IdentityType,
    Membership,
    Role,
    User,
)
from identity_store.query import (
    GroupQuery,
    IdentityQuery,
    MembershipQuery,
    Range,
    RoleQuery,
    UserQuery,
)

logger = logging.getLogger(__name__)

PASSWORD_ATTRIBUTE = 'userPassword'


class IdentityStoreError(Exception):
    """Base exception for identity store failures."""
    pass


class DuplicateKeyError(IdentityStoreError):
    """Raised when creating an entity whose key already exists."""
    pass


class BackendUnavailableError(IdentityStoreError):
    """Raised when the backing database, directory or file system cannot be reached."""
    pass


class SchemaMismatchError(IdentityStoreError, TypeError):
    """Raised when an entity created by another backend is passed to a store."""
    pass


class IdentityStore(ABC):
    """
    Abstract base class for identity stores.

    Every backend must implement the entity lifecycle operations and one query
    method per query type. Attribute and password operations are shared: the
    entity's change handler, installed by the owning store, persists mutations.
    """

    store_type: Optional[str] = None
    supports_sorting = True

    # Concrete entity classes owned by the backend
    user_class: Type[User] = User
    group_class: Type[Group] = Group
    role_class: Type[Role] = Role

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 password_encoder: Optional[PasswordEncoder] = None):
        """
        Initialize the identity store.

        Args:
            config: Backend configuration section
            password_encoder: Strategy used to encode and compare passwords
        """
        self.config = config or {}
        self.password_encoder = password_encoder or PlainTextPasswordEncoder()

    # Users

    @abstractmethod
    def create_user(self, name: str) -> User:
        pass

    @abstractmethod
    def get_user(self, name: str) -> Optional[User]:
        pass

    @abstractmethod
    def remove_user(self, user: User) -> None:
        pass

    # Groups

    @abstractmethod
    def create_group(self, name: str, parent: Optional[Group] = None) -> Group:
        pass

    @abstractmethod
    def get_group(self, name: str) -> Optional[Group]:
        pass

    @abstractmethod
    def remove_group(self, group: Group) -> None:
        pass

    # Roles

    @abstractmethod
    def create_role(self, name: str) -> Role:
        pass

    @abstractmethod
    def get_role(self, name: str) -> Optional[Role]:
        pass

    @abstractmethod
    def remove_role(self, role: Role) -> None:
        pass

    # Memberships

    @abstractmethod
    def create_membership(self, role: Role, user: User, group: Group) -> Membership:
        pass

    @abstractmethod
    def remove_membership(self, role: Union[Role, str], user: Union[User, str],
                          group: Union[Group, str]) -> None:
        pass

    @abstractmethod
    def get_membership(self, role: Union[Role, str], user: Union[User, str],
                       group: Union[Group, str]) -> Optional[Membership]:
        pass

    # Queries

    @abstractmethod
    def _query_users(self, query: UserQuery, query_range: Optional[Range]) -> List[User]:
        pass

    @abstractmethod
    def _query_groups(self, query: GroupQuery, query_range: Optional[Range]) -> List[Group]:
        pass

    @abstractmethod
    def _query_roles(self, query: RoleQuery, query_range: Optional[Range]) -> List[Role]:
        pass

    @abstractmethod
    def _query_memberships(self, query: MembershipQuery,
                           query_range: Optional[Range]) -> List[Membership]:
        pass

    def execute_query(self, query: IdentityQuery, query_range: Optional[Range] = None) -> List[Any]:
        """
        Evaluate a query specification against this store.

        Args:
            query: User, group, role or membership query
            query_range: Pagination window; defaults to the query's own range

        Returns:
            Matching entities, in backend order unless the query asks for sorting

        Raises:
            TypeError: If the query type is not supported
        """
        if query_range is None:
            query_range = query.range

        if isinstance(query, UserQuery):
            results = self._query_users(query, query_range)
        elif isinstance(query, GroupQuery):
            results = self._query_groups(query, query_range)
        elif isinstance(query, RoleQuery):
            results = self._query_roles(query, query_range)
        elif isinstance(query, MembershipQuery):
            results = self._query_memberships(query, query_range)
        else:
            raise TypeError(f"Unsupported query type: {type(query).__name__}")

        logger.debug(f"{self.__class__.__name__} {type(query).__name__} returned {len(results)} results")
        return results

    def create_user_query(self) -> UserQuery:
        return UserQuery(self)

    def create_group_query(self) -> GroupQuery:
        return GroupQuery(self)

    def create_role_query(self) -> RoleQuery:
        return RoleQuery(self)

    def create_membership_query(self) -> MembershipQuery:
        return MembershipQuery(self)

    # Attributes

    def set_attribute(self, entity: IdentityType, name: str, values: AttributeValues) -> None:
        self._check_owned(entity)
        entity.set_attribute(name, values)

    def remove_attribute(self, entity: IdentityType, name: str) -> None:
        self._check_owned(entity)
        entity.remove_attribute(name)

    def get_attribute_values(self, entity: IdentityType, name: str) -> Optional[List[str]]:
        self._check_owned(entity)
        return entity.get_attribute_values(name)

    def get_attributes(self, entity: IdentityType) -> Dict[str, List[str]]:
        self._check_owned(entity)
        return entity.get_attributes()

    # Credentials

    def validate_password(self, user: User, password: str) -> bool:
        """
        Compare a raw password against the value stored for the user.

        Args:
            user: User owned by this store
            password: Raw password supplied by the caller

        Returns:
            True if the encoder accepts the password
        """
        self._check_owned(user, self.user_class)
        stored = user.get_attribute(PASSWORD_ATTRIBUTE)
        valid = stored is not None and self.password_encoder.validate(user, password, stored)
        security_logger.log_authentication_attempt(self.store_type or 'identity_store', user.key, valid)
        return valid

    def update_password(self, user: User, password: str) -> None:
        self._check_owned(user, self.user_class)
        encoded = self.password_encoder.encode(user, password)
        user.set_attribute(PASSWORD_ATTRIBUTE, encoded)
        security_logger.log_password_change(self.store_type or 'identity_store', user.key)

    def close(self) -> None:
        """Release backend resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Helpers

    def _owned_classes(self) -> Tuple[type, ...]:
        return (self.user_class, self.group_class, self.role_class)

    def _check_owned(self, entity: Any, *classes: type) -> None:
        """
        Ensure an entity was created by this backend.

        Raises:
            SchemaMismatchError: If the entity belongs to another backend
        """
        expected = classes or self._owned_classes()
        if not isinstance(entity, expected):
            raise SchemaMismatchError(
                f"{self.__class__.__name__} cannot handle {type(entity).__name__}; "
                f"expected one of {', '.join(cls.__name__ for cls in expected)}"
            )

    def _key(self, value: Union[IdentityType, str, None], cls: type) -> Optional[str]:
        """Resolve an entity or key argument to a key, checking ownership of entities."""
        if value is None:
            return None
        if isinstance(value, IdentityType):
            self._check_owned(value, cls)
            return value.key
        return str(value)

    @staticmethod
    def _apply_range(results: List[Any], query_range: Optional[Range]) -> List[Any]:
        if query_range is None:
            return results
        return query_range.apply(results)
