"""
Identity manager facade.

Applications talk to the identity manager; it delegates every call to the
configured identity store and records identity lifecycle events in the
security audit log.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from identity_store.config import load_config
from identity_store.credentials import PasswordEncoder
from identity_store.logging_setup import security_logger, setup_logging
from identity_store.model import AttributeValues, Group, IdentityType, Membership, Role, User
from identity_store.query import GroupQuery, IdentityQuery, MembershipQuery, Range, RoleQuery, UserQuery
from identity_store.stores import create_identity_store
from identity_store.stores.base import IdentityStore

logger = logging.getLogger(__name__)


class IdentityManager:
    """Entry point for managing users, groups, roles and memberships."""

    def __init__(self, store: IdentityStore):
        self.store = store

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, config_path: Optional[str] = None,
                    password_encoder: Optional[PasswordEncoder] = None,
                    configure_logging: bool = False) -> 'IdentityManager':
        """
        Build a manager from a loaded configuration or a YAML file.

        Args:
            config: Already loaded configuration; loaded from config_path when None
            config_path: YAML configuration file
            password_encoder: Overrides the encoder named in the configuration
            configure_logging: Install the logging handlers from the 'logging' section
        """
        if config is None:
            config = load_config(config_path)
        if configure_logging:
            setup_logging(config.get('logging'))
        return cls(create_identity_store(config, password_encoder))

    @property
    def store_type(self) -> str:
        return self.store.store_type or type(self.store).__name__

    def _audit(self, operation: str, entity: IdentityType) -> None:
        security_logger.log_identity_operation(operation, entity.kind, entity.key, self.store_type)

    # Users

    def create_user(self, name: str) -> User:
        user = self.store.create_user(name)
        self._audit('create', user)
        return user

    def get_user(self, name: str) -> Optional[User]:
        return self.store.get_user(name)

    def remove_user(self, user: User) -> None:
        self.store.remove_user(user)
        self._audit('remove', user)

    # Groups

    def create_group(self, name: str, parent: Optional[Group] = None) -> Group:
        group = self.store.create_group(name, parent)
        self._audit('create', group)
        return group

    def get_group(self, name: str) -> Optional[Group]:
        return self.store.get_group(name)

    def remove_group(self, group: Group) -> None:
        self.store.remove_group(group)
        self._audit('remove', group)

    # Roles

    def create_role(self, name: str) -> Role:
        role = self.store.create_role(name)
        self._audit('create', role)
        return role

    def get_role(self, name: str) -> Optional[Role]:
        return self.store.get_role(name)

    def remove_role(self, role: Role) -> None:
        self.store.remove_role(role)
        self._audit('remove', role)

    # Memberships

    def create_membership(self, role: Role, user: User, group: Group) -> Membership:
        return self.store.create_membership(role, user, group)

    def remove_membership(self, role: Union[Role, str], user: Union[User, str],
                          group: Union[Group, str]) -> None:
        self.store.remove_membership(role, user, group)

    def get_membership(self, role: Union[Role, str], user: Union[User, str],
                       group: Union[Group, str]) -> Optional[Membership]:
        return self.store.get_membership(role, user, group)

    # Queries

    def create_user_query(self) -> UserQuery:
        return self.store.create_user_query()

    def create_group_query(self) -> GroupQuery:
        return self.store.create_group_query()

    def create_role_query(self) -> RoleQuery:
        return self.store.create_role_query()

    def create_membership_query(self) -> MembershipQuery:
        return self.store.create_membership_query()

    def execute_query(self, query: IdentityQuery, query_range: Optional[Range] = None) -> List[Any]:
        return self.store.execute_query(query, query_range)

    # Attributes

    def set_attribute(self, entity: IdentityType, name: str, values: AttributeValues) -> None:
        self.store.set_attribute(entity, name, values)

    def remove_attribute(self, entity: IdentityType, name: str) -> None:
        self.store.remove_attribute(entity, name)

    def get_attribute_values(self, entity: IdentityType, name: str) -> Optional[List[str]]:
        return self.store.get_attribute_values(entity, name)

    def get_attributes(self, entity: IdentityType) -> Dict[str, List[str]]:
        return self.store.get_attributes(entity)

    # Credentials

    def validate_password(self, user: User, password: str) -> bool:
        return self.store.validate_password(user, password)

    def update_password(self, user: User, password: str) -> None:
        self.store.update_password(user, password)

    def close(self) -> None:
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
