"""
File based identity store.

Users, roles, groups and memberships are kept in memory, each collection in
its own structure guarded by its own lock, and every mutation rewrites that
collection's JSON file in the working directory.
"""

import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from identity_store.credentials import PasswordEncoder
from identity_store.model import ChangeNotification, Group, IdentityType, Membership, Role, User
from identity_store.query import (
    GroupQuery,
    MembershipQuery,
    Range,
    RoleQuery,
    UserQuery,
    filter_by_attributes,
    sort_by_key,
    unique,
)
from identity_store.stores.base import (
    BackendUnavailableError,
    DuplicateKeyError,
    IdentityStore,
    IdentityStoreError,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKING_DIR = os.path.join(tempfile.gettempdir(), 'identity-store-work')

COLLECTION_FILES = {
    'users': 'identity-users.json',
    'roles': 'identity-roles.json',
    'groups': 'identity-groups.json',
    'memberships': 'identity-memberships.json',
}


class FileUser(User):
    pass


class FileGroup(Group):
    pass


class FileRole(Role):
    pass


class FileIdentityStore(IdentityStore):
    """
    Identity store persisting to flat JSON files.

    Configuration keys:
        working_dir: Directory holding the four collection files
        always_create_files: Recreate empty files on start-up (default True);
            when False the existing files are loaded
    """

    store_type = 'file'
    supports_sorting = True

    user_class = FileUser
    group_class = FileGroup
    role_class = FileRole

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 password_encoder: Optional[PasswordEncoder] = None):
        super().__init__(config, password_encoder)
        self.working_dir = self.config.get('working_dir') or DEFAULT_WORKING_DIR
        self.always_create_files = self.config.get('always_create_files', True)

        self._users: Dict[str, FileUser] = {}
        self._roles: Dict[str, FileRole] = {}
        self._groups: Dict[str, FileGroup] = {}
        self._memberships: List[Membership] = []
        self._locks = {name: threading.Lock() for name in COLLECTION_FILES}

        self._initialize()

    # Start-up

    def _initialize(self) -> None:
        try:
            os.makedirs(self.working_dir, exist_ok=True)
        except OSError as e:
            raise BackendUnavailableError(f"Cannot create working directory {self.working_dir}: {e}") from e

        for collection in COLLECTION_FILES:
            path = self._file_path(collection)
            if self.always_create_files or not os.path.exists(path):
                with self._locks[collection]:
                    self._write(collection)
                logger.debug(f"Created empty {collection} file {path}")

        if not self.always_create_files:
            self._load_roles()
            self._load_groups()
            self._load_users()
            self._load_memberships()

        logger.info(f"File identity store ready in {self.working_dir} "
                    f"({len(self._users)} users, {len(self._groups)} groups, "
                    f"{len(self._roles)} roles, {len(self._memberships)} memberships)")

    def _file_path(self, collection: str) -> str:
        return os.path.join(self.working_dir, COLLECTION_FILES[collection])

    def _read(self, collection: str) -> List[Dict[str, Any]]:
        path = self._file_path(collection)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise IdentityStoreError(f"Failed to read {path}: {e}") from e
        if not content.strip():
            return []
        try:
            return json.loads(content)
        except ValueError as e:
            raise IdentityStoreError(f"Corrupt identity file {path}: {e}") from e

    def _load_users(self) -> None:
        for record in self._read('users'):
            user = FileUser(record['key'])
            user.load_fields(
                full_name=record.get('full_name'),
                first_name=record.get('first_name'),
                last_name=record.get('last_name'),
                email=record.get('email'),
                enabled=record.get('enabled', True),
            )
            self._load_attributes(user, record)
            self._bind(user, 'users')
            self._users[user.key] = user

    def _load_roles(self) -> None:
        for record in self._read('roles'):
            role = FileRole(record['key'])
            self._load_attributes(role, record)
            self._bind(role, 'roles')
            self._roles[role.key] = role

    def _load_groups(self) -> None:
        for record in self._read('groups'):
            parent = None
            parent_name = record.get('parent')
            if parent_name:
                parent = self._groups.get(parent_name) or FileGroup(parent_name)
            group = FileGroup(record['key'], parent)
            self._load_attributes(group, record)
            self._bind(group, 'groups')
            self._groups[group.key] = group

    def _load_memberships(self) -> None:
        for record in self._read('memberships'):
            role = self._roles.get(record['role']) or FileRole(record['role'])
            user = self._users.get(record['user']) or FileUser(record['user'])
            group = self._groups.get(record['group']) or FileGroup(record['group'])
            self._memberships.append(Membership(role, user, group))

    @staticmethod
    def _load_attributes(entity: IdentityType, record: Dict[str, Any]) -> None:
        for name, values in record.get('attributes', {}).items():
            entity.attributes.set(name, values)

    # Flush

    def _serialize(self, collection: str) -> List[Dict[str, Any]]:
        if collection == 'users':
            return [{
                'key': user.key,
                'full_name': user.full_name,
                'first_name': user.first_name,
                'last_name': user.last_name,
                'email': user.email,
                'enabled': user.enabled,
                'attributes': user.get_attributes(),
            } for user in self._users.values()]
        if collection == 'roles':
            return [{'key': role.key, 'attributes': role.get_attributes()}
                    for role in self._roles.values()]
        if collection == 'groups':
            return [{
                'key': group.key,
                'parent': group.parent_group.key if group.parent_group else None,
                'attributes': group.get_attributes(),
            } for group in self._groups.values()]
        return [{'role': role, 'user': user, 'group': group}
                for role, user, group in (m.triple for m in self._memberships)]

    def _write(self, collection: str) -> None:
        """Serialize a whole collection and atomically replace its file. Caller holds the lock."""
        path = self._file_path(collection)
        data = self._serialize(collection)
        try:
            fd, temp_path = tempfile.mkstemp(dir=self.working_dir, prefix=f".{collection}-", suffix='.tmp')
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, path)
        except OSError as e:
            raise IdentityStoreError(f"Failed to write {path}: {e}") from e
        logger.debug(f"Flushed {len(data)} {collection} to {path}")

    def _bind(self, entity: IdentityType, collection: str) -> None:
        entity.set_change_handler(self._change_handler(collection), self._locks[collection])

    def _change_handler(self, collection: str) -> Callable[[ChangeNotification], None]:
        """Build a handler that rewrites the collection file. The entity holds the collection lock while it runs."""
        def handle(notification: ChangeNotification) -> None:
            logger.debug(f"{notification.change_type} {notification.name} on {notification.entity!r}")
            self._write(collection)
        return handle

    # Users

    def create_user(self, name: str) -> User:
        user = FileUser(name)
        with self._locks['users']:
            if name in self._users:
                raise DuplicateKeyError(f"User already exists: {name}")
            self._users[name] = user
            self._write('users')
        self._bind(user, 'users')
        logger.info(f"Created user {name}")
        return user

    def get_user(self, name: str) -> Optional[User]:
        with self._locks['users']:
            return self._users.get(name)

    def remove_user(self, user: User) -> None:
        self._check_owned(user, FileUser)
        with self._locks['users']:
            removed = self._users.pop(user.key, None)
            if removed is None:
                return
            self._write('users')
        removed.set_change_handler(None)
        logger.info(f"Removed user {user.key}")

    # Groups

    def create_group(self, name: str, parent: Optional[Group] = None) -> Group:
        if parent is not None:
            self._check_owned(parent, FileGroup)
        group = FileGroup(name, parent)
        with self._locks['groups']:
            if name in self._groups:
                raise DuplicateKeyError(f"Group already exists: {name}")
            self._groups[name] = group
            self._write('groups')
        self._bind(group, 'groups')
        logger.info(f"Created group {name}")
        return group

    def get_group(self, name: str) -> Optional[Group]:
        with self._locks['groups']:
            return self._groups.get(name)

    def remove_group(self, group: Group) -> None:
        self._check_owned(group, FileGroup)
        with self._locks['groups']:
            removed = self._groups.pop(group.key, None)
            if removed is None:
                return
            self._write('groups')
        removed.set_change_handler(None)
        logger.info(f"Removed group {group.key}")

    # Roles

    def create_role(self, name: str) -> Role:
        role = FileRole(name)
        with self._locks['roles']:
            if name in self._roles:
                raise DuplicateKeyError(f"Role already exists: {name}")
            self._roles[name] = role
            self._write('roles')
        self._bind(role, 'roles')
        logger.info(f"Created role {name}")
        return role

    def get_role(self, name: str) -> Optional[Role]:
        with self._locks['roles']:
            return self._roles.get(name)

    def remove_role(self, role: Role) -> None:
        self._check_owned(role, FileRole)
        with self._locks['roles']:
            removed = self._roles.pop(role.key, None)
            if removed is None:
                return
            self._write('roles')
        removed.set_change_handler(None)
        logger.info(f"Removed role {role.key}")

    # Memberships

    def create_membership(self, role: Role, user: User, group: Group) -> Membership:
        self._check_owned(role, FileRole)
        self._check_owned(user, FileUser)
        self._check_owned(group, FileGroup)
        membership = Membership(role, user, group)
        with self._locks['memberships']:
            self._memberships.append(membership)
            self._write('memberships')
        logger.info(f"Created membership {membership!r}")
        return membership

    def remove_membership(self, role: Union[Role, str], user: Union[User, str],
                          group: Union[Group, str]) -> None:
        triple = (self._key(role, FileRole), self._key(user, FileUser), self._key(group, FileGroup))
        with self._locks['memberships']:
            remaining = [m for m in self._memberships if m.triple != triple]
            if len(remaining) == len(self._memberships):
                logger.debug(f"No membership {triple} to remove")
                return
            self._memberships = remaining
            self._write('memberships')
        logger.info(f"Removed membership {triple}")

    def get_membership(self, role: Union[Role, str], user: Union[User, str],
                       group: Union[Group, str]) -> Optional[Membership]:
        triple = (self._key(role, FileRole), self._key(user, FileUser), self._key(group, FileGroup))
        for membership in self._snapshot_memberships():
            if membership.triple == triple:
                return membership
        return None

    def _snapshot_memberships(self) -> List[Membership]:
        with self._locks['memberships']:
            return list(self._memberships)

    def _snapshot(self, collection: str, values: Iterable[IdentityType]) -> List[IdentityType]:
        with self._locks[collection]:
            return list(values)

    # Queries

    def _evaluate(self, candidates: List[IdentityType], query: Any,
                  related: Callable[[IdentityType, Membership], bool],
                  query_range: Optional[Range]) -> List[IdentityType]:
        """
        Run the direct, relational and attribute filter passes over candidates.

        If the direct pass leaves nothing while relational or attribute
        constraints are present, those constraints are evaluated against the
        full candidate set instead.
        """
        selected = [entity for entity in candidates if query.matches_fields(entity)]

        if not selected and (query.has_relational_filters() or query.has_attribute_filters()):
            selected = candidates

        if query.has_relational_filters():
            memberships = self._snapshot_memberships()
            selected = [entity for entity in selected
                        if any(related(entity, membership) for membership in memberships)]

        selected = filter_by_attributes(selected, query.attribute_filters)
        selected = sort_by_key(unique(selected), query.sort_ascending)
        return self._apply_range(selected, query_range)

    def _query_users(self, query: UserQuery, query_range: Optional[Range]) -> List[User]:
        candidates = self._snapshot('users', self._users.values())
        return self._evaluate(
            candidates, query,
            lambda user, m: m.matches(role=query.role, user=user.key, group=query.related_group),
            query_range,
        )

    def _query_groups(self, query: GroupQuery, query_range: Optional[Range]) -> List[Group]:
        candidates = self._snapshot('groups', self._groups.values())
        return self._evaluate(
            candidates, query,
            lambda group, m: m.matches(role=query.role, user=query.related_user, group=group.key),
            query_range,
        )

    def _query_roles(self, query: RoleQuery, query_range: Optional[Range]) -> List[Role]:
        candidates = self._snapshot('roles', self._roles.values())
        return self._evaluate(
            candidates, query,
            lambda role, m: m.matches(role=role.key, user=query.owner, group=query.group),
            query_range,
        )

    def _query_memberships(self, query: MembershipQuery,
                           query_range: Optional[Range]) -> List[Membership]:
        results = [m for m in self._snapshot_memberships()
                   if m.matches(role=query.role, user=query.user, group=query.group)]
        return self._apply_range(results, query_range)
