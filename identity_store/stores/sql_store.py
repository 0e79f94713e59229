"""
Relational identity store backed by SQLAlchemy.

Each store operation runs in its own session and transaction. Query
specifications are compiled into select() statements: direct fields become
column predicates, role/user/group constraints become joins through the
membership table and attribute filters become joins through the owner's
attribute table.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, Union

from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from identity_store.credentials import PasswordEncoder
from identity_store.model import ChangeNotification, Group, IdentityType, Membership, Role, User
from identity_store.query import GroupQuery, MembershipQuery, Range, RoleQuery, UserQuery
from identity_store.stores.base import (
    BackendUnavailableError,
    DuplicateKeyError,
    IdentityStore,
    IdentityStoreError,
)
from identity_store.stores.sql_models import (
    Base,
    GroupAttributeRecord,
    GroupRecord,
    MembershipRecord,
    RoleAttributeRecord,
    RoleRecord,
    UserAttributeRecord,
    UserRecord,
    decode_values,
    encode_values,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = 'sqlite:///identity_store.db'


class DatabaseUser(User):
    pass


class DatabaseGroup(Group):
    pass


class DatabaseRole(Role):
    pass


# kind -> (record model, attribute model)
RECORDS = {
    'user': (UserRecord, UserAttributeRecord),
    'group': (GroupRecord, GroupAttributeRecord),
    'role': (RoleRecord, RoleAttributeRecord),
}


def create_database_engine(url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for a database URL.

    SQLite connections are shared across threads; in-memory SQLite databases
    use a single static connection so every session sees the same data.
    """
    kwargs: Dict[str, Any] = {'echo': echo}
    if url.startswith('sqlite'):
        kwargs['connect_args'] = {'check_same_thread': False}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
    else:
        kwargs['pool_pre_ping'] = True
    return create_engine(url, **kwargs)


class SQLIdentityStore(IdentityStore):
    """
    Identity store persisting to a relational database.

    Configuration keys:
        url: SQLAlchemy database URL
        echo: Log emitted SQL (default False)
        create_schema: Create missing tables on start-up (default True)
    """

    store_type = 'sql'
    supports_sorting = True

    user_class = DatabaseUser
    group_class = DatabaseGroup
    role_class = DatabaseRole

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 password_encoder: Optional[PasswordEncoder] = None,
                 engine: Optional[Engine] = None):
        super().__init__(config, password_encoder)
        self.url = self.config.get('url') or DEFAULT_DATABASE_URL
        self.engine = engine or create_database_engine(self.url, self.config.get('echo', False))
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

        if self.config.get('create_schema', True):
            try:
                Base.metadata.create_all(self.engine)
            except OperationalError as e:
                raise BackendUnavailableError(f"Cannot reach database: {e}") from e
            except SQLAlchemyError as e:
                raise IdentityStoreError(f"Failed to create identity schema: {e}") from e

        logger.info(f"SQL identity store ready on {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        """Run one store operation in its own transaction, translating database errors."""
        try:
            with self._sessions.begin() as session:
                yield session
        except IntegrityError as e:
            raise DuplicateKeyError(f"{action} failed: {e.orig}") from e
        except OperationalError as e:
            raise BackendUnavailableError(f"{action} failed, database unavailable: {e.orig}") from e
        except SQLAlchemyError as e:
            raise IdentityStoreError(f"{action} failed: {e}") from e

    def close(self) -> None:
        self.engine.dispose()
        logger.debug("SQL identity store engine disposed")

    # Record <-> entity mapping

    def _bind(self, entity: IdentityType) -> IdentityType:
        entity.set_change_handler(self._handle_change)
        return entity

    @staticmethod
    def _load_attributes(entity: IdentityType, record: Any) -> None:
        for attribute in record.attributes:
            entity.attributes.set(attribute.name, decode_values(attribute.value))

    def _to_user(self, record: UserRecord) -> DatabaseUser:
        user = DatabaseUser(record.name)
        user.load_fields(
            full_name=record.full_name,
            first_name=record.first_name,
            last_name=record.last_name,
            email=record.email,
            enabled=record.enabled,
        )
        self._load_attributes(user, record)
        return self._bind(user)

    def _to_role(self, record: RoleRecord) -> DatabaseRole:
        role = DatabaseRole(record.name)
        self._load_attributes(role, record)
        return self._bind(role)

    def _to_group(self, session: Session, record: GroupRecord,
                  cache: Optional[Dict[str, DatabaseGroup]] = None) -> DatabaseGroup:
        """Build a group entity, loading its ancestors by name."""
        cache = {} if cache is None else cache
        if record.name in cache:
            return cache[record.name]
        parent = None
        if record.parent_name:
            parent_record = self._find(session, GroupRecord, record.parent_name)
            if parent_record is not None:
                parent = self._to_group(session, parent_record, cache)
            else:
                parent = DatabaseGroup(record.parent_name)
        group = DatabaseGroup(record.name, parent)
        self._load_attributes(group, record)
        cache[record.name] = self._bind(group)
        return group

    @staticmethod
    def _find(session: Session, model: Type[Any], name: str) -> Any:
        return session.scalar(
            select(model).options(selectinload(model.attributes)).where(model.name == name)
        )

    # Write-back

    def _handle_change(self, notification: ChangeNotification) -> None:
        entity = notification.entity
        model, attribute_model = RECORDS[entity.kind]
        with self._transaction(f"{notification.change_type} {notification.name} on {entity.key}") as session:
            if notification.change_type == ChangeNotification.UPDATE_FIELD:
                session.execute(
                    update(model).where(model.name == entity.key).values({notification.name: notification.value})
                )
                return

            owner_id = session.scalar(select(model.id).where(model.name == entity.key))
            if owner_id is None:
                raise IdentityStoreError(f"{entity.kind.capitalize()} no longer exists: {entity.key}")

            attribute = session.scalar(
                select(attribute_model).where(attribute_model.owner_id == owner_id,
                                              attribute_model.name == notification.name)
            )
            if notification.change_type == ChangeNotification.REMOVE_ATTRIBUTE:
                if attribute is not None:
                    session.delete(attribute)
            elif attribute is not None:
                attribute.value = encode_values(notification.values)
            else:
                session.add(attribute_model(owner_id=owner_id, name=notification.name,
                                            value=encode_values(notification.values)))
        logger.debug(f"Persisted {notification.change_type} {notification.name} for {entity!r}")

    # Lifecycle helpers

    def _create(self, model: Type[Any], name: str, **columns: Any) -> Any:
        with self._transaction(f"Create {model.__name__} {name}") as session:
            if session.scalar(select(model.id).where(model.name == name)) is not None:
                raise DuplicateKeyError(f"{model.__name__.replace('Record', '')} already exists: {name}")
            record = model(name=name, **columns)
            session.add(record)
            session.flush()
            return record

    def _remove(self, model: Type[Any], entity: IdentityType) -> None:
        with self._transaction(f"Remove {entity.kind} {entity.key}") as session:
            record = self._find(session, model, entity.key)
            if record is None:
                return
            session.delete(record)
        entity.set_change_handler(None)
        logger.info(f"Removed {entity.kind} {entity.key}")

    # Users

    def create_user(self, name: str) -> User:
        user = DatabaseUser(name)
        self._create(UserRecord, name, enabled=True)
        logger.info(f"Created user {name}")
        return self._bind(user)

    def get_user(self, name: str) -> Optional[User]:
        with self._transaction(f"Get user {name}") as session:
            record = self._find(session, UserRecord, name)
            return self._to_user(record) if record is not None else None

    def remove_user(self, user: User) -> None:
        self._check_owned(user, DatabaseUser)
        self._remove(UserRecord, user)

    # Groups

    def create_group(self, name: str, parent: Optional[Group] = None) -> Group:
        if parent is not None:
            self._check_owned(parent, DatabaseGroup)
        group = DatabaseGroup(name, parent)
        self._create(GroupRecord, name, parent_name=parent.key if parent is not None else None)
        logger.info(f"Created group {name}")
        return self._bind(group)

    def get_group(self, name: str) -> Optional[Group]:
        with self._transaction(f"Get group {name}") as session:
            record = self._find(session, GroupRecord, name)
            return self._to_group(session, record) if record is not None else None

    def remove_group(self, group: Group) -> None:
        self._check_owned(group, DatabaseGroup)
        self._remove(GroupRecord, group)

    # Roles

    def create_role(self, name: str) -> Role:
        role = DatabaseRole(name)
        self._create(RoleRecord, name)
        logger.info(f"Created role {name}")
        return self._bind(role)

    def get_role(self, name: str) -> Optional[Role]:
        with self._transaction(f"Get role {name}") as session:
            record = self._find(session, RoleRecord, name)
            return self._to_role(record) if record is not None else None

    def remove_role(self, role: Role) -> None:
        self._check_owned(role, DatabaseRole)
        self._remove(RoleRecord, role)

    # Memberships

    def _triple(self, role: Union[Role, str], user: Union[User, str],
                group: Union[Group, str]) -> Tuple[str, str, str]:
        return (self._key(role, DatabaseRole), self._key(user, DatabaseUser),
                self._key(group, DatabaseGroup))

    def create_membership(self, role: Role, user: User, group: Group) -> Membership:
        self._check_owned(role, DatabaseRole)
        self._check_owned(user, DatabaseUser)
        self._check_owned(group, DatabaseGroup)
        membership = Membership(role, user, group)
        with self._transaction(f"Create membership {membership.triple}") as session:
            session.add(MembershipRecord(role_name=role.key, user_name=user.key, group_name=group.key))
        logger.info(f"Created membership {membership!r}")
        return membership

    def remove_membership(self, role: Union[Role, str], user: Union[User, str],
                          group: Union[Group, str]) -> None:
        role_name, user_name, group_name = self._triple(role, user, group)
        with self._transaction(f"Remove membership {(role_name, user_name, group_name)}") as session:
            result = session.execute(
                delete(MembershipRecord).where(
                    MembershipRecord.role_name == role_name,
                    MembershipRecord.user_name == user_name,
                    MembershipRecord.group_name == group_name,
                )
            )
        if result.rowcount:
            logger.info(f"Removed membership {(role_name, user_name, group_name)}")

    def get_membership(self, role: Union[Role, str], user: Union[User, str],
                       group: Union[Group, str]) -> Optional[Membership]:
        role_name, user_name, group_name = self._triple(role, user, group)
        with self._transaction("Get membership") as session:
            record = session.scalars(
                select(MembershipRecord).where(
                    MembershipRecord.role_name == role_name,
                    MembershipRecord.user_name == user_name,
                    MembershipRecord.group_name == group_name,
                ).order_by(MembershipRecord.id).limit(1)
            ).first()
            if record is None:
                return None
            return self._to_memberships(session, [record])[0]

    def _to_memberships(self, session: Session, records: List[MembershipRecord]) -> List[Membership]:
        """Resolve membership records to entities; missing entities become detached placeholders."""
        users = {r.name: self._to_user(r) for r in session.scalars(
            select(UserRecord).options(selectinload(UserRecord.attributes))
            .where(UserRecord.name.in_({m.user_name for m in records})))}
        roles = {r.name: self._to_role(r) for r in session.scalars(
            select(RoleRecord).options(selectinload(RoleRecord.attributes))
            .where(RoleRecord.name.in_({m.role_name for m in records})))}
        cache: Dict[str, DatabaseGroup] = {}
        groups = {r.name: self._to_group(session, r, cache) for r in session.scalars(
            select(GroupRecord).options(selectinload(GroupRecord.attributes))
            .where(GroupRecord.name.in_({m.group_name for m in records})))}

        return [Membership(
            roles.get(m.role_name) or DatabaseRole(m.role_name),
            users.get(m.user_name) or DatabaseUser(m.user_name),
            groups.get(m.group_name) or DatabaseGroup(m.group_name),
        ) for m in records]

    # Queries

    def _finish(self, stmt: Any, model: Type[Any], query: Any, query_range: Optional[Range]) -> Any:
        """Apply attribute joins, DISTINCT, ordering and the range window."""
        _, attribute_model = RECORDS[self._kind_of(model)]
        for name, values in query.attribute_filters.items():
            attribute = aliased(attribute_model)
            stmt = stmt.join(attribute, attribute.owner_id == model.id).where(
                attribute.name == name, attribute.value == encode_values(values)
            )

        stmt = stmt.distinct()
        if query.sort_ascending is None:
            stmt = stmt.order_by(model.id)
        elif query.sort_ascending:
            stmt = stmt.order_by(model.name.asc())
        else:
            stmt = stmt.order_by(model.name.desc())

        if query_range is not None:
            stmt = stmt.offset(query_range.offset)
            if query_range.limit is not None:
                stmt = stmt.limit(query_range.limit)
        return stmt.options(selectinload(model.attributes))

    @staticmethod
    def _kind_of(model: Type[Any]) -> str:
        for kind, (record_model, _) in RECORDS.items():
            if record_model is model:
                return kind
        raise TypeError(f"Unknown record model {model.__name__}")

    @staticmethod
    def _join_memberships(stmt: Any, model: Type[Any], link: str, role: Optional[str] = None,
                          user: Optional[str] = None, group: Optional[str] = None) -> Any:
        """Join the membership table on the given name column and constrain the other parts."""
        if role is None and user is None and group is None:
            return stmt
        membership = aliased(MembershipRecord)
        stmt = stmt.join(membership, getattr(membership, link) == model.name)
        if role is not None:
            stmt = stmt.where(membership.role_name == role)
        if user is not None:
            stmt = stmt.where(membership.user_name == user)
        if group is not None:
            stmt = stmt.where(membership.group_name == group)
        return stmt

    def _query_users(self, query: UserQuery, query_range: Optional[Range]) -> List[User]:
        stmt = select(UserRecord)
        for value, column in ((query.name, UserRecord.name),
                              (query.first_name, UserRecord.first_name),
                              (query.last_name, UserRecord.last_name),
                              (query.email, UserRecord.email),
                              (query.enabled, UserRecord.enabled)):
            if value is not None:
                stmt = stmt.where(column == value)
        stmt = self._join_memberships(stmt, UserRecord, 'user_name',
                                      role=query.role, group=query.related_group)
        stmt = self._finish(stmt, UserRecord, query, query_range)

        with self._transaction("User query") as session:
            return [self._to_user(record) for record in session.scalars(stmt).unique()]

    def _query_groups(self, query: GroupQuery, query_range: Optional[Range]) -> List[Group]:
        stmt = select(GroupRecord)
        if query.name is not None:
            stmt = stmt.where(GroupRecord.name == query.name)
        if query.parent_group is not None:
            stmt = stmt.where(GroupRecord.parent_name == query.parent_group)
        stmt = self._join_memberships(stmt, GroupRecord, 'group_name',
                                      role=query.role, user=query.related_user)
        stmt = self._finish(stmt, GroupRecord, query, query_range)

        with self._transaction("Group query") as session:
            cache: Dict[str, DatabaseGroup] = {}
            return [self._to_group(session, record, cache) for record in session.scalars(stmt).unique()]

    def _query_roles(self, query: RoleQuery, query_range: Optional[Range]) -> List[Role]:
        stmt = select(RoleRecord)
        if query.name is not None:
            stmt = stmt.where(RoleRecord.name == query.name)
        stmt = self._join_memberships(stmt, RoleRecord, 'role_name',
                                      user=query.owner, group=query.group)
        stmt = self._finish(stmt, RoleRecord, query, query_range)

        with self._transaction("Role query") as session:
            return [self._to_role(record) for record in session.scalars(stmt).unique()]

    def _query_memberships(self, query: MembershipQuery,
                           query_range: Optional[Range]) -> List[Membership]:
        stmt = select(MembershipRecord)
        if query.role is not None:
            stmt = stmt.where(MembershipRecord.role_name == query.role)
        if query.user is not None:
            stmt = stmt.where(MembershipRecord.user_name == query.user)
        if query.group is not None:
            stmt = stmt.where(MembershipRecord.group_name == query.group)
        stmt = stmt.order_by(MembershipRecord.id)
        if query_range is not None:
            stmt = stmt.offset(query_range.offset)
            if query_range.limit is not None:
                stmt = stmt.limit(query_range.limit)

        with self._transaction("Membership query") as session:
            records = list(session.scalars(stmt))
            return self._to_memberships(session, records) if records else []
