"""
LDAP directory identity store.

Maps users, groups and roles to directory entries under independently
configured subtrees:

    users        uid=<key>,<user_dn_suffix>            inetOrgPerson
    roles        cn=<name>,<role_dn_suffix>            organizationalRole
    groups       cn=<name>,<group_dn_suffix>           groupOfNames
    memberships  cn=<role>,cn=<group>,<group_suffix>   groupOfNames, member = user DNs

Attributes known to the server schema (managed attributes) live on the entry
itself. Everything else, plus the user's enabled flag, is kept as a JSON
document in an overlay entry ou=customAttributes,<entity DN>.

Writes happen in two phases (live entry, then overlay) that are not
transactional. A failure between them leaves the two views out of step; it is
logged and raised, not repaired.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, Server
from ldap3.utils.dn import escape_rdn, parse_dn

from identity_store.credentials import PasswordEncoder
from identity_store.ldap_client import LDAPClient, escape_value
from identity_store.logging_setup import security_logger
from identity_store.model import ChangeNotification, Group, IdentityType, Membership, Role, User
from identity_store.query import (
    GroupQuery,
    MembershipQuery,
    Range,
    RoleQuery,
    UserQuery,
    filter_by_attributes,
)
from identity_store.stores.base import IdentityStore, IdentityStoreError

logger = logging.getLogger(__name__)

CUSTOM_ATTRIBUTES_RDN = 'ou=customAttributes'
CUSTOM_ATTRIBUTES_FIELD = 'description'

USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'inetOrgPerson']
ROLE_OBJECT_CLASSES = ['top', 'organizationalRole']
GROUP_OBJECT_CLASSES = ['top', 'groupOfNames']
CONTAINER_OBJECT_CLASSES = ['top', 'organizationalUnit']

# Directory attributes maintained by the store, never exposed as entity attributes
RESERVED_ATTRIBUTES = {
    'objectclass', 'uid', 'cn', 'sn', 'givenname', 'mail', 'member', 'ou',
    'userpassword', 'unicodepwd',
}

USER_FIELDS = {
    'full_name': 'cn',
    'first_name': 'givenName',
    'last_name': 'sn',
    'email': 'mail',
}


class LDAPUser(User):
    dn: str = ''


class LDAPGroup(Group):
    dn: str = ''


class LDAPRole(Role):
    dn: str = ''


class ManagedAttributeCache:
    """
    Remembers which attribute names the directory schema defines.

    Each name is looked up once per store; answers are kept for the store's
    lifetime. clear() drops them, e.g. after a schema change.
    """

    def __init__(self, client: LDAPClient):
        self.client = client
        self._known: Dict[str, bool] = {}

    def is_managed(self, name: str) -> bool:
        key = name.lower()
        if key not in self._known:
            self._known[key] = self.client.has_attribute_type(name)
            logger.debug(f"Attribute {name} is {'managed' if self._known[key] else 'custom'}")
        return self._known[key]

    def clear(self) -> None:
        self._known.clear()


class LDAPIdentityStore(IdentityStore):
    """
    Identity store persisting to an LDAP directory.

    Configuration keys (in addition to the LDAPClient connection settings):
        user_dn_suffix, role_dn_suffix, group_dn_suffix: Subtree of each entity type
        active_directory: Write passwords as Active Directory unicodePwd
        generate_user_ids: Derive user keys from full names ("Anil Saldhana" -> "asaldhana")
        max_user_id_length: Truncate generated user keys
    """

    store_type = 'ldap'
    supports_sorting = False

    user_class = LDAPUser
    group_class = LDAPGroup
    role_class = LDAPRole

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 password_encoder: Optional[PasswordEncoder] = None,
                 client: Optional[LDAPClient] = None, server: Optional[Server] = None):
        super().__init__(config, password_encoder)
        self.user_dn_suffix = self.config['user_dn_suffix']
        self.role_dn_suffix = self.config['role_dn_suffix']
        self.group_dn_suffix = self.config['group_dn_suffix']
        self.active_directory = self.config.get('active_directory', False)
        self.generate_user_ids = self.config.get('generate_user_ids', False)
        self.max_user_id_length = self.config.get('max_user_id_length')

        self.client = client or LDAPClient(self.config, server=server)
        self.managed_attributes = ManagedAttributeCache(self.client)
        self._containers: Set[str] = set()

        if not self.client.connected:
            self.client.connect()

    def close(self) -> None:
        self.client.disconnect()

    # DN mapping

    def user_dn(self, key: str) -> str:
        return f"uid={escape_rdn(key)},{self.user_dn_suffix}"

    def role_dn(self, name: str) -> str:
        return f"cn={escape_rdn(name)},{self.role_dn_suffix}"

    def group_dn(self, name: str) -> str:
        return f"cn={escape_rdn(name)},{self.group_dn_suffix}"

    def membership_dn(self, role: str, group: str) -> str:
        return f"cn={escape_rdn(role)},{self.group_dn(group)}"

    @staticmethod
    def overlay_dn(entity_dn: str) -> str:
        return f"{CUSTOM_ATTRIBUTES_RDN},{entity_dn}"

    @staticmethod
    def _rdn_value(dn: str, index: int = 0) -> str:
        return parse_dn(dn)[index][1].strip()

    @staticmethod
    def _same_dn(first: str, second: str) -> bool:
        return first.replace(' ', '').lower() == second.replace(' ', '').lower()

    def _depth_below(self, dn: str, suffix: str) -> int:
        """Number of RDNs dn has below suffix, or -1 when it is not under suffix."""
        def normalized(value: str) -> List[Tuple[str, str]]:
            return [(a.strip().lower(), v.strip().lower()) for a, v, _ in parse_dn(value)]

        parts, base = normalized(dn), normalized(suffix)
        if len(parts) <= len(base) or parts[len(parts) - len(base):] != base:
            return -1
        return len(parts) - len(base)

    def _user_key_from_dn(self, dn: str) -> Optional[str]:
        if self._depth_below(dn, self.user_dn_suffix) != 1:
            return None
        return self._rdn_value(dn)

    def _ensure_container(self, suffix: str) -> None:
        """Create an ou= subtree entry if it is missing."""
        if suffix in self._containers:
            return
        attribute, value = (part.strip() for part in parse_dn(suffix)[0][:2])
        if not self.client.exists(suffix):
            if attribute.lower() != 'ou':
                raise IdentityStoreError(f"Subtree {suffix} does not exist and is not an organizational unit")
            self.client.add(suffix, CONTAINER_OBJECT_CLASSES, {'ou': value})
            logger.info(f"Created directory container {suffix}")
        self._containers.add(suffix)

    # Overlay

    def _read_overlay(self, entity_dn: str) -> Dict[str, Any]:
        """Load the custom attribute document; a missing overlay means no custom attributes."""
        entry = self.client.get_entry(self.overlay_dn(entity_dn), [CUSTOM_ATTRIBUTES_FIELD])
        if entry is None:
            return {}
        values = entry['attributes'].get(CUSTOM_ATTRIBUTES_FIELD) or []
        if not values:
            return {}
        try:
            return json.loads(values[0])
        except ValueError:
            logger.warning(f"Ignoring unreadable custom attributes at {self.overlay_dn(entity_dn)}")
            return {}

    def _write_overlay(self, entity: IdentityType) -> None:
        """Rewrite the overlay entry from the entity's custom attributes."""
        attributes = entity.get_attributes()
        document: Dict[str, Any] = {
            'attributes': {name: values for name, values in attributes.items()
                           if not self.managed_attributes.is_managed(name)}
        }
        # The directory cannot hold a managed attribute without values
        empty = [name for name, values in attributes.items()
                 if not values and self.managed_attributes.is_managed(name)]
        if empty:
            document['empty'] = empty
        if isinstance(entity, LDAPUser) and not entity.enabled:
            document['enabled'] = False

        dn = self.overlay_dn(entity.dn)
        exists = self.client.exists(dn)
        if not document['attributes'] and 'enabled' not in document and 'empty' not in document:
            if exists:
                self.client.delete(dn)
            return

        encoded = json.dumps(document, separators=(',', ':'))
        if exists:
            self.client.modify(dn, {CUSTOM_ATTRIBUTES_FIELD: [(MODIFY_REPLACE, [encoded])]})
        else:
            self.client.add(dn, CONTAINER_OBJECT_CLASSES, {'ou': 'customAttributes',
                                                           CUSTOM_ATTRIBUTES_FIELD: encoded})

    # Entry -> entity

    def _populate(self, entity: IdentityType, entry: Dict[str, Any]) -> IdentityType:
        entity.dn = entry['dn']
        for name, values in entry['attributes'].items():
            if name.lower() not in RESERVED_ATTRIBUTES:
                entity.attributes.set(name, values)
        overlay = self._read_overlay(entity.dn)
        for name, values in overlay.get('attributes', {}).items():
            entity.attributes.set(name, values)
        for name in overlay.get('empty', []):
            if name not in entity.attributes:
                entity.attributes.set(name, [])
        if isinstance(entity, LDAPUser):
            entity.load_fields(enabled=overlay.get('enabled', True), **self._user_fields(entry))
        entity.set_change_handler(self._handle_change)
        return entity

    @staticmethod
    def _user_fields(entry: Dict[str, Any]) -> Dict[str, Optional[str]]:
        attributes = {name.lower(): values for name, values in entry['attributes'].items()}
        fields = {}
        for field, attribute in USER_FIELDS.items():
            values = attributes.get(attribute.lower())
            fields[field] = values[0] if values else None
        return fields

    def _to_user(self, entry: Dict[str, Any]) -> LDAPUser:
        return self._populate(LDAPUser(self._rdn_value(entry['dn'])), entry)

    def _to_role(self, entry: Dict[str, Any]) -> LDAPRole:
        return self._populate(LDAPRole(self._rdn_value(entry['dn'])), entry)

    def _to_group(self, entry: Dict[str, Any]) -> LDAPGroup:
        return self._populate(LDAPGroup(self._rdn_value(entry['dn']), self._parent_group(entry['dn'])), entry)

    def _parent_group(self, group_dn: str) -> Optional[LDAPGroup]:
        """Find the group whose member attribute references group_dn."""
        search_filter = f"(&(objectClass=groupOfNames)(member={escape_value(group_dn)}))"
        for entry in self.client.search(self.group_dn_suffix, search_filter, 'subtree', ['cn']):
            if self._same_dn(entry['dn'], group_dn) or self._depth_below(entry['dn'], self.group_dn_suffix) != 1:
                continue
            return self.get_group(self._rdn_value(entry['dn']))
        return None

    # Write-back

    def _handle_change(self, notification: ChangeNotification) -> None:
        entity = notification.entity
        name = notification.name

        if notification.change_type == ChangeNotification.UPDATE_FIELD:
            if name == 'enabled':
                self._write_overlay(entity)
            else:
                attribute = USER_FIELDS[name]
                value = notification.value
                if value is None and attribute in ('cn', 'sn'):
                    value = entity.key
                self.client.modify(entity.dn, {attribute: [(MODIFY_REPLACE, [value] if value is not None else [])]})
            return

        if name.lower() in RESERVED_ATTRIBUTES:
            entity.attributes.remove(name)
            raise ValueError(f"Attribute {name} is maintained by the identity store")

        if self.managed_attributes.is_managed(name):
            # Replacing with no values deletes the attribute and is a no-op when it is absent
            values = notification.values if notification.change_type == ChangeNotification.ADD_ATTRIBUTE else []
            self.client.modify(entity.dn, {name: [(MODIFY_REPLACE, values or [])]})

        try:
            self._write_overlay(entity)
        except IdentityStoreError:
            logger.error(f"Custom attributes of {entity.dn} may be out of step with the entry "
                         f"after {notification.change_type} {name}")
            raise

    # Users

    def _split_name(self, name: str) -> Tuple[Optional[str], Optional[str]]:
        tokens = name.split()
        if len(tokens) < 2:
            return None, None
        return tokens[0], tokens[2] if len(tokens) > 2 else tokens[1]

    def generate_user_id(self, first_name: str, last_name: str) -> str:
        user_id = (first_name[0] + last_name).lower()
        if self.max_user_id_length:
            user_id = user_id[:self.max_user_id_length]
        return user_id

    def create_user(self, name: str) -> User:
        """
        Create a user entry.

        With generate_user_ids enabled a full name such as "Anil Saldhana"
        yields the key "asaldhana" and fills in the name fields.
        """
        key, full_name, first_name, last_name = name, name, None, name
        if self.generate_user_ids:
            first, last = self._split_name(name)
            if first and last:
                key = self.generate_user_id(first, last)
                first_name, last_name = first, last

        self._ensure_container(self.user_dn_suffix)
        user = LDAPUser(key)
        user.dn = self.user_dn(key)

        attributes = {'uid': key, 'cn': full_name, 'sn': last_name}
        if first_name:
            attributes['givenName'] = first_name
        self.client.add(user.dn, USER_OBJECT_CLASSES, attributes)

        user.load_fields(full_name=full_name, first_name=first_name, last_name=last_name)
        user.set_change_handler(self._handle_change)
        logger.info(f"Created user {key} at {user.dn}")
        return user

    def get_user(self, name: str) -> Optional[User]:
        entry = self.client.get_entry(self.user_dn(name))
        return self._to_user(entry) if entry is not None else None

    def remove_user(self, user: User) -> None:
        self._check_owned(user, LDAPUser)
        dn = self.user_dn(user.key)
        self.client.delete(self.overlay_dn(dn))
        if self.client.delete(dn):
            logger.info(f"Removed user {user.key}")
        user.set_change_handler(None)

    # Groups

    def create_group(self, name: str, parent: Optional[Group] = None) -> Group:
        if parent is not None:
            self._check_owned(parent, LDAPGroup)
        self._ensure_container(self.group_dn_suffix)
        group = LDAPGroup(name, parent)
        group.dn = self.group_dn(name)

        # groupOfNames requires a member; the group references itself
        self.client.add(group.dn, GROUP_OBJECT_CLASSES, {'cn': name, 'member': [group.dn]})
        if parent is not None:
            self.client.modify(self.group_dn(parent.key), {'member': [(MODIFY_ADD, [group.dn])]})

        group.set_change_handler(self._handle_change)
        logger.info(f"Created group {name} at {group.dn}")
        return group

    def get_group(self, name: str) -> Optional[Group]:
        entry = self.client.get_entry(self.group_dn(name))
        return self._to_group(entry) if entry is not None else None

    def remove_group(self, group: Group) -> None:
        """Remove a group with its overlay and membership entries."""
        self._check_owned(group, LDAPGroup)
        dn = self.group_dn(group.key)

        for child in self.client.search(dn, '(objectClass=*)', 'level', ['objectClass']):
            self.client.delete(child['dn'])

        search_filter = f"(&(objectClass=groupOfNames)(member={escape_value(dn)}))"
        for entry in self.client.search(self.group_dn_suffix, search_filter, 'level', ['cn']):
            if not self._same_dn(entry['dn'], dn):
                self.client.modify(entry['dn'], {'member': [(MODIFY_DELETE, [dn])]})

        if self.client.delete(dn):
            logger.info(f"Removed group {group.key}")
        group.set_change_handler(None)

    # Roles

    def create_role(self, name: str) -> Role:
        self._ensure_container(self.role_dn_suffix)
        role = LDAPRole(name)
        role.dn = self.role_dn(name)
        self.client.add(role.dn, ROLE_OBJECT_CLASSES, {'cn': name})
        role.set_change_handler(self._handle_change)
        logger.info(f"Created role {name} at {role.dn}")
        return role

    def get_role(self, name: str) -> Optional[Role]:
        entry = self.client.get_entry(self.role_dn(name))
        return self._to_role(entry) if entry is not None else None

    def remove_role(self, role: Role) -> None:
        self._check_owned(role, LDAPRole)
        dn = self.role_dn(role.key)
        self.client.delete(self.overlay_dn(dn))
        if self.client.delete(dn):
            logger.info(f"Removed role {role.key}")
        role.set_change_handler(None)

    # Memberships

    def create_membership(self, role: Role, user: User, group: Group) -> Membership:
        self._check_owned(role, LDAPRole)
        self._check_owned(user, LDAPUser)
        self._check_owned(group, LDAPGroup)

        dn = self.membership_dn(role.key, group.key)
        user_dn = self.user_dn(user.key)
        entry = self.client.get_entry(dn, ['member'])
        if entry is None:
            self.client.add(dn, GROUP_OBJECT_CLASSES, {'cn': role.key, 'member': [user_dn]})
        elif not any(self._same_dn(member, user_dn) for member in entry['attributes'].get('member', [])):
            self.client.modify(dn, {'member': [(MODIFY_ADD, [user_dn])]})

        membership = Membership(role, user, group)
        logger.info(f"Created membership {membership!r}")
        return membership

    def remove_membership(self, role: Union[Role, str], user: Union[User, str],
                          group: Union[Group, str]) -> None:
        role_name = self._key(role, LDAPRole)
        user_key = self._key(user, LDAPUser)
        group_name = self._key(group, LDAPGroup)

        dn = self.membership_dn(role_name, group_name)
        user_dn = self.user_dn(user_key)
        entry = self.client.get_entry(dn, ['member'])
        members = entry['attributes'].get('member', []) if entry is not None else []
        matching = [member for member in members if self._same_dn(member, user_dn)]
        if not matching:
            logger.debug(f"No membership ({role_name}, {user_key}, {group_name}) to remove")
            return

        if len(matching) == len(members):
            self.client.delete(dn)
        else:
            self.client.modify(dn, {'member': [(MODIFY_DELETE, matching)]})
        logger.info(f"Removed membership ({role_name}, {user_key}, {group_name})")

    def get_membership(self, role: Union[Role, str], user: Union[User, str],
                       group: Union[Group, str]) -> Optional[Membership]:
        query = MembershipQuery(self)
        query.role = self._key(role, LDAPRole)
        query.user = self._key(user, LDAPUser)
        query.group = self._key(group, LDAPGroup)
        results = self._query_memberships(query, None)
        return results[0] if results else None

    def _membership_triples(self, role: Optional[str] = None, user: Optional[str] = None,
                            group: Optional[str] = None) -> List[Tuple[str, str, str]]:
        """Search membership entries and return matching (role, user, group) keys."""
        terms = ['(objectClass=groupOfNames)']
        if role is not None:
            terms.append(f"(cn={escape_value(role)})")
        if user is not None:
            terms.append(f"(member={escape_value(self.user_dn(user))})")
        search_filter = f"(&{''.join(terms)})"

        if group is not None:
            entries = self.client.search(self.group_dn(group), search_filter, 'level', ['cn', 'member'])
        else:
            entries = self.client.search(self.group_dn_suffix, search_filter, 'subtree', ['cn', 'member'])

        triples = []
        for entry in entries:
            if self._depth_below(entry['dn'], self.group_dn_suffix) != 2:
                continue
            role_name = self._rdn_value(entry['dn'])
            group_name = self._rdn_value(entry['dn'], 1)
            for member in entry['attributes'].get('member', []):
                user_key = self._user_key_from_dn(member)
                if user_key is None or (user is not None and user_key != user):
                    continue
                triples.append((role_name, user_key, group_name))
        return triples

    # Queries

    def _search_entities(self, suffix: str, object_class: str,
                         equality: List[Tuple[str, Optional[str]]],
                         attribute_filters: Dict[str, List[str]]) -> List[Dict[str, Any]]:
        """Level search with equality terms for direct fields and managed attribute filters."""
        terms = [f"(objectClass={object_class})"]
        for attribute, value in equality:
            if value is not None:
                terms.append(f"({attribute}={escape_value(value)})")
        for name, values in attribute_filters.items():
            if self.managed_attributes.is_managed(name):
                if not values:
                    terms.append(f"(!({name}=*))")
                for value in values:
                    terms.append(f"({name}={escape_value(value)})")
        return self.client.search(suffix, f"(&{''.join(terms)})", 'level')

    @staticmethod
    def _check_attribute_filters(query: Any) -> None:
        for name in query.attribute_filters:
            if name.lower() in RESERVED_ATTRIBUTES:
                raise ValueError(f"Attribute {name} is maintained by the identity store; "
                                 f"filter on it through the query field setters")

    def _finish(self, entities: List[Any], query: Any, query_range: Optional[Range]) -> List[Any]:
        if query.sort_ascending is not None:
            logger.debug("LDAP identity store does not sort results; returning directory order")
        return self._apply_range(filter_by_attributes(entities, query.attribute_filters), query_range)

    def _query_users(self, query: UserQuery, query_range: Optional[Range]) -> List[User]:
        self._check_attribute_filters(query)
        allowed = None
        if query.has_relational_filters():
            allowed = {user for _, user, _ in self._membership_triples(role=query.role, group=query.related_group)}
            if not allowed:
                return []

        entries = self._search_entities(self.user_dn_suffix, 'inetOrgPerson', [
            ('uid', query.name), ('givenName', query.first_name),
            ('sn', query.last_name), ('mail', query.email),
        ], query.attribute_filters)

        users = []
        for entry in entries:
            if allowed is not None and self._rdn_value(entry['dn']) not in allowed:
                continue
            user = self._to_user(entry)
            if query.enabled is None or user.enabled == query.enabled:
                users.append(user)
        return self._finish(users, query, query_range)

    def _query_groups(self, query: GroupQuery, query_range: Optional[Range]) -> List[Group]:
        self._check_attribute_filters(query)
        allowed = None
        if query.has_relational_filters():
            allowed = {group for _, _, group in self._membership_triples(role=query.role, user=query.related_user)}
            if not allowed:
                return []

        equality = [('cn', query.name)]
        if query.parent_group is not None:
            parent = self.client.get_entry(self.group_dn(query.parent_group), ['member'])
            if parent is None:
                return []
            children = {self._rdn_value(member) for member in parent['attributes'].get('member', [])
                        if self._depth_below(member, self.group_dn_suffix) == 1
                        and not self._same_dn(member, parent['dn'])}
            allowed = children if allowed is None else allowed & children

        groups = []
        for entry in self._search_entities(self.group_dn_suffix, 'groupOfNames', equality, query.attribute_filters):
            if allowed is None or self._rdn_value(entry['dn']) in allowed:
                groups.append(self._to_group(entry))
        return self._finish(groups, query, query_range)

    def _query_roles(self, query: RoleQuery, query_range: Optional[Range]) -> List[Role]:
        self._check_attribute_filters(query)
        allowed = None
        if query.has_relational_filters():
            allowed = {role for role, _, _ in self._membership_triples(user=query.owner, group=query.group)}
            if not allowed:
                return []

        roles = []
        for entry in self._search_entities(self.role_dn_suffix, 'organizationalRole',
                                           [('cn', query.name)], query.attribute_filters):
            if allowed is None or self._rdn_value(entry['dn']) in allowed:
                roles.append(self._to_role(entry))
        return self._finish(roles, query, query_range)

    def _query_memberships(self, query: MembershipQuery,
                           query_range: Optional[Range]) -> List[Membership]:
        users: Dict[str, User] = {}
        roles: Dict[str, Role] = {}
        groups: Dict[str, Group] = {}

        memberships = []
        for role_name, user_key, group_name in self._membership_triples(query.role, query.user, query.group):
            if role_name not in roles:
                roles[role_name] = self.get_role(role_name) or LDAPRole(role_name)
            if user_key not in users:
                users[user_key] = self.get_user(user_key) or LDAPUser(user_key)
            if group_name not in groups:
                groups[group_name] = self.get_group(group_name) or LDAPGroup(group_name)
            memberships.append(Membership(roles[role_name], users[user_key], groups[group_name]))
        return self._apply_range(memberships, query_range)

    # Credentials

    def validate_password(self, user: User, password: str) -> bool:
        """
        Check a password by binding as the user.

        The user DN is looked up afresh by uid; zero or several matches fail.
        """
        self._check_owned(user, LDAPUser)
        search_filter = f"(&(objectClass=inetOrgPerson)(uid={escape_value(user.key)}))"
        entries = self.client.search(self.user_dn_suffix, search_filter, 'subtree', ['uid'])
        if len(entries) != 1:
            logger.warning(f"Password validation for {user.key} found {len(entries)} entries")
            security_logger.log_authentication_attempt(self.store_type, user.key, False)
            return False

        valid = self.client.probe_bind(entries[0]['dn'], password)
        security_logger.log_authentication_attempt(self.store_type, user.key, valid)
        return valid

    def update_password(self, user: User, password: str) -> None:
        """
        Replace the user's password.

        Active Directory requires unicodePwd as the UTF-16LE encoding of the
        quoted password, sent over an encrypted connection.
        """
        self._check_owned(user, LDAPUser)
        dn = self.user_dn(user.key)
        if self.active_directory:
            encoded = f'"{password}"'.encode('utf-16-le')
            self.client.modify(dn, {'unicodePwd': [(MODIFY_REPLACE, [encoded])]})
        else:
            encoded = self.password_encoder.encode(user, password)
            self.client.modify(dn, {'userPassword': [(MODIFY_REPLACE, [encoded])]})
        security_logger.log_password_change(self.store_type, user.key)
