"""
Identity model shared by every identity store backend.

Defines the attribute bag, the identity entities (User, Group, Role), the
Membership association and the change notifications entities emit when they
are mutated so the owning store can write the change back.
"""

import logging
from contextlib import nullcontext
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

AttributeValues = Union[str, Sequence[str]]


def normalize_values(values: AttributeValues) -> List[str]:
    """Coerce a single value or a sequence of values into a list of strings."""
    if values is None:
        raise ValueError("Attribute values cannot be None, use remove_attribute instead")
    if isinstance(values, (str, bytes)):
        values = [values]
    normalized = []
    for value in values:
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        normalized.append(str(value))
    return normalized


class AttributeBag:
    """
    Ordered mapping of attribute name to an ordered list of string values.

    A name appears at most once. A missing name means "no values", which is
    different from a name mapped to an empty list.
    """

    def __init__(self, attributes: Optional[Dict[str, AttributeValues]] = None):
        self._values: Dict[str, List[str]] = {}
        for name, values in (attributes or {}).items():
            self.set(name, values)

    def set(self, name: str, values: AttributeValues) -> None:
        if not name:
            raise ValueError("Attribute name cannot be empty")
        self._values[name] = normalize_values(values)

    def remove(self, name: str) -> bool:
        """Remove an attribute, returning True if it was present."""
        return self._values.pop(name, None) is not None

    def get(self, name: str) -> Optional[List[str]]:
        values = self._values.get(name)
        return list(values) if values is not None else None

    def first(self, name: str) -> Optional[str]:
        values = self._values.get(name)
        return values[0] if values else None

    def names(self) -> List[str]:
        return list(self._values)

    def as_dict(self) -> Dict[str, List[str]]:
        return {name: list(values) for name, values in self._values.items()}

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AttributeBag):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"AttributeBag({self._values!r})"


class ChangeNotification:
    """Describes a mutation made on an entity that the owning store must persist."""

    ADD_ATTRIBUTE = 'ADD_ATTRIBUTE'
    REMOVE_ATTRIBUTE = 'REMOVE_ATTRIBUTE'
    UPDATE_FIELD = 'UPDATE_FIELD'

    def __init__(self, change_type: str, entity: 'IdentityType', name: str,
                 values: Optional[List[str]] = None, value: Any = None):
        self.change_type = change_type
        self.entity = entity
        self.name = name
        self.values = values
        self.value = value

    def __repr__(self) -> str:
        return (f"ChangeNotification({self.change_type}, {self.entity!r}, "
                f"name={self.name!r})")


ChangeHandler = Callable[[ChangeNotification], None]


class IdentityType:
    """
    Base class for identity entities.

    Every entity has an immutable key and an attribute bag. Entities returned
    by a store carry a change handler; mutations made through the entity are
    reported to it so the store can write them back immediately.
    """

    kind = 'identity'

    def __init__(self, key: str):
        if not key:
            raise ValueError(f"{self.__class__.__name__} key cannot be empty")
        self._key = key
        self._attributes = AttributeBag()
        self._change_handler: Optional[ChangeHandler] = None
        self._change_lock = None

    @property
    def key(self) -> str:
        return self._key

    @property
    def id(self) -> str:
        return self._key

    def set_change_handler(self, handler: Optional[ChangeHandler], lock: Any = None) -> None:
        """
        Install the handler that persists mutations.

        Args:
            handler: Callable receiving a ChangeNotification, or None to detach
            lock: Optional lock held while the entity is mutated and the handler runs
        """
        self._change_handler = handler
        self._change_lock = lock if handler is not None else None

    def _mutating(self):
        return self._change_lock if self._change_lock is not None else nullcontext()

    def _notify(self, notification: ChangeNotification) -> None:
        if self._change_handler is not None:
            self._change_handler(notification)

    def set_attribute(self, name: str, values: AttributeValues) -> None:
        with self._mutating():
            self._attributes.set(name, values)
            self._notify(ChangeNotification(
                ChangeNotification.ADD_ATTRIBUTE, self, name, values=self._attributes.get(name)
            ))

    def remove_attribute(self, name: str) -> None:
        with self._mutating():
            if self._attributes.remove(name):
                self._notify(ChangeNotification(ChangeNotification.REMOVE_ATTRIBUTE, self, name))

    def get_attribute_values(self, name: str) -> Optional[List[str]]:
        return self._attributes.get(name)

    def get_attribute(self, name: str) -> Optional[str]:
        return self._attributes.first(name)

    def get_attributes(self) -> Dict[str, List[str]]:
        return self._attributes.as_dict()

    @property
    def attributes(self) -> AttributeBag:
        return self._attributes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IdentityType):
            return NotImplemented
        return self.kind == other.kind and self._key == other._key

    def __hash__(self) -> int:
        return hash((self.kind, self._key))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(key={self._key!r})>"


class User(IdentityType):
    """A user identity keyed by its login name."""

    kind = 'user'

    def __init__(self, key: str):
        super().__init__(key)
        self._full_name: Optional[str] = None
        self._first_name: Optional[str] = None
        self._last_name: Optional[str] = None
        self._email: Optional[str] = None
        self._enabled = True

    def _update_field(self, field: str, value: Any) -> None:
        with self._mutating():
            setattr(self, f"_{field}", value)
            self._notify(ChangeNotification(ChangeNotification.UPDATE_FIELD, self, field, value=value))

    @property
    def full_name(self) -> Optional[str]:
        return self._full_name

    @full_name.setter
    def full_name(self, value: Optional[str]) -> None:
        self._update_field('full_name', value)

    @property
    def first_name(self) -> Optional[str]:
        return self._first_name

    @first_name.setter
    def first_name(self, value: Optional[str]) -> None:
        self._update_field('first_name', value)

    @property
    def last_name(self) -> Optional[str]:
        return self._last_name

    @last_name.setter
    def last_name(self, value: Optional[str]) -> None:
        self._update_field('last_name', value)

    @property
    def email(self) -> Optional[str]:
        return self._email

    @email.setter
    def email(self, value: Optional[str]) -> None:
        self._update_field('email', value)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._update_field('enabled', bool(value))

    def load_fields(self, full_name: Optional[str] = None, first_name: Optional[str] = None,
                    last_name: Optional[str] = None, email: Optional[str] = None,
                    enabled: bool = True) -> None:
        """Populate fields from persisted state without emitting notifications."""
        self._full_name = full_name
        self._first_name = first_name
        self._last_name = last_name
        self._email = email
        self._enabled = bool(enabled)


class Group(IdentityType):
    """A named group, optionally nested under a parent group."""

    kind = 'group'

    def __init__(self, name: str, parent_group: Optional['Group'] = None):
        super().__init__(name)
        if parent_group is not None and parent_group.key == name:
            raise ValueError(f"Group {name} cannot be its own parent")
        self._parent_group = parent_group

    @property
    def name(self) -> str:
        return self._key

    @property
    def parent_group(self) -> Optional['Group']:
        return self._parent_group


class Role(IdentityType):
    """A named role."""

    kind = 'role'

    @property
    def name(self) -> str:
        return self._key


class Membership:
    """Ternary association binding a role, a user and a group."""

    def __init__(self, role: Role, user: User, group: Group):
        if role is None or user is None or group is None:
            raise ValueError("A membership requires a role, a user and a group")
        self.role = role
        self.user = user
        self.group = group

    @property
    def triple(self):
        return (self.role.key, self.user.key, self.group.key)

    def matches(self, role: Optional[str] = None, user: Optional[str] = None,
                group: Optional[str] = None) -> bool:
        """Check the membership against optional role, user and group keys."""
        return ((role is None or self.role.key == role)
                and (user is None or self.user.key == user)
                and (group is None or self.group.key == group))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Membership):
            return NotImplemented
        return self.triple == other.triple

    def __hash__(self) -> int:
        return hash(self.triple)

    def __repr__(self) -> str:
        return (f"<Membership(role={self.role.key!r}, user={self.user.key!r}, "
                f"group={self.group.key!r})>")


def key_of(value: Union[IdentityType, str, None]) -> Optional[str]:
    """Return the key of an entity, or the value itself when a key string is given."""
    if value is None:
        return None
    if isinstance(value, IdentityType):
        return value.key
    return str(value)
