"""SQLAlchemy ORM models for the relational identity store.

Users, groups and roles each have their own table plus an attribute table
holding one row per (owner, attribute name). The value list of an attribute
is stored JSON encoded in a single column so equality on that column is an
exact-sequence comparison.

Memberships reference users, groups and roles by name without foreign keys:
removing an entity leaves memberships that refer to it in place.
"""

import json
from typing import List, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def encode_values(values: List[str]) -> str:
    """Encode an attribute value list for storage and comparison."""
    return json.dumps(list(values), ensure_ascii=False, separators=(',', ':'))


def decode_values(encoded: str) -> List[str]:
    return list(json.loads(encoded))


class Base(DeclarativeBase):
    """Declarative base for the identity store tables."""
    pass


class UserRecord(Base):
    __tablename__ = "identity_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(String(255))
    last_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    attributes: Mapped[List["UserAttributeRecord"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan", order_by="UserAttributeRecord.id"
    )

    def __repr__(self) -> str:
        return f"<UserRecord(id={self.id}, name={self.name})>"


class GroupRecord(Base):
    __tablename__ = "identity_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    parent_name: Mapped[Optional[str]] = mapped_column(String(255), index=True)

    attributes: Mapped[List["GroupAttributeRecord"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan", order_by="GroupAttributeRecord.id"
    )

    def __repr__(self) -> str:
        return f"<GroupRecord(id={self.id}, name={self.name}, parent={self.parent_name})>"


class RoleRecord(Base):
    __tablename__ = "identity_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)

    attributes: Mapped[List["RoleAttributeRecord"]] = relationship(
        back_populates="owner", cascade="all, delete-orphan", order_by="RoleAttributeRecord.id"
    )

    def __repr__(self) -> str:
        return f"<RoleRecord(id={self.id}, name={self.name})>"


class UserAttributeRecord(Base):
    __tablename__ = "identity_user_attributes"
    __table_args__ = (UniqueConstraint("owner_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("identity_users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    owner: Mapped[UserRecord] = relationship(back_populates="attributes")


class GroupAttributeRecord(Base):
    __tablename__ = "identity_group_attributes"
    __table_args__ = (UniqueConstraint("owner_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("identity_groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    owner: Mapped[GroupRecord] = relationship(back_populates="attributes")


class RoleAttributeRecord(Base):
    __tablename__ = "identity_role_attributes"
    __table_args__ = (UniqueConstraint("owner_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("identity_roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    owner: Mapped[RoleRecord] = relationship(back_populates="attributes")


class MembershipRecord(Base):
    __tablename__ = "identity_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    role_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    def __repr__(self) -> str:
        return (f"<MembershipRecord(role={self.role_name}, user={self.user_name}, "
                f"group={self.group_name})>")
