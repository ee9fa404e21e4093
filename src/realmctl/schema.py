"""SQLAlchemy Core tables for the parts of the auth database realmctl touches."""
from __future__ import annotations

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    LargeBinary,
    MetaData,
    SmallInteger,
    String,
    Table,
    func,
)

auth_metadata = MetaData()

account = Table(
    "account",
    auth_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(32), nullable=False, unique=True),
    Column("salt", LargeBinary(32), nullable=False),
    Column("verifier", LargeBinary(32), nullable=False),
    Column("reg_mail", String(255), nullable=False, server_default=""),
    Column("email", String(255), nullable=False, server_default=""),
    Column("joindate", DateTime, nullable=False, server_default=func.current_timestamp()),
)

account_access = Table(
    "account_access",
    auth_metadata,
    Column("AccountID", Integer, primary_key=True, autoincrement=False),
    Column("SecurityLevel", SmallInteger, nullable=False),
    Column("RealmID", Integer, primary_key=True, autoincrement=False, server_default="-1"),
    Column("Comment", String(255), nullable=True),
)

realmlist = Table(
    "realmlist",
    auth_metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("name", String(32), nullable=False),
    Column("address", String(255), nullable=False, server_default="127.0.0.1"),
    Column("localAddress", String(255), nullable=False, server_default="127.0.0.1"),
    Column("localSubnetMask", String(255), nullable=False, server_default="255.255.255.0"),
    Column("port", Integer, nullable=False, server_default="8085"),
    Column("icon", SmallInteger, nullable=False, server_default="0"),
    Column("flag", SmallInteger, nullable=False, server_default="2"),
    Column("timezone", SmallInteger, nullable=False, server_default="0"),
    Column("allowedSecurityLevel", SmallInteger, nullable=False, server_default="0"),
    Column("population", Integer, nullable=False, server_default="0"),
    Column("gamebuild", Integer, nullable=False, server_default="12340"),
)

REALMLIST_COLUMNS = tuple(column.name for column in realmlist.columns)

__all__ = [
    "REALMLIST_COLUMNS",
    "account",
    "account_access",
    "auth_metadata",
    "realmlist",
]
