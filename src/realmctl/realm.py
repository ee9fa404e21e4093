"""Realm identity, on-disk layout and declarative configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .conffile import ConfField, load_fields

if TYPE_CHECKING:
    from .modules import ModuleEndpoint

REALM_CONFIG_NAME = "realm.conf"
REALM_ID_NAME = "realm_id"
REALM_NAME_FIELD = "Realm.Name"

REALM_CONFIG_TITLE = "Realm configuration"
REALM_CONFIG_DESCRIPTION = (
    "Configuration for your realm. A single realm is managed by a single worldserver process."
)

REALM_FIELDS: tuple[ConfField, ...] = (
    ConfField(
        "Realm.Dataset",
        "default.default",
        description="What dataset to use for this realm",
        section="Realm",
        examples=(("default.default", ""),),
        note="The first part is a module id and the last is a dataset id",
    ),
    ConfField(
        REALM_NAME_FIELD,
        "",
        description="The displayed name of this realm",
        section="Realm",
        examples=(("My Realm", ""),),
    ),
    ConfField(
        "Realm.PublicAddress",
        "127.0.0.1",
        description="The public IP of this realm",
        section="Realm",
        examples=(
            ("127.0.0.1", "Localhost"),
            ("192.168.0.5", "Local area network"),
        ),
        note="This is not a hostname",
    ),
    ConfField(
        "Realm.LocalAddress",
        "127.0.0.1",
        description="The local address of this realm",
        section="Realm",
        examples=(("127.0.0.1", "Localhost"),),
        note="When using a tunnel or VPN this must be the address players connect to",
    ),
    ConfField(
        "Realm.LocalSubnetMask",
        "255.0.0.0",
        description="The subnet mask of the local address",
        section="Realm",
        examples=(("255.0.0.0", "Localhost subnet mask"),),
        note="Must match the IP in Realm.LocalAddress",
    ),
    ConfField(
        "Realm.Port",
        8085,
        kind=int,
        description="The port used to host the worldserver of this realm",
        section="Realm",
        examples=((8085, "Default port"), (8095, "Alternative port")),
    ),
    ConfField(
        "Realm.Type",
        0,
        kind=int,
        description="The type of realm",
        section="Realm",
        examples=((0, "PvE"), (4, "PvP"), (6, "RP"), (8, "RP PvP")),
    ),
    ConfField(
        "Realm.RequiredSecurityLevel",
        0,
        kind=int,
        description="What type of account is required to log in to this realm",
        section="Realm",
        examples=((0, "Any account"), (1, "Moderators"), (2, "GM"), (3, "Super GM")),
    ),
    ConfField(
        "Realm.Recommended",
        False,
        kind=bool,
        description='Whether to list this realm as "Recommended"',
        section="Realm",
    ),
    ConfField(
        "Realm.Full",
        False,
        kind=bool,
        description='Whether to list this realm as "Full"',
        section="Realm",
    ),
    ConfField(
        "Realm.Offline",
        False,
        kind=bool,
        description='Whether to list this realm as "Offline"',
        section="Realm",
    ),
    ConfField(
        "Realm.NewPlayers",
        False,
        kind=bool,
        description='Whether to list this realm as "New Players"',
        section="Realm",
    ),
    ConfField(
        "Timezone",
        1,
        kind=int,
        description="The realm timezone, selects the realm list tab",
        section="Realm",
        examples=((1, "Development"),),
    ),
)

FLAG_OFFLINE = 0x2
FLAG_NEW_PLAYERS = 0x10
FLAG_RECOMMENDED = 0x20
FLAG_FULL = 0x40


@dataclass(frozen=True)
class RealmConfig:
    """Typed view of a realm's ``realm.conf``."""

    dataset: str
    name: str
    public_address: str
    local_address: str
    local_subnet_mask: str
    port: int
    type: int
    required_security_level: int
    recommended: bool
    full: bool
    offline: bool
    new_players: bool
    timezone: int

    @classmethod
    def from_values(cls, values: dict[str, object]) -> RealmConfig:
        """Build the config from a key/value mapping produced by ``load_fields``."""
        return cls(
            dataset=str(values["Realm.Dataset"]),
            name=str(values[REALM_NAME_FIELD]),
            public_address=str(values["Realm.PublicAddress"]),
            local_address=str(values["Realm.LocalAddress"]),
            local_subnet_mask=str(values["Realm.LocalSubnetMask"]),
            port=int(values["Realm.Port"]),  # type: ignore[call-overload]
            type=int(values["Realm.Type"]),  # type: ignore[call-overload]
            required_security_level=int(values["Realm.RequiredSecurityLevel"]),  # type: ignore[call-overload]
            recommended=bool(values["Realm.Recommended"]),
            full=bool(values["Realm.Full"]),
            offline=bool(values["Realm.Offline"]),
            new_players=bool(values["Realm.NewPlayers"]),
            timezone=int(values["Timezone"]),  # type: ignore[call-overload]
        )

    @property
    def flags(self) -> int:
        """Realm list flag bitmask derived from the four visibility toggles."""
        flag = 0
        if self.offline:
            flag |= FLAG_OFFLINE
        if self.new_players:
            flag |= FLAG_NEW_PLAYERS
        if self.recommended:
            flag |= FLAG_RECOMMENDED
        if self.full:
            flag |= FLAG_FULL
        return flag


@dataclass(frozen=True)
class RealmPaths:
    """Filesystem locations owned by a realm."""

    root: Path
    config: Path
    realm_id: Path
    worldserver_conf: Path
    worldserver_conf_dist: Path

    @classmethod
    def under(cls, root: Path) -> RealmPaths:
        """Return the standard layout rooted at *root*."""
        return cls(
            root=root,
            config=root / REALM_CONFIG_NAME,
            realm_id=root / REALM_ID_NAME,
            worldserver_conf=root / "worldserver.conf",
            worldserver_conf_dist=root / "worldserver.conf.dist",
        )


class Realm:
    """A realm directory inside a module.

    The realm only knows its identity and paths. Process and database handles
    are looked up in the instance cache by :attr:`full_name`.
    """

    def __init__(self, module: ModuleEndpoint, name: str) -> None:
        self.module = module
        self.name = name
        self.full_name = f"{module.id}.{name}"
        self.paths = RealmPaths.under(module.realms_dir / name)

    def __repr__(self) -> str:
        return f"Realm({self.full_name!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Realm) and other.full_name == self.full_name

    def __hash__(self) -> int:
        return hash(self.full_name)

    def read_config(self) -> RealmConfig:
        """Load ``realm.conf`` into a :class:`RealmConfig`."""
        return RealmConfig.from_values(load_fields(self.paths.config, REALM_FIELDS))


__all__ = [
    "FLAG_FULL",
    "FLAG_NEW_PLAYERS",
    "FLAG_OFFLINE",
    "FLAG_RECOMMENDED",
    "REALM_FIELDS",
    "REALM_NAME_FIELD",
    "Realm",
    "RealmConfig",
    "RealmPaths",
]
