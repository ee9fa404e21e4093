"""Realm configuration and realm list row tests."""
from __future__ import annotations

from dataclasses import replace

import pytest

from realmctl.lifecycle import RealmlistRecord
from realmctl.realm import RealmConfig

BASE = RealmConfig(
    dataset="default.default",
    name="Alpha",
    public_address="10.0.0.5",
    local_address="127.0.0.1",
    local_subnet_mask="255.0.0.0",
    port=8085,
    type=0,
    required_security_level=0,
    recommended=False,
    full=False,
    offline=False,
    new_players=False,
    timezone=1,
)


@pytest.mark.parametrize(
    ("offline", "new_players", "recommended", "full", "expected"),
    [
        (True, False, True, False, 0x22),
        (False, False, False, False, 0x0),
        (True, True, True, True, 0x72),
        (False, True, False, False, 0x10),
        (False, False, False, True, 0x40),
    ],
)
def test_flags_bitmask(
    offline: bool,
    new_players: bool,
    recommended: bool,
    full: bool,
    expected: int,
) -> None:
    """Visibility toggles combine into the realm list flag bitmask."""
    config = replace(
        BASE,
        offline=offline,
        new_players=new_players,
        recommended=recommended,
        full=full,
    )

    assert config.flags == expected


def test_realmlist_sql_uses_positional_twelve_columns() -> None:
    """The rendered statement lists all twelve values in column order."""
    record = RealmlistRecord(
        id=3,
        name="Bob's Realm",
        address="10.0.0.5",
        local_address="127.0.0.1",
        local_subnet_mask="255.0.0.0",
        port=8086,
        icon=4,
        flag=0x22,
        timezone=1,
        allowed_security_level=0,
        population=0,
        game_build=12340,
    )

    assert record.to_sql() == (
        "INSERT INTO realmlist VALUES "
        "(3,'Bob''s Realm','10.0.0.5','127.0.0.1','255.0.0.0',8086,4,34,1,0,0,12340);"
    )
    row = record.as_row()
    assert list(row) == [
        "id",
        "name",
        "address",
        "localAddress",
        "localSubnetMask",
        "port",
        "icon",
        "flag",
        "timezone",
        "allowedSecurityLevel",
        "population",
        "gamebuild",
    ]
    assert row["flag"] == 0x22
