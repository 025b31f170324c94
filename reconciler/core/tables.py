from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .settings import S

@dataclass(frozen=True)
class Tables:
    billing: Any
    users: Any
    locations: Any
    client: Any


def build_tables() -> Tables:
    from .aws import ddb, ddb_client

    return Tables(
        billing=ddb.Table(S.billing_table_name),
        users=ddb.Table(S.users_table_name),
        locations=ddb.Table(S.locations_table_name),
        client=ddb_client,
    )
