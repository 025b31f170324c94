from __future__ import annotations

import boto3

from .settings import S

_session = boto3.session.Session(region_name=S.aws_region or "us-east-1")

ddb = _session.resource("dynamodb", endpoint_url=S.ddb_endpoint_url or None)

# The resource's client keeps the high-level (native Python) attribute
# serialisation, so transact_write_items takes plain values.
ddb_client = ddb.meta.client
