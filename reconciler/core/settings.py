from __future__ import annotations

import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    ddb_endpoint_url: str = os.environ.get("DDB_ENDPOINT_URL", "")

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")

    # DynamoDB tables
    billing_table_name: str = os.environ.get("BILLING_TABLE_NAME", "billing")
    users_table_name: str = os.environ.get("USERS_TABLE_NAME", "users")
    locations_table_name: str = os.environ.get("LOCATIONS_TABLE_NAME", "locations")

    # Owner entitlement attributes
    user_entitlement_attr: str = os.environ.get("USER_ENTITLEMENT_ATTR", "insight_lookup")
    location_entitlement_attr: str = os.environ.get("LOCATION_ENTITLEMENT_ATTR", "insight_certified")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    processed_event_ttl_days: int = int(os.environ.get("PROCESSED_EVENT_TTL_DAYS", "30"))

    # Transactions
    store_max_retries: int = int(os.environ.get("STORE_MAX_RETRIES", "3"))

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    stripe_api_version: str = os.environ.get("STRIPE_API_VERSION", "")
    stripe_max_network_retries: int = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))

    # Observability
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    log_format: str = os.environ.get("LOG_FORMAT", "json").lower()
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")


S = Settings()
