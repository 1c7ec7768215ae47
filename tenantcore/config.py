"""
Runtime configuration loaded from the environment at process start.
"""
import json
import os
from datetime import timedelta
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .security.secret import SecretsManager

DEFAULT_BILLING_GATED_ACTIONS = ("content.write", "member.invite", "team.create")


class ExtraRole(BaseModel):
    model_config = ConfigDict(frozen=True)

    rank: int
    permissions: List[str] = Field(default_factory=list)


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = "sqlite:///./tenantcore.db"
    invitation_ttl: timedelta = timedelta(days=7)
    trial_period: timedelta = timedelta(days=14)
    grace_period: timedelta = timedelta(days=7)
    max_failed_retries: int = Field(default=3, ge=1)
    billing_gated_actions: FrozenSet[str] = frozenset(DEFAULT_BILLING_GATED_ACTIONS)
    extra_roles: Dict[str, ExtraRole] = Field(default_factory=dict)
    default_team_name: str = "General"
    owner_write_attempts: int = Field(default=3, ge=1)
    audit_secret: str = "default-audit-secret-change-me"
    billing_webhook_secret: Optional[str] = None
    billing_api_url: Optional[str] = None
    billing_api_key: Optional[str] = None
    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_from: str = "no-reply@example.com"
    notification_workers: int = Field(default=4, ge=1)
    log_level: str = "INFO"
    enable_tracing: bool = False
    otlp_endpoint: str = "http://jaeger:4317"

    @classmethod
    def from_env(cls, secrets: SecretsManager = None) -> "Settings":
        secrets = secrets or SecretsManager()
        gated = os.getenv("BILLING_GATED_ACTIONS")
        extra = os.getenv("TENANTCORE_EXTRA_ROLES")
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./tenantcore.db"),
            invitation_ttl=timedelta(hours=int(os.getenv("INVITATION_TTL_HOURS", "168"))),
            trial_period=timedelta(days=int(os.getenv("TRIAL_PERIOD_DAYS", "14"))),
            grace_period=timedelta(days=int(os.getenv("GRACE_PERIOD_DAYS", "7"))),
            max_failed_retries=int(os.getenv("MAX_FAILED_RETRIES", "3")),
            billing_gated_actions=(
                frozenset(a.strip() for a in gated.split(",") if a.strip())
                if gated is not None else frozenset(DEFAULT_BILLING_GATED_ACTIONS)
            ),
            extra_roles=json.loads(extra) if extra else {},
            default_team_name=os.getenv("DEFAULT_TEAM_NAME", "General"),
            owner_write_attempts=int(os.getenv("OWNER_WRITE_ATTEMPTS", "3")),
            audit_secret=secrets.get_secret("AUDIT_SECRET", "default-audit-secret-change-me"),
            billing_webhook_secret=secrets.get_secret("BILLING_WEBHOOK_SECRET"),
            billing_api_url=os.getenv("BILLING_API_URL"),
            billing_api_key=secrets.get_secret("BILLING_API_KEY"),
            email_api_url=os.getenv("EMAIL_API_URL"),
            email_api_key=secrets.get_secret("EMAIL_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", "no-reply@example.com"),
            notification_workers=int(os.getenv("NOTIFICATION_WORKERS", "4")),
            log_level="DEBUG" if os.getenv("DEBUG") else os.getenv("LOG_LEVEL", "INFO"),
            enable_tracing=os.getenv("ENABLE_TRACING", "false").lower() == "true",
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://jaeger:4317"),
        )
