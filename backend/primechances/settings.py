from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


REMINDER_POLICIES = ("every_sweep", "daily", "once")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="NODE_ENV")
    port: int = Field(default=8080, validation_alias="PORT")

    # CORS / Frontend
    frontend_base_url: str = Field(
        default="https://primechances.com", validation_alias="FRONTEND_BASE_URL"
    )
    frontend_urls: str | None = Field(default=None, validation_alias="FRONTEND_URLS")
    # Used to build links inside notification e-mails.
    site_url: str = Field(default="https://primechances.com", validation_alias="SITE_URL")

    # AWS / data
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    ddb_endpoint_url: str | None = Field(default=None, validation_alias="DDB_ENDPOINT_URL")

    # Auth (Cognito). Sign-up/sign-in live in the identity provider; we only verify tokens.
    cognito_user_pool_id: str | None = Field(
        default=None, validation_alias="COGNITO_USER_POOL_ID"
    )
    cognito_client_id: str | None = Field(
        default=None, validation_alias="COGNITO_CLIENT_ID"
    )
    cognito_region: str = Field(default="us-east-1", validation_alias="COGNITO_REGION")

    # Comma-separated e-mail allow-list granted the admin role on first sign-in.
    admin_emails: str | None = Field(default=None, validation_alias="ADMIN_EMAILS")

    # E-mail egress (SES v2)
    ses_from_email: str = Field(
        default="PrimeChances <noreply@mail.primechances.com>", validation_alias="SES_FROM_EMAIL"
    )
    ses_reply_to: str = Field(
        default="support@mail.primechances.com", validation_alias="SES_REPLY_TO"
    )
    notification_emails_enabled: bool = Field(
        default=False, validation_alias="NOTIFICATION_EMAILS_ENABLED"
    )
    # Watchdog for outbound third-party calls.
    outbound_timeout_seconds: float = Field(default=30.0, validation_alias="OUTBOUND_TIMEOUT_SECONDS")

    # Sweeper
    deadline_window_days: int = Field(default=7, validation_alias="DEADLINE_WINDOW_DAYS")
    deadline_reminder_policy: str = Field(
        default="every_sweep", validation_alias="DEADLINE_REMINDER_POLICY"
    )
    retention_grace_days: int = Field(default=0, validation_alias="RETENTION_GRACE_DAYS")

    # Pagination cursors are encrypted with this key.
    pagination_token_key: str | None = Field(default=None, validation_alias="PAGINATION_TOKEN_KEY")

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    @property
    def is_development(self) -> bool:
        return self.normalized_environment == "development"

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Development/staging are allowed to run with partial config for local work,
        but production must be fully configured.
        """
        if not self.is_production:
            return

        missing: list[str] = []

        if not self.ddb_table_name:
            missing.append("DDB_TABLE_NAME")
        if not self.cognito_user_pool_id:
            missing.append("COGNITO_USER_POOL_ID")
        if not self.cognito_client_id:
            missing.append("COGNITO_CLIENT_ID")
        if not self.pagination_token_key:
            missing.append("PAGINATION_TOKEN_KEY")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        def _has(v: object) -> bool:
            return v is not None and str(v).strip() != ""

        return {
            "environment": self.normalized_environment,
            "port": self.port,
            "frontend": {
                "frontend_base_url": self.frontend_base_url,
                "frontend_urls": self.frontend_urls,
                "site_url": self.site_url,
            },
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "ddb_endpoint_url": self.ddb_endpoint_url,
            },
            "auth": {
                "cognito_user_pool_id": self.cognito_user_pool_id,
                "cognito_client_id": self.cognito_client_id,
                "cognito_region": self.cognito_region,
                "admin_emails_configured": _has(self.admin_emails),
            },
            "lifecycle": {
                "deadline_window_days": self.deadline_window_days,
                "deadline_reminder_policy": self.deadline_reminder_policy,
                "retention_grace_days": self.retention_grace_days,
                "notification_emails_enabled": bool(self.notification_emails_enabled),
                "outbound_timeout_seconds": self.outbound_timeout_seconds,
            },
            "pagination_token_key_configured": _has(self.pagination_token_key),
        }


@dataclass(frozen=True, slots=True)
class LifecycleConfig:
    """
    Explicit configuration handed to each lifecycle service at construction.

    Services never read process env or module settings directly, which keeps
    sweeper/notification behavior deterministic under test.
    """

    deadline_window_days: int = 7
    deadline_reminder_policy: str = "every_sweep"
    retention_grace_days: int = 0
    site_url: str = "https://primechances.com"
    email_from: str = "PrimeChances <noreply@mail.primechances.com>"
    email_reply_to: str = "support@mail.primechances.com"
    notification_emails_enabled: bool = False
    admin_emails: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.deadline_reminder_policy not in REMINDER_POLICIES:
            raise ValueError(
                f"deadline_reminder_policy must be one of {', '.join(REMINDER_POLICIES)}"
            )
        if int(self.deadline_window_days) < 0:
            raise ValueError("deadline_window_days must be >= 0")
        if int(self.retention_grace_days) < 0:
            raise ValueError("retention_grace_days must be >= 0")

    @classmethod
    def from_settings(cls, s: Settings) -> "LifecycleConfig":
        from .infrastructure.allowlist import parse_csv

        return cls(
            deadline_window_days=int(s.deadline_window_days),
            deadline_reminder_policy=str(s.deadline_reminder_policy or "every_sweep").strip().lower(),
            retention_grace_days=int(s.retention_grace_days),
            site_url=str(s.site_url or "").rstrip("/"),
            email_from=s.ses_from_email,
            email_reply_to=s.ses_reply_to,
            notification_emails_enabled=bool(s.notification_emails_enabled),
            admin_emails=tuple(e.lower() for e in parse_csv(s.admin_emails)),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


@lru_cache(maxsize=1)
def get_lifecycle_config() -> LifecycleConfig:
    return LifecycleConfig.from_settings(get_settings())


# Backwards-compatible module-level singleton.
settings = get_settings()
