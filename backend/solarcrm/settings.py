from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="NODE_ENV")
    port: int = Field(default=8080, validation_alias="PORT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # CORS / links
    frontend_base_url: str = Field(
        default="https://crm.salinassolar.ph", validation_alias="FRONTEND_BASE_URL"
    )
    # Base for links sent to customers (signing page, etc). Falls back to the frontend.
    app_base_url: str | None = Field(default=None, validation_alias="APP_BASE_URL")

    # AWS / data
    aws_region: str = Field(default="ap-southeast-1", validation_alias="AWS_REGION")
    ddb_table_name: str | None = Field(default=None, validation_alias="DDB_TABLE_NAME")
    assets_bucket_name: str | None = Field(
        default=None, validation_alias="ASSETS_BUCKET_NAME"
    )
    # Encrypts list cursors so clients cannot forge DynamoDB start keys.
    pagination_token_secret: str | None = Field(
        default=None, validation_alias="PAGINATION_TOKEN_SECRET"
    )
    # Presigned document URLs are handed to customers by email; keep them valid for a day.
    document_url_expires_seconds: int = Field(
        default=24 * 3600, validation_alias="DOCUMENT_URL_EXPIRES_SECONDS"
    )

    # Outbound HTTP (SMS gateway, blob downloads)
    http_timeout_seconds: float = Field(default=15.0, validation_alias="HTTP_TIMEOUT_SECONDS")
    max_download_bytes: int = Field(
        default=25 * 1024 * 1024, validation_alias="MAX_DOWNLOAD_BYTES"
    )

    # Email (SES)
    email_from_address: str | None = Field(default=None, validation_alias="EMAIL_FROM_ADDRESS")

    # SMS (Semaphore)
    semaphore_api_key: str | None = Field(default=None, validation_alias="SEMAPHORE_API_KEY")
    semaphore_sender_name: str = Field(
        default="SalinasSolar", validation_alias="SEMAPHORE_SENDER_NAME"
    )
    semaphore_api_base: str = Field(
        default="https://api.semaphore.co", validation_alias="SEMAPHORE_API_BASE"
    )

    # Agreement lifecycle
    signing_rate_limit_rpm: int = Field(default=60, validation_alias="SIGNING_RATE_LIMIT_RPM")
    agreement_reminder_delay_hours: int = Field(
        default=72, validation_alias="AGREEMENT_REMINDER_DELAY_HOURS"
    )
    business_timezone: str = Field(default="Asia/Manila", validation_alias="BUSINESS_TIMEZONE")

    # Branding used on generated invoices / receipts
    company_brand_name: str = Field(
        default="SALINAS SOLAR SERVICES", validation_alias="COMPANY_BRAND_NAME"
    )
    company_legal_name: str = Field(
        default="Salinas Solar Enterprises Corporation", validation_alias="COMPANY_LEGAL_NAME"
    )
    company_address: str = Field(
        default="Roman Superhighway, Brgy. Bilolo, Orion, Bataan",
        validation_alias="COMPANY_ADDRESS",
    )
    company_email: str = Field(
        default="billing@salinassolar.ph", validation_alias="COMPANY_EMAIL"
    )
    company_phone: str = Field(default="+63 917 000 0000", validation_alias="COMPANY_PHONE")
    currency_code: str = Field(default="PHP", validation_alias="CURRENCY_CODE")
    bank_name: str = Field(default="BPI", validation_alias="BANK_NAME")
    bank_account_name: str = Field(
        default="SALINAS SOLAR ENTERPRISES CORPORATION", validation_alias="BANK_ACCOUNT_NAME"
    )
    bank_account_number: str = Field(
        default="2291-0004-98", validation_alias="BANK_ACCOUNT_NUMBER"
    )

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

    @property
    def public_base_url(self) -> str:
        base = str(self.app_base_url or "").strip() or str(self.frontend_base_url or "").strip()
        return base.rstrip("/")

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
        if not self.assets_bucket_name:
            missing.append("ASSETS_BUCKET_NAME")
        if not self.email_from_address:
            missing.append("EMAIL_FROM_ADDRESS")
        if not self.pagination_token_secret:
            missing.append("PAGINATION_TOKEN_SECRET")
        # Customer-facing links must not point at a dev host.
        if not (self.app_base_url and str(self.app_base_url).strip()):
            missing.append("APP_BASE_URL")

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
            "links": {
                "frontend_base_url": self.frontend_base_url,
                "public_base_url": self.public_base_url,
            },
            "aws": {
                "aws_region": self.aws_region,
                "ddb_table_name": self.ddb_table_name,
                "assets_bucket_name": self.assets_bucket_name,
                "pagination_token_secret_configured": _has(self.pagination_token_secret),
            },
            "integrations": {
                "email_from_address": self.email_from_address if _has(self.email_from_address) else None,
                "semaphore_api_key_configured": _has(self.semaphore_api_key),
                "semaphore_sender_name": self.semaphore_sender_name,
                "http_timeout_seconds": self.http_timeout_seconds,
            },
            "agreements": {
                "signing_rate_limit_rpm": self.signing_rate_limit_rpm,
                "agreement_reminder_delay_hours": self.agreement_reminder_delay_hours,
                "business_timezone": self.business_timezone,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s


# Module-level singleton used by most call sites.
settings = get_settings()
