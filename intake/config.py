"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

from intake.errors import ConfigurationError

log = logging.getLogger("intake.config")

# Always needed: every booking and availability call goes through the CRM.
_CRM_REQUIRED = ("crm_client_id", "crm_client_secret")

# Needed in production; tolerated with a warning when DEBUG=true.
_INTEGRATIONS_REQUIRED = {
    "lead webhook": ("lead_webhook_secret",),
    "partner OAuth": ("partner_client_id", "partner_client_secret"),
    "payment webhook": ("stripe_webhook_secret",),
    "email": ("sendgrid_api_key", "email_from", "email_to"),
}


class Settings(BaseSettings):
    # CRM (field-service system of record)
    crm_client_id: str = ""
    crm_client_secret: str = ""
    crm_api_base: str = "https://api.servicefusion.com/v1"
    crm_token_url: str = "https://api.servicefusion.com/oauth/access_token"
    crm_token_skew_seconds: int = 60
    crm_timeout_seconds: float = 20.0

    # Scheduling
    business_timezone: str = "America/New_York"
    workday_start_hour: int = 8
    workday_end_hour: int = 17
    default_duration_minutes: int = 120
    placeholder_schedule_hour: int = 9
    placeholder_duration_minutes: int = 120

    # Lead partner (webhook + OAuth)
    lead_webhook_secret: str = ""
    partner_client_id: str = ""
    partner_client_secret: str = ""
    partner_token_url: str = "https://auth.thumbtack.com/oauth2/token"
    partner_redirect_uri: str = ""
    partner_redirect_uri_staging: str = ""

    # Payments
    stripe_webhook_secret: str = ""

    # Outbound email
    sendgrid_api_key: str = ""
    sendgrid_url: str = "https://api.sendgrid.com/v3/mail/send"
    email_from: str = ""
    email_to: str = ""
    notification_max_attempts: int = 3
    notification_retry_delay_seconds: float = 2.0

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False
    cors_allow_origin: str = "*"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def email_recipients(self) -> list[str]:
        """EMAIL_TO split on commas, trimmed, de-duplicated case-insensitively."""
        seen: dict[str, str] = {}
        for raw in self.email_to.split(","):
            addr = raw.strip()
            if addr and addr.lower() not in seen:
                seen[addr.lower()] = addr
        return list(seen.values())

    def require(self, *names: str) -> tuple[str, ...]:
        """Return the named settings, raising if any of them is empty."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                "Missing required setting(s): "
                + ", ".join(name.upper() for name in missing)
            )
        return tuple(getattr(self, name) for name in names)

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        # CRM credentials: required
        self.require(*_CRM_REQUIRED)

        if self.workday_end_hour <= self.workday_start_hour:
            raise ConfigurationError(
                "WORKDAY_END_HOUR must be later than WORKDAY_START_HOUR."
            )

        # Integrations: required in production, warn in debug
        for label, names in _INTEGRATIONS_REQUIRED.items():
            try:
                self.require(*names)
            except ConfigurationError as exc:
                if not self.debug:
                    raise ConfigurationError(f"{label}: {exc}") from exc
                warnings.append(f"{label} disabled (DEBUG=true): {exc}")

        # Admin API key: warn if unset
        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        return warnings


settings = Settings()
