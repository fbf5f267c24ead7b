import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from jewelry_payments.errors import ConfigurationError

REQUIRED_VARIABLES = {
    "DATABASE_URL": "database_url",
    "GATEWAY_BASE_URL": "gateway_base_url",
    "GATEWAY_API_KEY": "gateway_api_key",
    "GATEWAY_SHARED_SECRET": "gateway_shared_secret",
    "GATEWAY_USERNAME": "gateway_username",
    "GATEWAY_PASSWORD": "gateway_password",
    "CALLBACK_BASE_URL": "callback_base_url",
}

OPTIONAL_VARIABLES = {
    "GATEWAY_TIMEOUT_SECONDS": "gateway_timeout_seconds",
    "GATEWAY_VERIFY_CALLBACK_SIGNATURE": "verify_callback_signature",
    "CALLBACK_MAX_AGE_SECONDS": "callback_max_age_seconds",
    "DEFAULT_CURRENCY": "default_currency",
    "SENDGRID_API_KEY": "sendgrid_api_key",
    "EMAIL_FROM": "email_from",
    "ADMIN_EMAIL": "admin_email",
    "SHOP_NAME": "shop_name",
    "LOG_LEVEL": "log_level",
    "LOG_JSON": "log_json",
}


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and passed around explicitly."""

    model_config = ConfigDict(frozen=True)

    database_url: str
    gateway_base_url: str
    gateway_api_key: str
    gateway_shared_secret: str = Field(repr=False)
    gateway_username: str
    gateway_password: str = Field(repr=False)
    callback_base_url: str

    gateway_timeout_seconds: float = Field(default=20.0, ge=1.0, le=60.0)
    verify_callback_signature: bool = True
    callback_max_age_seconds: int = Field(default=300, ge=0)
    default_currency: str = "EUR"

    sendgrid_api_key: Optional[str] = Field(default=None, repr=False)
    email_from: str = "shop@example.com"
    admin_email: Optional[str] = None
    shop_name: str = "Jewelry Shop"

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read settings from the environment (after loading ``.env``).

        Every required variable is checked before construction so a
        deployment missing several of them hears about all at once.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        missing = [name for name in REQUIRED_VARIABLES if not environ.get(name)]
        if missing:
            raise ConfigurationError(missing)

        values = {field: environ[name] for name, field in REQUIRED_VARIABLES.items()}
        for name, field in OPTIONAL_VARIABLES.items():
            value = environ.get(name)
            if value not in (None, ""):
                values[field] = value
        return cls(**values)

    @property
    def callback_base(self) -> str:
        return self.callback_base_url.rstrip("/")

    @property
    def gateway_base(self) -> str:
        return self.gateway_base_url.rstrip("/")
