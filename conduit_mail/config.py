"""Mail adapter configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="imap.gmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to read")
    page_size: int = Field(
        default=200,
        ge=1,
        description="Message ids returned per listing page",
    )


class SmtpConfig(BaseSettings):
    """SMTP submission settings for outbound requests."""

    model_config = {"env_prefix": "SMTP_"}

    host: str = Field(default="smtp.gmail.com", description="SMTP server hostname")
    port: int = Field(default=587, description="SMTP submission port")
    starttls: bool = Field(default=True, description="Upgrade the connection with STARTTLS")
    timeout_seconds: float = Field(default=30.0, description="Socket timeout")


class OAuthConfig(BaseSettings):
    """OAuth2 refresh-token grant settings for mailbox access tokens."""

    model_config = {"env_prefix": "OAUTH_"}

    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Token endpoint used for the refresh_token grant",
    )
    client_id: str = Field(default="", description="OAuth client id")
    client_secret: SecretStr = Field(default=SecretStr(""), description="OAuth client secret")
    refresh_margin_seconds: int = Field(
        default=300,
        description="Refresh tokens expiring within this many seconds",
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP timeout for the token call")


class MailConfig(BaseSettings):
    """Root configuration for the IMAP/SMTP message source."""

    model_config = {"env_prefix": "MAIL_"}

    imap: ImapConfig = Field(default_factory=ImapConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
