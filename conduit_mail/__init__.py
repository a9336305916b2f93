"""IMAP/SMTP message source for the Conduit pipeline.

Public API re-exported here for convenience::

    from conduit_mail import ImapSourceFactory, MailConfig
"""

from .config import ImapConfig, MailConfig, OAuthConfig, SmtpConfig
from .imap_client import AsyncImapClient
from .oauth import TokenRefresher
from .parser import MimeParser
from .smtp_client import AsyncSmtpSender
from .source import ImapMessageSource, ImapSourceFactory

__all__ = [
    "AsyncImapClient",
    "AsyncSmtpSender",
    "ImapConfig",
    "ImapMessageSource",
    "ImapSourceFactory",
    "MailConfig",
    "MimeParser",
    "OAuthConfig",
    "SmtpConfig",
    "TokenRefresher",
]
