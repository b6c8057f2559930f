"""Protocol sessions for IMAP, SMTP, and POP3 servers."""

from .imap_client import ImapError, ImapSession
from .pop3_client import Pop3Error, Pop3Session
from .smtp_client import SmtpClient, SmtpError

__all__ = [
    "ImapError",
    "ImapSession",
    "Pop3Error",
    "Pop3Session",
    "SmtpClient",
    "SmtpError",
]
