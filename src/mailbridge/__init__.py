"""Provider-agnostic mail access over IMAP, SMTP, and POP3."""

__version__ = "0.1.0"
