"""
Core module - Configuration, database, HTTP edge, mail, scheduling.
"""

from jv_backend.core.config import Settings, get_settings, settings
from jv_backend.core.database import Base, close_db, init_db
from jv_backend.core.email import close_mail_transport, init_mail_transport, send_email, send_mail
from jv_backend.core.security import decode_token

__all__ = [
    # Config
    "Settings",
    "settings",
    "get_settings",
    # Database
    "Base",
    "init_db",
    "close_db",
    # Mail
    "init_mail_transport",
    "close_mail_transport",
    "send_mail",
    "send_email",
    # Security
    "decode_token",
]
