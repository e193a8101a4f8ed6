"""Core module for the admin backend."""
from homeadmin.backend.core.config import get_web_settings, WebSettings
from homeadmin.backend.core.security import decode_token

__all__ = [
    "get_web_settings",
    "WebSettings",
    "decode_token",
]
