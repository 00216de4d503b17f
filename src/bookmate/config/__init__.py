"""Configuration module for BookMate."""

from bookmate.config.accounts import AccountConfig, load_accounts, resolve_account
from bookmate.config.logging import bind_account_context, configure_logging
from bookmate.config.settings import FlatSettings, get_settings

__all__ = [
    "AccountConfig",
    "FlatSettings",
    "bind_account_context",
    "configure_logging",
    "get_settings",
    "load_accounts",
    "resolve_account",
]
