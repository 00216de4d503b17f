"""Multi-tenant account registry loaded from YAML.

Each account maps a company to its own spreadsheet and Apps Script
deployment. Example ``accounts.yaml``::

    accounts:
      - account_id: siam-villas
        company_name: Siam Villas Co.
        user_email: owner@siamvillas.example
        spreadsheet_id: 1AbC...
        script_url: https://script.google.com/macros/s/XYZ/exec
        script_secret: s3cret
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from bookmate.config.settings import get_settings

DEFAULT_ACCOUNT_ID = "default"

_REQUIRED_FIELDS = ("account_id", "company_name", "spreadsheet_id", "script_url", "script_secret")


@dataclass(frozen=True)
class AccountConfig:
    """Connection details for one company's workbook."""

    account_id: str
    company_name: str
    spreadsheet_id: str
    script_url: str
    script_secret: str
    user_email: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the script secret."""
        return {
            "account_id": self.account_id,
            "company_name": self.company_name,
            "user_email": self.user_email,
            "spreadsheet_id": self.spreadsheet_id,
            "script_url": self.script_url,
        }


def _parse_account(source: str, index: int, raw: Any) -> AccountConfig:
    if not isinstance(raw, dict):
        raise ValueError(f"{source}: accounts[{index}] must be a mapping")

    for field_name in _REQUIRED_FIELDS:
        value = raw.get(field_name)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{source}: accounts[{index}] missing {field_name!r}")

    email = raw.get("user_email", "")
    if email and "@" not in str(email):
        raise ValueError(f"{source}: accounts[{index}] invalid user_email {email!r}")

    return AccountConfig(
        account_id=raw["account_id"].strip(),
        company_name=raw["company_name"].strip(),
        spreadsheet_id=raw["spreadsheet_id"].strip(),
        script_url=raw["script_url"].strip(),
        script_secret=raw["script_secret"],
        user_email=str(email).strip().lower(),
    )


def load_accounts(path: str | Path) -> dict[str, AccountConfig]:
    """Load the account registry from a YAML file.

    Args:
        path: Location of the YAML file.

    Returns:
        Mapping of account id to account configuration.

    Raises:
        ValueError: If the file is malformed or an entry is invalid.
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"{path.name}: cannot be loaded: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{path.name}: top level must be a mapping")

    entries = data.get("accounts") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path.name}: accounts must be a list")

    accounts: dict[str, AccountConfig] = {}
    for index, raw in enumerate(entries):
        account = _parse_account(path.name, index, raw)
        if account.account_id in accounts:
            raise ValueError(f"{path.name}: duplicate account_id {account.account_id!r}")
        accounts[account.account_id] = account

    return accounts


def default_account() -> AccountConfig:
    """Build the single-tenant account described by the environment."""
    settings = get_settings()
    return AccountConfig(
        account_id=DEFAULT_ACCOUNT_ID,
        company_name="BookMate",
        spreadsheet_id=settings.google_sheet_id,
        script_url=settings.sheets_webhook_url,
        script_secret=settings.sheets_webhook_secret.get_secret_value(),
    )


def resolve_account(account_id: str | None = None) -> AccountConfig:
    """Return the configured account, falling back to the environment default.

    Raises:
        KeyError: If ``account_id`` is not in the registry.
    """
    settings = get_settings()
    if not settings.accounts_file:
        return default_account()

    accounts = load_accounts(settings.accounts_file)
    if account_id is None:
        if DEFAULT_ACCOUNT_ID in accounts:
            return accounts[DEFAULT_ACCOUNT_ID]
        if accounts:
            return next(iter(accounts.values()))
        return default_account()

    if account_id not in accounts:
        raise KeyError(f"Unknown account: {account_id}")
    return accounts[account_id]
