from __future__ import annotations

import importlib
import secrets

ulid_module = importlib.import_module("ulid")

ACCESS_TOKEN_BYTES = 32


def new_item_id() -> str:
    return f"dlv_{ulid_module.new().str}"


def new_sweep_id() -> str:
    return f"swp_{ulid_module.new().str}"


def new_access_token() -> str:
    return secrets.token_urlsafe(ACCESS_TOKEN_BYTES)
