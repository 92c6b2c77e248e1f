"""Folk adapter readiness and configuration utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping, Tuple

from flask import current_app

from venture_crm.importer.metrics import record_folk_auth_attempt

REQUIRED_CONFIG_KEYS: Tuple[str, ...] = ("FOLK_API_KEY", "FOLK_API_BASE_URL")


class FolkAdapterError(RuntimeError):
    """Base error for Folk adapter failures."""


class FolkConfigurationError(FolkAdapterError):
    """Raised when required configuration is missing."""


class FolkRequestError(FolkAdapterError):
    """Raised when a write request to the Folk API fails."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class FolkAdapterReadiness:
    missing_config: Tuple[str, ...]
    auth_status: Literal["skipped", "ok", "failed"]
    auth_error: str | None = None

    @property
    def status(self) -> str:
        if self.missing_config:
            return "missing-env"
        if self.auth_status == "failed":
            return "auth-error"
        return "ready"

    def messages(self) -> Tuple[str, ...]:
        messages: list[str] = []
        if self.missing_config:
            messages.append(f"Missing required Folk settings: {', '.join(self.missing_config)}")
        if self.auth_status == "failed" and self.auth_error:
            messages.append(self.auth_error)
        return tuple(messages)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status,
            "missing_env_vars": list(self.missing_config),
            "auth_status": self.auth_status,
            "messages": list(self.messages()),
        }
        if self.auth_error:
            payload["auth_error"] = self.auth_error
        return payload


def _resolve_config(config: Mapping[str, Any] | None) -> Mapping[str, Any]:
    if config is not None:
        return config
    return current_app.config


def check_folk_adapter_readiness(
    config: Mapping[str, Any] | None = None,
    *,
    require_auth_ping: bool = False,
    client=None,
) -> FolkAdapterReadiness:
    """
    Perform a non-raising readiness check for the Folk adapter.

    Args:
        config: Mapping holding FOLK_* settings. Defaults to the current app config.
        require_auth_ping: Whether to issue a cheap authenticated request.
        client: Optional preconfigured ``FolkClient`` used for the ping.
    """

    config = _resolve_config(config)
    missing = tuple(sorted(key for key in REQUIRED_CONFIG_KEYS if not config.get(key)))

    auth_status: Literal["skipped", "ok", "failed"] = "skipped"
    auth_error: str | None = None
    if require_auth_ping and not missing:
        from .client import FolkClient

        client = client or FolkClient.from_config(config)
        try:
            client.test_connection()
            auth_status = "ok"
        except FolkAdapterError as exc:
            auth_status = "failed"
            auth_error = f"Folk connection check failed: {exc}"

    return FolkAdapterReadiness(missing_config=missing, auth_status=auth_status, auth_error=auth_error)


def ensure_folk_adapter_ready(
    config: Mapping[str, Any] | None = None,
    *,
    require_auth_ping: bool = False,
    client=None,
) -> FolkAdapterReadiness:
    """
    Validate Folk adapter readiness, raising actionable errors when not ready.
    """

    readiness = check_folk_adapter_readiness(config, require_auth_ping=require_auth_ping, client=client)
    if require_auth_ping:
        if readiness.auth_status == "ok":
            record_folk_auth_attempt("success")
        elif readiness.auth_status == "failed":
            record_folk_auth_attempt("failure")
    if readiness.missing_config:
        raise FolkConfigurationError(
            "Folk adapter configured but missing required settings: "
            + ", ".join(readiness.missing_config)
            + ". Set these or disable the adapter."
        )
    if readiness.auth_status == "failed":
        raise FolkAdapterError(readiness.auth_error or "Folk connection check failed.")
    return readiness


__all__ = [
    "REQUIRED_CONFIG_KEYS",
    "FolkAdapterError",
    "FolkAdapterReadiness",
    "FolkConfigurationError",
    "FolkRequestError",
    "check_folk_adapter_readiness",
    "ensure_folk_adapter_ready",
]
