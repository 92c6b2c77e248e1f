"""
Reconciliation engine package.

``init_importer`` is the single entry point used by ``app.py``. It always
mounts the JSON blueprint (disabled deployments answer 404 in JSON), then
either registers the full ``flask importer`` command group, builds the Celery
app and records adapter readiness, or registers a stub group explaining how
to turn the importer on. The resulting state lives on
``app.extensions['importer']`` so views, commands and tasks share it.
"""

from __future__ import annotations

from typing import Any, Dict

from flask import Flask

from venture_crm.utils.importer import get_importer_adapters, is_importer_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .metrics import record_folk_adapter_status
from .registry import compute_adapter_readiness, get_adapter_registry, resolve_adapters
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = ["IMPORTER_EXTENSION_KEY", "get_celery_app", "init_importer"]


def _extension_state(app: Flask) -> Dict[str, Any]:
    state = app.extensions.setdefault(IMPORTER_EXTENSION_KEY, {"celery_app": None})
    state.update(
        enabled=is_importer_enabled(app),
        worker_enabled=is_worker_enabled(app),
        configured_adapters=get_importer_adapters(app),
        active_adapters=(),
        adapter_readiness={},
    )
    return state


def _swap_cli_group(app: Flask, group) -> None:
    # init_importer runs once per test; replace rather than stack the group
    app.cli.commands.pop(importer_cli.name, None)
    app.cli.add_command(group)


def _warn_unready_adapters(app: Flask, readiness: Dict[str, Dict[str, Any]]) -> None:
    for name, payload in readiness.items():
        if payload.get("status") == "ready":
            continue
        app.logger.warning(
            "Importer adapter '%s' is not ready: %s",
            name,
            "; ".join(payload.get("messages") or ()) or payload.get("status"),
            extra={
                "importer_adapter": name,
                "importer_adapter_status": payload.get("status"),
                "importer_adapter_missing_env": payload.get("missing_env_vars"),
            },
        )


def init_importer(app: Flask) -> None:
    state = _extension_state(app)
    if importer_blueprint.name not in app.blueprints:
        app.register_blueprint(importer_blueprint)

    if not state["enabled"]:
        record_folk_adapter_status(False)
        _swap_cli_group(app, get_disabled_importer_group())
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    state["active_adapters"] = tuple(resolve_adapters(state["configured_adapters"], get_adapter_registry()))
    ensure_celery_app(app, state)
    state["adapter_readiness"] = compute_adapter_readiness(app.config, state["active_adapters"])
    _warn_unready_adapters(app, state["adapter_readiness"])
    _swap_cli_group(app, importer_cli)

    app.logger.info(
        "Importer enabled with adapters: %s",
        ", ".join(adapter.name for adapter in state["active_adapters"]) or "none",
    )
