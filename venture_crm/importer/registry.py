"""
Adapter registry.

Adapters register metadata here so configuration can be validated before any
provider client is constructed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Sequence, Tuple

from .metrics import record_folk_adapter_status


@dataclass(frozen=True)
class AdapterDescriptor:
    """Metadata describing an importer adapter."""

    name: str
    title: str
    collections: Tuple[str, ...] = ()
    required_config: Tuple[str, ...] = ()
    summary: str | None = None

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "title": self.title,
            "collections": list(self.collections),
            "required_config": list(self.required_config),
            "summary": self.summary,
        }


def get_adapter_registry() -> Mapping[str, AdapterDescriptor]:
    return OrderedDict(
        (
            (
                "folk",
                AdapterDescriptor(
                    name="folk",
                    title="Folk CRM",
                    collections=("companies", "people"),
                    required_config=("FOLK_API_KEY", "FOLK_API_BASE_URL"),
                    summary="Pull firms, investors and contacts from Folk and push local edits back.",
                ),
            ),
        )
    )


def resolve_adapters(
    configured: Sequence[str],
    registry: Mapping[str, AdapterDescriptor] | None = None,
) -> Iterable[AdapterDescriptor]:
    """
    Map configured adapter names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_adapter_registry()
    unknown = sorted({adapter for adapter in configured if adapter not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer adapters configured: "
            + ", ".join(unknown)
            + ". Update configuration or register these adapters first."
        )
    return tuple(registry[adapter] for adapter in configured)


def compute_adapter_readiness(
    config: Mapping[str, Any],
    descriptors: Iterable[AdapterDescriptor],
    *,
    require_auth_ping: bool = False,
) -> Dict[str, Dict[str, Any]]:
    """
    Run each adapter's readiness check and key the serialized results by name.

    Adapters without a check report ``ready``. The adapter gauge reflects the
    Folk result only, since that is the adapter the engine cannot run without.
    """
    from venture_crm.importer.adapters.folk import check_folk_adapter_readiness

    checks = {"folk": check_folk_adapter_readiness}
    readiness: Dict[str, Dict[str, Any]] = {}
    for descriptor in descriptors:
        payload: Dict[str, Any] = {"name": descriptor.name, "title": descriptor.title, "status": "ready"}
        check = checks.get(descriptor.name)
        if check is not None:
            payload.update(check(config, require_auth_ping=require_auth_ping).as_dict())
        readiness[descriptor.name] = payload
    record_folk_adapter_status(readiness.get("folk", {}).get("status") == "ready")
    return readiness
