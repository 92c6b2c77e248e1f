"""Utilities for loading and applying external CRM field mappings."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Sequence

import yaml

from flask import current_app

from venture_crm.models.crm import EntityType


class MappingLoadError(RuntimeError):
    """Raised when a mapping specification cannot be loaded or validated."""


class MappingError(RuntimeError):
    """Raised when a single record cannot be mapped to canonical attributes."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


# Field bag -------------------------------------------------------------------


_EMPTY_FIELDS: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class FieldBag:
    """
    Workspace-scoped custom field values carried by one external record.

    The external CRM nests custom fields under the id of each workspace group
    the record belongs to; ``extract`` returns only the requested workspace's
    fields so values from other groups never leak into the mapping.
    """

    values_by_workspace: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "FieldBag":
        raw = record.get("customFieldValues") if isinstance(record, Mapping) else None
        if not isinstance(raw, Mapping):
            return cls({})
        scoped = {
            str(workspace_id): values
            for workspace_id, values in raw.items()
            if isinstance(values, Mapping)
        }
        return cls(scoped)

    def extract(self, workspace_id: str) -> Mapping[str, Any]:
        values = self.values_by_workspace.get(str(workspace_id))
        if not values:
            return _EMPTY_FIELDS
        return MappingProxyType(dict(values))

    def workspaces(self) -> tuple[str, ...]:
        return tuple(self.values_by_workspace)


def is_x_marked(value: Any) -> bool:
    """Return True only for the checkbox encoding ``"x"`` (any case, surrounding whitespace ignored)."""
    if value is None:
        return False
    return str(value).strip().casefold() == "x"


def extract_flag_columns(fields: Mapping[str, Any], columns: Sequence[str]) -> list[str]:
    """Collect the names of X-marked columns, preserving the configured column order."""
    return [column for column in columns if is_x_marked(fields.get(column))]


def classify(value: Any, synonyms: Mapping[str, str]) -> str | None:
    """Map free text onto a closed classification; unknown vocabulary maps to None."""
    if value is None:
        return None
    key = str(value).strip().casefold()
    if not key:
        return None
    return synonyms.get(key)


def canonical_hash(canonical: Mapping[str, Any]) -> str:
    serialized = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


# Specification ----------------------------------------------------------------


SOURCE_KINDS = ("custom", "record", "mapped", "compose")


@dataclass(frozen=True)
class MappingSource:
    kind: str
    key: str
    match: str | None = None
    join: str | None = None


@dataclass(frozen=True)
class MappingField:
    target: str
    sources: Sequence[MappingSource]
    required: bool = False
    default: Any | None = None
    transform: str | None = None
    classification: str | None = None


@dataclass(frozen=True)
class MappingSpec:
    version: int
    adapter: str
    entity_type: EntityType
    collection: str
    fields: Sequence[MappingField]
    flag_columns: Mapping[str, Sequence[str]]
    classifications: Mapping[str, Mapping[str, str]]
    checksum: str
    path: Path


def _parse_source(entry: Any, target: str) -> MappingSource:
    if not isinstance(entry, Mapping):
        raise MappingLoadError(f"Source for '{target}' must be a mapping, got {entry!r}")
    kinds = [kind for kind in SOURCE_KINDS if kind in entry]
    if len(kinds) != 1:
        raise MappingLoadError(
            f"Source for '{target}' must declare exactly one of {', '.join(SOURCE_KINDS)}: {entry!r}"
        )
    kind = kinds[0]
    key = str(entry[kind]).strip()
    if not key:
        raise MappingLoadError(f"Source for '{target}' has an empty {kind} key.")
    match = entry.get("match")
    join = entry.get("join")
    return MappingSource(
        kind=kind,
        key=key,
        match=str(match) if match is not None else None,
        join=str(join) if join is not None else None,
    )


def load_mapping(path: str | Path) -> MappingSpec:
    """
    Load and validate a YAML mapping specification.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        adapter = str(raw["adapter"]).strip()
        entity_type = EntityType.coerce(raw["entity"])
        collection = str(raw["collection"]).strip()
        fields_payload = raw["fields"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not adapter:
        raise MappingLoadError("Mapping adapter value cannot be empty.")
    if not collection:
        raise MappingLoadError("Mapping collection value cannot be empty.")

    flag_columns: dict[str, tuple[str, ...]] = {}
    for target, columns in (raw.get("flag_columns") or {}).items():
        if not isinstance(columns, (list, tuple)):
            raise MappingLoadError(f"Flag columns for '{target}' must be a list.")
        flag_columns[str(target)] = tuple(str(column) for column in columns)

    classifications: dict[str, dict[str, str]] = {}
    for name, table in (raw.get("classifications") or {}).items():
        if not isinstance(table, Mapping):
            raise MappingLoadError(f"Classification '{name}' must be a mapping of synonyms.")
        classifications[str(name)] = {str(key).strip().casefold(): str(value) for key, value in table.items()}

    fields: list[MappingField] = []
    seen_targets: set[str] = set(flag_columns)
    for entry in fields_payload:
        if not isinstance(entry, Mapping):
            raise MappingLoadError(f"Field definition must be a mapping, got {entry!r}")
        target = entry.get("target")
        if not target:
            raise MappingLoadError(f"Field entry missing 'target': {entry!r}")
        target = str(target).strip()
        if target in seen_targets:
            raise MappingLoadError(f"Duplicate target '{target}' in mapping.")
        seen_targets.add(target)
        sources = tuple(_parse_source(source, target) for source in entry.get("sources") or ())
        default = entry.get("default")
        if not sources and default is None:
            raise MappingLoadError(f"Field '{target}' requires either sources or default.")
        for source in sources:
            if source.kind == "mapped" and source.key not in seen_targets:
                raise MappingLoadError(f"Field '{target}' references unknown mapped target '{source.key}'.")
            if source.kind == "compose" and source.key not in COMPOSERS:
                raise MappingLoadError(f"Field '{target}' references unknown composer '{source.key}'.")
        transform = entry.get("transform")
        if transform and str(transform) not in TRANSFORMS:
            raise MappingLoadError(f"Unknown transform '{transform}' for field '{target}'.")
        classification = entry.get("classification")
        if classification and str(classification) not in classifications:
            raise MappingLoadError(f"Unknown classification '{classification}' for field '{target}'.")
        fields.append(
            MappingField(
                target=target,
                sources=sources,
                required=bool(entry.get("required", False)),
                default=default,
                transform=str(transform) if transform else None,
                classification=str(classification) if classification else None,
            )
        )

    return MappingSpec(
        version=version,
        adapter=adapter,
        entity_type=entity_type,
        collection=collection,
        fields=tuple(fields),
        flag_columns=flag_columns,
        classifications=classifications,
        checksum=_compute_checksum(raw),
        path=path,
    )


def _compute_checksum(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def mapping_path_for(entity_type: EntityType | str, mapping_dir: str | Path) -> Path:
    entity = EntityType.coerce(entity_type)
    return Path(mapping_dir) / f"folk_{entity.value}_v1.yaml"


def get_active_mapping(entity_type: EntityType | str) -> MappingSpec:
    """
    Load the configured mapping spec for ``entity_type`` (cached per app).
    The cache entry is refreshed when the file modification time changes.
    """

    mapping_dir = current_app.config.get("IMPORTER_FOLK_MAPPING_DIR")
    if not mapping_dir:
        raise MappingLoadError("IMPORTER_FOLK_MAPPING_DIR is not configured.")
    config_path = mapping_path_for(entity_type, mapping_dir)
    if not config_path.exists():
        raise MappingLoadError(f"Mapping file not found at {config_path}")

    cache: dict[str, tuple[MappingSpec, float]] = current_app.extensions.setdefault("_importer_mapping_cache", {})
    cache_key = str(config_path)
    current_mtime = config_path.stat().st_mtime
    cached_entry = cache.get(cache_key)
    if cached_entry and cached_entry[1] == current_mtime:
        return cached_entry[0]
    if cached_entry:
        current_app.logger.debug(f"Mapping file changed, reloading: {config_path}")

    spec = load_mapping(config_path)
    cache[cache_key] = (spec, current_mtime)
    return spec


# Transforms --------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _text(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def _email(value: Any) -> str | None:
    text = str(value).strip().lower()
    return text if "@" in text else None


def _placeholder_null(value: Any) -> str | None:
    text = str(value).strip()
    if text.casefold() in {"--", "-", "n/a"}:
        return None
    return text


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return [_text(item) for item in value if not _is_blank(item)]
    return [_text(value)]


def _group_ids(value: Any) -> list[str]:
    ids: list[str] = []
    for item in _as_list(value):
        group_id = item.get("id") if isinstance(item, Mapping) else item
        if group_id and str(group_id) not in ids:
            ids.append(str(group_id))
    return ids


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "text": _text,
    "email": _email,
    "placeholder_null": _placeholder_null,
    "list": _as_list,
    "group_ids": _group_ids,
}


def _compose_firm_description(record: Mapping[str, Any], fields: Mapping[str, Any]) -> str | None:
    parent_company = fields.get("Parent Company")
    deeptech_deals = fields.get("# DT deals in portfolio")
    fund_size = fields.get("Size of current DT fund(s)")
    parts = [
        record.get("description"),
        f"Parent Company: {parent_company}" if not _is_blank(parent_company) else None,
        "DeepTech focused" if str(fields.get("DT Only?") or "").strip() == "Yes" else None,
        f"DeepTech deals: {deeptech_deals}" if not _is_blank(deeptech_deals) and deeptech_deals != "--" else None,
        f"Fund size: {fund_size}" if not _is_blank(fund_size) and fund_size != "--" else None,
    ]
    text = ". ".join(str(part).strip() for part in parts if not _is_blank(part))
    return text or None


def _compose_person_full_name(record: Mapping[str, Any], fields: Mapping[str, Any]) -> str | None:
    parts = [record.get("firstName"), record.get("lastName")]
    text = " ".join(str(part).strip() for part in parts if not _is_blank(part))
    return text or None


COMPOSERS: Dict[str, Callable[[Mapping[str, Any], Mapping[str, Any]], Any]] = {
    "firm_description": _compose_firm_description,
    "person_full_name": _compose_person_full_name,
}


# Mapper --------------------------------------------------------------------------


def resolve_record_path(record: Mapping[str, Any], path: str) -> Any:
    """Resolve dotted paths such as ``urls.0`` or ``companies.0.name``."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


@dataclass
class MappingResult:
    canonical: dict[str, Any]
    unmapped_fields: list[str] = field(default_factory=list)

    @property
    def external_id(self) -> str | None:
        value = self.canonical.get("external_id")
        return str(value) if value is not None else None

    @property
    def checksum(self) -> str:
        return canonical_hash(self.canonical)


class FieldMapper:
    """
    Apply a mapping spec to external records.

    Mapping is pure: the same record and workspace always yield an identical
    canonical dict, which the upsert step relies on for change detection.
    """

    def __init__(self, spec: MappingSpec, workspace_id: str):
        self.spec = spec
        self.workspace_id = str(workspace_id)

    @property
    def entity_type(self) -> EntityType:
        return self.spec.entity_type

    def map_record(self, record: Mapping[str, Any]) -> MappingResult:
        if not isinstance(record, Mapping):
            raise MappingError(f"Expected a mapping record, got {type(record).__name__}")

        fields = FieldBag.from_record(record).extract(self.workspace_id)
        canonical: dict[str, Any] = {}

        for target, columns in self.spec.flag_columns.items():
            canonical[target] = extract_flag_columns(fields, columns)

        for mapping_field in self.spec.fields:
            value = self._resolve_sources(mapping_field.sources, record, fields, canonical)
            if _is_blank(value) and mapping_field.default is not None:
                value = mapping_field.default
            if not _is_blank(value) and mapping_field.transform:
                value = TRANSFORMS[mapping_field.transform](value)
            elif isinstance(value, str):
                value = value.strip()
            if not _is_blank(value) and mapping_field.classification:
                value = classify(value, self.spec.classifications[mapping_field.classification])
            if _is_blank(value):
                if mapping_field.required:
                    raise MappingError(
                        f"Required field '{mapping_field.target}' is missing",
                        field=mapping_field.target,
                    )
                value = [] if mapping_field.transform in ("list", "group_ids") else None
            canonical[mapping_field.target] = value

        if canonical.get("external_id") is not None:
            canonical["external_id"] = str(canonical["external_id"])

        used_custom = {
            source.key for mapping_field in self.spec.fields for source in mapping_field.sources if source.kind == "custom"
        }
        used_custom.update(column for columns in self.spec.flag_columns.values() for column in columns)
        unmapped = sorted(key for key in fields if key not in used_custom)
        return MappingResult(canonical=canonical, unmapped_fields=unmapped)

    def _resolve_sources(
        self,
        sources: Iterable[MappingSource],
        record: Mapping[str, Any],
        fields: Mapping[str, Any],
        canonical: Mapping[str, Any],
    ) -> Any:
        for source in sources:
            value = self._resolve_source(source, record, fields, canonical)
            if not _is_blank(value):
                return value
        return None

    @staticmethod
    def _resolve_source(
        source: MappingSource,
        record: Mapping[str, Any],
        fields: Mapping[str, Any],
        canonical: Mapping[str, Any],
    ) -> Any:
        if source.kind == "custom":
            value = fields.get(source.key)
        elif source.kind == "record":
            value = resolve_record_path(record, source.key)
        elif source.kind == "mapped":
            value = canonical.get(source.key)
        else:
            value = COMPOSERS[source.key](record, fields)

        if source.match is not None:
            needle = source.match.casefold()
            candidates = value if isinstance(value, (list, tuple)) else [value]
            value = next(
                (item for item in candidates if isinstance(item, str) and needle in item.casefold()),
                None,
            )
        if source.join is not None and isinstance(value, (list, tuple)):
            value = source.join.join(str(item) for item in value if not _is_blank(item))
        return value
