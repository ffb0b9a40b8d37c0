"""Turn source pages into target page payloads driven by a mapping spec.

A mapping spec is data: which source property feeds which target property,
which target properties go through a named hook, which target properties are
"virtual" (filled by a hook with no source value) and a few options. Hooks
are plain callables looked up by name in a HookRegistry:

- field hooks take the source property value and return the target value
  (or None to leave the property out)
- the post-process hook takes ``(payload, record)`` and may edit the payload
  in place

Any hook may raise SkipPageError to skip the page on purpose.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .block_sanitizer import sanitize_blocks
from .exceptions import MissingHookError, TransformError
from .media import MAX_FILE_NAME_LENGTH
from .models import TransformedPage

if TYPE_CHECKING:
    from collections.abc import Callable

    from .media import MediaMigrator
    from .models import SourceRecord

logger: logging.Logger = logging.getLogger(__name__)

# Computed by Notion; writes to them are rejected
READ_ONLY_PROPERTY_TYPES = frozenset(
    {
        "formula",
        "rollup",
        "created_time",
        "created_by",
        "last_edited_time",
        "last_edited_by",
        "unique_id",
        "button",
        "verification",
    }
)


class HookRegistry:
    """Named hooks a mapping spec can refer to."""

    _hooks: dict[str, Callable[..., Any]]

    def __init__(self, hooks: dict[str, Callable[..., Any]] | None = None) -> None:
        self._hooks = dict(hooks or {})

    def register(self, name: str, hook: Callable[..., Any]) -> None:
        if name in self._hooks:
            logger.debug(f"Replacing hook '{name}'")
        self._hooks[name] = hook

    def resolve(self, name: str) -> Callable[..., Any]:
        """Return the hook registered under ``name``.

        Raises:
            MissingHookError: Nothing is registered under that name
        """
        try:
            return self._hooks[name]
        except KeyError:
            raise MissingHookError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._hooks

    def names(self) -> list[str]:
        return sorted(self._hooks)


@dataclass
class TransformOptions:
    skip_blocks: bool = False
    copy_icon: bool = True


@dataclass
class MappingSpec:
    """Declarative description of a source -> target page mapping.

    An empty ``field_mappings`` maps every source property to the target
    property of the same name.
    """

    field_mappings: dict[str, str] = field(default_factory=dict)
    hooks: dict[str, str] = field(default_factory=dict)
    virtual_fields: list[str] = field(default_factory=list)
    post_process: str | None = None
    options: TransformOptions = field(default_factory=TransformOptions)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MappingSpec:
        options = data.get("options") or {}
        return cls(
            field_mappings=dict(data.get("fieldMappings") or {}),
            hooks=dict(data.get("hooks") or {}),
            virtual_fields=list(data.get("virtualFields") or []),
            post_process=data.get("postProcess") or None,
            options=TransformOptions(
                skip_blocks=bool(options.get("skipBlocks", False)),
                copy_icon=bool(options.get("copyIcon", True)),
            ),
        )

    @classmethod
    def from_file(cls, path: Path | str) -> MappingSpec:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            msg = f"Cannot read mapping file {path}: {e}"
            raise TransformError(msg) from e
        if not isinstance(data, dict):
            msg = f"Mapping file {path} must contain a JSON object"
            raise TransformError(msg)
        return cls.from_dict(data)

    def hook_names(self) -> set[str]:
        names = set(self.hooks.values())
        if self.post_process:
            names.add(self.post_process)
        return names


def copy_icon(icon: dict[str, Any] | None) -> dict[str, Any] | None:
    """Re-express a page icon in a form the create-page endpoint accepts."""
    if not icon:
        return None
    icon_type = icon.get("type")
    if icon_type == "emoji" and icon.get("emoji"):
        return {"type": "emoji", "emoji": icon["emoji"]}
    if icon_type in ("external", "file"):
        url = (icon.get(icon_type) or {}).get("url")
        if url:
            return {"type": "external", "external": {"url": url}}
    logger.debug(f"Not copying icon of type {icon_type}")
    return None


def sanitize_file_object(file_ref: dict[str, Any]) -> dict[str, Any]:
    """Trim a file object's display name to the length Notion accepts."""
    if file_ref.get("type") == "external":
        url = (file_ref.get("external") or {}).get("url") or ""
        name = file_ref.get("name") or url
        return {"type": "external", "name": name[:MAX_FILE_NAME_LENGTH], "external": {"url": url}}
    if "name" in file_ref:
        return {**file_ref, "name": (file_ref["name"] or "file")[:MAX_FILE_NAME_LENGTH]}
    return file_ref


class Transformer:
    """Apply a MappingSpec to a SourceRecord."""

    registry: HookRegistry
    _media: MediaMigrator | None

    def __init__(self, registry: HookRegistry | None = None, media: MediaMigrator | None = None) -> None:
        self.registry = registry or HookRegistry()
        self._media = media

    def missing_hooks(self, spec: MappingSpec) -> list[str]:
        """Hook names the spec refers to that are not registered."""
        return sorted(name for name in spec.hook_names() if name not in self.registry)

    def transform(self, record: SourceRecord, spec: MappingSpec) -> TransformedPage:
        """Build the target payload for one source page.

        ``record.children`` must already be loaded unless the spec skips blocks.

        Raises:
            TransformError: A property has no type, or a named hook is missing
            SkipPageError: A hook chose to skip this page
        """
        payload = TransformedPage()
        mappings = spec.field_mappings or {name: name for name in record.properties}

        for source_key, target_key in mappings.items():
            value = record.properties.get(source_key)
            if value is None:
                continue

            hook_name = spec.hooks.get(target_key)
            if hook_name:
                result = self.registry.resolve(hook_name)(value)
            else:
                result = self._copy_property(record, source_key, value)
            if result is not None:
                payload.properties[target_key] = result

        self._apply_virtual_fields(spec, payload)

        if spec.post_process:
            self.registry.resolve(spec.post_process)(payload, record)

        if spec.options.copy_icon:
            payload.icon = copy_icon(record.icon)

        if not spec.options.skip_blocks and record.children:
            blocks = sanitize_blocks(record.children)
            if self._media is not None:
                blocks = self._media.transform_media_blocks(record.id, blocks)
            payload.children = blocks

        return payload

    def _apply_virtual_fields(self, spec: MappingSpec, payload: TransformedPage) -> None:
        for target_key in spec.virtual_fields:
            hook_name = spec.hooks.get(target_key, target_key)
            if hook_name not in self.registry:
                logger.warning(f"No hook defined for virtual field '{target_key}', skipping it")
                payload.missing_hooks.append(target_key)
                continue
            result = self.registry.resolve(hook_name)(None)
            if result is not None:
                payload.properties[target_key] = result

    def _copy_property(self, record: SourceRecord, name: str, value: dict[str, Any]) -> dict[str, Any] | None:
        prop_type = value.get("type") if isinstance(value, dict) else None
        if not prop_type:
            msg = f"Cannot infer type for property '{name}' of page {record.id}"
            raise TransformError(msg)
        if prop_type in READ_ONLY_PROPERTY_TYPES:
            logger.debug(f"Skipping read-only {prop_type} property '{name}'")
            return None
        if prop_type == "files":
            return self._migrate_files(record.id, name, record.media_refs.get(name, []))
        return {prop_type: value.get(prop_type)}

    def _migrate_files(self, context_id: str, name: str, files: list[dict[str, Any]]) -> dict[str, Any]:
        """Upload Notion-hosted files and keep external links as they are."""
        hosted = [f for f in files if f.get("type") == "file"]
        external = [sanitize_file_object(f) for f in files if f.get("type") == "external"]
        logger.debug(f"Property '{name}': {len(hosted)} hosted file(s), {len(external)} external link(s)")

        uploaded: list[dict[str, Any]] = []
        if hosted and self._media is None:
            logger.warning(f"Dropping {len(hosted)} hosted file(s) of '{name}': media migration is disabled")
        elif hosted:
            uploaded = [sanitize_file_object(ref) for ref in self._media.process_files(context_id, hosted)]
            logger.info(f"Property '{name}': migrated {len(uploaded)} of {len(hosted)} hosted file(s)")

        return {"files": uploaded + external}
