"""Execution resources.

Handlers reach a capability's resources through the ResourceAccess the
executor puts on ExecutionContext. Content comes from the resource's inline
``content`` or from the file its ``pointer`` names, is parsed by the loader
registered for its type and cached. None of it is ever rendered into a prompt:
the disclosure tiers only show describe_resource().

Script resources are not loaded here. They name a handler registered with the
executor.
"""

import copy
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles
import yaml

from concierge.skills import errors
from concierge.skills.errors import CapabilityExecutionError
from concierge.skills.types import CapabilitySpec, ResourceType, SkillResource

logger = logging.getLogger(__name__)

ResourceParser = Callable[[str], Any]

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(template: str, params: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders with param values.

    Lists are joined with commas. Placeholders without a value are left as
    written.
    """

    def substitute(match: re.Match[str]) -> str:
        value = params.get(match.group(1))
        if value is None:
            return match.group(0)
        if isinstance(value, list | tuple):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER_RE.sub(substitute, template)


def map_params(resource: SkillResource, params: dict[str, Any]) -> dict[str, Any]:
    """Rename params through the resource's mapping; no mapping passes all of them."""
    if not resource.param_mapping:
        return dict(params)
    return {
        target: params[source]
        for source, target in resource.param_mapping.items()
        if source in params
    }


def _parse_text(raw: str) -> str:
    return raw


def _parse_config(raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ValueError(f"not valid YAML or JSON: {e}") from e


@dataclass(slots=True)
class CacheStats:
    entries: int
    hits: int
    misses: int


class ResourceManager:
    """Loads resource content by type, with a cache keyed on where it came from."""

    def __init__(self, base_dir: Path | None = None):
        self._base_dir = base_dir
        self._parsers: dict[ResourceType, ResourceParser] = {
            ResourceType.TEMPLATE: _parse_text,
            ResourceType.REFERENCE: _parse_text,
            ResourceType.CONFIG: _parse_config,
        }
        self._cache: dict[tuple[Any, ...], Any] = {}
        self._hits = 0
        self._misses = 0

    def register_loader(self, resource_type: ResourceType, parser: ResourceParser) -> None:
        """Replace how content of one resource type is parsed."""
        if resource_type == ResourceType.SCRIPT:
            raise ValueError("script resources run through registered handlers")
        self._parsers[resource_type] = parser
        self.clear_cache()

    def for_capability(self, spec: CapabilitySpec) -> "ResourceAccess":
        return ResourceAccess(self, spec)

    async def load(self, resource: SkillResource) -> Any:
        """Load and parse a resource's content.

        Raises:
            CapabilityExecutionError: RESOURCE_UNAVAILABLE if the content cannot
                be read, EXECUTION_ERROR if it cannot be parsed or the resource
                is a script.
        """
        parser = self._parsers.get(resource.type)
        if parser is None:
            raise CapabilityExecutionError(
                errors.EXECUTION_ERROR,
                f"Resource '{resource.id}' is a {resource.type.value} and cannot be loaded",
            )

        key = (resource.type, resource.pointer, resource.content)
        if key in self._cache:
            self._hits += 1
            return copy.deepcopy(self._cache[key])
        self._misses += 1

        raw = await self._read(resource)
        try:
            value = parser(raw)
        except ValueError as e:
            raise CapabilityExecutionError(
                errors.EXECUTION_ERROR, f"Resource '{resource.id}' is malformed: {e}"
            ) from e
        self._cache[key] = value
        logger.debug(
            "resource_loaded",
            extra={"resource.id": resource.id, "resource.type": resource.type.value},
        )
        return copy.deepcopy(value)

    async def render(self, resource: SkillResource, params: dict[str, Any]) -> str:
        """Render a template resource with params passed through its mapping."""
        if resource.type != ResourceType.TEMPLATE:
            raise CapabilityExecutionError(
                errors.EXECUTION_ERROR, f"Resource '{resource.id}' is not a template"
            )
        template = await self.load(resource)
        return render_template(template, map_params(resource, params))

    def clear_cache(self) -> None:
        self._cache.clear()
        self._hits = 0
        self._misses = 0

    def cache_stats(self) -> CacheStats:
        return CacheStats(entries=len(self._cache), hits=self._hits, misses=self._misses)

    def _resolve(self, resource: SkillResource) -> Path:
        assert resource.pointer is not None
        path = Path(resource.pointer).expanduser()
        if path.is_absolute():
            return path
        if self._base_dir is None:
            raise CapabilityExecutionError(
                errors.RESOURCE_UNAVAILABLE,
                f"Resource '{resource.id}' has a relative pointer and no resource directory is set",
            )
        base = self._base_dir.resolve()
        path = (base / path).resolve()
        if not path.is_relative_to(base):
            raise CapabilityExecutionError(
                errors.PERMISSION_DENIED,
                f"Resource '{resource.id}' points outside the resource directory",
            )
        return path

    async def _read(self, resource: SkillResource) -> str:
        if resource.content is not None:
            return resource.content
        if not resource.pointer:
            raise CapabilityExecutionError(
                errors.RESOURCE_UNAVAILABLE,
                f"Resource '{resource.id}' has no content",
            )
        path = self._resolve(resource)
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except OSError as e:
            logger.warning(
                "resource_unreadable",
                extra={"resource.id": resource.id, "error.message": str(e)},
            )
            raise CapabilityExecutionError(
                errors.RESOURCE_UNAVAILABLE,
                f"Resource '{resource.id}' could not be read",
                recoverable=True,
            ) from e


class ResourceAccess:
    """One capability's resources, looked up by id."""

    def __init__(self, manager: ResourceManager, spec: CapabilitySpec):
        self._manager = manager
        self._spec = spec

    def _get(self, resource_id: str) -> SkillResource:
        resource = self._spec.get_resource(resource_id)
        if resource is None:
            raise CapabilityExecutionError(
                errors.RESOURCE_UNAVAILABLE,
                f"'{self._spec.name}' has no resource '{resource_id}'",
            )
        return resource

    async def load(self, resource_id: str) -> Any:
        return await self._manager.load(self._get(resource_id))

    async def render(self, resource_id: str, params: dict[str, Any]) -> str:
        return await self._manager.render(self._get(resource_id), params)
