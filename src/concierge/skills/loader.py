"""Load capability specs from YAML files.

A file holds one capability document (a mapping) or a list of them:

    name: book_meeting_room
    description: Book a meeting room
    when_to_use: The user wants to reserve a room for a meeting
    category: office
    input_schema:
      - name: title
        type: string
        clarification_prompt: What is the meeting about?
    required_fields: [title]
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import TypeAdapter, ValidationError

from concierge.skills.errors import CapabilityRegistrationError
from concierge.skills.registry import CapabilityRegistry
from concierge.skills.types import CapabilitySpec

logger = logging.getLogger(__name__)

_spec_adapter: TypeAdapter[CapabilitySpec] = TypeAdapter(CapabilitySpec)


def parse_capability(data: dict[str, Any], source: str = "<dict>") -> CapabilitySpec:
    """Build a CapabilitySpec from plain data.

    Raises:
        CapabilityRegistrationError: If the data does not describe a valid spec.
    """
    name = str(data.get("name") or source)
    try:
        return _spec_adapter.validate_python(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise CapabilityRegistrationError(name, problems) from e


def load_capability_file(path: Path) -> list[CapabilitySpec]:
    """Read every capability document in a YAML file.

    Raises:
        CapabilityRegistrationError: On YAML errors or invalid documents.
    """
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise CapabilityRegistrationError(path.stem, [f"invalid YAML: {e}"]) from e

    documents = data if isinstance(data, list) else [data]
    specs: list[CapabilitySpec] = []
    for document in documents:
        if not isinstance(document, dict):
            raise CapabilityRegistrationError(
                path.stem, [f"expected a mapping, got {type(document).__name__}"]
            )
        document.setdefault("name", path.stem)
        specs.append(parse_capability(document, source=str(path)))
    return specs


def load_capabilities_dir(registry: CapabilityRegistry, skills_dir: Path) -> int:
    """Register every ``*.yaml``/``*.yml`` capability under a directory.

    Errors propagate: a bad capability file stops startup.

    Returns:
        Number of capabilities registered.
    """
    if not skills_dir.exists():
        logger.debug("skills_dir_missing", extra={"file.path": str(skills_dir)})
        return 0

    count = 0
    for path in sorted([*skills_dir.glob("*.yaml"), *skills_dir.glob("*.yml")]):
        for spec in load_capability_file(path):
            registry.register(spec)
            count += 1

    logger.info(
        "capabilities_loaded",
        extra={"count": count, "file.path": str(skills_dir)},
    )
    return count
