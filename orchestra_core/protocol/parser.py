"""Protocol — Playbook and module manifest parser.

Responsibilities:
  1. Accept raw input (str, bytes, dict) or a ``.json`` / ``.yaml`` file
  2. Deserialise JSON or YAML
  3. Validate the structure against PlaybookDefinition / ModuleDescriptor
  4. Apply the configured default step timeout to steps that omit one
  5. Return fully-typed, frozen models

The parser does not check that step targets can be dispatched; that is
``DispatchTable.validate()``'s job.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from orchestra_core.exceptions import PlaybookParseError, PlaybookValidationError
from orchestra_core.logging import get_logger
from orchestra_core.protocol.constants import DEFAULT_STEP_TIMEOUT_SECONDS, PLAYBOOK_SUFFIXES
from orchestra_core.protocol.models import ModuleDescriptor, PlaybookDefinition

if TYPE_CHECKING:
    from orchestra_core.config import Settings

_log = get_logger(__name__)


def _validation_message(prefix: str, exc: ValidationError) -> PlaybookValidationError:
    errors = exc.errors(include_url=False)
    messages = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}" for e in errors
    )
    return PlaybookValidationError(f"{prefix}: {messages}", errors=errors)


class PlaybookParser:
    """Stateless playbook parser.

    Usage::

        parser = PlaybookParser(default_timeout=120)
        playbook = parser.parse_file(Path("playbooks/lab-setup.yaml"))
    """

    def __init__(self, default_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS) -> None:
        self._default_timeout = default_timeout

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PlaybookParser:
        """Build a parser whose default step timeout comes from *settings*.

        Falls back to the process-wide settings from ``get_settings()``.
        """
        if settings is None:
            # config imports the protocol package, so resolve it lazily.
            from orchestra_core.config import get_settings

            settings = get_settings()
        return cls(default_timeout=settings.scheduler.default_step_timeout)

    def parse(self, raw: str | bytes | dict[str, Any]) -> PlaybookDefinition:
        """Parse and validate *raw* into a :class:`PlaybookDefinition`.

        Strings and bytes are read as JSON first, then YAML.

        Raises:
            PlaybookParseError: The payload is not a mapping.
            PlaybookValidationError: Pydantic validation failed.
        """
        data = _deserialise(raw)
        data = self._apply_default_timeout(data)
        try:
            playbook = PlaybookDefinition.model_validate(data)
        except ValidationError as exc:
            raise _validation_message("Playbook validation failed", exc) from exc
        _log.debug(
            "playbook_parsed",
            playbook=playbook.name,
            stages=len(playbook.stages),
            steps=playbook.step_count,
        )
        return playbook

    def parse_file(self, path: Path) -> PlaybookDefinition:
        """Parse a playbook file.  The file stem is used when no name is declared."""
        if not path.exists():
            raise PlaybookParseError(f"Playbook file not found: {path}", source=str(path))
        data = _deserialise(path.read_bytes(), source=str(path))
        data.setdefault("name", path.stem)
        return self.parse(data)

    def discover(self, directory: Path) -> dict[str, Path]:
        """Return ``{playbook_name: path}`` for every playbook file in *directory*.

        The name is the file stem; when two files share a stem the first in
        sorted order wins.
        """
        found: dict[str, Path] = {}
        if not directory.is_dir():
            return found
        for path in sorted(directory.iterdir()):
            if path.is_file() and path.suffix.lower() in PLAYBOOK_SUFFIXES:
                found.setdefault(path.stem, path)
        return found

    def _apply_default_timeout(self, data: dict[str, Any]) -> dict[str, Any]:
        stages = data.get("stages")
        if not isinstance(stages, list):
            return data
        patched_stages = []
        for stage in stages:
            if isinstance(stage, dict) and isinstance(stage.get("steps"), list):
                steps = [
                    {**step, "timeout": self._default_timeout}
                    if isinstance(step, dict) and "timeout" not in step
                    else step
                    for step in stage["steps"]
                ]
                stage = {**stage, "steps": steps}
            patched_stages.append(stage)
        return {**data, "stages": patched_stages}


def parse_module_manifest(
    raw: str | bytes | dict[str, Any] | list[dict[str, Any]],
) -> list[ModuleDescriptor]:
    """Parse a module manifest into descriptors, preserving declaration order.

    Accepted shapes::

        [{"name": "core", "dependencies": []}, ...]
        {"modules": [{"name": "core"}, ...]}
        {"modules": {"core": {"dependencies": []}, ...}}

    Raises:
        PlaybookParseError: The payload has none of the accepted shapes.
        PlaybookValidationError: A descriptor failed validation.
    """
    data: Any = raw if isinstance(raw, (list, dict)) else _load(raw)
    if isinstance(data, dict):
        data = data.get("modules")
    if isinstance(data, dict):
        for name, body in data.items():
            if body is not None and not isinstance(body, dict):
                raise PlaybookParseError(
                    f"Module '{name}' body must be a mapping, got {type(body).__name__}."
                )
        data = [{"name": name, **(body or {})} for name, body in data.items()]
    if not isinstance(data, list):
        raise PlaybookParseError("Module manifest must be a list or contain a 'modules' key.")

    descriptors: list[ModuleDescriptor] = []
    for index, entry in enumerate(data):
        try:
            descriptors.append(ModuleDescriptor.model_validate(entry))
        except ValidationError as exc:
            raise _validation_message(f"Module #{index} validation failed", exc) from exc
    return descriptors


def _load(raw: str | bytes, source: str | None = None) -> Any:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PlaybookParseError(
                f"Payload is not valid UTF-8: {exc}", source=source or repr(raw[:500])
            ) from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        try:
            return yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise PlaybookParseError(
                f"Payload is neither valid JSON nor valid YAML: {exc}",
                source=source or raw[:500],
            ) from exc


def _deserialise(raw: str | bytes | dict[str, Any], source: str | None = None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)

    data = _load(raw, source=source)
    if not isinstance(data, dict):
        raise PlaybookParseError(
            f"Expected a mapping at the top level, got {type(data).__name__}.",
            source=source or str(raw)[:500],
        )
    return data
