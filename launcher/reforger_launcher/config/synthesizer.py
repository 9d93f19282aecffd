"""
Deterministic server.json synthesis.

Stage order, lowest precedence first:

1. baseline template
2. computed fields from the dependency graph (game.mods, game.name)
3. scenario selection (game.scenarioId)
4. explicit profile setting overrides (dotted paths)

Later stages win on collisions. Identical inputs produce byte-identical text.
"""

from __future__ import annotations
import hashlib
import json
import typing
from typing import Any, Dict, List, Optional

from jsonschema import ValidationError as SchemaValidationError, validate
from pydantic import BaseModel, ValidationError

from ..errors import InvalidOverride, MissingScenario
from ..logging_setup import get_logger
from ..models import DependencyGraph, GeneratedConfig, SynthesisOverrides
from .schema import ServerConfig, server_json_schema

log = get_logger("reforger.launcher.synthesizer")


def _dedupe(ids: List[str]) -> List[str]:
    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


def ordered_mod_ids(graph: DependencyGraph, overrides: SynthesisOverrides) -> List[str]:
    """Mod ids in emission order. The graph itself is left untouched."""
    ids: List[str] = []
    if overrides.include_root_mod:
        ids.append(graph.root_id)
    ids.extend(graph.dependency_ids)

    preset = overrides.preset
    if preset is not None and preset.mod_ids:
        allowed = set(preset.mod_ids)
        ids = [i for i in ids if i in allowed]

    ids.extend(overrides.package_mod_ids)
    ids.extend(overrides.optional_mod_ids)

    if preset is not None and preset.overrides:
        disabled = {mod_id for mod_id, on in preset.overrides.items() if not on}
        ids = [i for i in ids if i not in disabled]
        for mod_id in sorted(preset.overrides):
            if preset.overrides[mod_id] and mod_id not in ids:
                ids.append(mod_id)

    return _dedupe(ids)


def _model_class(annotation: Any) -> Optional[type]:
    """BaseModel subclass behind an annotation like Optional[RconConfig], if any."""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    for arg in typing.get_args(annotation):
        found = _model_class(arg)
        if found is not None:
            return found
    return None


def _is_mapping(annotation: Any) -> bool:
    origin = typing.get_origin(annotation)
    if origin is dict:
        return True
    return any(_is_mapping(a) for a in typing.get_args(annotation))


def check_override_path(path: str) -> None:
    """Raise InvalidOverride unless `path` names a field of ServerConfig."""
    parts = path.split(".") if path else []
    if not parts or any(not p for p in parts):
        raise InvalidOverride(path, "empty path segment")

    model: Optional[type] = ServerConfig
    for idx, part in enumerate(parts):
        field = model.model_fields.get(part)
        if field is None:
            raise InvalidOverride(path, f"unknown field {part!r}")
        if idx == len(parts) - 1:
            return
        if _is_mapping(field.annotation):
            # free-form mapping such as gameProperties.missionHeader
            return
        model = _model_class(field.annotation)
        if model is None:
            raise InvalidOverride(path, f"{part!r} has no sub-fields")


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = document
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


class ConfigSynthesizer:
    """Turns (baseline, overrides, graph, scenario) into a GeneratedConfig."""

    def __init__(self):
        self._schema = server_json_schema()

    def _stage_computed(self, document: Dict[str, Any], overrides: SynthesisOverrides,
                        graph: DependencyGraph, scenario_id: str) -> None:
        mods = []
        for mod_id in ordered_mod_ids(graph, overrides):
            entry = {"modId": mod_id}
            name = graph.names.get(mod_id) or overrides.mod_names.get(mod_id)
            if name:
                entry["name"] = name
            mods.append(entry)
        document["game"]["mods"] = mods
        if overrides.display_name:
            document["game"]["name"] = overrides.display_name

    def _stage_scenario(self, document: Dict[str, Any], overrides: SynthesisOverrides,
                        graph: DependencyGraph, scenario_id: str) -> None:
        document["game"]["scenarioId"] = scenario_id

    def _stage_settings(self, document: Dict[str, Any], overrides: SynthesisOverrides,
                        graph: DependencyGraph, scenario_id: str) -> None:
        # sorted so that a parent path is applied before its children
        for path in sorted(overrides.settings):
            _set_path(document, path, overrides.settings[path])

    def _validate(self, document: Dict[str, Any]) -> ServerConfig:
        try:
            validate(instance=document, schema=self._schema)
        except SchemaValidationError as e:
            location = ".".join(str(p) for p in e.absolute_path) or "<root>"
            raise InvalidOverride(location, e.message) from e
        try:
            return ServerConfig.model_validate(document)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(p) for p in first["loc"]) or "<root>"
            raise InvalidOverride(location, first["msg"]) from e

    def synthesize(self, baseline: ServerConfig, overrides: SynthesisOverrides,
                   graph: DependencyGraph, selected_scenario: Optional[str]) -> GeneratedConfig:
        if not selected_scenario or not graph.has_scenario(selected_scenario):
            raise MissingScenario(selected_scenario or None, graph.scenario_ids())
        for path in overrides.settings:
            check_override_path(path)

        document = baseline.to_document()
        for stage in (self._stage_computed, self._stage_scenario, self._stage_settings):
            stage(document, overrides, graph, selected_scenario)

        final = self._validate(document).to_document()
        text = json.dumps(final, indent=2, ensure_ascii=False) + "\n"
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        log.debug("Synthesized config for %s: %d mods, digest %s", graph.root_id, len(final["game"]["mods"]), digest[:12])
        return GeneratedConfig(document=final, text=text, digest=digest)
