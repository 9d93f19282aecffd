from __future__ import annotations
import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScenarioRef(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    name: str = ""


class WorkshopItem(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    name: str = ""
    scenarios: Tuple[ScenarioRef, ...] = ()
    dependencies: Tuple[str, ...] = ()


class DependencyGraph(BaseModel):
    """Result of one resolution. `dependency_ids` never contains the root."""
    root_id: str
    root_name: str = ""
    dependency_ids: List[str] = Field(default_factory=list)
    names: Dict[str, str] = Field(default_factory=dict)
    scenarios: List[ScenarioRef] = Field(default_factory=list)
    max_depth: int = 0
    depth_reached: int = 0
    depth_exceeded: bool = False
    cyclic_edges: List[Tuple[str, str]] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    resolved_at: datetime = Field(default_factory=utcnow)

    def scenario_ids(self) -> List[str]:
        return [s.id for s in self.scenarios]

    def has_scenario(self, scenario_id: Optional[str]) -> bool:
        return scenario_id is not None and scenario_id in self.scenario_ids()

    def digest(self) -> str:
        payload = json.dumps({"root": self.root_id, "ids": self.dependency_ids}, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ModPreset(BaseModel):
    name: str
    # empty = every resolved mod
    mod_ids: List[str] = Field(default_factory=list)
    # mod id -> True (force enable) / False (force disable)
    overrides: Dict[str, bool] = Field(default_factory=dict)


class ModEntry(BaseModel):
    """A mod in the shared library, offered to every profile."""
    mod_id: str
    name: str


class ModPackage(BaseModel):
    """Named bundle of library mods a profile can add as a whole."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    mod_ids: List[str] = Field(default_factory=list)


class SynthesisOverrides(BaseModel):
    """Everything a profile contributes to synthesis on top of the baseline."""
    display_name: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    preset: Optional[ModPreset] = None
    # mods of the selected packages, in package selection order
    package_mod_ids: List[str] = Field(default_factory=list)
    optional_mod_ids: List[str] = Field(default_factory=list)
    include_root_mod: bool = False
    # library names for mods the graph has no name for
    mod_names: Dict[str, str] = Field(default_factory=dict)


class Profile(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    workshop_id: str
    workshop_url: str = ""
    max_depth: Optional[int] = None
    selected_scenario: Optional[str] = None

    presets: List[ModPreset] = Field(default_factory=list)
    active_preset: Optional[str] = None
    optional_package_ids: List[str] = Field(default_factory=list)
    optional_mod_ids: List[str] = Field(default_factory=list)
    include_root_mod: bool = False
    # dotted server.json path -> value, e.g. {"game.maxPlayers": 32}
    settings_overrides: Dict[str, Any] = Field(default_factory=dict)

    snapshot: Optional[DependencyGraph] = None
    block_on_drift: bool = False
    load_session_save: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    def current_snapshot(self) -> Optional[DependencyGraph]:
        """The stored snapshot, unless it was resolved for a different workshop root."""
        if self.snapshot is None or self.snapshot.root_id != self.workshop_id:
            return None
        return self.snapshot

    def preset(self) -> Optional[ModPreset]:
        if self.active_preset is None:
            return None
        for p in self.presets:
            if p.name == self.active_preset:
                return p
        return None

    def package_mod_ids(self, packages: Sequence[ModPackage]) -> List[str]:
        by_id = {p.id: p for p in packages}
        ids: List[str] = []
        for package_id in self.optional_package_ids:
            package = by_id.get(package_id)
            if package is not None:
                ids.extend(package.mod_ids)
        return ids

    def synthesis_overrides(self, packages: Sequence[ModPackage] = (),
                            mod_names: Optional[Dict[str, str]] = None) -> SynthesisOverrides:
        return SynthesisOverrides(
            display_name=self.name,
            settings=dict(self.settings_overrides),
            preset=self.preset(),
            package_mod_ids=self.package_mod_ids(packages),
            optional_mod_ids=list(self.optional_mod_ids),
            include_root_mod=self.include_root_mod,
            mod_names=dict(mod_names or {}),
        )


class GeneratedConfig(BaseModel):
    document: Dict[str, Any]
    text: str
    digest: str


class DriftReport(BaseModel):
    profile_id: str
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    selected_scenario: Optional[str] = None
    scenario_present: bool = True
    has_snapshot: bool = True
    # snapshot was resolved for another workshop root than the profile now names
    root_changed: bool = False
    fresh: DependencyGraph

    @property
    def has_drift(self) -> bool:
        return bool(self.added or self.removed or self.root_changed or not self.scenario_present)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"fresh"})
        data["has_drift"] = self.has_drift
        data["fresh_digest"] = self.fresh.digest()
        return data


class RunPhase(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class RunState(BaseModel):
    model_config = ConfigDict(frozen=True)
    phase: RunPhase = RunPhase.STOPPED
    exit_code: Optional[int] = None

    @classmethod
    def crashed(cls, exit_code: Optional[int]) -> "RunState":
        return cls(phase=RunPhase.CRASHED, exit_code=exit_code)

    @property
    def can_start(self) -> bool:
        return self.phase in (RunPhase.STOPPED, RunPhase.CRASHED)

    @property
    def can_stop(self) -> bool:
        return self.phase in (RunPhase.STARTING, RunPhase.RUNNING)


class RunStatus(BaseModel):
    profile_id: str
    state: RunState
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    config_path: Optional[str] = None
