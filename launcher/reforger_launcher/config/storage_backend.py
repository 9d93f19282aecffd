"""
Datei-basierte Persistierung der Profile.

Ein JSON-Record pro Profil (inkl. letztem Dependency-Snapshot) und eine
generierte server.json pro Profil. Alle Schreibvorgänge sind atomar
(temp-Datei + rename) und pro Profil-ID serialisiert.

Dazu kommt die gemeinsame Mod-Bibliothek (mods.json) mit benannten
Paketen (packages.json), die Profile als Ganzes zuschalten können.
"""

from __future__ import annotations
import json
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..errors import (
    ConcurrentWriteConflict,
    InvalidResolveRequest,
    LibraryConflict,
    ModNotFound,
    NoSnapshot,
    PackageNotFound,
    ProfileNotFound,
)
from ..logging_setup import get_logger
from ..models import DependencyGraph, DriftReport, GeneratedConfig, ModEntry, ModPackage, Profile, utcnow
from ..workshop import parse_mod_id_input
from .file_layout import StoreLayout, is_profile_id
from .schema import ServerConfig, default_baseline
from .synthesizer import ConfigSynthesizer, check_override_path

log = get_logger("reforger.launcher.store")

# fields a caller may change through update_profile
UPDATABLE_FIELDS = frozenset({
    "name",
    "workshop",
    "max_depth",
    "selected_scenario",
    "presets",
    "active_preset",
    "optional_package_ids",
    "optional_mod_ids",
    "include_root_mod",
    "settings_overrides",
    "block_on_drift",
    "load_session_save",
})


def _parse_workshop(value: str) -> Tuple[str, str]:
    """URL oder nackte ID -> (workshop_id, workshop_url)."""
    workshop_id = parse_mod_id_input(value)
    if workshop_id is None:
        raise InvalidResolveRequest(f"not a workshop URL or id: {value!r}")
    url = value.strip() if "/workshop/" in value else ""
    return workshop_id, url


def _required_name(name: str, what: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError(f"{what} name is required")
    return name


def compare_snapshots(profile: Profile, fresh: DependencyGraph) -> DriftReport:
    """Vergleicht den gespeicherten Snapshot mit einer frischen Auflösung (ohne Mutation)."""
    selected = profile.selected_scenario
    scenario_present = selected is None or fresh.has_scenario(selected)
    snapshot = profile.snapshot
    if snapshot is None:
        return DriftReport(
            profile_id=profile.id,
            selected_scenario=selected,
            scenario_present=scenario_present,
            has_snapshot=False,
            fresh=fresh,
        )
    root_changed = snapshot.root_id != profile.workshop_id
    old_ids = set(snapshot.dependency_ids)
    new_ids = set(fresh.dependency_ids)
    return DriftReport(
        profile_id=profile.id,
        added=[i for i in fresh.dependency_ids if i not in old_ids],
        removed=[i for i in snapshot.dependency_ids if i not in new_ids],
        selected_scenario=selected,
        scenario_present=scenario_present,
        root_changed=root_changed,
        fresh=fresh,
    )


class FileProfileStore:
    """
    Profile-CRUD plus die auflösungsbezogenen Operationen refresh/check_drift.

    Der Snapshot eines Profils wird ausschließlich durch refresh() ersetzt.
    """

    def __init__(self, layout: StoreLayout, resolver, synthesizer: ConfigSynthesizer):
        self.layout = layout
        self.resolver = resolver
        self.synthesizer = synthesizer
        self.supervisor = None
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._library_lock = threading.Lock()
        self.layout.ensure_structure()

    def bind_supervisor(self, supervisor) -> None:
        """Wird beim Löschen benachrichtigt, um laufende Prozesse zu beenden."""
        self.supervisor = supervisor

    # === Low-level I/O ===

    def _lock(self, profile_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(profile_id)
            if lock is None:
                lock = self._locks[profile_id] = threading.Lock()
            return lock

    def _load_json(self, path: Path) -> Dict:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, IOError) as e:
            log.error("Failed to load %s: %s", path, e)
            raise

    def _write_text(self, path: Path, text: str) -> None:
        """Speichert Datei atomar."""
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(path.suffix + ".tmp")
        temp_path.write_text(text, encoding="utf-8")
        temp_path.replace(path)

    def _save_json(self, path: Path, data: Dict) -> None:
        self._write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")
        log.debug("Saved %s", path)

    def _read(self, profile_id: str) -> Profile:
        if not is_profile_id(profile_id):
            raise ProfileNotFound(profile_id)
        path = self.layout.profile_json(profile_id)
        if not path.exists():
            raise ProfileNotFound(profile_id)
        return Profile.model_validate(self._load_json(path))

    def _write(self, profile: Profile) -> None:
        self._save_json(self.layout.profile_json(profile.id), profile.model_dump(mode="json"))

    def _commit(self, current: Profile, update: Dict[str, Any]) -> Profile:
        update = dict(update)
        update["version"] = current.version + 1
        update["updated_at"] = utcnow()
        profile = current.model_copy(update=update)
        self._write(profile)
        return profile

    # === CRUD ===

    def create_profile(
        self,
        name: str,
        workshop: str,
        *,
        max_depth: Optional[int] = None,
        selected_scenario: Optional[str] = None,
        settings_overrides: Optional[Dict[str, Any]] = None,
        block_on_drift: bool = False,
        load_session_save: bool = False,
    ) -> Profile:
        workshop_id, workshop_url = _parse_workshop(workshop)
        for path in (settings_overrides or {}):
            check_override_path(path)
        profile = Profile(
            name=name,
            workshop_id=workshop_id,
            workshop_url=workshop_url,
            max_depth=max_depth,
            selected_scenario=selected_scenario,
            settings_overrides=dict(settings_overrides or {}),
            block_on_drift=block_on_drift,
            load_session_save=load_session_save,
        )
        with self._lock(profile.id):
            self._write(profile)
        log.info("Created profile %s (%s) for workshop item %s", profile.id, name, workshop_id)
        return profile

    def get_profile(self, profile_id: str) -> Profile:
        return self._read(profile_id)

    def list_profiles(self) -> List[Profile]:
        profiles = []
        for path in sorted(self.layout.profiles_dir.glob("*.json")):
            try:
                profiles.append(Profile.model_validate(self._load_json(path)))
            except (ValidationError, ValueError) as e:
                log.warning("Skipping unreadable profile record %s: %s", path, e)
        profiles.sort(key=lambda p: (p.created_at, p.id))
        return profiles

    def update_profile(self, profile_id: str, changes: Dict[str, Any],
                       expected_version: Optional[int] = None) -> Profile:
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields cannot be updated: {', '.join(unknown)}")

        update = dict(changes)
        if "workshop" in update:
            update["workshop_id"], update["workshop_url"] = _parse_workshop(update.pop("workshop"))
        for path in update.get("settings_overrides") or {}:
            check_override_path(path)

        with self._lock(profile_id):
            current = self._read(profile_id)
            if expected_version is not None and expected_version != current.version:
                raise ConcurrentWriteConflict(profile_id, expected_version, current.version)
            # validate the merged record before writing anything
            merged = Profile.model_validate({**current.model_dump(), **update})
            self._check_references(merged, update)
            profile = self._commit(current, {k: getattr(merged, k) for k in update})
        log.info("Updated profile %s: %s", profile_id, ", ".join(sorted(update)))
        return profile

    def _check_references(self, profile: Profile, update: Dict[str, Any]) -> None:
        """Preset- und Paket-Verweise müssen auflösbar sein."""
        if profile.active_preset is not None and profile.preset() is None:
            known = ", ".join(p.name for p in profile.presets) or "none"
            raise ValueError(f"active_preset {profile.active_preset!r} is not a preset of this profile (known: {known})")
        if "optional_package_ids" in update:
            known_ids = {p.id for p in self.list_packages()}
            unknown = [i for i in profile.optional_package_ids if i not in known_ids]
            if unknown:
                raise ValueError(f"unknown packages: {', '.join(unknown)}")

    def delete_profile(self, profile_id: str) -> None:
        """Beendet einen laufenden Prozess und entfernt Record, generierte Config und Log."""
        with self._lock(profile_id):
            self._read(profile_id)
            if self.supervisor is not None:
                self.supervisor.discard(profile_id)
            self.layout.profile_json(profile_id).unlink()
            shutil.rmtree(self.layout.generated_profile_dir(profile_id), ignore_errors=True)
            self.layout.profile_log(profile_id).unlink(missing_ok=True)
        with self._locks_guard:
            self._locks.pop(profile_id, None)
        log.info("Deleted profile %s", profile_id)

    # === Resolution ===

    def _resolve(self, profile: Profile, cancel=None) -> DependencyGraph:
        return self.resolver.resolve(profile.workshop_id, profile.max_depth, cancel=cancel)

    def refresh(self, profile_id: str, cancel=None) -> DependencyGraph:
        """Löst neu auf und ersetzt den gespeicherten Snapshot."""
        graph = self._resolve(self._read(profile_id), cancel=cancel)
        with self._lock(profile_id):
            current = self._read(profile_id)
            self._commit(current, {"snapshot": graph})
        log.info("Refreshed profile %s: %d dependencies (digest %s)",
                 profile_id, len(graph.dependency_ids), graph.digest()[:12])
        return graph

    def check_drift(self, profile_id: str, cancel=None) -> DriftReport:
        """Frische Auflösung gegen den Snapshot vergleichen; nichts wird gespeichert."""
        profile = self._read(profile_id)
        report = compare_snapshots(profile, self._resolve(profile, cancel=cancel))
        if report.has_drift:
            log.warning("Profile %s drift: added=%s removed=%s scenario_present=%s root_changed=%s",
                        profile_id, report.added, report.removed, report.scenario_present, report.root_changed)
        return report

    # === Mod-Bibliothek ===

    def _load_list(self, path: Path) -> List[Dict]:
        if not path.exists():
            return []
        return self._load_json(path)

    def list_mods(self) -> List[ModEntry]:
        return [ModEntry.model_validate(m) for m in self._load_list(self.layout.mods_json)]

    def _save_mods(self, mods: Sequence[ModEntry]) -> None:
        self._save_json(self.layout.mods_json, [m.model_dump(mode="json") for m in mods])

    def add_mod(self, mod: str, name: str) -> ModEntry:
        """Nimmt einen Mod (URL oder nackte ID) in die Bibliothek auf."""
        mod_id = parse_mod_id_input(mod)
        if mod_id is None:
            raise ValueError(f"not a workshop URL or id: {mod!r}")
        entry = ModEntry(mod_id=mod_id, name=_required_name(name, "mod"))
        with self._library_lock:
            mods = self.list_mods()
            if any(m.mod_id == mod_id for m in mods):
                raise LibraryConflict(f"mod {mod_id} is already in the library")
            self._save_mods(mods + [entry])
        log.info("Added mod %s (%s) to the library", mod_id, entry.name)
        return entry

    def rename_mod(self, mod_id: str, name: str) -> ModEntry:
        name = _required_name(name, "mod")
        with self._library_lock:
            mods = self.list_mods()
            for idx, entry in enumerate(mods):
                if entry.mod_id == mod_id:
                    mods[idx] = entry.model_copy(update={"name": name})
                    self._save_mods(mods)
                    return mods[idx]
        raise ModNotFound(mod_id)

    def delete_mod(self, mod_id: str) -> None:
        """Entfernt einen Mod; solange ihn ein Paket enthält, wird abgelehnt."""
        with self._library_lock:
            mods = self.list_mods()
            if not any(m.mod_id == mod_id for m in mods):
                raise ModNotFound(mod_id)
            users = [p.name for p in self.list_packages() if mod_id in p.mod_ids]
            if users:
                raise LibraryConflict(f"mod {mod_id} is used by packages: {', '.join(users)}")
            self._save_mods([m for m in mods if m.mod_id != mod_id])
        log.info("Removed mod %s from the library", mod_id)

    def list_packages(self) -> List[ModPackage]:
        return [ModPackage.model_validate(p) for p in self._load_list(self.layout.packages_json)]

    def _save_packages(self, packages: Sequence[ModPackage]) -> None:
        self._save_json(self.layout.packages_json, [p.model_dump(mode="json") for p in packages])

    def get_package(self, package_id: str) -> ModPackage:
        for package in self.list_packages():
            if package.id == package_id:
                return package
        raise PackageNotFound(package_id)

    def _library_mod_ids(self, mod_ids: Sequence[str]) -> List[str]:
        known = {m.mod_id for m in self.list_mods()}
        unknown = [i for i in mod_ids if i not in known]
        if unknown:
            raise ValueError(f"not in the mod library: {', '.join(unknown)}")
        return list(dict.fromkeys(mod_ids))

    def create_package(self, name: str, mod_ids: Sequence[str] = ()) -> ModPackage:
        name = _required_name(name, "package")
        with self._library_lock:
            package = ModPackage(name=name, mod_ids=self._library_mod_ids(mod_ids))
            self._save_packages(self.list_packages() + [package])
        log.info("Created package %s (%s) with %d mods", package.id, package.name, len(package.mod_ids))
        return package

    def update_package(self, package_id: str, *, name: Optional[str] = None,
                       mod_ids: Optional[Sequence[str]] = None) -> ModPackage:
        update: Dict[str, Any] = {}
        if name is not None:
            update["name"] = _required_name(name, "package")
        with self._library_lock:
            if mod_ids is not None:
                update["mod_ids"] = self._library_mod_ids(mod_ids)
            packages = self.list_packages()
            for idx, package in enumerate(packages):
                if package.id == package_id:
                    packages[idx] = package.model_copy(update=update)
                    self._save_packages(packages)
                    log.info("Updated package %s: %s", package_id, ", ".join(sorted(update)) or "nothing")
                    return packages[idx]
        raise PackageNotFound(package_id)

    def delete_package(self, package_id: str) -> None:
        """Entfernt ein Paket; solange ein Profil es auswählt, wird abgelehnt."""
        with self._library_lock:
            packages = self.list_packages()
            if not any(p.id == package_id for p in packages):
                raise PackageNotFound(package_id)
            users = [p.name for p in self.list_profiles() if package_id in p.optional_package_ids]
            if users:
                raise LibraryConflict(f"package {package_id} is selected by profiles: {', '.join(users)}")
            self._save_packages([p for p in packages if p.id != package_id])
        log.info("Deleted package %s", package_id)

    # === Generated config ===

    def load_baseline(self) -> ServerConfig:
        path = self.layout.baseline_json
        if not path.exists():
            return default_baseline()
        return ServerConfig.model_validate(self._load_json(path))

    def save_baseline(self, baseline: ServerConfig) -> None:
        self._save_json(self.layout.baseline_json, baseline.to_document())
        log.info("Saved baseline template")

    def config_path(self, profile_id: str) -> Path:
        return self.layout.generated_config(profile_id)

    def _synthesize(self, profile: Profile, graph: Optional[DependencyGraph]) -> GeneratedConfig:
        graph = graph if graph is not None else profile.current_snapshot()
        if graph is None:
            raise NoSnapshot(profile.id)
        packages = self.list_packages()
        known = {p.id for p in packages}
        missing = [i for i in profile.optional_package_ids if i not in known]
        if missing:
            log.warning("Profile %s selects unknown packages %s; they are skipped", profile.id, missing)
        mod_names = {m.mod_id: m.name for m in self.list_mods()}
        return self.synthesizer.synthesize(
            self.load_baseline(), profile.synthesis_overrides(packages, mod_names), graph, profile.selected_scenario
        )

    def preview_config(self, profile_id: str, graph: Optional[DependencyGraph] = None) -> GeneratedConfig:
        return self._synthesize(self._read(profile_id), graph)

    def write_config(self, profile_id: str,
                     graph: Optional[DependencyGraph] = None) -> Tuple[GeneratedConfig, Path]:
        """
        Synthetisiert und schreibt generated/{id}/server.json.

        Schlägt die Synthese fehl, bleibt die vorherige Datei unverändert.
        """
        with self._lock(profile_id):
            generated = self._synthesize(self._read(profile_id), graph)
            path = self.config_path(profile_id)
            self._write_text(path, generated.text)
        log.info("Wrote config for profile %s: %s (digest %s)", profile_id, path, generated.digest[:12])
        return generated, path
