"""
Exception taxonomy for the launcher core.

Resolution, synthesis and store failures are raised to the caller as typed
exceptions. Depth truncation is reported on the DependencyGraph and process
crashes are recorded as RunState, so neither has an exception here.
"""

from __future__ import annotations
from typing import Iterable, List, Optional


class LauncherError(Exception):
    """Base class for all launcher errors."""


# --- Workshop fetch (collaborator boundary) ---

class FetchError(LauncherError):
    def __init__(self, item_id: str, message: str):
        super().__init__(f"{item_id}: {message}")
        self.item_id = item_id


class WorkshopNotFound(FetchError):
    """The workshop answered, and the item does not exist."""


class WorkshopUnreachable(FetchError):
    """Network or upstream failure; retry later."""


# --- Resolution ---

class ResolveError(LauncherError):
    pass


class InvalidResolveRequest(ResolveError, ValueError):
    pass


class ResolveNotFound(ResolveError):
    def __init__(self, root_id: str):
        super().__init__(f"workshop item {root_id} does not exist")
        self.root_id = root_id


class ResolveUnreachable(ResolveError):
    def __init__(self, root_id: str, reason: str):
        super().__init__(f"could not reach workshop for {root_id}, retry later: {reason}")
        self.root_id = root_id
        self.reason = reason


class ResolveCancelled(ResolveError):
    def __init__(self, root_id: str, depth: int):
        super().__init__(f"resolution of {root_id} cancelled after depth {depth}")
        self.root_id = root_id
        self.depth = depth


# --- Synthesis ---

class SynthesizeError(LauncherError):
    pass


class MissingScenario(SynthesizeError):
    def __init__(self, scenario_id: Optional[str], available: Iterable[str]):
        self.scenario_id = scenario_id
        self.available: List[str] = list(available)
        if scenario_id is None:
            msg = "no scenario selected"
        else:
            msg = f"scenario {scenario_id!r} is not provided by the workshop item"
        super().__init__(msg)


class InvalidOverride(SynthesizeError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"invalid override {path!r}: {reason}")
        self.path = path
        self.reason = reason


# --- Store ---

class StoreError(LauncherError):
    pass


class ProfileNotFound(StoreError, KeyError):
    def __init__(self, profile_id: str):
        super().__init__(profile_id)
        self.profile_id = profile_id

    def __str__(self) -> str:
        return f"profile not found: {self.profile_id}"


class NoSnapshot(StoreError):
    def __init__(self, profile_id: str):
        super().__init__(f"profile {profile_id} has no resolved dependency snapshot; refresh it first")
        self.profile_id = profile_id


class ModNotFound(StoreError, KeyError):
    def __init__(self, mod_id: str):
        super().__init__(mod_id)
        self.mod_id = mod_id

    def __str__(self) -> str:
        return f"mod not in library: {self.mod_id}"


class PackageNotFound(StoreError, KeyError):
    def __init__(self, package_id: str):
        super().__init__(package_id)
        self.package_id = package_id

    def __str__(self) -> str:
        return f"package not found: {self.package_id}"


class LibraryConflict(StoreError):
    """Duplicate library entry, or an entry that is still referenced."""


class ConcurrentWriteConflict(StoreError):
    def __init__(self, profile_id: str, expected: int, actual: int):
        super().__init__(f"profile {profile_id} was modified concurrently (expected version {expected}, found {actual})")
        self.profile_id = profile_id
        self.expected = expected
        self.actual = actual


# --- Supervisor ---

class SupervisorError(LauncherError):
    pass


class InvalidStateTransition(SupervisorError):
    def __init__(self, profile_id: str, phase: str, action: str):
        super().__init__(f"cannot {action} profile {profile_id} while {phase}")
        self.profile_id = profile_id
        self.phase = phase
        self.action = action


class SpawnError(SupervisorError):
    pass


class DriftBlocked(SupervisorError):
    def __init__(self, profile_id: str, added: List[str], removed: List[str],
                 scenario_present: bool = True, root_changed: bool = False):
        parts = []
        if root_changed:
            parts.append("workshop root changed since the last refresh")
        if added:
            parts.append("added " + ", ".join(added))
        if removed:
            parts.append("removed " + ", ".join(removed))
        if not scenario_present:
            parts.append("selected scenario no longer offered")
        detail = "; ".join(parts) or "dependency set changed"
        super().__init__(f"profile {profile_id} has unresolved workshop drift ({detail}); refresh and regenerate before starting")
        self.profile_id = profile_id
        self.added = list(added)
        self.removed = list(removed)
        self.scenario_present = scenario_present
        self.root_changed = root_changed
