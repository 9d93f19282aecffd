from __future__ import annotations
import threading
from typing import Any, Dict, Optional
from .settings import Settings
from .logging_setup import get_logger
from .config import ConfigSynthesizer, FileProfileStore, StoreLayout
from .errors import InvalidResolveRequest
from .models import DependencyGraph, Profile
from .process_runner import ProcessRunner
from .resolver import DependencyResolver
from .supervisor import ProcessSupervisor
from .workshop import HttpWorkshopFetcher, WorkshopFetcher, parse_mod_id_input

log = get_logger("reforger.launcher.orch")


class Orchestrator:
    """Wires resolver, synthesizer, store and supervisor from one Settings object."""

    def __init__(self, settings: Settings, *, fetcher: Optional[WorkshopFetcher] = None,
                 runner: Optional[ProcessRunner] = None):
        self.settings = settings
        self.layout = StoreLayout(settings.data_dir)
        self.fetcher = fetcher or HttpWorkshopFetcher(
            settings.workshop_base_url, timeout=settings.workshop_fetch_timeout
        )
        self.resolver = DependencyResolver(self.fetcher, settings)
        self.synthesizer = ConfigSynthesizer()
        self.store = FileProfileStore(self.layout, self.resolver, self.synthesizer)
        self.supervisor = ProcessSupervisor(settings, self.store, runner)
        self.store.bind_supervisor(self.supervisor)

    def prepare_environment(self) -> None:
        self.layout.ensure_structure()
        if not self.settings.server_exe.exists():
            log.warning("Server executable not found at %s; starts will fail until it is installed.",
                        self.settings.server_exe)

    def resolve(self, workshop: str, max_depth: Optional[int] = None,
                cancel: Optional[threading.Event] = None) -> DependencyGraph:
        """Resolve a workshop URL or bare id without touching any profile."""
        root_id = parse_mod_id_input(workshop)
        if root_id is None:
            raise InvalidResolveRequest(f"not a workshop URL or id: {workshop!r}")
        return self.resolver.resolve(root_id, max_depth, cancel=cancel)

    def create_profile(self, name: str, workshop: str, *, resolve: bool = False, **fields: Any) -> Profile:
        """
        Create a profile; with resolve=True also take the first snapshot.

        When no scenario was given and the root offers exactly one, it is selected.
        """
        profile = self.store.create_profile(name, workshop, **fields)
        if not resolve:
            return profile
        graph = self.store.refresh(profile.id)
        if profile.selected_scenario is None and len(graph.scenarios) == 1:
            return self.store.update_profile(profile.id, {"selected_scenario": graph.scenarios[0].id})
        return self.store.get_profile(profile.id)

    def summary(self) -> Dict[str, Any]:
        profiles = self.store.list_profiles()
        return {
            "profiles": len(profiles),
            "running": [p.id for p in profiles if self.supervisor.status(p.id).state.can_stop],
        }

    def shutdown(self) -> None:
        log.info("Shutting down: stopping all server processes")
        self.supervisor.shutdown()
