"""
Verzeichnis-Layout für Profile, generierte Configs und Logs.

Verwaltet die physische Ablage:
    <data_dir>/
    ├── baseline.json
    ├── mods.json
    ├── packages.json
    ├── profiles/
    │   └── <id>.json
    ├── generated/
    │   └── <id>/
    │       └── server.json
    └── logs/
        ├── launcher.log
        └── <id>.log
"""

from __future__ import annotations
import re
from pathlib import Path
from ..logging_setup import get_logger

log = get_logger("reforger.launcher.layout")

_PROFILE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def is_profile_id(value: str) -> bool:
    return bool(_PROFILE_ID_RE.match(value or ""))


class StoreLayout:
    """Zentrale Verwaltung der Datenverzeichnis-Struktur."""

    def __init__(self, data_dir: Path):
        """
        Args:
            data_dir: Absoluter Pfad zum Datenverzeichnis
        """
        self.root = Path(data_dir)
        if not self.root.is_absolute():
            raise ValueError(f"data_dir must be absolute, got {self.root}")

    def _checked(self, profile_id: str) -> str:
        # ids become path components
        if not is_profile_id(profile_id):
            raise ValueError(f"invalid profile id: {profile_id!r}")
        return profile_id

    # === Baseline ===
    @property
    def baseline_json(self) -> Path:
        """baseline.json - Vorlage für alle generierten server.json."""
        return self.root / "baseline.json"

    # === Mod-Bibliothek ===
    @property
    def mods_json(self) -> Path:
        """mods.json - gemeinsame Mod-Bibliothek (ID + Name)."""
        return self.root / "mods.json"

    @property
    def packages_json(self) -> Path:
        """packages.json - benannte Mod-Pakete aus der Bibliothek."""
        return self.root / "packages.json"

    # === Profile ===
    @property
    def profiles_dir(self) -> Path:
        return self.root / "profiles"

    def profile_json(self, profile_id: str) -> Path:
        """profiles/{id}.json - Profil inkl. letztem Snapshot."""
        return self.profiles_dir / f"{self._checked(profile_id)}.json"

    # === Generierte Configs ===
    @property
    def generated_dir(self) -> Path:
        return self.root / "generated"

    def generated_profile_dir(self, profile_id: str) -> Path:
        return self.generated_dir / self._checked(profile_id)

    def generated_config(self, profile_id: str) -> Path:
        """generated/{id}/server.json - wird bei jeder Synthese überschrieben."""
        return self.generated_profile_dir(profile_id) / "server.json"

    # === Logs ===
    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def profile_log(self, profile_id: str) -> Path:
        """logs/{id}.log - Ausgabe des Server-Prozesses."""
        return self.logs_dir / f"{self._checked(profile_id)}.log"

    # === Directory Management ===
    def ensure_structure(self) -> None:
        """Erstellt alle notwendigen Verzeichnisse."""
        for d in (self.profiles_dir, self.generated_dir, self.logs_dir):
            d.mkdir(parents=True, exist_ok=True)
            log.debug("Ensured directory: %s", d)

    def validate_structure(self) -> tuple[bool, list[str]]:
        """
        Validiert die Verzeichnisstruktur.

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []
        for d in (self.profiles_dir, self.generated_dir, self.logs_dir):
            if not d.is_dir():
                errors.append(f"Missing directory: {d}")
        return (len(errors) == 0, errors)
