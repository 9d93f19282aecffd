from __future__ import annotations
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    data_dir: Path = Field(default=Path("/var/lib/reforger-launcher"), alias="REFORGER_DATA_DIR")
    server_exe: Path = Field(default=Path("/reforger/ArmaReforgerServer"), alias="REFORGER_SERVER_EXE")
    server_work_dir: Path = Field(default=Path("/reforger"), alias="REFORGER_SERVER_WORK_DIR")
    profile_dir_base: Path = Field(default=Path("/reforger/profiles"), alias="REFORGER_PROFILE_DIR_BASE")

    workshop_base_url: str = Field(default="https://reforger.armaplatform.com", alias="WORKSHOP_BASE_URL")
    workshop_max_depth: int = Field(default=5, ge=1, alias="WORKSHOP_MAX_DEPTH")
    workshop_max_depth_ceiling: int = Field(default=16, ge=1, alias="WORKSHOP_MAX_DEPTH_CEILING")
    workshop_fetch_workers: int = Field(default=8, ge=1, alias="WORKSHOP_FETCH_WORKERS")
    workshop_fetch_timeout: float = Field(default=30.0, gt=0, alias="WORKSHOP_FETCH_TIMEOUT")

    start_grace_seconds: float = Field(default=10.0, ge=0, alias="START_GRACE_SECONDS")
    stop_timeout_seconds: float = Field(default=30.0, gt=0, alias="STOP_TIMEOUT_SECONDS")
    # regex matched against server output; first hit marks the server as running
    ready_pattern: str = Field(default="", alias="READY_PATTERN")
    log_backlog_lines: int = Field(default=500, ge=0, alias="LOG_BACKLOG_LINES")
    check_drift_on_start: bool = Field(default=True, alias="CHECK_DRIFT_ON_START")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)
