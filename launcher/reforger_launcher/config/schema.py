"""
Pydantic models for the Arma Reforger dedicated server `server.json`.

Unknown keys are rejected everywhere so that a misspelled override path
fails synthesis instead of silently producing a config the server ignores.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class A2SConfig(_Strict):
    address: str = "0.0.0.0"
    port: int = Field(default=17777, ge=1, le=65535)


class RconConfig(_Strict):
    address: str = "0.0.0.0"
    port: int = Field(default=19999, ge=1, le=65535)
    password: str = ""
    permission: str = "monitor"
    maxClients: int = Field(default=16, ge=1)


class ModRef(_Strict):
    modId: str
    name: Optional[str] = None
    version: Optional[str] = None


class GameProperties(_Strict):
    serverMaxViewDistance: int = Field(default=2500, ge=500, le=10000)
    serverMinGrassDistance: int = Field(default=50, ge=0, le=150)
    networkViewDistance: int = Field(default=1000, ge=500, le=5000)
    disableThirdPerson: bool = False
    fastValidation: bool = True
    battlEye: bool = True
    VONDisableUI: bool = False
    VONDisableDirectSpeechUI: bool = False
    missionHeader: Dict[str, Any] = Field(default_factory=dict)


class GameConfig(_Strict):
    name: str = "Reforger Server"
    password: str = ""
    passwordAdmin: str = ""
    admins: List[str] = Field(default_factory=list)
    scenarioId: str = ""
    maxPlayers: int = Field(default=64, ge=1, le=256)
    visible: bool = True
    crossPlatform: bool = False
    supportedPlatforms: List[str] = Field(default_factory=lambda: ["PLATFORM_PC"])
    gameProperties: GameProperties = Field(default_factory=GameProperties)
    mods: List[ModRef] = Field(default_factory=list)


class OperatingConfig(_Strict):
    lobbyPlayerSynchronise: bool = True
    playerSaveTime: int = Field(default=120, ge=0)
    aiLimit: int = Field(default=-1, ge=-1)
    slotReservationTimeout: int = Field(default=60, ge=5, le=300)
    disableNavmeshStreaming: List[str] = Field(default_factory=list)


class ServerConfig(_Strict):
    bindAddress: str = "0.0.0.0"
    bindPort: int = Field(default=2001, ge=1, le=65535)
    publicAddress: str = ""
    publicPort: int = Field(default=2001, ge=1, le=65535)
    a2s: A2SConfig = Field(default_factory=A2SConfig)
    rcon: Optional[RconConfig] = None
    game: GameConfig = Field(default_factory=GameConfig)
    operating: OperatingConfig = Field(default_factory=OperatingConfig)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def default_baseline() -> ServerConfig:
    return ServerConfig()


def server_json_schema() -> Dict[str, Any]:
    return ServerConfig.model_json_schema()
