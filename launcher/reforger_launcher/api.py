from __future__ import annotations
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Optional
from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError
from . import __version__
from .config import ServerConfig
from .errors import (
    ConcurrentWriteConflict,
    DriftBlocked,
    InvalidResolveRequest,
    InvalidStateTransition,
    LauncherError,
    LibraryConflict,
    MissingScenario,
    ModNotFound,
    NoSnapshot,
    PackageNotFound,
    ProfileNotFound,
    ResolveCancelled,
    ResolveNotFound,
    ResolveUnreachable,
    SpawnError,
    SynthesizeError,
)
from .logging_setup import get_logger
from .orchestrator import Orchestrator
from .settings import Settings

log = get_logger("reforger.launcher.api")


class ActionResult(BaseModel):
    ok: bool
    detail: str | None = None
    data: dict | None = None


class ResolveRequest(BaseModel):
    workshop: str = Field(..., description="Workshop URL or 16-digit hex id")
    max_depth: Optional[int] = None


class ProfileCreate(BaseModel):
    name: str
    workshop: str
    max_depth: Optional[int] = None
    selected_scenario: Optional[str] = None
    settings_overrides: Dict[str, Any] = Field(default_factory=dict)
    block_on_drift: bool = False
    load_session_save: bool = False
    resolve: bool = Field(default=False, description="Resolve dependencies right away")


class ModCreate(BaseModel):
    mod: str = Field(..., description="Workshop URL or 16-digit hex id")
    name: str


class ModRename(BaseModel):
    name: str


class PackageCreate(BaseModel):
    name: str
    mod_ids: List[str] = Field(default_factory=list)


class PackageUpdate(BaseModel):
    name: Optional[str] = None
    mod_ids: Optional[List[str]] = None


_STATUS_CODES = (
    (ProfileNotFound, 404),
    (ResolveNotFound, 404),
    (ModNotFound, 404),
    (PackageNotFound, 404),
    (InvalidResolveRequest, 422),
    (SynthesizeError, 422),
    (ConcurrentWriteConflict, 409),
    (NoSnapshot, 409),
    (LibraryConflict, 409),
    (InvalidStateTransition, 409),
    (DriftBlocked, 409),
    (ResolveUnreachable, 502),
    (ResolveCancelled, 503),
    (SpawnError, 500),
)


def _error_detail(e: Exception) -> Dict[str, Any]:
    detail: Dict[str, Any] = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, DriftBlocked):
        detail.update(added=e.added, removed=e.removed, scenario_present=e.scenario_present,
                      root_changed=e.root_changed)
    elif isinstance(e, MissingScenario):
        detail.update(scenario_id=e.scenario_id, available=e.available)
    return detail


@contextmanager
def _http_errors():
    try:
        yield
    except LauncherError as e:
        for exc_type, code in _STATUS_CODES:
            if isinstance(e, exc_type):
                raise HTTPException(status_code=code, detail=_error_detail(e)) from e
        raise HTTPException(status_code=500, detail=_error_detail(e)) from e
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=422, detail={"error": type(e).__name__, "message": str(e)}) from e


def create_app(settings: Settings, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    orch = orchestrator or Orchestrator(settings)
    orch.prepare_environment()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        orch.shutdown()

    app = FastAPI(title="Reforger Launcher API", version=__version__, lifespan=lifespan)

    @app.get("/health")
    def health():
        ok, errors = orch.layout.validate_structure()
        return {"ok": ok, "errors": errors, **orch.summary()}

    # === Workshop ===

    @app.post("/workshop/resolve")
    def resolve(req: ResolveRequest):
        with _http_errors():
            graph = orch.resolve(req.workshop, req.max_depth)
        return {**graph.model_dump(mode="json"), "digest": graph.digest()}

    # === Profiles ===

    @app.get("/profiles")
    def list_profiles():
        return [p.model_dump(mode="json") for p in orch.store.list_profiles()]

    @app.post("/profiles", status_code=201)
    def create_profile(req: ProfileCreate):
        fields = req.model_dump(exclude={"name", "workshop", "resolve"})
        with _http_errors():
            profile = orch.create_profile(req.name, req.workshop, resolve=req.resolve, **fields)
        return profile.model_dump(mode="json")

    @app.get("/profiles/{profile_id}")
    def get_profile(profile_id: str):
        with _http_errors():
            return orch.store.get_profile(profile_id).model_dump(mode="json")

    @app.patch("/profiles/{profile_id}")
    def update_profile(
        profile_id: str,
        changes: Dict[str, Any] = Body(...),
        expected_version: Optional[int] = Query(default=None, ge=1),
    ):
        with _http_errors():
            profile = orch.store.update_profile(profile_id, changes, expected_version=expected_version)
        return profile.model_dump(mode="json")

    @app.delete("/profiles/{profile_id}", response_model=ActionResult)
    def delete_profile(profile_id: str):
        with _http_errors():
            orch.store.delete_profile(profile_id)
        return ActionResult(ok=True, detail="deleted")

    @app.post("/profiles/{profile_id}/refresh")
    def refresh(profile_id: str):
        with _http_errors():
            graph = orch.store.refresh(profile_id)
        return {**graph.model_dump(mode="json"), "digest": graph.digest()}

    @app.get("/profiles/{profile_id}/drift")
    def drift(profile_id: str):
        with _http_errors():
            return orch.store.check_drift(profile_id).to_dict()

    @app.get("/profiles/{profile_id}/config")
    def preview_config(profile_id: str):
        with _http_errors():
            generated = orch.store.preview_config(profile_id)
        return {"digest": generated.digest, "document": generated.document}

    @app.post("/profiles/{profile_id}/config")
    def write_config(profile_id: str):
        with _http_errors():
            generated, path = orch.store.write_config(profile_id)
        return {"path": str(path), "digest": generated.digest, "document": generated.document}

    # === Baseline ===

    @app.get("/baseline")
    def get_baseline():
        return orch.store.load_baseline().to_document()

    @app.put("/baseline")
    def put_baseline(document: Dict[str, Any] = Body(...)):
        with _http_errors():
            baseline = ServerConfig.model_validate(document)
        orch.store.save_baseline(baseline)
        return baseline.to_document()

    # === Mod library ===

    @app.get("/mods")
    def list_mods():
        return [m.model_dump(mode="json") for m in orch.store.list_mods()]

    @app.post("/mods", status_code=201)
    def add_mod(req: ModCreate):
        with _http_errors():
            return orch.store.add_mod(req.mod, req.name).model_dump(mode="json")

    @app.patch("/mods/{mod_id}")
    def rename_mod(mod_id: str, req: ModRename):
        with _http_errors():
            return orch.store.rename_mod(mod_id, req.name).model_dump(mode="json")

    @app.delete("/mods/{mod_id}", response_model=ActionResult)
    def delete_mod(mod_id: str):
        with _http_errors():
            orch.store.delete_mod(mod_id)
        return ActionResult(ok=True, detail="deleted")

    @app.get("/packages")
    def list_packages():
        return [p.model_dump(mode="json") for p in orch.store.list_packages()]

    @app.post("/packages", status_code=201)
    def create_package(req: PackageCreate):
        with _http_errors():
            return orch.store.create_package(req.name, req.mod_ids).model_dump(mode="json")

    @app.get("/packages/{package_id}")
    def get_package(package_id: str):
        with _http_errors():
            return orch.store.get_package(package_id).model_dump(mode="json")

    @app.patch("/packages/{package_id}")
    def update_package(package_id: str, req: PackageUpdate):
        with _http_errors():
            package = orch.store.update_package(package_id, name=req.name, mod_ids=req.mod_ids)
        return package.model_dump(mode="json")

    @app.delete("/packages/{package_id}", response_model=ActionResult)
    def delete_package(package_id: str):
        with _http_errors():
            orch.store.delete_package(package_id)
        return ActionResult(ok=True, detail="deleted")

    # === Run ===

    @app.post("/profiles/{profile_id}/start")
    def start(profile_id: str):
        with _http_errors():
            return orch.supervisor.start(profile_id).model_dump(mode="json")

    @app.post("/profiles/{profile_id}/stop")
    def stop(profile_id: str):
        with _http_errors():
            return orch.supervisor.stop(profile_id).model_dump(mode="json")

    @app.get("/profiles/{profile_id}/status")
    def status(profile_id: str):
        with _http_errors():
            orch.store.get_profile(profile_id)
        return orch.supervisor.status(profile_id).model_dump(mode="json")

    @app.get("/profiles/{profile_id}/logs")
    def logs(profile_id: str, tail: int = Query(default=200, ge=0, le=5000)):
        with _http_errors():
            orch.store.get_profile(profile_id)
        lines: List[str] = orch.supervisor.tail(profile_id, tail)
        return {"ok": True, "id": profile_id, "entries": [{"n": i + 1, "line": line} for i, line in enumerate(lines)]}

    @app.get("/profiles/{profile_id}/logs/stream")
    def stream_logs(profile_id: str, backlog: int = Query(default=0, ge=0, le=5000)):
        with _http_errors():
            orch.store.get_profile(profile_id)
        sub = orch.supervisor.subscribe(profile_id, backlog)

        def events():
            try:
                while not sub.finished:
                    line = sub.get(timeout=15.0)
                    if line is None:
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {line}\n\n"
            finally:
                sub.close()

        return StreamingResponse(events(), media_type="text/event-stream")

    return app
