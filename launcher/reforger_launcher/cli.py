from __future__ import annotations
import argparse
import json
import time
import uvicorn
from .settings import Settings
from .logging_setup import get_logger, setup_logging
from .errors import LauncherError
from .models import RunPhase
from .orchestrator import Orchestrator
from .api import create_app

log = get_logger("reforger.launcher.cli")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _profiles(orch: Orchestrator, args) -> int:
    store = orch.store
    if args.action == "list":
        for p in store.list_profiles():
            state = orch.supervisor.status(p.id).state.phase.value
            print(f"{p.id}  {p.workshop_id}  {state:<8}  {p.name}")
        return 0
    if args.action == "create":
        profile = orch.create_profile(
            args.name,
            args.workshop,
            resolve=args.resolve,
            max_depth=args.max_depth,
            selected_scenario=args.scenario,
            block_on_drift=args.block_on_drift,
        )
        _print_json(profile.model_dump(mode="json"))
        return 0
    if args.action == "show":
        _print_json(store.get_profile(args.id).model_dump(mode="json"))
        return 0
    if args.action == "refresh":
        graph = store.refresh(args.id)
        _print_json({**graph.model_dump(mode="json"), "digest": graph.digest()})
        return 0
    if args.action == "drift":
        report = store.check_drift(args.id)
        _print_json(report.to_dict())
        return 1 if report.has_drift else 0
    if args.action == "write-config":
        generated, path = store.write_config(args.id)
        print(f"{path}  sha256={generated.digest}")
        return 0
    if args.action == "delete":
        store.delete_profile(args.id)
        return 0
    return 2


def _library(orch: Orchestrator, args) -> int:
    store = orch.store
    if args.cmd == "mods":
        if args.action == "add":
            _print_json(store.add_mod(args.mod, args.name).model_dump(mode="json"))
            return 0
        for m in store.list_mods():
            print(f"{m.mod_id}  {m.name}")
        return 0
    if args.action == "create":
        _print_json(store.create_package(args.name, args.mod_ids).model_dump(mode="json"))
        return 0
    for p in store.list_packages():
        print(f"{p.id}  {len(p.mod_ids):>3} mods  {p.name}")
    return 0


def _run(orch: Orchestrator, profile_id: str) -> int:
    """Start one profile and follow its output until the server exits or Ctrl-C."""
    with orch.supervisor.subscribe(profile_id) as sub:
        try:
            orch.supervisor.start(profile_id)
            while True:
                line = sub.get(timeout=0.5)
                if line is not None:
                    print(line, flush=True)
                    continue
                state = orch.supervisor.status(profile_id).state
                if state.phase in (RunPhase.STOPPED, RunPhase.CRASHED):
                    # drain whatever arrived before the exit was recorded
                    line = sub.get(timeout=0)
                    while line is not None:
                        print(line)
                        line = sub.get(timeout=0)
                    log.info("Server for %s ended: %s (rc=%s)", profile_id, state.phase.value, state.exit_code)
                    return 0 if state.phase == RunPhase.STOPPED else int(state.exit_code or 1)
        except KeyboardInterrupt:
            log.info("Interrupted, stopping %s", profile_id)
            if orch.supervisor.status(profile_id).state.can_stop:
                orch.supervisor.stop(profile_id)
            return 130


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="reforger-launcher")
    sub = parser.add_subparsers(dest="cmd", required=True)

    api_p = sub.add_parser("api", help="Run REST API (FastAPI)")
    api_p.add_argument("--host", default="0.0.0.0")
    api_p.add_argument("--port", type=int, default=8000)

    res_p = sub.add_parser("resolve", help="Resolve a workshop item's dependencies and print them as JSON")
    res_p.add_argument("workshop", help="Workshop URL or 16-digit hex id")
    res_p.add_argument("--max-depth", type=int, default=None)

    prof_p = sub.add_parser("profiles", help="Manage profiles")
    prof_sub = prof_p.add_subparsers(dest="action", required=True)
    prof_sub.add_parser("list")
    create_p = prof_sub.add_parser("create")
    create_p.add_argument("--name", required=True)
    create_p.add_argument("--workshop", required=True, help="Workshop URL or 16-digit hex id")
    create_p.add_argument("--scenario", default=None, help="Scenario id, e.g. {GUID}Missions/Foo.conf")
    create_p.add_argument("--max-depth", type=int, default=None)
    create_p.add_argument("--block-on-drift", action="store_true")
    create_p.add_argument("--resolve", action="store_true", help="Resolve dependencies right away")
    for action in ("show", "refresh", "drift", "write-config", "delete"):
        p = prof_sub.add_parser(action)
        p.add_argument("id")

    mods_p = sub.add_parser("mods", help="Shared mod library")
    mods_sub = mods_p.add_subparsers(dest="action", required=True)
    mods_sub.add_parser("list")
    mod_add = mods_sub.add_parser("add")
    mod_add.add_argument("mod", help="Workshop URL or 16-digit hex id")
    mod_add.add_argument("--name", required=True)

    pkg_p = sub.add_parser("packages", help="Named mod packages")
    pkg_sub = pkg_p.add_subparsers(dest="action", required=True)
    pkg_sub.add_parser("list")
    pkg_create = pkg_sub.add_parser("create")
    pkg_create.add_argument("--name", required=True)
    pkg_create.add_argument("mod_ids", nargs="*", help="Library mod ids")

    run_p = sub.add_parser("run", help="Start a profile's server in the foreground and stream its output")
    run_p.add_argument("id")

    args = parser.parse_args(argv)
    settings = Settings()
    setup_logging(settings)

    if args.cmd == "api":
        app = create_app(settings)
        uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    orch = Orchestrator(settings)
    orch.prepare_environment()
    try:
        if args.cmd == "resolve":
            graph = orch.resolve(args.workshop, args.max_depth)
            _print_json({**graph.model_dump(mode="json"), "digest": graph.digest()})
            return 0
        if args.cmd == "profiles":
            return _profiles(orch, args)
        if args.cmd in ("mods", "packages"):
            return _library(orch, args)
        if args.cmd == "run":
            return _run(orch, args.id)
    except (LauncherError, ValueError) as e:
        log.error("%s", e)
        return 1
    return 2
