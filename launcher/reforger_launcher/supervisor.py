"""
supervisor.py: one server process per profile
------------------------------------------------
State machine per profile:

    stopped -> starting -> running -> stopping -> stopped
    starting | running -> crashed(exit_code)   (exit without stop())

The phase is the start lock: start() only acts from stopped or crashed.
A generation counter per profile keeps threads from an earlier run from
touching the state of a later one.
"""

from __future__ import annotations
import re
import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .errors import DriftBlocked, InvalidStateTransition, ResolveUnreachable
from .log_stream import LogBroadcaster, LogSubscription
from .logging_setup import get_logger
from .models import DependencyGraph, Profile, RunPhase, RunState, RunStatus, utcnow
from .process_runner import ProcessHandle, ProcessRunner
from .settings import Settings

log = get_logger("reforger.launcher.supervisor")


class _Slot:
    def __init__(self, profile_id: str, broadcaster: LogBroadcaster):
        self.profile_id = profile_id
        self.broadcaster = broadcaster
        self.state = RunState()
        self.generation = 0
        self.handle: Optional[ProcessHandle] = None
        self.started_at = None
        self.config_path: Optional[Path] = None
        self.stop_requested = False
        self.timer: Optional[threading.Timer] = None
        self.reader: Optional[threading.Thread] = None


class ProcessSupervisor:
    def __init__(self, settings: Settings, store, runner: Optional[ProcessRunner] = None):
        self.settings = settings
        self.store = store
        self.runner = runner or ProcessRunner()
        self._ready_re = re.compile(settings.ready_pattern) if settings.ready_pattern else None
        self._slots: Dict[str, _Slot] = {}
        self._lock = threading.Lock()

    def _slot(self, profile_id: str) -> _Slot:
        with self._lock:
            slot = self._slots.get(profile_id)
            if slot is None:
                slot = self._slots[profile_id] = _Slot(profile_id, LogBroadcaster(self.settings.log_backlog_lines))
            return slot

    def _status(self, slot: _Slot) -> RunStatus:
        handle = slot.handle
        return RunStatus(
            profile_id=slot.profile_id,
            state=slot.state,
            pid=handle.pid if handle is not None else None,
            started_at=slot.started_at if handle is not None else None,
            config_path=str(slot.config_path) if slot.config_path else None,
        )

    # === Start ===

    def _launch_args(self, profile: Profile, config_path: Path) -> List[str]:
        args = [
            "-config", str(config_path),
            "-profile", str(self.settings.profile_dir_base / profile.id),
        ]
        if profile.load_session_save:
            args.append("-loadSessionSave")
        return args

    def _drift_gate(self, profile: Profile) -> Optional[DependencyGraph]:
        """
        Re-resolve before launch.

        Returns the graph to synthesize from, or None to use the stored snapshot.
        Raises DriftBlocked when the profile is strict and upstream changed.
        """
        usable = profile.current_snapshot() is not None
        if usable and not self.settings.check_drift_on_start:
            return None
        try:
            report = self.store.check_drift(profile.id)
        except ResolveUnreachable as e:
            if not usable or profile.block_on_drift:
                raise
            log.warning("Drift check for %s skipped, upstream unreachable: %s", profile.id, e)
            return None

        if report.root_changed and profile.block_on_drift:
            raise DriftBlocked(profile.id, report.added, report.removed, report.scenario_present, root_changed=True)
        if not usable:
            log.info("Profile %s has no snapshot for %s; using a fresh resolution for this start",
                     profile.id, profile.workshop_id)
            return report.fresh
        if report.has_drift:
            if profile.block_on_drift:
                raise DriftBlocked(profile.id, report.added, report.removed, report.scenario_present)
            log.warning("Profile %s drifted (added=%s removed=%s); starting with stored snapshot",
                        profile.id, report.added, report.removed)
        return None

    def start(self, profile_id: str) -> RunStatus:
        profile = self.store.get_profile(profile_id)
        slot = self._slot(profile_id)
        with self._lock:
            if not slot.state.can_start:
                log.info("Start of %s ignored, already %s", profile_id, slot.state.phase.value)
                return self._status(slot)
            previous = slot.state
            slot.generation += 1
            gen = slot.generation
            slot.state = RunState(phase=RunPhase.STARTING)
            slot.stop_requested = False

        try:
            graph = self._drift_gate(profile)
            _generated, config_path = self.store.write_config(profile_id, graph)
            handle = self.runner.spawn(
                self.settings.server_exe,
                self.settings.server_work_dir,
                self._launch_args(profile, config_path),
                name=f"server[{profile_id}]",
            )
        except Exception:
            with self._lock:
                if slot.generation == gen:
                    slot.state = previous
            raise

        with self._lock:
            cancelled = slot.generation != gen
            if not cancelled:
                slot.handle = handle
                slot.started_at = utcnow()
                slot.config_path = config_path
        if cancelled:
            log.info("Start of %s was stopped before the process came up", profile_id)
            self._terminate(handle)
            return self.status(profile_id)

        log.info("Started %s (pid=%s) with %s", profile_id, handle.pid, config_path)
        slot.reader = threading.Thread(target=self._pump, args=(slot, handle, gen),
                                       name=f"log-reader-{profile_id}", daemon=True)
        slot.reader.start()
        threading.Thread(target=self._watch, args=(slot, handle, gen),
                         name=f"proc-waiter-{profile_id}", daemon=True).start()

        if self._ready_re is None:
            if self.settings.start_grace_seconds <= 0:
                self._mark_running(slot, gen)
            else:
                timer = threading.Timer(self.settings.start_grace_seconds, self._mark_running, args=(slot, gen))
                timer.daemon = True
                with self._lock:
                    slot.timer = timer
                timer.start()
        return self.status(profile_id)

    def _mark_running(self, slot: _Slot, gen: int) -> None:
        with self._lock:
            if slot.generation != gen or slot.state.phase != RunPhase.STARTING:
                return
            slot.state = RunState(phase=RunPhase.RUNNING)
        log.info("Server for %s is running", slot.profile_id)

    def _pump(self, slot: _Slot, handle: ProcessHandle, gen: int) -> None:
        log_path = self.store.layout.profile_log(slot.profile_id)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", buffering=1, encoding="utf-8") as fh:
            for line in handle.lines():
                fh.write(line + "\n")
                slot.broadcaster.publish(line)
                if self._ready_re is not None and self._ready_re.search(line):
                    self._mark_running(slot, gen)

    def _watch(self, slot: _Slot, handle: ProcessHandle, gen: int) -> None:
        rc = handle.wait()
        reader = slot.reader
        if reader is not None:
            # all output is published before the exit is recorded
            reader.join(timeout=5.0)
        with self._lock:
            if slot.generation != gen:
                return
            if slot.timer is not None:
                slot.timer.cancel()
                slot.timer = None
            if slot.stop_requested:
                slot.state = RunState()
            elif slot.state.phase in (RunPhase.STARTING, RunPhase.RUNNING):
                slot.state = RunState.crashed(rc)
                log.error("Server for %s exited unexpectedly with rc=%s", slot.profile_id, rc)
            slot.handle = None
        log.info("Server for %s exited with rc=%s", slot.profile_id, rc)

    # === Stop ===

    def _terminate(self, handle: ProcessHandle) -> None:
        if handle.poll() is not None:
            # already exited; the waiter thread records it
            return
        handle.terminate()
        try:
            handle.wait(timeout=self.settings.stop_timeout_seconds)
        except subprocess.TimeoutExpired:
            log.warning("Killing %s (pid=%s) after %.0fs", handle.name, handle.pid, self.settings.stop_timeout_seconds)
            handle.kill()
            handle.wait()

    def _stop(self, slot: _Slot) -> RunStatus:
        with self._lock:
            if not slot.state.can_stop:
                raise InvalidStateTransition(slot.profile_id, slot.state.phase.value, "stop")
            slot.stop_requested = True
            if slot.timer is not None:
                slot.timer.cancel()
                slot.timer = None
            handle = slot.handle
            if handle is None:
                # still in the drift check or spawning; start() cleans up
                slot.generation += 1
                slot.state = RunState()
                return self._status(slot)
            gen = slot.generation
            slot.state = RunState(phase=RunPhase.STOPPING)

        log.info("Stopping %s (pid=%s)", slot.profile_id, handle.pid)
        self._terminate(handle)
        with self._lock:
            if slot.generation == gen:
                slot.state = RunState()
                slot.handle = None
            return self._status(slot)

    def stop(self, profile_id: str) -> RunStatus:
        self.store.get_profile(profile_id)
        return self._stop(self._slot(profile_id))

    # === Read side ===

    def status(self, profile_id: str) -> RunStatus:
        with self._lock:
            slot = self._slots.get(profile_id)
            if slot is None:
                return RunStatus(profile_id=profile_id, state=RunState())
            return self._status(slot)

    def subscribe(self, profile_id: str, backlog: int = 0) -> LogSubscription:
        return self._slot(profile_id).broadcaster.subscribe(backlog)

    def tail(self, profile_id: str, n: int = 100) -> List[str]:
        with self._lock:
            slot = self._slots.get(profile_id)
        return slot.broadcaster.tail(n) if slot is not None else []

    # === Lifecycle ===

    def discard(self, profile_id: str) -> None:
        """Stops the profile's process if any and forgets its state and subscribers."""
        with self._lock:
            slot = self._slots.get(profile_id)
        if slot is None:
            return
        if slot.state.can_stop:
            try:
                self._stop(slot)
            except InvalidStateTransition:
                # exited on its own meanwhile
                log.debug("Process for %s already gone", profile_id)
        with self._lock:
            self._slots.pop(profile_id, None)
        slot.broadcaster.close()

    def shutdown(self) -> None:
        with self._lock:
            slots = list(self._slots.values())
        for slot in slots:
            if slot.state.can_stop:
                try:
                    self._stop(slot)
                except InvalidStateTransition:
                    log.debug("Process for %s already gone", slot.profile_id)
