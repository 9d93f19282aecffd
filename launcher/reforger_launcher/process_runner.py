from __future__ import annotations
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional
from .errors import SpawnError
from .logging_setup import get_logger

log = get_logger("reforger.launcher.proc")


@dataclass
class ProcessHandle:
    name: str
    proc: subprocess.Popen

    @property
    def pid(self) -> int:
        return self.proc.pid

    def lines(self) -> Iterator[str]:
        """Yields stdout+stderr lines (without newline) until EOF."""
        pipe = self.proc.stdout
        try:
            for line in iter(pipe.readline, ""):
                yield line.rstrip("\r\n")
        finally:
            pipe.close()

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def wait(self, timeout: Optional[float] = None) -> int:
        return self.proc.wait(timeout=timeout)

    def terminate(self) -> None:
        if self.poll() is None:
            self.proc.terminate()

    def kill(self) -> None:
        if self.poll() is None:
            self.proc.kill()


class ProcessRunner:
    """Spawns the server executable with merged stdout/stderr as a text line stream."""

    def spawn(self, executable: Path, cwd: Path, args: List[str], *, name: str = "server",
              env: Optional[dict] = None) -> ProcessHandle:
        cmd = [str(executable)] + list(args)
        log.info("Starting %s: %s", name, " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,  # line-buffered
                env=env,
            )
        except OSError as e:
            raise SpawnError(f"could not start {executable}: {e}") from e
        return ProcessHandle(name=name, proc=proc)
