# backends.py
from __future__ import annotations

import os
import re
import shutil
import stat
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence

from .errors import BackendUnavailable

TAIL_LINES = 40

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running, or use --backend local.",
    "git": "Install Git or fix PATH.",
    "sh": "A POSIX shell is required to run scripts.",
}

# /inputs, /outputs and anything under them, but not foo/inputs or /inputsX
_MOUNT_ROOT_RE = re.compile(r"(?<![\w./-])/(inputs|outputs)(?![\w.-])")


@dataclass(frozen=True)
class Mount:
    """Bind `source` on the host to `target` inside the container."""
    source: Path
    target: str
    read_only: bool = False


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    tail: str  # last lines of combined stdout/stderr


def _stream(cmd: List[str], log_path: Path, env: Dict[str, str], cwd: Path | None = None) -> ExecResult:
    """Run cmd, appending combined output to log_path, keep the tail in memory."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    tail: deque = deque(maxlen=TAIL_LINES)
    with log_path.open("a", encoding="utf-8") as log:
        log.write("$ " + " ".join(cmd) + "\n")
        log.flush()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            tool = cmd[0]
            raise BackendUnavailable(backend=tool, hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."))
        assert proc.stdout is not None
        for line in proc.stdout:
            log.write(line)
            tail.append(line)
        exit_code = proc.wait()
        log.write(f"[exit {exit_code}]\n")
    return ExecResult(exit_code=exit_code, tail="".join(tail))


def _clear_write_bits(root: Path) -> None:
    mask = ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH)
    for p in root.rglob("*"):
        if p.is_file() and not p.is_symlink():
            p.chmod(p.stat().st_mode & mask)


# ---------------------------------------------------------------------
# Docker
# ---------------------------------------------------------------------

class DockerBackend:
    """Runs every job in `docker run --rm` with its artifacts bind-mounted."""

    name = "docker"

    def check(self) -> None:
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise BackendUnavailable(backend="docker", hint=TOOL_HINTS["docker"])

    def build_command(
        self,
        image: str,
        command: Sequence[str],
        mounts: Sequence[Mount],
        env: Dict[str, str],
    ) -> List[str]:
        cmd = ["docker", "run", "--rm"]
        for m in mounts:
            spec = f"{Path(m.source).resolve()}:{m.target}"
            if m.read_only:
                spec += ":ro"
            cmd.extend(["-v", spec])
        for key, value in sorted(env.items()):
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)
        cmd.extend(command)
        return cmd

    def run(
        self,
        image: str,
        command: Sequence[str],
        *,
        mounts: Sequence[Mount],
        env: Dict[str, str],
        log_path: Path,
        workdir: Path,
    ) -> ExecResult:
        self.check()
        cmd = self.build_command(image, command, mounts, env)
        # docker gets its own env through -e; the client itself needs the host env
        return _stream(cmd, log_path, dict(os.environ))


# ---------------------------------------------------------------------
# Local (no container)
# ---------------------------------------------------------------------

class LocalBackend:
    """
    Runs commands directly on the host, for development and tests.

    The image is ignored. Mount targets are materialized inside the job's
    workdir (workdir/inputs/<name>, workdir/outputs/<name>) and every
    `/inputs` or `/outputs` path in the command is rewritten to point there.
    Read-only mounts are copied with write bits cleared so a job can never
    modify a committed dataset version; writable mounts are symlinked.
    """

    name = "local"

    def check(self) -> None:
        return None

    def rewrite(self, arg: str, workdir: Path) -> str:
        return _MOUNT_ROOT_RE.sub(lambda m: str(workdir / m.group(1)), arg)

    def _materialize(self, mounts: Sequence[Mount], workdir: Path) -> None:
        for m in mounts:
            host = workdir / m.target.lstrip("/")
            source = Path(m.source).resolve()
            if host.resolve() == source:
                continue
            host.parent.mkdir(parents=True, exist_ok=True)
            if host.is_symlink() or host.exists():
                if host.is_dir() and not host.is_symlink():
                    raise FileExistsError(f"mount target already exists: {host}")
                host.unlink()
            if m.read_only:
                shutil.copytree(source, host, symlinks=True)
                _clear_write_bits(host)
            else:
                host.symlink_to(source, target_is_directory=True)

    def run(
        self,
        image: str,
        command: Sequence[str],
        *,
        mounts: Sequence[Mount],
        env: Dict[str, str],
        log_path: Path,
        workdir: Path,
    ) -> ExecResult:
        workdir.mkdir(parents=True, exist_ok=True)
        self._materialize(mounts, workdir)
        cmd = [self.rewrite(arg, workdir) for arg in command]

        full_env = os.environ.copy()
        full_env.update(env)
        return _stream(cmd, log_path, full_env, cwd=workdir)


BACKENDS = {
    "docker": DockerBackend,
    "local": LocalBackend,
}


def get_backend(name: str):
    try:
        return BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown backend {name!r}. Choose one of: {sorted(BACKENDS)}") from None

