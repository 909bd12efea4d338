"""Sandbox backends.

A closed set of three strategies behind one :class:`SandboxBackend`
protocol.  A backend never runs anything itself: it turns a command into
a :class:`LaunchSpec` (argv, env, working directory, process-group and
rlimit setup) and the executor spawns, supervises and reaps it the same
way for every backend.

Priority order: Docker container → Firejail → restricted process.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from bulwark.config import SandboxConfig
from bulwark.models import BackendKind

try:
    import resource
except ImportError:  # non-POSIX host: no rlimits to apply
    resource = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

# Exit status docker itself uses for "could not run the container".
DOCKER_RUNTIME_ERROR = 125
_DOCKER_DAEMON_DOWN = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)


@dataclass(frozen=True)
class LaunchSpec:
    """Everything the executor needs to spawn one sandboxed process."""

    argv: list[str]
    env: dict[str, str]
    cwd: str | None = None
    new_session: bool = False
    preexec_fn: Callable[[], None] | None = None
    enforced_limits: tuple[str, ...] = ()
    # Set for containers so escalation can also stop the container.
    container_name: str | None = None


class SandboxBackend(Protocol):
    """Protocol that every backend implements."""

    kind: BackendKind

    def available(self) -> bool: ...

    def prepare(
        self,
        command: str,
        *,
        execution_id: str,
        workspace: str,
        env: dict[str, str],
        network: bool,
        timeout_ms: int,
    ) -> LaunchSpec: ...

    def runtime_unavailable(self, exit_code: int | None, stderr: str) -> bool: ...


# ── Docker ───────────────────────────────────────────────────────────────────


class DockerBackend:
    """Disposable container per command.

    Env values are passed by name (``-e KEY``) and supplied through the
    docker client's own environment, so they never appear in argv.
    """

    kind = BackendKind.DOCKER

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config

    def available(self) -> bool:
        return os.access(self._config.docker_socket, os.R_OK) and shutil.which("docker") is not None

    def prepare(
        self,
        command: str,
        *,
        execution_id: str,
        workspace: str,
        env: dict[str, str],
        network: bool,
        timeout_ms: int,
    ) -> LaunchSpec:
        cfg = self._config
        name = f"bulwark-{execution_id}"
        memory = f"{cfg.memory_limit_mb}m"
        argv = [
            "docker", "run", "--rm",
            "--name", name,
            "--network", "bridge" if network else "none",
            "--memory", memory,
            "--memory-swap", memory,
            "--cpus", str(cfg.cpu_limit),
            "--pids-limit", str(cfg.pids_limit),
            "--read-only",
            "--tmpfs", "/tmp:rw,noexec,nosuid,size=64m",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "-v", f"{workspace}:{cfg.workspace_mount}:rw",
            "-w", cfg.workspace_mount,
        ]
        for mount in cfg.read_only_mounts:
            argv += ["-v", f"{mount}:{mount}:ro"]
        for key in sorted(env):
            argv += ["-e", key]
        argv += [cfg.docker_image, "sh", "-c", command]

        limits = ["memory", "no-swap", "cpu-share", "processes", "read-only-root", "cap-drop",
                  "no-new-privileges"]
        if not network:
            limits.append("network-off")
        return LaunchSpec(
            argv=argv,
            env=env,
            cwd=workspace,
            enforced_limits=tuple(limits),
            container_name=name,
        )

    def runtime_unavailable(self, exit_code: int | None, stderr: str) -> bool:
        if exit_code != DOCKER_RUNTIME_ERROR:
            return False
        lowered = stderr.lower()
        return any(marker in lowered for marker in _DOCKER_DAEMON_DOWN)


# ── Firejail ─────────────────────────────────────────────────────────────────


class FirejailBackend:
    """Lightweight OS-level sandbox via firejail."""

    kind = BackendKind.LIGHTWEIGHT

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config

    def available(self) -> bool:
        path = self._config.firejail_path
        return os.path.isfile(path) and os.access(path, os.X_OK)

    def prepare(
        self,
        command: str,
        *,
        execution_id: str,
        workspace: str,
        env: dict[str, str],
        network: bool,
        timeout_ms: int,
    ) -> LaunchSpec:
        cfg = self._config
        cpu_seconds = math.ceil((timeout_ms + cfg.grace_period_ms) / 1000)
        argv = [cfg.firejail_path, "--noprofile", "--quiet", f"--private={workspace}"]
        if not network:
            argv.append("--net=none")
        argv += [
            f"--rlimit-as={cfg.memory_limit_mb * 1024 * 1024}",
            f"--rlimit-nproc={cfg.pids_limit}",
            f"--rlimit-nofile={cfg.nofile_limit}",
            f"--rlimit-cpu={cpu_seconds}",
            "--seccomp",
            "--caps.drop=all",
            "--nonewprivs",
            "sh", "-c", command,
        ]
        limits = ["memory", "processes", "open-files", "cpu-time", "seccomp", "cap-drop",
                  "no-new-privileges"]
        if not network:
            limits.append("network-off")
        return LaunchSpec(
            argv=argv,
            env=env,
            cwd=workspace,
            new_session=True,
            enforced_limits=tuple(limits),
        )

    def runtime_unavailable(self, exit_code: int | None, stderr: str) -> bool:
        return False


# ── Restricted process ───────────────────────────────────────────────────────


def _rlimit_setter(limits: list[tuple[int, int]]) -> Callable[[], None]:
    """Build a preexec hook that applies ``(resource, value)`` rlimits.

    Values are clamped to the inherited hard limit, since an unprivileged
    process cannot raise it.
    """

    def _apply() -> None:
        for res, value in limits:
            _soft, hard = resource.getrlimit(res)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(res, (value, value))

    return _apply


class RestrictedBackend:
    """Plain ``sh -c`` in its own process group with rlimits applied.

    Always available.  Only declares the bounds it actually sets: address
    space, CPU seconds and open files through ``setrlimit``, plus network
    isolation when wrapped in ``unshare --net``.
    """

    kind = BackendKind.RESTRICTED

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config

    def available(self) -> bool:
        return True

    def _namespaces_usable(self) -> bool:
        return self._config.restricted_namespaces and shutil.which("unshare") is not None

    def prepare(
        self,
        command: str,
        *,
        execution_id: str,
        workspace: str,
        env: dict[str, str],
        network: bool,
        timeout_ms: int,
    ) -> LaunchSpec:
        cfg = self._config
        argv = ["sh", "-c", command]
        limits: list[str] = ["process-group"]

        if not network and self._namespaces_usable():
            argv = ["unshare", "--net", "--map-root-user", "--"] + argv
            limits.append("network-off")
        elif not network and cfg.restricted_namespaces:
            logger.warning(
                "Namespace isolation requested but unshare not available "
                "-- running without network isolation"
            )

        preexec = None
        if resource is not None:
            cpu_seconds = math.ceil((timeout_ms + cfg.grace_period_ms) / 1000)
            preexec = _rlimit_setter(
                [
                    (resource.RLIMIT_AS, cfg.memory_limit_mb * 1024 * 1024),
                    (resource.RLIMIT_CPU, cpu_seconds),
                    (resource.RLIMIT_NOFILE, cfg.nofile_limit),
                ]
            )
            limits += ["memory", "cpu-time", "open-files"]

        return LaunchSpec(
            argv=argv,
            env=env,
            cwd=workspace,
            new_session=True,
            preexec_fn=preexec,
            enforced_limits=tuple(limits),
        )

    def runtime_unavailable(self, exit_code: int | None, stderr: str) -> bool:
        return False


def build_backends(config: SandboxConfig) -> dict[BackendKind, SandboxBackend]:
    return {
        BackendKind.DOCKER: DockerBackend(config),
        BackendKind.LIGHTWEIGHT: FirejailBackend(config),
        BackendKind.RESTRICTED: RestrictedBackend(config),
    }
