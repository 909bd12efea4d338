"""Sandbox executor: runs one command under the best available backend.

Every run follows the same lifecycle regardless of backend:

1. build a secrets-filtered environment with safe ``PATH``/``HOME``
2. try backends in priority order; spawn errors and runtime
   unavailability fall through to the next one
3. read stdout/stderr concurrently into capped buffers
4. on timeout send SIGTERM, wait the grace period, then SIGKILL
5. reap the process group and return a frozen :class:`SandboxExecution`

Process problems never raise out of :meth:`SandboxExecutor.execute`; they
become a ``failed`` execution.  Caller cancellation runs the same
terminate/kill escalation before ``CancelledError`` propagates.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from bulwark.audit import AuditLog
from bulwark.config import SandboxConfig
from bulwark.models import BackendKind, ExecuteOptions, ExecutionStatus, SandboxExecution
from bulwark.sandbox.backends import LaunchSpec, SandboxBackend, build_backends
from bulwark.sandbox.detection import BackendAvailability, detect_backends
from bulwark.secrets_store import SecretsStore

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[output truncated]"
_READ_CHUNK = 64 * 1024
# How long to wait for pipes to hit EOF once the process has exited.
_DRAIN_TIMEOUT_S = 2.0


def new_execution_id() -> str:
    return f"sandbox-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


# ── Output capture ───────────────────────────────────────────────────────────


@dataclass
class _CappedBuffer:
    """Accumulates process output up to a character budget.

    Keeps at most ``4 * max_chars`` bytes (UTF-8 worst case) and keeps
    reading past the cap so the child never blocks on a full pipe.
    """

    max_chars: int
    data: bytearray = field(default_factory=bytearray)
    overflowed: bool = False

    def feed(self, chunk: bytes) -> None:
        room = self.max_chars * 4 - len(self.data)
        if room <= 0:
            self.overflowed = True
            return
        if len(chunk) > room:
            self.overflowed = True
        self.data += chunk[:room]

    def render(self) -> tuple[str, bool]:
        text = self.data.decode("utf-8", errors="replace")
        truncated = self.overflowed or len(text) > self.max_chars
        if truncated:
            text = text[: self.max_chars] + TRUNCATION_MARKER
        return text, truncated


async def _pump(stream: asyncio.StreamReader | None, buf: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        buf.feed(chunk)


@dataclass
class _RunResult:
    exit_code: int | None
    stdout: _CappedBuffer
    stderr: _CappedBuffer
    killed_by_timeout: bool = False


# ── Executor ─────────────────────────────────────────────────────────────────


class SandboxExecutor:
    """Executes commands in a sandbox chosen from a fixed availability snapshot."""

    def __init__(
        self,
        config: SandboxConfig | None = None,
        availability: BackendAvailability | None = None,
        *,
        secrets: SecretsStore | None = None,
        audit: AuditLog | None = None,
        workspace_root: Path | str | None = None,
        backends: dict[BackendKind, SandboxBackend] | None = None,
    ) -> None:
        self._config = config or SandboxConfig()
        self._availability = availability if availability is not None else detect_backends(self._config)
        self._secrets = secrets or SecretsStore()
        self._audit = audit
        self._workspace_root = Path(workspace_root) if workspace_root else Path.cwd()
        self._backends = backends or build_backends(self._config)

    @property
    def availability(self) -> BackendAvailability:
        return self._availability

    def refresh(self) -> BackendAvailability:
        """Re-probe the host and replace the cached availability."""
        self._availability = detect_backends(self._config)
        return self._availability

    def build_env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Filtered ambient env plus exposed secrets, caller extras and safe defaults.

        Protected names are dropped again after merging ``extra`` so a
        caller cannot reintroduce them.
        """
        env = self._secrets.export_for_sandbox(os.environ)
        if extra:
            env.update(extra)
        for key in self._secrets.protected_key_names:
            env.pop(key, None)
        env["PATH"] = self._config.safe_path
        env["HOME"] = self._config.home_dir
        return env

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> SandboxExecution:
        options = options or ExecuteOptions()
        execution_id = new_execution_id()
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        timeout_ms = options.timeout_ms or self._config.timeout_ms
        workspace = Path(options.workspace) if options.workspace else self._workspace_root

        def finish(**kwargs) -> SandboxExecution:
            execution = SandboxExecution(
                id=execution_id,
                command=command,
                started_at=started_at,
                duration_ms=int((time.monotonic() - start) * 1000),
                **kwargs,
            )
            self._record(execution)
            return execution

        if not workspace.is_dir():
            return finish(
                backend=None,
                status=ExecutionStatus.FAILED,
                error=f"workspace does not exist: {workspace}",
            )

        env = self.build_env(options.env)
        fallbacks: list[str] = []
        last_error = "no sandbox backend available"

        for kind in self._availability.order(options.backend or self._config.preferred_backend):
            backend = self._backends[kind]
            spec = backend.prepare(
                command,
                execution_id=execution_id,
                workspace=str(workspace.resolve()),
                env=env,
                network=options.network,
                timeout_ms=timeout_ms,
            )
            try:
                result = await self._run(spec, timeout_ms / 1000)
            except (OSError, subprocess.SubprocessError) as exc:
                last_error = f"{kind.value}: {exc}"
                fallbacks.append(last_error)
                logger.warning("Sandbox backend %s failed to spawn: %s", kind.value, exc)
                continue

            stdout, stdout_truncated = result.stdout.render()
            stderr, stderr_truncated = result.stderr.render()

            if not result.killed_by_timeout and backend.runtime_unavailable(result.exit_code, stderr):
                last_error = f"{kind.value}: runtime unavailable"
                fallbacks.append(last_error)
                logger.warning("Sandbox backend %s runtime unavailable, falling back", kind.value)
                continue

            if result.killed_by_timeout:
                status = ExecutionStatus.KILLED
                error = f"timed out after {timeout_ms}ms"
            elif result.exit_code == 0:
                status = ExecutionStatus.COMPLETED
                error = None
            else:
                status = ExecutionStatus.FAILED
                error = None

            return finish(
                backend=kind,
                status=status,
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=stderr,
                stdout_truncated=stdout_truncated,
                stderr_truncated=stderr_truncated,
                killed_by_timeout=result.killed_by_timeout,
                error=error,
                enforced_limits=spec.enforced_limits,
                fallbacks=tuple(fallbacks),
            )

        return finish(
            backend=None,
            status=ExecutionStatus.FAILED,
            error=last_error,
            fallbacks=tuple(fallbacks),
        )

    # ── Process supervision ──────────────────────────────────────────────────

    async def _run(self, spec: LaunchSpec, timeout_s: float) -> _RunResult:
        proc = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=spec.cwd,
            env=spec.env,
            start_new_session=spec.new_session,
            preexec_fn=spec.preexec_fn,
        )
        result = _RunResult(
            exit_code=None,
            stdout=_CappedBuffer(self._config.max_output_chars),
            stderr=_CappedBuffer(self._config.max_output_chars),
        )
        readers = [
            asyncio.ensure_future(_pump(proc.stdout, result.stdout)),
            asyncio.ensure_future(_pump(proc.stderr, result.stderr)),
        ]
        try:
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout_s)
            except asyncio.TimeoutError:
                result.killed_by_timeout = True
                logger.warning("Sandbox command timed out after %.1fs (pid %d)", timeout_s, proc.pid)
                await self._escalate(proc, spec)
        except asyncio.CancelledError:
            logger.warning("Sandbox run cancelled, terminating pid %d", proc.pid)
            await self._escalate(proc, spec)
            for reader in readers:
                reader.cancel()
            raise

        self._reap_group(proc, spec)
        _done, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT_S)
        for reader in pending:
            reader.cancel()
        result.exit_code = proc.returncode
        return result

    def _signal(self, proc: asyncio.subprocess.Process, spec: LaunchSpec, sig: int) -> None:
        if proc.returncode is not None and not spec.new_session:
            return
        try:
            if spec.new_session:
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            pass

    async def _escalate(self, proc: asyncio.subprocess.Process, spec: LaunchSpec) -> None:
        """SIGTERM, wait out the grace period, then SIGKILL."""
        grace_s = self._config.grace_period_ms / 1000
        self._signal(proc, spec, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_s)
        except asyncio.TimeoutError:
            logger.warning("pid %d ignored SIGTERM for %.1fs, sending SIGKILL", proc.pid, grace_s)
            self._signal(proc, spec, signal.SIGKILL)
            await proc.wait()
        if spec.container_name:
            await self._kill_container(spec.container_name)

    def _reap_group(self, proc: asyncio.subprocess.Process, spec: LaunchSpec) -> None:
        """Kill anything left in the process group after the leader exits."""
        if not spec.new_session:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    async def _kill_container(self, name: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", "kill", name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=10)
        except (OSError, asyncio.TimeoutError):
            logger.warning("Failed to kill container %s", name, exc_info=True)

    def _record(self, execution: SandboxExecution) -> None:
        detail = {
            "id": execution.id,
            "command": execution.command,
            "backend": execution.backend.value if execution.backend else None,
            "exit_code": execution.exit_code,
            "duration_ms": execution.duration_ms,
            "killed_by_timeout": execution.killed_by_timeout,
            "fallbacks": list(execution.fallbacks),
            "error": execution.error,
        }
        outcome = execution.status.value
        if self._audit is not None:
            self._audit.record("sandbox", outcome, detail)
        elif execution.status is ExecutionStatus.COMPLETED:
            logger.info("sandbox %s: %s", outcome, detail)
        else:
            logger.warning("sandbox %s: %s", outcome, detail)
