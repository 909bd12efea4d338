"""Sandboxed command execution.

- Docker container, Firejail or restricted-process backends
- One-shot backend detection, injectable into the executor
- Two-phase timeout escalation (SIGTERM, then SIGKILL)
- Capped stdout/stderr with explicit truncation markers
- Secrets-filtered environment with safe PATH/HOME
"""

from .backends import DockerBackend, FirejailBackend, LaunchSpec, RestrictedBackend, SandboxBackend
from .detection import BackendAvailability, check_availability, detect_backends
from .executor import TRUNCATION_MARKER, SandboxExecutor
from .workspace import cleanup_workspace, create_temp_workspace

__all__ = [
    "TRUNCATION_MARKER",
    "BackendAvailability",
    "DockerBackend",
    "FirejailBackend",
    "LaunchSpec",
    "RestrictedBackend",
    "SandboxBackend",
    "SandboxExecutor",
    "check_availability",
    "cleanup_workspace",
    "create_temp_workspace",
    "detect_backends",
]
