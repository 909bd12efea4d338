"""One-shot sandbox backend detection.

Probing touches the filesystem (socket and binary checks) but never runs
anything.  The result is a frozen value computed once at startup and
handed to the executor; ``SandboxExecutor.refresh()`` swaps in a new one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bulwark.config import SandboxConfig
from bulwark.models import BackendKind
from bulwark.sandbox.backends import build_backends

logger = logging.getLogger(__name__)

PRIORITY: tuple[BackendKind, ...] = (
    BackendKind.DOCKER,
    BackendKind.LIGHTWEIGHT,
    BackendKind.RESTRICTED,
)


@dataclass(frozen=True)
class BackendAvailability:
    docker: bool = False
    lightweight: bool = False
    restricted: bool = True

    def is_available(self, kind: BackendKind) -> bool:
        return {
            BackendKind.DOCKER: self.docker,
            BackendKind.LIGHTWEIGHT: self.lightweight,
            BackendKind.RESTRICTED: self.restricted,
        }[kind]

    def order(self, preferred: BackendKind | None = None) -> list[BackendKind]:
        """Available backends in the order they should be tried.

        A preferred backend jumps the queue when available; the rest keep
        priority order behind it.
        """
        kinds = [k for k in PRIORITY if self.is_available(k)]
        if preferred is not None:
            if preferred in kinds:
                kinds.remove(preferred)
                kinds.insert(0, preferred)
            else:
                logger.warning("Preferred sandbox backend %s is not available", preferred.value)
        return kinds

    @property
    def selected(self) -> BackendKind | None:
        kinds = self.order()
        return kinds[0] if kinds else None

    def as_dict(self) -> dict[str, object]:
        selected = self.selected
        return {
            BackendKind.DOCKER.value: self.docker,
            BackendKind.LIGHTWEIGHT.value: self.lightweight,
            BackendKind.RESTRICTED.value: self.restricted,
            "selected": selected.value if selected else None,
        }


def detect_backends(config: SandboxConfig | None = None) -> BackendAvailability:
    backends = build_backends(config or SandboxConfig())
    availability = BackendAvailability(
        docker=backends[BackendKind.DOCKER].available(),
        lightweight=backends[BackendKind.LIGHTWEIGHT].available(),
        restricted=backends[BackendKind.RESTRICTED].available(),
    )
    logger.info(
        "Sandbox backends: docker=%s lightweight=%s restricted=%s -> %s",
        availability.docker,
        availability.lightweight,
        availability.restricted,
        availability.selected.value if availability.selected else "none",
    )
    return availability


def check_availability(config: SandboxConfig | None = None) -> dict[str, object]:
    """Diagnostic report of which backends this host offers."""
    return detect_backends(config).as_dict()
