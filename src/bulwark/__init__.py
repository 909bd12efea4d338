"""Bulwark: layered security pipeline for autonomous agent tool calls.

- Perimeter sanitizer for inbound text
- Command & path validator
- Sandboxed command execution (Docker, Firejail, restricted process)
- Two-tier secrets isolation
- Hash-chained audit log
"""

from .config import BulwarkConfig, ConfigError, load_config
from .perimeter import PerimeterSanitizer
from .pipeline import SecurityPipeline, build_pipeline
from .sandbox import SandboxExecutor
from .secrets_store import SecretsStore, export_for_sandbox
from .validator import CommandValidator

__version__ = "0.1.0"

__all__ = [
    "BulwarkConfig",
    "CommandValidator",
    "ConfigError",
    "PerimeterSanitizer",
    "SandboxExecutor",
    "SecretsStore",
    "SecurityPipeline",
    "build_pipeline",
    "export_for_sandbox",
    "load_config",
]
