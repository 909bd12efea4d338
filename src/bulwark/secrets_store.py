"""Two-tier secrets isolation for sandboxed subprocesses.

Secrets arrive in two environment variables, each a base64-encoded JSON
object:

- ``SECRETS``: protected tier (provider API keys, platform tokens).  These
  are available to trusted internal code only and never reach anything
  that runs attacker-influenced commands.
- ``LLM_SECRETS``: exposed tier (browser logins, skill API keys).  These
  are handed to sandboxed commands on purpose.

Protection is keyed by *name*, not by origin: any key name found in the
protected tier or in the configured blocklist is removed from every
environment built for the sandbox, even when the same name also appears
in the exposed tier.

The store is read/derive-only at call time.  Contexts are frozen and
``add_protected_key``/``refresh`` swap in a new context rather than
mutating the current one.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from bulwark.config import ConfigError, SecretsConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecretsContext:
    """Both secret tiers plus the derived set of protected names."""

    protected: Mapping[str, str] = field(default_factory=dict)
    exposed: Mapping[str, str] = field(default_factory=dict)
    protected_key_names: frozenset[str] = frozenset()


def _decode_payload(var_name: str, payload: str) -> dict[str, str]:
    """Decode one base64 JSON secrets payload.

    Raises:
        ConfigError: On bad base64, bad JSON, a non-object or non-string
            values.  The payload itself is never included in the message.
    """
    try:
        decoded = base64.b64decode(payload.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigError(f"{var_name}: payload is not valid base64-encoded UTF-8") from exc
    try:
        data = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{var_name}: payload is not valid JSON ({exc.msg})") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{var_name}: payload must be a JSON object")
    bad = sorted(k for k, v in data.items() if not isinstance(v, str))
    if bad:
        raise ConfigError(f"{var_name}: values must be strings (offending keys: {', '.join(bad)})")
    return data


def load_from_environment(
    config: SecretsConfig | None = None,
    environ: Mapping[str, str] | None = None,
) -> SecretsContext:
    """Decode both tiers from the environment into a frozen context."""
    config = config or SecretsConfig()
    env = os.environ if environ is None else environ

    protected: dict[str, str] = {}
    exposed: dict[str, str] = {}
    raw = env.get(config.protected_env_var)
    if raw:
        protected = _decode_payload(config.protected_env_var, raw)
    raw = env.get(config.exposed_env_var)
    if raw:
        exposed = _decode_payload(config.exposed_env_var, raw)

    names = (
        set(config.protected_keys)
        | set(protected)
        | {config.protected_env_var, config.exposed_env_var}
    )
    logger.info(
        "Loaded secrets: %d protected, %d exposed, %d protected names",
        len(protected),
        len(exposed),
        len(names),
    )
    return SecretsContext(
        protected=MappingProxyType(protected),
        exposed=MappingProxyType(exposed),
        protected_key_names=frozenset(names),
    )


def export_for_sandbox(
    ambient: Mapping[str, str],
    exposed: Mapping[str, str],
    protected_names: Iterable[str],
) -> dict[str, str]:
    """Build the environment a sandboxed command may see.

    Returns ``(ambient ∪ exposed) \\ protected_names`` as a new dict, with
    exposed values overriding ambient ones.  Pure: never reads or mutates
    ``os.environ``.
    """
    blocked = set(protected_names)
    env = {k: v for k, v in ambient.items() if k not in blocked}
    env.update({k: v for k, v in exposed.items() if k not in blocked})
    return env


class SecretsStore:
    """Holds the current :class:`SecretsContext` and derives env maps from it."""

    def __init__(
        self,
        config: SecretsConfig | None = None,
        environ: Mapping[str, str] | None = None,
        *,
        context: SecretsContext | None = None,
    ) -> None:
        self._config = config or SecretsConfig()
        self._environ = environ
        self._context = context if context is not None else load_from_environment(self._config, environ)

    @property
    def context(self) -> SecretsContext:
        return self._context

    @property
    def protected_key_names(self) -> frozenset[str]:
        return self._context.protected_key_names

    def is_protected(self, key: str) -> bool:
        return key in self._context.protected_key_names

    def export_for_sandbox(self, ambient_env: Mapping[str, str] | None = None) -> dict[str, str]:
        ambient = os.environ if ambient_env is None else ambient_env
        env = export_for_sandbox(ambient, self._context.exposed, self._context.protected_key_names)
        logger.debug(
            "Sandbox env built: %d vars (%d exposed secrets)",
            len(env),
            sum(1 for k in self._context.exposed if k in env),
        )
        return env

    def export_for_system(self) -> dict[str, str]:
        """Both tiers merged, protected values winning.  Internal use only."""
        return {**self._context.exposed, **self._context.protected}

    def get_secret(self, key: str) -> str | None:
        if key in self._context.protected:
            return self._context.protected[key]
        return self._context.exposed.get(key)

    def get_exposed(self, key: str) -> str | None:
        return self._context.exposed.get(key)

    def all_exposed(self) -> dict[str, str]:
        return dict(self._context.exposed)

    def add_protected_key(self, key: str) -> SecretsContext:
        ctx = self._context
        if key in ctx.protected_key_names:
            return ctx
        self._context = SecretsContext(
            protected=ctx.protected,
            exposed=ctx.exposed,
            protected_key_names=ctx.protected_key_names | {key},
        )
        return self._context

    def refresh(self) -> SecretsContext:
        """Reload both tiers from the environment.

        Names added with :meth:`add_protected_key` stay protected.
        """
        extra = self._context.protected_key_names
        fresh = load_from_environment(self._config, self._environ)
        self._context = SecretsContext(
            protected=fresh.protected,
            exposed=fresh.exposed,
            protected_key_names=fresh.protected_key_names | extra,
        )
        return self._context

    def missing_required(self, keys: Iterable[str] | None = None) -> list[str]:
        """Return required keys present in neither tier nor the ambient env."""
        keys = self._config.required_keys if keys is None else keys
        env = os.environ if self._environ is None else self._environ
        return [k for k in keys if not self.get_secret(k) and not env.get(k)]

    def validate_required(self, keys: Iterable[str] | None = None) -> None:
        """Raise ConfigError when any required secret is absent."""
        missing = self.missing_required(keys)
        if missing:
            raise ConfigError(f"missing required secrets: {', '.join(missing)}")

    def summary(self) -> dict:
        return {
            "protected": len(self._context.protected),
            "exposed": len(self._context.exposed),
            "protected_names": len(self._context.protected_key_names),
        }
