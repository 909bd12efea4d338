"""Hash-chained append-only audit log for security pipeline events.

Every event goes to the ``bulwark.audit`` logger.  When a log directory is
configured, events are also appended as NDJSON, SHA-256 hashed and chained
to the previous entry so tampering is detectable (any modification breaks
the chain).  Each UTC day gets its own file whose chain starts at genesis.

Log format (one JSON object per line):
    {
        "seq": <int>,          // monotonic sequence number
        "ts": "<iso8601>",     // UTC timestamp
        "layer": "<str>",      // perimeter | validator | sandbox | pipeline
        "outcome": "<str>",    // sanitized | blocked | flagged | valid | ...
        "detail": {...},       // truncated summary
        "prev_hash": "<hex>",  // hash of previous entry
        "hash": "<hex>"        // SHA-256 of this entry sans "hash"
    }
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

# Maximum length of any string value stored in an event detail.
_DETAIL_VALUE_MAX = 512

# Outcomes logged at WARNING instead of INFO.
ALERT_OUTCOMES = frozenset({"blocked", "flagged", "invalid", "killed", "failed", "fallback"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _utc_date() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def _truncate(value: object, max_len: int = _DETAIL_VALUE_MAX) -> object:
    if isinstance(value, str):
        if len(value) > max_len:
            return value[:max_len] + "…[truncated]"
        return value
    if isinstance(value, dict):
        return {str(k): _truncate(v, max_len) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_truncate(v, max_len) for v in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return _truncate(str(value), max_len)


class AuditLog:
    """Append-only audit stream shared by all pipeline layers.

    Thread safe: a ``threading.Lock`` serialises sequence numbering and
    file writes, so the synchronous sanitizer/validator and the async
    executor can all record through one instance.  Write failures are
    logged and swallowed; auditing never breaks the calling layer.
    """

    def __init__(self, log_dir: Path | None = None, *, log_clean_events: bool = True) -> None:
        self._log_dir = log_dir
        self._log_clean = log_clean_events
        self._lock = threading.Lock()
        self._seq = 0
        self._prev_hash = GENESIS_HASH
        self._started = False
        self._current_file: Path | None = None

    @property
    def log_dir(self) -> Path | None:
        return self._log_dir

    def _log_file(self) -> Path:
        """Return the current log file path (one file per UTC day)."""
        if self._log_dir is None:
            raise RuntimeError("audit log has no log directory")
        return self._log_dir / f"audit-{_utc_date()}.ndjson"

    def start(self) -> None:
        """Create the log directory and resume the chain from today's file."""
        if self._started or self._log_dir is None:
            self._started = True
            return
        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_file = self._log_file()
        if log_file.exists():
            self._resume_from(log_file)
        self._current_file = log_file
        self._started = True

    def _resume_from(self, log_file: Path) -> None:
        """Read the last log line to resume sequence number and prev_hash."""
        try:
            last_line: str | None = None
            with open(log_file) as fh:
                for line in fh:
                    line = line.strip()
                    if line:
                        last_line = line
            if last_line:
                entry = json.loads(last_line)
                self._seq = entry.get("seq", 0)
                self._prev_hash = entry.get("hash", GENESIS_HASH)
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not resume audit log from %s; starting fresh", log_file)

    def _roll_over(self, log_file: Path) -> None:
        """Start a fresh chain from genesis when the UTC day changes."""
        if log_file == self._current_file:
            return
        if self._current_file is not None:
            logger.info("Audit log rolled over to %s", log_file)
            self._seq = 0
            self._prev_hash = GENESIS_HASH
            if log_file.exists():
                self._resume_from(log_file)
        self._current_file = log_file

    def record(self, layer: str, outcome: str, detail: dict[str, Any] | None = None) -> dict:
        """Append one event and return it (including ``hash`` when chained)."""
        detail = _truncate(detail or {})
        level = logging.WARNING if outcome in ALERT_OUTCOMES else logging.INFO
        if level == logging.INFO and not self._log_clean:
            level = logging.DEBUG
        logger.log(level, "[%s] %s %s", layer, outcome, json.dumps(detail, sort_keys=True))

        with self._lock:
            if not self._started:
                self.start()
            if self._log_dir is not None:
                self._roll_over(self._log_file())
            self._seq += 1
            entry: dict[str, Any] = {
                "seq": self._seq,
                "ts": _now_iso(),
                "layer": layer,
                "outcome": outcome,
                "detail": detail,
                "prev_hash": self._prev_hash,
            }
            if self._log_dir is None:
                return entry

            # Deterministic JSON for hashing
            raw = json.dumps(entry, sort_keys=True)
            entry_hash = _sha256_hex(raw)
            entry["hash"] = entry_hash
            line = json.dumps(entry, sort_keys=True)
            self._prev_hash = entry_hash

            try:
                with open(self._current_file, "a") as fh:
                    fh.write(line + "\n")
            except OSError:
                logger.error("Failed to write audit entry for %s/%s", layer, outcome)
            return entry

    def verify_chain(self, log_file: Path | None = None) -> tuple[bool, str]:
        """Verify the hash-chain integrity of a log file.

        Returns:
            (ok, message) where ok=True means the chain is intact.
        """
        if log_file is None:
            if self._log_dir is None:
                return True, "no log file"
            log_file = self._log_file()
        return verify_chain(log_file)


def verify_chain(log_file: Path) -> tuple[bool, str]:
    """Verify an audit NDJSON file independently of any AuditLog instance."""
    if not log_file.exists():
        return True, "no log file"

    prev_hash = GENESIS_HASH
    prev_seq = 0
    try:
        with open(log_file) as fh:
            for lineno, line in enumerate(fh, 1):
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                stored_hash = entry.pop("hash", "")
                computed = _sha256_hex(json.dumps(entry, sort_keys=True))
                if computed != stored_hash:
                    return (
                        False,
                        f"line {lineno}: hash mismatch (stored={stored_hash[:16]}…, "
                        f"computed={computed[:16]}…)",
                    )
                if entry.get("prev_hash") != prev_hash:
                    return (
                        False,
                        f"line {lineno}: chain broken (expected prev_hash={prev_hash[:16]}…)",
                    )
                if entry.get("seq", 0) != prev_seq + 1:
                    return (
                        False,
                        f"line {lineno}: sequence gap (expected {prev_seq + 1}, "
                        f"got {entry.get('seq')})",
                    )
                prev_hash = stored_hash
                prev_seq = entry.get("seq", prev_seq)
    except (json.JSONDecodeError, OSError) as exc:
        return False, f"read error: {exc}"

    return True, f"chain intact ({prev_seq} entries)"
