"""Best-effort JSONL sink for billing telemetry events."""

from __future__ import annotations

import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from backend.app.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def _env_bool(name: str) -> Optional[bool]:
    val = os.getenv(name)
    if val is None:
        return None
    val = val.strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return None


def should_log_events(config: Settings | None = None) -> bool:
    """
    Decide whether to emit billing events.
    - Explicit override via MARGIN_EVENTS_ENABLED (1/0).
    - Skip during pytest unless explicitly enabled.
    - Otherwise, always on.
    """
    override = _env_bool("MARGIN_EVENTS_ENABLED")
    if override is not None:
        return override

    cfg = config or default_settings
    if cfg.events_enabled is not None:
        return cfg.events_enabled

    if "PYTEST_CURRENT_TEST" in os.environ:
        return False

    return True


class EventSink:
    """Append-only analytics handle passed to services that report billing events.

    Each ``capture`` writes one JSON line. Failures are logged and swallowed so a
    broken telemetry target can never fail a billing operation.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        enabled: bool | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or default_settings
        self.path = Path(path or cfg.events_log_path).resolve()
        self.enabled = should_log_events(cfg) if enabled is None else enabled
        self._app_env = cfg.app_env.value
        self._host = socket.gethostname()

    def capture(
        self,
        event: str,
        properties: dict[str, Any] | None = None,
        *,
        user_id: str | None = None,
    ) -> None:
        """Append one event row; never raises."""
        if not self.enabled:
            return

        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "host": self._host,
            "app_env": self._app_env,
            "event": event,
            "user_id": user_id,
            "properties": properties or {},
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, ensure_ascii=False, default=str))
                fh.write("\n")
        except Exception:
            logger.warning("Failed to write billing event", extra={"data": {"event": event}}, exc_info=True)


class NullEventSink(EventSink):
    """Sink that drops every event; used where telemetry is not wired."""

    def __init__(self) -> None:
        self.path = Path(os.devnull)
        self.enabled = False
        self._app_env = ""
        self._host = ""
