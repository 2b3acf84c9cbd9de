import json
import threading
from datetime import datetime, timezone
from pathlib import Path

from loginguard.config import Config, get_protection_flags


def mask_identifier(identifier: str) -> str:
    if not identifier:
        return ""
    local, sep, domain = identifier.partition("@")
    if sep:
        return f"{local[:2]}***@{domain}"
    if len(identifier) > 4:
        return f"{identifier[:2]}***{identifier[-2:]}"
    return "***"


class AttemptLogger:
    """Append-only JSON-lines log of authentication and store events."""

    def __init__(self, path: str, debug: bool = False, protection_flags: list[str] | None = None):
        self.path = Path(path)
        self.debug = debug
        self.protection_flags = protection_flags or []
        self._lock = threading.Lock()
        self._total_events = 0

    @classmethod
    def from_config(cls, cfg: Config) -> "AttemptLogger":
        return cls(cfg.attempts_log_file, debug=cfg.debug_logging, protection_flags=get_protection_flags(cfg))

    def log(
        self,
        event: str,
        identifier: str,
        result: str,
        latency_ms: float | None = None,
        extra: dict | None = None,
        debug: bool = False,
    ) -> None:
        if debug and not self.debug:
            return

        with self._lock:
            self._total_events += 1
            record = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "identifier": mask_identifier(identifier),
                "result": result,
                "protection_flags": self.protection_flags,
                "attempt_id": self._total_events,
            }
            if latency_ms is not None:
                record["latency_ms"] = round(latency_ms, 3)
            if extra:
                record.update(extra)

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
