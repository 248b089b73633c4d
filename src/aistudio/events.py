from __future__ import annotations

import datetime as _dt
import json
import logging
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def now_utc_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def sidecar_path(out_path: Path) -> Path:
    return out_path.with_suffix(out_path.suffix + ".json")


def write_sidecar(out_path: Path, payload: dict[str, Any]) -> Path:
    sidecar = sidecar_path(out_path)
    sidecar.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return sidecar


def read_sidecar(out_path: Path) -> Optional[dict[str, Any]]:
    sidecar = sidecar_path(out_path)
    if not sidecar.exists():
        return None
    try:
        return json.loads(sidecar.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return None


def append_jsonl(log_path: Path, payload: dict[str, Any]) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")


class EventLog:
    """Append-only JSONL record of pipeline events.

    Used as the observability sink for failures that are never surfaced to the
    caller (cache write failures, discarded signals worth auditing).
    """

    def __init__(self, path: Path):
        self.path = path

    def record(self, event: str, **fields: Any) -> None:
        payload = {"event": event, "timestamp": now_utc_iso(), **fields}
        try:
            append_jsonl(self.path, payload)
        except OSError as e:
            logger.warning("Could not append to event log %s: %s", self.path, e)

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]
