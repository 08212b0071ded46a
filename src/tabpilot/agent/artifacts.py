"""
agent/artifacts.py — Run Artifacts

Persists two inspection-only files in the artifacts directory:

    last_result.json    — final status, result string and step count of the last run
    last_exchange.json  — last raw request/response pair sent to the decision model

Inline image payloads are replaced with a size marker before writing, so the
files stay small and never contain screenshots. Write failures are logged and
ignored; artifacts never affect a run's outcome.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from tabpilot.agent.state import RunState
from tabpilot.observability.logger import get_logger

log = get_logger(__name__)

RESULT_FILE = "last_result.json"
EXCHANGE_FILE = "last_exchange.json"


def redact_images(value: Any) -> Any:
    """Copy a JSON-like structure with every inline_data.data replaced."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k in ("inline_data", "inlineData") and isinstance(v, dict) and "data" in v:
                v = {**v, "data": f"<{len(str(v['data']))} base64 chars>"}
            out[k] = redact_images(v)
        return out
    if isinstance(value, list):
        return [redact_images(v) for v in value]
    return value


class RunArtifactStore:

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    @property
    def result_path(self) -> Path:
        return self.directory / RESULT_FILE

    @property
    def exchange_path(self) -> Path:
        return self.directory / EXCHANGE_FILE

    def save_result(self, state: RunState) -> None:
        self._write(self.result_path, state.to_dict())

    def save_exchange(self, request: dict[str, Any], response: Optional[dict[str, Any]]) -> None:
        self._write(self.exchange_path, {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "request": redact_images(request),
            "response": redact_images(response),
        })

    def load_result(self) -> Optional[dict[str, Any]]:
        return self._read(self.result_path)

    def load_exchange(self) -> Optional[dict[str, Any]]:
        return self._read(self.exchange_path)

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            log.warning("artifacts.write_failed", path=str(path), error=str(e))

    def _read(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("artifacts.read_failed", path=str(path), error=str(e))
            return None
