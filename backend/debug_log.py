from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any

DEBUG_LOG_ENV = "AGENT_DEBUG_LOG_PATH"


def debug_log(
    *,
    run_id: str,
    hypothesis_id: str,
    location: str,
    message: str,
    data: dict[str, Any],
    path: Path | None = None,
) -> None:
    """Append one JSON trace line. Disabled unless ``AGENT_DEBUG_LOG_PATH`` is set."""
    if path is None:
        raw_path = os.getenv(DEBUG_LOG_ENV)
        if not raw_path:
            return
        path = Path(raw_path)

    try:
        payload = {
            "id": f"log_{time.time_ns()}",
            "timestamp": int(time.time() * 1000),
            "runId": run_id,
            "hypothesisId": hypothesis_id,
            "location": location,
            "message": message,
            "data": data,
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as debug_file:
            debug_file.write(json.dumps(payload, ensure_ascii=True, default=str) + "\n")
    except OSError:
        pass
