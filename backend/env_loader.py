from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_FILE_OVERRIDE = "AGENT_ENV_FILE"

_ENV_LOADED = False


def _parse_env_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()

    key, raw_value = stripped.split("=", 1)
    key = key.strip()
    value = raw_value.strip()

    if not key:
        return None

    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        value = value[1:-1]
    elif " #" in value:
        value = value.split(" #", 1)[0].rstrip()

    return key, value


def _load_env_file(path: Path) -> int:
    """Apply ``path`` without overriding variables that are already set."""
    if not path.is_file():
        return 0

    applied = 0
    for line in path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_env_line(line)
        if not parsed:
            continue
        key, value = parsed
        if key not in os.environ:
            os.environ[key] = value
            applied += 1
    logger.debug("Loaded %d variables from %s", applied, path)
    return applied


def env_file_candidates() -> list[Path]:
    override = os.getenv(ENV_FILE_OVERRIDE)
    if override:
        return [Path(override)]

    backend_dir = Path(__file__).resolve().parent
    return [backend_dir.parent / ".env", backend_dir / ".env"]


def load_env_once() -> None:
    global _ENV_LOADED
    if _ENV_LOADED:
        return

    for path in env_file_candidates():
        _load_env_file(path)

    _ENV_LOADED = True


def reset_env_loader() -> None:
    global _ENV_LOADED
    _ENV_LOADED = False
