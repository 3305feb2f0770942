"""Bootstrap ``.env`` files for the relay and its front-end clients."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional, Tuple

from dotenv import dotenv_values

logger = logging.getLogger("modelbridge.env")


EXPLICIT_ENV_FILE_VAR = "MODELBRIDGE_ENV_FILE"
ENV_NAME_VAR = "MODELBRIDGE_ENV"


@dataclass(frozen=True)
class EnvLoadResult:
    """Which files were read and which variables they introduced."""

    loaded_files: Tuple[Path, ...]
    applied_values: Mapping[str, str]
    resolved_env: Optional[str]


def _project_root() -> Path:
    return Path(__file__).resolve().parent.parent


def _read(path: Path) -> Dict[str, str]:
    try:
        raw = dotenv_values(path)
    except OSError as exc:
        logger.warning("Failed to read env file %s: %s", path, exc)
        return {}
    return {key: value for key, value in raw.items() if value is not None}


def _layered_files(root: Path, env_name: Optional[str]) -> Iterator[Path]:
    yield root / ".env"
    if env_name:
        yield root / f".env.{env_name}"
    yield root / ".env.local"


def load_project_env(
    env: Optional[str] = None,
    *,
    root: Optional[Path] = None,
    explicit: Optional[os.PathLike[str] | str] = None,
) -> EnvLoadResult:
    """Populate ``os.environ`` from the project's ``.env`` layers.

    Layers, lowest precedence first: ``.env``, ``.env.<environment>``,
    ``.env.local`` and finally the file named by ``MODELBRIDGE_ENV_FILE``.
    The environment name may itself come from ``.env``. Variables that are
    already set in the process are left untouched.
    """

    search_root = root or _project_root()
    merged: Dict[str, str] = {}
    loaded: list[Path] = []

    base = search_root / ".env"
    if base.is_file():
        merged.update(_read(base))
        loaded.append(base)

    env_name = env or merged.get(ENV_NAME_VAR) or os.environ.get(ENV_NAME_VAR)
    for path in _layered_files(search_root, env_name):
        if path == base or not path.is_file():
            continue
        merged.update(_read(path))
        loaded.append(path)

    explicit_value = explicit or os.environ.get(EXPLICIT_ENV_FILE_VAR)
    if explicit_value:
        explicit_path = Path(explicit_value).expanduser()
        if explicit_path.is_file():
            merged.update(_read(explicit_path))
            loaded.append(explicit_path)
        else:
            logger.warning("Explicit env file %s does not exist", explicit_path)

    applied = {key: value for key, value in merged.items() if key not in os.environ}
    os.environ.update(applied)

    return EnvLoadResult(
        loaded_files=tuple(loaded),
        applied_values=applied,
        resolved_env=env_name,
    )


__all__ = ["EnvLoadResult", "load_project_env", "EXPLICIT_ENV_FILE_VAR", "ENV_NAME_VAR"]
