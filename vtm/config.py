"""Configuration for VTM.

Settings are resolved from defaults, then an optional ``.vtmrc`` JSON file in
the project root, then ``VTM_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


CONFIG_FILENAME = ".vtmrc"
DEFAULT_MANIFEST = "vtm.json"
DEFAULT_HISTORY = "vtm-history.json"

ENV_PROJECT_ROOT = "VTM_PROJECT_ROOT"
ENV_MANIFEST = "VTM_MANIFEST"
ENV_HISTORY = "VTM_HISTORY"
ENV_LOG_LEVEL = "VTM_LOG_LEVEL"
ENV_LOG_FILE = "VTM_LOG_FILE"

logger = logging.getLogger("vtm.config")


@dataclass(slots=True)
class VTMConfig:
    """Resolved locations and logging settings for one project."""

    project_root: Path
    manifest_path: Path
    history_path: Path
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Convert to dictionary representation."""
        return {
            "project_root": str(self.project_root),
            "manifest_path": str(self.manifest_path),
            "history_path": str(self.history_path),
            "log_level": self.log_level,
            "log_file": str(self.log_file) if self.log_file else None,
        }


def _read_rc_file(root: Path) -> Dict[str, Any]:
    path = root / CONFIG_FILENAME
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to parse {path}, using defaults: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: expected a JSON object")
        return {}
    return data


def _within(root: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    return candidate if candidate.is_absolute() else root / candidate


def load_config(root: Optional[Path | str] = None, env: Optional[Mapping[str, str]] = None) -> VTMConfig:
    """Resolve configuration for the project at ``root``.

    An explicit ``root`` wins over ``VTM_PROJECT_ROOT``, which wins over the
    current working directory. A root that does not exist is an error.
    """
    env = os.environ if env is None else env

    if root is not None:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
    elif env.get(ENV_PROJECT_ROOT):
        resolved = Path(env[ENV_PROJECT_ROOT]).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(
                f"Environment variable {ENV_PROJECT_ROOT} points to '{env[ENV_PROJECT_ROOT]}', which does not exist."
            )
    else:
        resolved = Path.cwd().resolve()

    settings: Dict[str, Any] = {
        "manifest": DEFAULT_MANIFEST,
        "history": DEFAULT_HISTORY,
        "log_level": "INFO",
        "log_file": None,
    }
    settings.update({k: v for k, v in _read_rc_file(resolved).items() if k in settings and v is not None})

    env_overrides = {
        "manifest": env.get(ENV_MANIFEST),
        "history": env.get(ENV_HISTORY),
        "log_level": env.get(ENV_LOG_LEVEL),
        "log_file": env.get(ENV_LOG_FILE),
    }
    settings.update({k: v for k, v in env_overrides.items() if v})

    return VTMConfig(
        project_root=resolved,
        manifest_path=_within(resolved, str(settings["manifest"])),
        history_path=_within(resolved, str(settings["history"])),
        log_level=str(settings["log_level"]).upper(),
        log_file=_within(resolved, str(settings["log_file"])) if settings["log_file"] else None,
    )
