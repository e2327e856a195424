from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Load environment variables from .env file before any interpolation resolves
load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().with_name("config.yaml")
CONFIG_PATH_ENV = "PSD_CONFIG_PATH"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def resolve_config_path() -> Path:
    override = os.environ.get(CONFIG_PATH_ENV, "").strip()
    return Path(override) if override else DEFAULT_CONFIG_PATH


@lru_cache(maxsize=4)
def _load_config_file(path: Path) -> DictConfig:
    if not path.exists():
        raise FileNotFoundError(f"Config not found at {path}")
    return OmegaConf.load(path)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime settings: packaged defaults merged with overrides.

    Environment interpolations (``${oc.env:...}``) stay lazy and resolve on
    access. The result is in struct mode, so a misspelled override key
    raises instead of being silently ignored.

    Args:
        overrides: Nested dict merged over the file, e.g. ``{"jobs": {"max_workers": 2}}``

    Raises:
        ConfigKeyError: If an override names a key the file does not define
    """
    base_container = OmegaConf.to_container(_load_config_file(resolve_config_path()), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    return merged


def configure_logging(settings: DictConfig) -> None:
    level = str(settings.logging.level or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
