from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

_HERE = Path(__file__).resolve()
DEFAULT_CONFIG_PATH = _HERE.parent / "config" / "defaults.yaml"

# Load environment variables from .env file
load_dotenv()

Overrides = Union[Dict[str, Any], Iterable[str], None]


def _config_path() -> Path:
    configured = os.environ.get("DOCUMENT_AI_CONFIG")
    path = Path(configured) if configured else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config not found at {path}")
    return path


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    return OmegaConf.load(_config_path())


def _overrides_config(overrides: Overrides) -> DictConfig:
    if not overrides:
        return OmegaConf.create({})
    if isinstance(overrides, dict):
        return OmegaConf.create(overrides)
    return OmegaConf.from_dotlist(list(overrides))


def load_settings(overrides: Overrides = None) -> DictConfig:
    """
    Build the runtime settings.

    Environment interpolations are resolved once, here, so a running
    process never sees its configuration change underneath it.

    Args:
        overrides: Nested dict or dotted ``key=value`` strings. Unknown keys
            raise, so typos fail fast.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, _overrides_config(overrides))
    OmegaConf.resolve(merged)
    OmegaConf.set_readonly(merged, True)
    return merged


def reset_cache() -> None:
    _load_default_config.cache_clear()


def describe(settings: DictConfig, redact: Optional[Iterable[str]] = ("auth.master_key",)) -> Dict[str, Any]:
    """Settings as a plain dict with secrets masked, for start-up logging."""
    container = OmegaConf.to_container(settings, resolve=True)
    for dotted in redact or ():
        node = container
        *parents, leaf = dotted.split(".")
        for part in parents:
            node = node.get(part, {})
        if node.get(leaf):
            node[leaf] = "***"
    return container
