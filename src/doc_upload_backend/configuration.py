from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import DocumentType, SettingsMetadata
from .page_selection import ReconciliationPolicy

# .env values must be visible before ${oc.env:...} interpolations resolve
load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

if os.environ.get("DOC_UPLOAD_CONFIG"):
    _CANDIDATE_CONFIG_PATHS.insert(0, Path(os.environ["DOC_UPLOAD_CONFIG"]))

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; set DOC_UPLOAD_CONFIG or reinstall the package.")

# Keys whose values never leave the process through /config/defaults
_HIDDEN_KEYS = {("storage", "s3_bucket")}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Merge overrides onto the packaged defaults.

    The defaults are put in struct mode first, so an override naming a key that
    does not exist raises instead of being silently ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    validate_config(merged)
    return merged


def validate_config(config: DictConfig) -> None:
    policy = config.selection.reconciliation_policy
    try:
        ReconciliationPolicy(policy)
    except ValueError as exc:
        raise ValueError(f"Unknown selection.reconciliation_policy: {policy!r}") from exc

    default_type = config.upload.default_document_type
    try:
        DocumentType(default_type)
    except ValueError as exc:
        raise ValueError(f"Unknown upload.default_document_type: {default_type!r}") from exc

    if config.upload.max_file_size_mb <= 0:
        raise ValueError("upload.max_file_size_mb must be positive")
    if config.selection.max_pages < 1:
        raise ValueError("selection.max_pages must be at least 1")
    if config.processing.max_workers < 1:
        raise ValueError("processing.max_workers must be at least 1")


def build_settings_metadata(config: DictConfig, s3_configured: bool) -> SettingsMetadata:
    resolved: Dict[str, Any] = OmegaConf.to_container(config, resolve=True, enum_to_str=True)  # type: ignore[assignment]
    for section, key in _HIDDEN_KEYS:
        if key in resolved.get(section, {}):
            resolved[section][key] = "***" if resolved[section][key] else ""

    return SettingsMetadata(
        defaults=resolved,
        document_types=[document_type.value for document_type in DocumentType],
        reconciliation_policies=[policy.value for policy in ReconciliationPolicy],
        s3_configured=s3_configured,
    )
