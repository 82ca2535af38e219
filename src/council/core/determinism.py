"""
Configuration fingerprinting for reproducible runs.

The hash of the effective settings is frozen at startup and stamped on every
run, so two runs can be compared knowing whether they used the same models,
retry policy and toolchains.
"""

import hashlib
import json
from typing import Any

from pydantic import BaseModel

from ..observability.logging import get_logger

logger = get_logger(__name__)

CONFIG_SHA256: str = ""

# Secrets do not contribute to the fingerprint.
_REDACTED_KEYS = {"api_key"}


def _reset_config_hash_for_tests():
    global CONFIG_SHA256
    CONFIG_SHA256 = ""


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _redact(v) for k, v in obj.items() if k not in _REDACTED_KEYS}
    if isinstance(obj, list):
        return [_redact(v) for v in obj]
    return obj


def config_hash(config: Any) -> str:
    """SHA256 of ``config`` serialized deterministically."""
    if isinstance(config, BaseModel):
        config = config.model_dump(mode="json")
    blob = json.dumps(_redact(config), default=str, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def freeze_config_and_hash(config: Any) -> str:
    """Freeze the configuration hash used for the audit trail."""
    global CONFIG_SHA256
    CONFIG_SHA256 = config_hash(config)
    logger.info("Configuration frozen", config_hash=CONFIG_SHA256[:16])
    return CONFIG_SHA256


def get_config_hash() -> str:
    return CONFIG_SHA256
