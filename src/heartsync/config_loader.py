"""Load, validate, and hot-reload the HeartSync sync tuning configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk; engines built afterwards pick up the new values.

Usage::

    from src.heartsync.config_loader import get_sync_config

    config = get_sync_config()
    config.zone_id                        # "HeartRate"
    config.operation_limit                # 400
    config.operation_options()            # OperationOptions(30.0, 604800.0)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from src.heartsync.base import RECORD_TYPE, OperationOptions

logger = logging.getLogger("heartsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


class AccountChangePolicy(str, Enum):
    """What happens to the local cache when the signed-in account changes."""

    REUPLOAD = "reupload"  # push every local record to the new account
    WIPE = "wipe"          # forget local records; the new account's data flows in


@dataclass
class TimeoutConfig:
    request_seconds: float
    resource_seconds: float


@dataclass
class BackgroundFetchConfig:
    """Deadline settings for push-triggered background fetches."""

    deadline_seconds: float
    grace_seconds: float


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:               Config schema version string.
        zone_id:               The single zone records are synced through.
        record_type:           Remote record type name.
        subscription_id:       Database change subscription id.
        operation_limit:       Maximum saves plus deletes per modification batch.
        timeouts:              Per-request and per-operation timeouts.
        background_fetch:      Push-triggered fetch deadline and grace window.
        transport_retry_after: Retry hint (seconds) attached to connection failures.
        account_change_policy: Local cache handling after an account change.
    """

    version: str
    zone_id: str
    record_type: str
    subscription_id: str
    operation_limit: int
    timeouts: TimeoutConfig
    background_fetch: BackgroundFetchConfig
    transport_retry_after: float
    account_change_policy: AccountChangePolicy
    _raw: dict = field(default_factory=dict, repr=False)

    def operation_options(self) -> OperationOptions:
        return OperationOptions(
            request_timeout=self.timeouts.request_seconds,
            resource_timeout=self.timeouts.resource_seconds,
        )


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return raw


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Optional fields fall back to the defaults of the hosted record store.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, path: str, *, positive: bool = True) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if positive and number <= 0:
            errors.append(f"{path}.{key} must be positive, got {number}")
        return number

    def _section(key: str) -> dict:
        section = raw.get(key) or {}
        if not isinstance(section, dict):
            errors.append(f"'{key}' must be a mapping")
            return {}
        return section

    version = str(raw.get("version", "1.0"))

    # ── Zone and subscription ──
    zone_raw = _section("zone")
    zone_id = str(zone_raw.get("id", "HeartRate") or "")
    record_type = str(zone_raw.get("record_type", RECORD_TYPE) or "")
    if not zone_id:
        errors.append("zone.id must not be empty")
    if record_type != RECORD_TYPE:
        errors.append(f"zone.record_type must be {RECORD_TYPE!r}, got {record_type!r}")

    sub_raw = _section("subscription")
    subscription_id = str(sub_raw.get("id", "shared-changes") or "")
    if not subscription_id:
        errors.append("subscription.id must not be empty")

    # ── Batching ──
    batch_raw = _section("batching")
    limit_raw = batch_raw.get("operation_limit", 400)
    if isinstance(limit_raw, bool) or not isinstance(limit_raw, int) or limit_raw < 1:
        errors.append(f"batching.operation_limit must be an integer of at least 1, got {limit_raw!r}")
        operation_limit = 400
    else:
        operation_limit = limit_raw

    # ── Timeouts ──
    to_raw = _section("timeouts")
    timeouts = TimeoutConfig(
        request_seconds=_number(to_raw, "request_seconds", 30, "timeouts"),
        resource_seconds=_number(to_raw, "resource_seconds", 7 * 24 * 60 * 60, "timeouts"),
    )
    if timeouts.resource_seconds < timeouts.request_seconds:
        errors.append("timeouts.resource_seconds must be at least timeouts.request_seconds")

    # ── Background fetch ──
    bg_raw = _section("background_fetch")
    background_fetch = BackgroundFetchConfig(
        deadline_seconds=_number(bg_raw, "deadline_seconds", 25, "background_fetch"),
        grace_seconds=_number(bg_raw, "grace_seconds", 2, "background_fetch", positive=False),
    )
    if background_fetch.grace_seconds < 0:
        errors.append("background_fetch.grace_seconds must not be negative")
    elif background_fetch.grace_seconds >= background_fetch.deadline_seconds:
        logger.warning(
            "Background fetch grace (%.1fs) is not shorter than its deadline (%.1fs); "
            "every background fetch will report no data.",
            background_fetch.grace_seconds,
            background_fetch.deadline_seconds,
        )

    # ── Retry ──
    retry_raw = _section("retry")
    transport_retry_after = _number(retry_raw, "transport_retry_after_seconds", 5, "retry")

    # ── Account change ──
    acct_raw = _section("account_change")
    policy_raw = acct_raw.get("policy", AccountChangePolicy.REUPLOAD.value)
    try:
        account_change_policy = AccountChangePolicy(str(policy_raw))
    except ValueError:
        errors.append(
            f"account_change.policy must be one of "
            f"{[p.value for p in AccountChangePolicy]}, got {policy_raw!r}"
        )
        account_change_policy = AccountChangePolicy.REUPLOAD

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        zone_id=zone_id,
        record_type=record_type,
        subscription_id=subscription_id,
        operation_limit=operation_limit,
        timeouts=timeouts,
        background_fetch=background_fetch,
        transport_retry_after=transport_retry_after,
        account_change_policy=account_change_policy,
        _raw=raw,
    )


def build_sync_config(raw: dict[str, Any]) -> SyncConfig:
    """Validate an already-parsed config mapping."""
    return _validate_and_build(raw)


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
