"""Retry and recovery decisions for remote operations.

Each remote protocol (zone provisioning, subscription, coarse fetch, fine
fetch, record modification) maps a ``RemoteStoreError`` to an ``Effect``.
The functions here are pure: they look only at the error and the previous
retry delay, so the engine loops that interpret them stay flat and the
mapping can be tested without a remote store.

Backoff is multiplicative.  With a constant server hint ``d`` the delays run
``d, d*d, d*d*d, ...``; there is no cap and no retry limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from src.heartsync.base import ErrorCode, RemoteStoreError

# Per-item codes that can never succeed by resending the same record
UNRECOVERABLE_ITEM_CODES = frozenset(
    {ErrorCode.SERVER_RECORD_CHANGED, ErrorCode.BATCH_REQUEST_FAILED}
)


class Action(str, Enum):
    RETRY = "retry"
    RESET_TOKEN = "reset_token"
    PROVISION_ZONE = "provision_zone"
    SPLIT = "split"
    DISCARD_PENDING = "discard_pending"
    DROP_ITEMS = "drop_items"
    FAIL = "fail"


@dataclass(frozen=True)
class Effect:
    """What the engine should do next.

    Attributes:
        action:   The recovery step.
        delay:    Seconds to wait before a RETRY; also the ``previous`` value
                  handed to the next decision.
        item_ids: Zone ids for RESET_TOKEN, record ids for DROP_ITEMS.
    """

    action: Action
    delay: float = 0.0
    item_ids: tuple[str, ...] = ()


def next_retry_delay(retry_after: float, previous: float) -> float:
    """Escalate a server retry hint by the previous delay.

    A previous delay of one second or less leaves the hint unchanged.
    """
    return retry_after * max(previous, 1.0)


def _retry_or_fail(error: RemoteStoreError, previous: float) -> Effect:
    if error.retry_after is not None:
        return Effect(Action.RETRY, delay=next_retry_delay(error.retry_after, previous))
    return Effect(Action.FAIL)


def decide_zone_lookup(error: RemoteStoreError, previous: float) -> Effect:
    """Lookup of a zone failed: create it if it is missing, otherwise retry on a hint."""
    if error.code is ErrorCode.ZONE_NOT_FOUND:
        return Effect(Action.PROVISION_ZONE)
    if error.partial_errors:
        first = next(iter(error.partial_errors.values()))
        if first.code is ErrorCode.ZONE_NOT_FOUND:
            return Effect(Action.PROVISION_ZONE)
    return _retry_or_fail(error, previous)


def decide_zone_create(error: RemoteStoreError, previous: float) -> Effect:
    return _retry_or_fail(error, previous)


def decide_subscription(error: RemoteStoreError, previous: float) -> Effect:
    return _retry_or_fail(error, previous)


def decide_database_fetch(error: RemoteStoreError, previous: float) -> Effect:
    if error.code is ErrorCode.CHANGE_TOKEN_EXPIRED:
        return Effect(Action.RESET_TOKEN)
    return _retry_or_fail(error, previous)


def decide_zone_fetch(
    error: RemoteStoreError, previous: float, zone_ids: list[str]
) -> Effect:
    """Batch-level failure of a fine fetch over ``zone_ids``.

    An expired token for the whole batch resets every requested zone.  A
    partial error resets only the zones whose own token expired; if none
    did, there is nothing to recover and the fetch fails.
    """
    if error.code is ErrorCode.CHANGE_TOKEN_EXPIRED:
        return Effect(Action.RESET_TOKEN, item_ids=tuple(zone_ids))
    if error.partial_errors:
        expired = tuple(
            zone_id
            for zone_id, item in error.partial_errors.items()
            if item.code is ErrorCode.CHANGE_TOKEN_EXPIRED
        )
        if expired:
            return Effect(Action.RESET_TOKEN, item_ids=expired)
        return Effect(Action.FAIL)
    return _retry_or_fail(error, previous)


def decide_modify(error: RemoteStoreError, previous: float) -> Effect:
    """Failure of a record modification batch.

    Per-item errors are examined first: a missing zone anywhere in the batch
    wins over everything else, then unrecoverable items are dropped.  Whole
    batch errors follow: missing zone, too many operations, signed out, and
    finally any retry hint.
    """
    if error.partial_errors:
        if any(e.code is ErrorCode.ZONE_NOT_FOUND for e in error.partial_errors.values()):
            return Effect(Action.PROVISION_ZONE)
        dropped = tuple(
            record_id
            for record_id, item in error.partial_errors.items()
            if item.code in UNRECOVERABLE_ITEM_CODES
        )
        return Effect(Action.DROP_ITEMS, item_ids=dropped)
    if error.code is ErrorCode.ZONE_NOT_FOUND:
        return Effect(Action.PROVISION_ZONE)
    if error.code is ErrorCode.LIMIT_EXCEEDED:
        return Effect(Action.SPLIT)
    if error.code is ErrorCode.NOT_AUTHENTICATED:
        return Effect(Action.DISCARD_PENDING)
    return _retry_or_fail(error, previous)
