"""Abstract remote record store consumed by the sync engine.

The store groups records into zones, serves incremental change feeds keyed by
opaque change tokens, accepts batched record modifications, and registers
push subscriptions.  Every method is a coroutine; failures are raised as
``RemoteStoreError`` (or ``PartialFailure`` when part of a batch succeeded).

Change tokens are plain ``bytes``.  Callers store and compare them, never
inspect them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from src.heartsync.base import (
    OperationOptions,
    RemoteRecord,
    RemoteStoreError,
    SavePolicy,
    Subscription,
)

RecordChangedCallback = Callable[[RemoteRecord], None]
RecordDeletedCallback = Callable[[str], None]
ZoneTokenCallback = Callable[[str, bytes | None], None]
ZoneCompletedCallback = Callable[[str, "bytes | None", "RemoteStoreError | None"], None]


@dataclass
class ModifyResult:
    """Outcome of a fully successful ``modify_records`` call."""

    saved_ids: list[str] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)


class RecordStore(ABC):
    """Interface every remote record store backend implements."""

    @abstractmethod
    async def fetch_user_record_id(self, options: OperationOptions) -> str:
        """Return the identifier of the signed-in account."""

    @abstractmethod
    async def fetch_zones(self, zone_ids: list[str], options: OperationOptions) -> list[str]:
        """Return the subset of ``zone_ids`` that exist.

        Raises:
            PartialFailure: With a ``ZONE_NOT_FOUND`` item error for each missing zone.
        """

    @abstractmethod
    async def save_zones(self, zone_ids: list[str], options: OperationOptions) -> list[str]:
        """Create the zones (idempotent) and return the ids saved."""

    @abstractmethod
    async def save_subscription(
        self, subscription: Subscription, options: OperationOptions
    ) -> None:
        """Register (or replace) a database change subscription."""

    @abstractmethod
    async def fetch_database_changes(
        self,
        token: bytes | None,
        *,
        on_zone_changed: Callable[[str], None],
        on_zone_deleted: Callable[[str], None],
        on_token_updated: Callable[[bytes | None], None],
        options: OperationOptions,
    ) -> bytes | None:
        """Stream the zones changed since ``token``.

        ``on_token_updated`` is called each time the server hands out a newer
        token, before the fetch completes.

        Returns:
            The final database change token.
        """

    @abstractmethod
    async def fetch_zone_changes(
        self,
        tokens: dict[str, bytes | None],
        *,
        on_record_changed: RecordChangedCallback,
        on_record_deleted: RecordDeletedCallback,
        on_token_updated: ZoneTokenCallback,
        on_zone_completed: ZoneCompletedCallback,
        options: OperationOptions,
    ) -> None:
        """Stream record changes for each zone since its token, paging until exhausted.

        Per-zone failures are reported through ``on_zone_completed``; batch
        level failures are raised.
        """

    @abstractmethod
    async def modify_records(
        self,
        to_save: list[RemoteRecord],
        to_delete: list[str],
        *,
        save_policy: SavePolicy,
        options: OperationOptions,
    ) -> ModifyResult:
        """Save and delete records in one batch.

        Raises:
            PartialFailure:   Some items failed; carries the ids that succeeded.
            RemoteStoreError: The whole batch failed.
        """

    @property
    def reachable(self) -> bool:
        """Best-effort connectivity probe consulted before opportunistic syncs."""
        return True

    async def aclose(self) -> None:
        """Release any network resources."""
