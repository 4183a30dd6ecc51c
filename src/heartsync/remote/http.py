"""HTTP/JSON client for the hosted HeartSync record store.

Endpoints (all JSON, bearer-token authenticated)::

    GET  /v1/account                 → {"user_record_id": str}
    POST /v1/zones/lookup            {"zone_ids": [...]}            → {"zones": [...], "errors": {...}}
    POST /v1/zones                   {"zone_ids": [...]}            → {"zones": [...]}
    PUT  /v1/subscriptions/{id}      {"content_available": bool}
    POST /v1/changes/database        {"token": b64 | null}          → {"changed_zone_ids", "deleted_zone_ids", "token", "more_coming"}
    POST /v1/changes/zone            {"zone_id", "token"}           → {"changed", "deleted", "token", "more_coming"}
    POST /v1/records/modify          {"save", "delete", "save_policy"} → {"saved", "deleted", "errors"}

Errors come back as ``{"error": {"code": str, "message": str, "retry_after": float}}``.
A ``Retry-After`` header takes precedence over the body hint.

Usage::

    store = HttpRecordStore(base_url="https://sync.example.com", api_token="...")
    zones = await store.fetch_zones(["HeartRate"], OperationOptions())
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Callable

import httpx

from src.heartsync.base import (
    ErrorCode,
    OperationOptions,
    PartialFailure,
    RemoteRecord,
    RemoteStoreError,
    SavePolicy,
    Subscription,
)
from src.heartsync.remote.base import ModifyResult, RecordStore

logger = logging.getLogger("heartsync.remote.http")

# Status codes that mean "try again later"
_RETRYABLE_STATUS = {429, 503}


def encode_token(token: bytes | None) -> str | None:
    return base64.b64encode(token).decode("ascii") if token is not None else None


def decode_token(raw: Any) -> bytes | None:
    if not raw:
        return None
    try:
        return base64.b64decode(str(raw), validate=True)
    except (ValueError, TypeError):
        logger.warning("Server returned an undecodable change token")
        return None


def _parse_retry_after(value: Any) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def _error_from_payload(payload: Any, *, default_code: ErrorCode) -> RemoteStoreError:
    """Build a RemoteStoreError from an ``{"code", "message", "retry_after"}`` dict."""
    if not isinstance(payload, dict):
        return RemoteStoreError(default_code)
    return RemoteStoreError(
        ErrorCode.parse(payload.get("code", default_code.value)),
        str(payload.get("message") or ""),
        retry_after=_parse_retry_after(payload.get("retry_after")),
    )


def _item_errors(raw: Any) -> dict[str, RemoteStoreError]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(item_id): _error_from_payload(err, default_code=ErrorCode.INTERNAL_ERROR)
        for item_id, err in raw.items()
    }


class HttpRecordStore(RecordStore):
    """Record store backed by the hosted HeartSync HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport_retry_after: float = 5.0,
    ) -> None:
        """Initialize the client.

        Args:
            base_url:              Root URL of the record store API.
            api_token:             Bearer token for the signed-in account.
            http_client:           Optional pre-configured httpx client (for testing).
            transport_retry_after: Retry hint attached to connection-level failures.
        """
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._http_client = http_client
        self._owns_client = http_client is None
        self._transport_retry_after = transport_retry_after

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        options: OperationOptions,
        body: dict | None = None,
    ) -> dict:
        """Send one request and return the decoded JSON body.

        Raises:
            RemoteStoreError: For transport failures and non-2xx responses.
        """
        url = f"{self._base_url}{path}"
        try:
            response = await asyncio.wait_for(
                self._client().request(
                    method,
                    url,
                    json=body,
                    headers=self._build_headers(),
                    timeout=options.request_timeout,
                ),
                timeout=options.resource_timeout,
            )
        except (httpx.TransportError, asyncio.TimeoutError) as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise RemoteStoreError(
                ErrorCode.NETWORK_FAILURE,
                str(exc) or type(exc).__name__,
                retry_after=self._transport_retry_after,
            ) from exc

        if response.is_success:
            if not response.content:
                return {}
            try:
                data = response.json()
            except ValueError as exc:
                raise RemoteStoreError(ErrorCode.INTERNAL_ERROR, "non-JSON response") from exc
            return data if isinstance(data, dict) else {}

        raise self._error_for_response(response)

    def _error_for_response(self, response: httpx.Response) -> RemoteStoreError:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        error_body = payload.get("error") if isinstance(payload, dict) else None

        if response.status_code == 401:
            default_code = ErrorCode.NOT_AUTHENTICATED
        elif response.status_code == 429:
            default_code = ErrorCode.REQUEST_RATE_LIMITED
        elif response.status_code == 503:
            default_code = ErrorCode.SERVICE_UNAVAILABLE
        else:
            default_code = ErrorCode.INTERNAL_ERROR

        error = _error_from_payload(error_body, default_code=default_code)
        if isinstance(error_body, dict) and error_body.get("partial_errors"):
            error.partial_errors = _item_errors(error_body["partial_errors"])

        header_hint = _parse_retry_after(response.headers.get("Retry-After"))
        if header_hint is not None:
            error.retry_after = header_hint
        elif error.retry_after is None and response.status_code in _RETRYABLE_STATUS:
            error.retry_after = self._transport_retry_after
        return error

    # ------------------------------------------------------------------
    # RecordStore
    # ------------------------------------------------------------------

    async def fetch_user_record_id(self, options: OperationOptions) -> str:
        data = await self._request("GET", "/v1/account", options)
        user_record_id = data.get("user_record_id")
        if not user_record_id:
            raise RemoteStoreError(ErrorCode.NOT_AUTHENTICATED, "no user record id")
        return str(user_record_id)

    async def fetch_zones(self, zone_ids: list[str], options: OperationOptions) -> list[str]:
        data = await self._request("POST", "/v1/zones/lookup", options, {"zone_ids": zone_ids})
        errors = _item_errors(data.get("errors"))
        if errors:
            raise PartialFailure(errors)
        return [str(z) for z in data.get("zones", [])]

    async def save_zones(self, zone_ids: list[str], options: OperationOptions) -> list[str]:
        data = await self._request("POST", "/v1/zones", options, {"zone_ids": zone_ids})
        return [str(z) for z in data.get("zones", zone_ids)]

    async def save_subscription(
        self, subscription: Subscription, options: OperationOptions
    ) -> None:
        await self._request(
            "PUT",
            f"/v1/subscriptions/{subscription.subscription_id}",
            options,
            {"content_available": subscription.content_available},
        )

    async def fetch_database_changes(
        self,
        token: bytes | None,
        *,
        on_zone_changed: Callable[[str], None],
        on_zone_deleted: Callable[[str], None],
        on_token_updated: Callable[[bytes | None], None],
        options: OperationOptions,
    ) -> bytes | None:
        current = token
        while True:
            data = await self._request(
                "POST", "/v1/changes/database", options, {"token": encode_token(current)}
            )
            for zone_id in data.get("changed_zone_ids", []):
                on_zone_changed(str(zone_id))
            for zone_id in data.get("deleted_zone_ids", []):
                on_zone_deleted(str(zone_id))
            current = decode_token(data.get("token"))
            on_token_updated(current)
            if not data.get("more_coming"):
                return current

    async def fetch_zone_changes(
        self,
        tokens: dict[str, bytes | None],
        *,
        on_record_changed,
        on_record_deleted,
        on_token_updated,
        on_zone_completed,
        options: OperationOptions,
    ) -> None:
        for zone_id, token in tokens.items():
            current = token
            try:
                while True:
                    data = await self._request(
                        "POST",
                        "/v1/changes/zone",
                        options,
                        {"zone_id": zone_id, "token": encode_token(current)},
                    )
                    for raw in data.get("changed", []):
                        try:
                            on_record_changed(RemoteRecord.from_dict(raw))
                        except (KeyError, TypeError):
                            logger.warning("Skipping malformed record in zone %s", zone_id)
                    for record_id in data.get("deleted", []):
                        on_record_deleted(str(record_id))
                    current = decode_token(data.get("token"))
                    if not data.get("more_coming"):
                        break
                    on_token_updated(zone_id, current)
            except RemoteStoreError as exc:
                # Zone-scoped failures are reported per zone; the rest abort the batch
                if exc.code in (ErrorCode.CHANGE_TOKEN_EXPIRED, ErrorCode.ZONE_NOT_FOUND):
                    on_zone_completed(zone_id, None, exc)
                    continue
                raise
            on_zone_completed(zone_id, current, None)

    async def modify_records(
        self,
        to_save: list[RemoteRecord],
        to_delete: list[str],
        *,
        save_policy: SavePolicy,
        options: OperationOptions,
    ) -> ModifyResult:
        data = await self._request(
            "POST",
            "/v1/records/modify",
            options,
            {
                "save": [r.to_dict() for r in to_save],
                "delete": list(to_delete),
                "save_policy": save_policy.value,
            },
        )
        saved = [str(i) for i in data.get("saved", [])]
        deleted = [str(i) for i in data.get("deleted", [])]
        errors = _item_errors(data.get("errors"))
        if errors:
            raise PartialFailure(errors, saved_ids=saved, deleted_ids=deleted)
        return ModifyResult(saved_ids=saved, deleted_ids=deleted)
