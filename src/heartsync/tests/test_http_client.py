"""Tests for the HTTP record store client with a mocked httpx client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.heartsync.base import (
    ErrorCode,
    OperationOptions,
    PartialFailure,
    RemoteStoreError,
    SavePolicy,
    Subscription,
)
from src.heartsync.remote.http import HttpRecordStore, decode_token, encode_token
from src.heartsync.tests.conftest import ZONE, make_record, make_remote

OPTIONS = OperationOptions()
BASE_URL = "https://sync.example.test/"


def _client(*responses: httpx.Response | Exception) -> MagicMock:
    client = MagicMock(spec=httpx.AsyncClient)
    client.request = AsyncMock(side_effect=list(responses))
    return client


def _store(client: MagicMock) -> HttpRecordStore:
    return HttpRecordStore(BASE_URL, "secret", http_client=client, transport_retry_after=5.0)


def _body(client: MagicMock, call: int = 0) -> dict:
    return client.request.call_args_list[call].kwargs["json"]


class TestRequests:
    @pytest.mark.asyncio
    async def test_bearer_token_and_url(self) -> None:
        client = _client(httpx.Response(200, json={"user_record_id": "_abc"}))
        assert await _store(client).fetch_user_record_id(OPTIONS) == "_abc"

        args, kwargs = client.request.call_args
        assert args == ("GET", "https://sync.example.test/v1/account")
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["timeout"] == OPTIONS.request_timeout

    @pytest.mark.asyncio
    async def test_missing_account_is_unauthenticated(self) -> None:
        client = _client(httpx.Response(200, json={}))
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).fetch_user_record_id(OPTIONS)
        assert exc_info.value.code is ErrorCode.NOT_AUTHENTICATED

    @pytest.mark.asyncio
    async def test_subscription_put(self) -> None:
        client = _client(httpx.Response(204))
        await _store(client).save_subscription(Subscription("shared-changes"), OPTIONS)
        args, kwargs = client.request.call_args
        assert args == ("PUT", "https://sync.example.test/v1/subscriptions/shared-changes")
        assert kwargs["json"] == {"content_available": True}

    @pytest.mark.asyncio
    async def test_caller_owned_client_is_not_closed(self) -> None:
        client = _client()
        client.aclose = AsyncMock()
        await _store(client).aclose()
        client.aclose.assert_not_called()


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_401(self) -> None:
        client = _client(httpx.Response(401, json={"error": {"message": "expired session"}}))
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).save_zones([ZONE], OPTIONS)
        assert exc_info.value.code is ErrorCode.NOT_AUTHENTICATED
        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_429_header_wins_over_body(self) -> None:
        client = _client(
            httpx.Response(
                429,
                json={"error": {"code": "request_rate_limited", "retry_after": 2}},
                headers={"Retry-After": "7"},
            )
        )
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).save_zones([ZONE], OPTIONS)
        assert exc_info.value.code is ErrorCode.REQUEST_RATE_LIMITED
        assert exc_info.value.retry_after == 7

    @pytest.mark.asyncio
    async def test_503_without_hint_gets_default(self) -> None:
        client = _client(httpx.Response(503, text="unavailable"))
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).save_zones([ZONE], OPTIONS)
        assert exc_info.value.code is ErrorCode.SERVICE_UNAVAILABLE
        assert exc_info.value.retry_after == 5.0

    @pytest.mark.asyncio
    async def test_body_code_is_used(self) -> None:
        client = _client(httpx.Response(400, json={"error": {"code": "limit_exceeded"}}))
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).modify_records([], ["a"], save_policy=SavePolicy.CHANGED_KEYS, options=OPTIONS)
        assert exc_info.value.code is ErrorCode.LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self) -> None:
        client = _client(httpx.ConnectError("connection refused"))
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).save_zones([ZONE], OPTIONS)
        assert exc_info.value.code is ErrorCode.NETWORK_FAILURE
        assert exc_info.value.retry_after == 5.0

    @pytest.mark.asyncio
    async def test_non_json_success_is_internal_error(self) -> None:
        client = _client(httpx.Response(200, text="<html>"))
        with pytest.raises(RemoteStoreError) as exc_info:
            await _store(client).save_zones([ZONE], OPTIONS)
        assert exc_info.value.code is ErrorCode.INTERNAL_ERROR


class TestZones:
    @pytest.mark.asyncio
    async def test_lookup_reports_missing_zone(self) -> None:
        client = _client(
            httpx.Response(200, json={"zones": [], "errors": {ZONE: {"code": "zone_not_found"}}})
        )
        with pytest.raises(PartialFailure) as exc_info:
            await _store(client).fetch_zones([ZONE], OPTIONS)
        assert exc_info.value.partial_errors[ZONE].code is ErrorCode.ZONE_NOT_FOUND


class TestModify:
    @pytest.mark.asyncio
    async def test_request_body(self) -> None:
        record = make_remote(make_record(70))
        client = _client(httpx.Response(200, json={"saved": [record.record_id], "deleted": ["x"]}))
        result = await _store(client).modify_records(
            [record], ["x"], save_policy=SavePolicy.CHANGED_KEYS, options=OPTIONS
        )
        assert result.saved_ids == [record.record_id]
        assert result.deleted_ids == ["x"]
        body = _body(client)
        assert body["save"] == [record.to_dict()]
        assert body["delete"] == ["x"]
        assert body["save_policy"] == "changed_keys"

    @pytest.mark.asyncio
    async def test_item_errors_raise_partial_failure(self) -> None:
        client = _client(
            httpx.Response(
                200,
                json={
                    "saved": ["a"],
                    "deleted": [],
                    "errors": {"b": {"code": "server_record_changed"}},
                },
            )
        )
        with pytest.raises(PartialFailure) as exc_info:
            await _store(client).modify_records([], [], save_policy=SavePolicy.CHANGED_KEYS, options=OPTIONS)
        assert exc_info.value.saved_ids == ["a"]
        assert exc_info.value.partial_errors["b"].code is ErrorCode.SERVER_RECORD_CHANGED


class TestChangeFeeds:
    @pytest.mark.asyncio
    async def test_database_feed_pages_until_done(self) -> None:
        client = _client(
            httpx.Response(
                200,
                json={"changed_zone_ids": [ZONE], "token": encode_token(b"t1"), "more_coming": True},
            ),
            httpx.Response(
                200,
                json={"deleted_zone_ids": ["Old"], "token": encode_token(b"t2"), "more_coming": False},
            ),
        )
        changed, deleted, tokens = [], [], []
        final = await _store(client).fetch_database_changes(
            b"t0",
            on_zone_changed=changed.append,
            on_zone_deleted=deleted.append,
            on_token_updated=tokens.append,
            options=OPTIONS,
        )
        assert final == b"t2"
        assert changed == [ZONE]
        assert deleted == ["Old"]
        assert tokens == [b"t1", b"t2"]
        assert _body(client, 0) == {"token": encode_token(b"t0")}
        assert _body(client, 1) == {"token": encode_token(b"t1")}

    @pytest.mark.asyncio
    async def test_zone_feed_delivers_records_and_tokens(self) -> None:
        record = make_remote(make_record(70))
        client = _client(
            httpx.Response(
                200,
                json={"changed": [record.to_dict(), {"bogus": True}], "token": encode_token(b"z1"), "more_coming": True},
            ),
            httpx.Response(200, json={"deleted": ["gone"], "token": encode_token(b"z2")}),
        )
        changed, deleted, updates, completed = [], [], [], []
        await _store(client).fetch_zone_changes(
            {ZONE: None},
            on_record_changed=changed.append,
            on_record_deleted=deleted.append,
            on_token_updated=lambda zone, tok: updates.append((zone, tok)),
            on_zone_completed=lambda zone, tok, err: completed.append((zone, tok, err)),
            options=OPTIONS,
        )
        assert [r.record_id for r in changed] == [record.record_id]
        assert deleted == ["gone"]
        assert updates == [(ZONE, b"z1")]
        assert completed == [(ZONE, b"z2", None)]

    @pytest.mark.asyncio
    async def test_expired_zone_token_reported_per_zone(self) -> None:
        client = _client(
            httpx.Response(410, json={"error": {"code": "change_token_expired"}}),
            httpx.Response(200, json={"token": encode_token(b"ok")}),
        )
        completed = []
        await _store(client).fetch_zone_changes(
            {"A": b"old", "B": None},
            on_record_changed=lambda r: None,
            on_record_deleted=lambda i: None,
            on_token_updated=lambda z, t: None,
            on_zone_completed=lambda zone, tok, err: completed.append((zone, tok, err)),
            options=OPTIONS,
        )
        assert completed[0][0] == "A"
        assert completed[0][2].code is ErrorCode.CHANGE_TOKEN_EXPIRED
        assert completed[1] == ("B", b"ok", None)


class TestTokens:
    def test_undecodable_token_is_none(self) -> None:
        assert decode_token("***") is None
        assert decode_token(None) is None
        assert decode_token(encode_token(b"\x00abc")) == b"\x00abc"
