from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from jobsync.services.data_source import DataSourceError, Page, SupabaseDataSource, in_list


def _source(handler: Any, *, access_token: str | None = "user-jwt") -> tuple[SupabaseDataSource, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = SupabaseDataSource(
        "https://project.supabase.co/",
        "anon-key",
        access_token=access_token,
        client=client,
    )
    return source, client


def test_select_sends_filters_order_and_auth_headers() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "job-1"}], request=request)

    async def run() -> list[dict[str, Any]]:
        source, client = _source(handler)
        async with client:
            return await source.select(
                "job_postings",
                columns="id,title",
                filters=[("is_active", "eq.true")],
                order="created_at.desc",
                limit=100,
            )

    rows = asyncio.run(run())

    assert rows == [{"id": "job-1"}]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/job_postings"
    assert request.url.params["select"] == "id,title"
    assert request.url.params["is_active"] == "eq.true"
    assert request.url.params["order"] == "created_at.desc"
    assert request.url.params["limit"] == "100"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer user-jwt"


def test_anon_key_is_bearer_without_session_token() -> None:
    source = SupabaseDataSource("https://project.supabase.co", "anon-key")
    assert source.headers["Authorization"] == "Bearer anon-key"

    source.set_access_token("fresh-jwt")
    assert source.headers["Authorization"] == "Bearer fresh-jwt"


def test_fetch_page_sets_cursor_when_page_is_full() -> None:
    seen: list[httpx.Request] = []
    rows = [
        {"id": "m-2", "created_at": "2024-05-02T10:00:00+00:00"},
        {"id": "m-1", "created_at": "2024-05-01T10:00:00+00:00"},
    ]

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=rows, request=request)

    async def run() -> Page:
        source, client = _source(handler)
        async with client:
            return await source.fetch_page(
                "messages",
                cursor_column="created_at",
                filters=[("recipient_id", "eq.user-1")],
                cursor="2024-05-03T00:00:00+00:00",
                page_size=2,
            )

    page = asyncio.run(run())

    assert page.next_cursor == "2024-05-01T10:00:00+00:00"
    assert page.as_payload() == {"items": rows, "next_cursor": "2024-05-01T10:00:00+00:00"}
    params = seen[0].url.params
    assert params["created_at"] == "lt.2024-05-03T00:00:00+00:00"
    assert params["order"] == "created_at.desc"
    assert params["limit"] == "2"


def test_fetch_page_without_more_rows_has_no_cursor() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"id": "m-1", "created_at": "2024-05-01T10:00:00+00:00"}], request=request)

    async def run() -> Page:
        source, client = _source(handler)
        async with client:
            return await source.fetch_page("messages", cursor_column="created_at", page_size=50)

    assert asyncio.run(run()).next_cursor is None


def test_http_errors_become_data_source_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"message": "unavailable"}, request=request)

    async def run() -> None:
        source, client = _source(handler)
        async with client:
            await source.select("conversations")

    with pytest.raises(DataSourceError):
        asyncio.run(run())


def test_unexpected_shape_is_rejected() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"rows": []}, request=request)

    async def run() -> None:
        source, client = _source(handler)
        async with client:
            await source.select("conversations")

    with pytest.raises(DataSourceError):
        asyncio.run(run())


def test_create_signed_url_resolves_relative_path() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"signedURL": "/object/sign/profile-media/avatars/u1.png?token=abc"},
            request=request,
        )

    async def run() -> str:
        source, client = _source(handler)
        async with client:
            return await source.create_signed_url("profile-media", "avatars/u1.png", expires_in=600)

    url = asyncio.run(run())

    assert url == "https://project.supabase.co/storage/v1/object/sign/profile-media/avatars/u1.png?token=abc"
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/storage/v1/object/sign/profile-media/avatars/u1.png"
    assert json.loads(seen[0].content) == {"expiresIn": 600}


def test_create_signed_url_without_url_fails() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={}, request=request)

    async def run() -> str:
        source, client = _source(handler)
        async with client:
            return await source.create_signed_url("profile-media", "avatars/u1.png")

    with pytest.raises(DataSourceError):
        asyncio.run(run())


def test_in_list_formats_postgrest_filter() -> None:
    assert in_list(["a", "b"]) == "in.(a,b)"
