from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

Filter = tuple[str, str]


class DataSourceError(Exception):
    """Raised when the remote data source rejects or fails a request."""


@dataclass(frozen=True, slots=True)
class Page:
    items: list[dict[str, Any]]
    next_cursor: str | None

    def as_payload(self) -> dict[str, Any]:
        return {"items": self.items, "next_cursor": self.next_cursor}


def in_list(values: Sequence[str]) -> str:
    return "in.(" + ",".join(values) + ")"


class SupabaseDataSource:
    """Owner-scoped reads against the PostgREST and storage APIs of the backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        access_token: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self._client = client

    def set_access_token(self, access_token: str | None) -> None:
        self.access_token = access_token

    @property
    def headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = self.access_token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", columns), *filters]
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        if not isinstance(rows, list):
            raise DataSourceError(f"unexpected response shape for table={table}")
        return rows

    async def fetch_page(
        self,
        table: str,
        *,
        cursor_column: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        cursor: str | None = None,
        page_size: int = 50,
    ) -> Page:
        """Newest-first page; `next_cursor` is the oldest timestamp seen when the page is full."""
        page_filters = list(filters)
        if cursor is not None:
            page_filters.append((cursor_column, f"lt.{cursor}"))
        rows = await self.select(
            table,
            columns=columns,
            filters=page_filters,
            order=f"{cursor_column}.desc",
            limit=page_size,
        )
        next_cursor: str | None = None
        if len(rows) == page_size and rows:
            raw_cursor = rows[-1].get(cursor_column)
            next_cursor = str(raw_cursor) if raw_cursor is not None else None
        return Page(items=rows, next_cursor=next_cursor)

    async def create_signed_url(self, bucket: str, path: str, *, expires_in: int = 3600) -> str:
        object_path = quote(path.lstrip("/"))
        payload = await self._request(
            "POST",
            f"/storage/v1/object/sign/{bucket}/{object_path}",
            json={"expiresIn": expires_in},
        )
        signed: Any = None
        if isinstance(payload, dict):
            signed = payload.get("signedURL") or payload.get("signedUrl")
        if not isinstance(signed, str) or not signed:
            raise DataSourceError(f"signed url missing for bucket={bucket} path={path}")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1/{signed.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Sequence[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.request(method, url, params=params, json=json, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.request(method, url, params=params, json=json, headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DataSourceError(f"{method} {path} failed: {exc}") from exc
        return response.json()
