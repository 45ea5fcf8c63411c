"""Async client for the SIEM admin REST API (``/lr-admin-api``)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from logsource_retire.collaborators.reachability import TcpReachabilityProbe
from logsource_retire.config import SiemSettings
from logsource_retire.domain.errors import ExternalError
from logsource_retire.domain.models import ACTIVE, RETIRED, Item, Reachability
from logsource_retire.utils.time import parse_utc_iso

logger = logging.getLogger(__name__)

# Read-only fields the API rejects on PUT.
_HOST_READONLY_FIELDS = ("hostRoles", "hostIdentifiers")


def id_to_string(value: Any) -> str:
    """The API returns ids as either strings or numbers."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if value is None:
        return ""
    return str(value)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_utc_iso(value)
    except ValueError:
        logger.debug("Unparseable maxLogDate %r", value)
        return None


def item_from_payload(payload: dict[str, Any]) -> Item:
    host = payload.get("host") or {}
    source_type = payload.get("logSourceType") or {}
    collection_id = id_to_string(payload.get("systemMonitorId")) or None
    return Item(
        item_id=id_to_string(payload.get("id")),
        host_id=id_to_string(host.get("id")),
        host_name=str(host.get("name") or ""),
        name=str(payload.get("name") or ""),
        source_type=str(source_type.get("name") or ""),
        last_activity=_parse_timestamp(payload.get("maxLogDate")),
        status=str(payload.get("recordStatus") or ACTIVE),
        host_status=str(host.get("recordStatusName") or ACTIVE),
        collection_host_id=collection_id,
        collection_host_name=payload.get("systemMonitorName") or None,
    )


class LogRhythmClient:
    """Implements the retirement collaborator against the admin API.

    A record is retired by GET then PUT of the full record with its status
    changed and the retired suffix appended to its name. Restoring removes
    the suffix again.
    """

    def __init__(
        self,
        settings: SiemSettings,
        probe: TcpReachabilityProbe | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._probe = probe or TcpReachabilityProbe()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self._settings.configured:
            raise ExternalError("SIEM hostname and API key must be configured")
        return httpx.AsyncClient(
            base_url=self._settings.base_url,
            headers={
                "Authorization": f"Bearer {self._settings.api_key}",
                "Accept": "application/json",
            },
            verify=self._settings.verify_tls,
            timeout=self._settings.timeout_seconds,
            transport=self._transport,
        )

    async def ping_host(self, host_name: str) -> Reachability:
        return await self._probe.probe(host_name)

    async def check_connection(self) -> None:
        async with self._client() as client:
            await self._get_json(client, "/logsources", {"count": 1, "offset": 0})

    async def list_log_sources(self, host_id: str | None = None) -> list[Item]:
        page_size = self._settings.page_size
        params: dict[str, Any] = {"count": page_size, "offset": 0}
        if host_id is not None:
            params["hostId"] = host_id

        items: list[Item] = []
        async with self._client() as client:
            while True:
                body = await self._get_json(client, "/logsources", params)
                page = _page_items(body)
                items.extend(item_from_payload(entry) for entry in page)
                if len(page) < page_size:
                    break
                params["offset"] += page_size

        logger.info("Fetched %d log sources from the SIEM", len(items))
        return items

    async def set_item_status(self, item_id: str, status: str) -> str:
        path = f"/logsources/{item_id}"
        async with self._client() as client:
            record = await self._get_record(client, path)
            previous = str(record.get("recordStatus") or ACTIVE)
            if previous == status:
                return previous
            record["recordStatus"] = status
            record["name"] = self._rename(str(record.get("name") or ""), status)
            await self._put_json(client, path, record)
        logger.info("Log source %s status %s -> %s", item_id, previous, status)
        return previous

    async def set_host_status(self, host_id: str, status: str) -> str:
        path = f"/hosts/{host_id}"
        async with self._client() as client:
            record = await self._get_record(client, path)
            previous = str(record.get("recordStatusName") or ACTIVE)
            if previous == status:
                return previous
            record["recordStatusName"] = status
            record["name"] = self._rename(str(record.get("name") or ""), status)
            for key in _HOST_READONLY_FIELDS:
                record.pop(key, None)
            await self._put_json(client, path, record)
        logger.info("Host %s status %s -> %s", host_id, previous, status)
        return previous

    def _rename(self, name: str, status: str) -> str:
        suffix = self._settings.retired_suffix
        if not suffix:
            return name
        if status == RETIRED:
            return name if name.endswith(suffix) else name + suffix
        return name[: -len(suffix)] if name.endswith(suffix) else name

    async def _get_json(
        self, client: httpx.AsyncClient, path: str, params: dict[str, Any] | None = None
    ) -> Any:
        try:
            resp = await client.get(path, params=params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalError(
                f"GET {path} failed with status {exc.response.status_code}", target=path
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalError(f"GET {path} failed: {exc}", target=path) from exc
        except ValueError as exc:
            raise ExternalError(f"GET {path} returned invalid JSON", target=path) from exc

    async def _get_record(self, client: httpx.AsyncClient, path: str) -> dict[str, Any]:
        record = await self._get_json(client, path)
        if not isinstance(record, dict):
            raise ExternalError(f"GET {path} did not return an object", target=path)
        return record

    async def _put_json(self, client: httpx.AsyncClient, path: str, payload: Any) -> None:
        try:
            resp = await client.put(path, json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalError(
                f"PUT {path} failed with status {exc.response.status_code}", target=path
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalError(f"PUT {path} failed: {exc}", target=path) from exc


def _page_items(body: Any) -> list[dict[str, Any]]:
    """The listing is a bare array on current releases, ``{"items": [...]}`` on older ones."""
    if isinstance(body, list):
        return [entry for entry in body if isinstance(entry, dict)]
    if isinstance(body, dict) and isinstance(body.get("items"), list):
        return [entry for entry in body["items"] if isinstance(entry, dict)]
    raise ExternalError("Unexpected log source listing format", target="/logsources")
