"""PostgREST adapter for the device and credential stores.

Talks to a PostgREST endpoint (such as a Supabase project's
``/rest/v1``) over :mod:`httpx`.  Devices and their credential documents
share one table; credentials live in the ``session_data`` JSON column.

Column mapping (``Device`` attribute → column)::

    device_id             → id
    display_name          → device_name
    assigned_instance_id  → assigned_server_id
    (all other attributes use their own name)

Ownership claims are conditional ``PATCH`` requests filtered on the
current owner, with ``Prefer: return=representation``: the claim won
exactly when the response contains the updated row.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from devicelink._errors import StoreError
from devicelink._models import ConnectionMethod, Device, DeviceStatus
from devicelink._settings import StoreSettings
from devicelink._store import DEVICE_FIELDS

logger = logging.getLogger(__name__)

_COLUMN_FOR: dict[str, str] = {
    "device_id": "id",
    "display_name": "device_name",
    "assigned_instance_id": "assigned_server_id",
}
_FIELD_FOR: dict[str, str] = {column: name for name, column in _COLUMN_FOR.items()}

_DATETIME_FIELDS = frozenset({"assigned_at", "last_connected_at", "updated_at"})

_SELECT = ",".join(
    _COLUMN_FOR.get(name, name) for name in ("device_id", *sorted(DEVICE_FIELDS))
)


def _column(name: str) -> str:
    return _COLUMN_FOR.get(name, name)


def _to_wire(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_datetime(raw: object) -> datetime | None:
    if not raw:
        return None
    return datetime.fromisoformat(str(raw))


def _row_to_device(row: Mapping[str, Any]) -> Device:
    """Build a :class:`Device` from a PostgREST row."""
    values: dict[str, Any] = {}
    for column, raw in row.items():
        name = _FIELD_FOR.get(column, column)
        if name == "device_id" or name in DEVICE_FIELDS:
            values[name] = raw

    for name in _DATETIME_FIELDS:
        if name in values:
            values[name] = _parse_datetime(values[name])

    raw_status = values.get("status")
    try:
        values["status"] = DeviceStatus(raw_status) if raw_status else DeviceStatus.UNINITIALIZED
    except ValueError:
        logger.warning("Unknown device status %r for %s", raw_status, values.get("device_id"))
        values["status"] = DeviceStatus.UNINITIALIZED

    raw_method = values.get("connection_method")
    try:
        values["connection_method"] = ConnectionMethod(raw_method) if raw_method else ConnectionMethod.QR
    except ValueError:
        logger.warning("Unknown connection method %r for %s", raw_method, values.get("device_id"))
        values["connection_method"] = ConnectionMethod.QR

    if values.get("display_name") is None:
        values["display_name"] = ""
    values["device_id"] = str(values["device_id"])
    return Device(**values)


class PostgrestStore:
    """:class:`DeviceStore` and :class:`CredentialBackend` over PostgREST.

    Args:
        base_url: PostgREST root, e.g. ``https://x.supabase.co/rest/v1``.
        api_key: Service key sent as ``apikey`` and bearer token.
        table: Device table name.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (``httpx.MockTransport`` in
            tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        table: str = "devices",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._table = table
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: StoreSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> PostgrestStore:
        """Build a store from :class:`StoreSettings`."""
        if not settings.url:
            msg = "store.url is required for the postgrest backend"
            raise ValueError(msg)
        api_key = settings.api_key.get_secret_value() if settings.api_key else None
        return cls(
            settings.url,
            api_key=api_key,
            table=settings.devices_table,
            timeout=settings.timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # -- DeviceStore ---------------------------------------------------------

    async def get(self, device_id: str) -> Device | None:
        rows = await self._select({"id": f"eq.{device_id}", "select": _SELECT})
        return _row_to_device(rows[0]) if rows else None

    async def update(self, device_id: str, fields: Mapping[str, object]) -> None:
        unknown = set(fields) - DEVICE_FIELDS
        if unknown:
            msg = f"Unknown device fields: {sorted(unknown)}"
            raise ValueError(msg)
        body = {_column(name): _to_wire(value) for name, value in fields.items()}
        await self._request("PATCH", params={"id": f"eq.{device_id}"}, json=body)

    async def list_by_status(self, statuses: Collection[DeviceStatus]) -> list[Device]:
        if not statuses:
            return []
        wanted = ",".join(sorted(status.value for status in statuses))
        rows = await self._select({"status": f"in.({wanted})", "select": _SELECT})
        return [_row_to_device(row) for row in rows]

    async def claim(
        self,
        device_id: str,
        instance_id: str,
        *,
        expected: str | None,
        assigned_at: datetime,
    ) -> bool:
        owner_filter = "is.null" if expected is None else f"eq.{expected}"
        body = {
            "assigned_server_id": instance_id or None,
            "assigned_at": assigned_at.isoformat() if instance_id else None,
        }
        response = await self._request(
            "PATCH",
            params={"id": f"eq.{device_id}", "assigned_server_id": owner_filter},
            json=body,
            headers={"Prefer": "return=representation"},
        )
        rows = response.json()
        return bool(rows)

    # -- CredentialBackend ---------------------------------------------------

    async def read(self, device_id: str) -> dict[str, Any] | None:
        rows = await self._select({"id": f"eq.{device_id}", "select": "session_data"})
        if not rows:
            return None
        return rows[0].get("session_data") or None

    async def write(self, device_id: str, document: dict[str, Any] | None) -> None:
        await self._request(
            "PATCH",
            params={"id": f"eq.{device_id}"},
            json={"session_data": document},
        )

    # -- HTTP ----------------------------------------------------------------

    async def _select(self, params: dict[str, str]) -> list[dict[str, Any]]:
        response = await self._request("GET", params=params)
        return list(response.json())

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, str],
        json: object | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                f"/{self._table}",
                params=params,
                json=json,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"{method} {self._table} failed with status {exc.response.status_code}"
            raise StoreError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"{method} {self._table} failed: {exc}"
            raise StoreError(msg) from exc
        return response
