"""
Ledger adapter backed by an event-factory relayer service.

The relayer owns the signing key, submits createEvent transactions to the
event factory contract and only answers once the transaction is confirmed.
This adapter talks to it over HTTP with httpx.

Relayer API:
    POST /v1/events          -> 201 {chain_id, contract_address, event_index, transaction_hash}
                                409 same body for an event id already on chain
    GET  /v1/events/{id}     -> 200 {event fields..., chain_id, ...}, 404 unknown
    GET  /v1/health          -> 200 {"status": "ok", "block_number": ...}

Invariants:
    - A write returns only after the transaction is confirmed
    - 409 is a successful write carrying the existing reference, so retried
      creations never produce a second transaction
    - Reads are retried with backoff on 5xx and transport errors, writes are not

How to change safely:
    - Keep the wire format in sync with the relayer
    - Never retry POST without the relayer's idempotent 409 behaviour
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from ..errors import StoreError, StoreRejected, StoreTimeout, StoreUnavailable
from ..model import (
    EventRecord,
    LedgerRef,
    StoreKind,
    StoreReceipt,
    StoreRecord,
    format_price,
    parse_instant,
    parse_price,
)
from .base import HealthState, HealthStatus, elapsed_ms

if TYPE_CHECKING:
    from ..config import LedgerConfig

logger = logging.getLogger(__name__)

RETRY_BACKOFF = (0.2, 0.5, 1.0)  # seconds


class LedgerGatewayAdapter:
    """Ledger StoreAdapter over the relayer HTTP API.

    Attributes:
        config: LedgerConfig instance

    Example:
        >>> ledger = LedgerGatewayAdapter(LedgerConfig(gateway_url="http://relayer:8545"))
        >>> await ledger.connect()
        >>> receipt = await ledger.write(record)
        >>> receipt.ledger_ref.event_index
        42
    """

    kind = StoreKind.LEDGER

    def __init__(
        self,
        config: LedgerConfig,
        client: httpx.AsyncClient | None = None,
        retry_backoff: tuple[float, ...] = RETRY_BACKOFF,
    ) -> None:
        """Initialize the adapter.

        Args:
            config: LedgerConfig instance
            client: Pre-built client (tests inject one with a MockTransport)
            retry_backoff: Delays between read retries
        """
        self.config = config
        self.retry_backoff = retry_backoff
        self._client = client
        self._owns_client = client is None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.config.gateway_url,
                headers=headers,
                timeout=self.config.request_timeout_seconds,
            )
        self._connected = True
        logger.info("Ledger gateway client ready", extra={"gateway": self.config.gateway_url})

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._connected = False

    async def write(self, record: EventRecord) -> StoreReceipt:
        missing = record.missing_for(self.kind)
        if missing:
            raise StoreRejected(f"Missing required fields: {missing}", self.kind, "write")

        payload = {
            "event_id": record.event_id,
            "title": record.title,
            "start_time": int(record.start_time.timestamp()),
            "end_time": int(record.end_time.timestamp()),
            "max_capacity": record.max_capacity,
            "ticket_price": format_price(record.ticket_price),
            "creator_address": record.creator_address,
            "metadata_uri": record.object_store_ref.metadata.url
            if record.object_store_ref
            else "",
        }
        response = await self._request("POST", "/v1/events", "write", json=payload)

        if response.status_code in (200, 201, 409):
            ref = self._parse_ref(response.json(), "write")
            already = response.status_code == 409
            logger.info(
                "Event already on chain" if already else "Event confirmed on chain",
                extra={"event_id": record.event_id, "tx": ref.transaction_hash},
            )
            return StoreReceipt(
                kind=self.kind,
                event_id=record.event_id,
                ledger_ref=ref,
                already_existed=already,
            )
        raise self._status_error(response, "write")

    async def read(self, event_id: str) -> StoreRecord | None:
        attempts = min(self.config.max_retries, len(self.retry_backoff))

        for attempt in range(attempts + 1):
            try:
                response = await self._request("GET", f"/v1/events/{event_id}", "read")
            except (StoreTimeout, StoreUnavailable):
                if attempt >= attempts:
                    raise
                await asyncio.sleep(self.retry_backoff[attempt])
                continue

            if response.status_code == 404:
                return None
            if response.status_code == 200:
                return self._parse_record(event_id, response.json())
            if response.status_code >= 500 and attempt < attempts:
                await asyncio.sleep(self.retry_backoff[attempt])
                continue
            raise self._status_error(response, "read")

        raise StoreUnavailable("Retries exhausted", self.kind, "read")

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            response = await self._request("GET", "/v1/health", "health")
        except StoreError as e:
            return HealthStatus(
                store=self.kind,
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms(started),
                error=e.message,
            )

        if response.status_code != 200:
            return HealthStatus(
                store=self.kind,
                status=HealthState.DEGRADED,
                response_time_ms=elapsed_ms(started),
                error=f"HTTP {response.status_code}",
            )
        return HealthStatus(
            store=self.kind,
            status=HealthState.HEALTHY,
            response_time_ms=elapsed_ms(started),
            details=response.json(),
        )

    async def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        if self._client is None or not self._connected:
            raise StoreUnavailable("Not connected", self.kind, operation)
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise StoreTimeout(f"Relayer timed out: {e}", self.kind, operation)
        except httpx.TransportError as e:
            raise StoreUnavailable(f"Relayer unreachable: {e}", self.kind, operation)

    def _status_error(self, response: httpx.Response, operation: str) -> StoreError:
        try:
            detail = response.json().get("error", response.text)
        except ValueError:
            detail = response.text
        message = f"HTTP {response.status_code}: {detail}"
        if 400 <= response.status_code < 500:
            return StoreRejected(message, self.kind, operation)
        return StoreUnavailable(message, self.kind, operation)

    def _parse_ref(self, body: dict[str, Any], operation: str) -> LedgerRef:
        try:
            return LedgerRef.from_dict(body)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(f"Malformed relayer response: {e}", self.kind, operation)

    def _parse_record(self, event_id: str, body: dict[str, Any]) -> StoreRecord:
        try:
            values: dict[str, Any] = {
                "title": body["title"],
                "start_time": parse_instant(body["start_time"]),
                "end_time": parse_instant(body["end_time"]),
                "max_capacity": int(body["max_capacity"]),
                "ticket_price": parse_price(body["ticket_price"]),
                "creator_address": body["creator_address"],
                "ledger_ref": LedgerRef.from_dict(body),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(f"Malformed relayer response: {e}", self.kind, "read")
        return StoreRecord(kind=self.kind, event_id=event_id, fields=values)
