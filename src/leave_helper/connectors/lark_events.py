"""Lark event subscription connector.

This connector is a transport-only adapter that:
- Accepts Lark event callbacks on ``POST /webhook/event``
- Answers the ``url_verification`` challenge
- Checks the verification token and request signature, decrypts encrypted bodies
- Routes ``leave_approval`` / ``leave_approvalV2`` / ``leave_approval_revert``
  to :class:`~leave_helper.handlers.LeaveEventHandlers`
- Exposes ``/health`` and ``/metrics``

Once an event is routed it is always acknowledged with HTTP 200, whatever the
handler did internally; Lark redelivers anything else.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

import uvicorn
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import REGISTRY, generate_latest
from pydantic import BaseModel

from leave_helper.calendar import LarkTimeOffCalendar
from leave_helper.config import ConfigError, LeaveHelperConfig
from leave_helper.connectors.metrics import LeaveHelperMetrics
from leave_helper.correlation import CorrelationStore, RedisCorrelationStore
from leave_helper.errors import LeaveHelperError
from leave_helper.handlers import HandlerOutcome, LeaveEventHandlers

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook/event"
URL_VERIFICATION_TYPE = "url_verification"

SIGNATURE_HEADER = "X-Lark-Signature"
TIMESTAMP_HEADER = "X-Lark-Request-Timestamp"
NONCE_HEADER = "X-Lark-Request-Nonce"

_ACK_BODY = {"msg": "success"}


class EventEnvelopeError(LeaveHelperError):
    """Raised when a callback cannot be authenticated or unwrapped."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        self.status_code = status_code
        super().__init__(message)


def decrypt_event_body(encrypted: str, encrypt_key: str) -> bytes:
    """Decrypt an ``{"encrypt": ...}`` callback body.

    Lark uses AES-256-CBC with the SHA-256 digest of the encrypt key as the
    key; the first 16 bytes of the base64-decoded payload are the IV.
    """
    try:
        raw = base64.b64decode(encrypted, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EventEnvelopeError(f"encrypted body is not valid base64: {exc}") from exc
    if len(raw) < 32 or len(raw) % 16 != 0:
        raise EventEnvelopeError("encrypted body has an invalid length")

    key = hashlib.sha256(encrypt_key.encode("utf-8")).digest()
    iv, ciphertext = raw[:16], raw[16:]
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise EventEnvelopeError("encrypted body could not be decrypted") from exc


def compute_signature(timestamp: str, nonce: str, encrypt_key: str, body: bytes) -> str:
    return hashlib.sha256((timestamp + nonce + encrypt_key).encode("utf-8") + body).hexdigest()


def verify_signature(
    headers: Mapping[str, str],
    body: bytes,
    encrypt_key: str,
) -> bool:
    """Check ``X-Lark-Signature`` against the raw request body."""
    signature = headers.get(SIGNATURE_HEADER, "")
    timestamp = headers.get(TIMESTAMP_HEADER, "")
    nonce = headers.get(NONCE_HEADER, "")
    expected = compute_signature(timestamp, nonce, encrypt_key, body)
    return hmac.compare_digest(signature, expected)


def resolve_event_type(payload: Mapping[str, Any]) -> str | None:
    """Return the event type of a v2 (``header.event_type``) or v1 (``event.type``) envelope."""
    header = payload.get("header")
    if isinstance(header, dict) and isinstance(header.get("event_type"), str):
        return header["event_type"]
    event = payload.get("event")
    if isinstance(event, dict) and isinstance(event.get("type"), str):
        return event["type"]
    return None


def _envelope_token(payload: Mapping[str, Any]) -> str | None:
    header = payload.get("header")
    if isinstance(header, dict) and isinstance(header.get("token"), str):
        return header["token"]
    token = payload.get("token")
    return token if isinstance(token, str) else None


def _load_json_object(raw: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise EventEnvelopeError(f"callback body is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise EventEnvelopeError("callback body must be a JSON object")
    return payload


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"]
    uptime_seconds: float
    last_event_at: str | None
    store_connectivity: Literal["connected", "disconnected", "unknown"]
    timestamp: str


@dataclass
class CallbackResult:
    """What the webhook answers, plus the handler outcome when one ran."""

    status_code: int
    body: dict[str, Any]
    event_type: str | None = None
    outcome: HandlerOutcome | None = None


@dataclass
class LarkEventConnectorState:
    start_time: float = field(default_factory=time.time)
    last_event_at: float | None = None


class LarkEventConnector:
    """Lark webhook runtime for leave approval events.

    Responsibilities:
    - Authenticate and unwrap callbacks
    - Route events to the leave handlers
    - Expose health and metrics endpoints

    Does NOT:
    - Retry handlers or deduplicate deliveries
    """

    def __init__(
        self,
        config: LeaveHelperConfig,
        handlers: LeaveEventHandlers,
        store: CorrelationStore,
        *,
        metrics: LeaveHelperMetrics | None = None,
    ) -> None:
        self._config = config
        self._handlers = handlers
        self._routes = handlers.routes()
        self._store = store
        self._metrics = metrics or LeaveHelperMetrics()
        self._semaphore = asyncio.Semaphore(config.max_inflight)
        self._state = LarkEventConnectorState()

    async def process_callback(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> CallbackResult:
        """Authenticate, unwrap and dispatch one callback."""
        try:
            return await self._process_callback(raw_body, headers)
        except EventEnvelopeError as exc:
            logger.warning(
                "Rejected Lark callback",
                extra={"error": str(exc), "status_code": exc.status_code},
            )
            self._metrics.record_event(event_type="unknown", status="rejected")
            return CallbackResult(status_code=exc.status_code, body={"msg": str(exc)})

    async def _process_callback(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> CallbackResult:
        encrypt_key = self._config.encrypt_key
        if encrypt_key and headers.get(SIGNATURE_HEADER):
            if not verify_signature(headers, raw_body, encrypt_key):
                raise EventEnvelopeError("signature mismatch", status_code=401)

        payload = _load_json_object(raw_body)
        body = raw_body
        if "encrypt" in payload:
            if not encrypt_key:
                raise EventEnvelopeError("received an encrypted callback but ENCRYPT_KEY is not set")
            encrypted = payload.get("encrypt")
            if not isinstance(encrypted, str):
                raise EventEnvelopeError("'encrypt' must be a string")
            body = decrypt_event_body(encrypted, encrypt_key)
            payload = _load_json_object(body)

        token = self._config.verification_token
        if token and _envelope_token(payload) != token:
            raise EventEnvelopeError("verification token mismatch", status_code=401)

        if payload.get("type") == URL_VERIFICATION_TYPE:
            logger.info("Answered Lark URL verification challenge")
            return CallbackResult(status_code=200, body={"challenge": payload.get("challenge")})

        event_type = resolve_event_type(payload)
        self._state.last_event_at = time.time()
        handler = self._routes.get(event_type) if event_type is not None else None
        if handler is None:
            logger.warning("Ignoring unsupported Lark event", extra={"event_type": event_type})
            self._metrics.record_event(event_type=event_type or "unknown", status="ignored")
            return CallbackResult(status_code=200, body=dict(_ACK_BODY), event_type=event_type)

        async with self._semaphore:
            start_time = time.perf_counter()
            outcome = await handler(body)
            latency = time.perf_counter() - start_time

        self._metrics.record_event(event_type=event_type, status="handled")
        self._metrics.record_outcome(outcome, latency=latency)
        logger.info(
            "Handled Lark event",
            extra={
                "event_type": event_type,
                "instance_code": outcome.instance_code,
                "ok": outcome.ok,
                "steps": [f"{step.step}:{step.status}" for step in outcome.steps],
            },
        )
        return CallbackResult(
            status_code=200,
            body=dict(_ACK_BODY),
            event_type=event_type,
            outcome=outcome,
        )

    async def get_health_status(self) -> HealthStatus:
        """Get current health status, probing the correlation store."""
        uptime = time.time() - self._state.start_time

        last_event_at = None
        if self._state.last_event_at is not None:
            last_event_at = datetime.fromtimestamp(self._state.last_event_at, UTC).isoformat()

        try:
            connectivity = "connected" if await self._store.ping() else "disconnected"
        except LeaveHelperError:
            connectivity = "disconnected"

        return HealthStatus(
            status="healthy" if connectivity == "connected" else "unhealthy",
            uptime_seconds=uptime,
            last_event_at=last_event_at,
            store_connectivity=connectivity,
            timestamp=datetime.now(UTC).isoformat(),
        )

    def build_app(self) -> FastAPI:
        app = FastAPI(title="leave-helper")

        @app.post(WEBHOOK_PATH)
        async def webhook_event(request: Request) -> JSONResponse:
            raw_body = await request.body()
            result = await self.process_callback(raw_body, request.headers)
            return JSONResponse(status_code=result.status_code, content=result.body)

        @app.get("/health")
        async def health() -> HealthStatus:
            return await self.get_health_status()

        @app.get("/metrics")
        async def metrics() -> Response:
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(REGISTRY), media_type="text/plain")

        return app

    async def serve(self) -> None:
        """Run the webhook app under uvicorn until it is stopped."""
        server_config = uvicorn.Config(
            self.build_app(),
            host=self._config.host,
            port=self._config.port,
            log_level="warning",
        )
        server = uvicorn.Server(server_config)
        logger.info(
            "Starting Lark event connector",
            extra={"host": self._config.host, "port": self._config.port, "path": WEBHOOK_PATH},
        )
        await server.serve()


def build_store(config: LeaveHelperConfig) -> RedisCorrelationStore:
    """Open the Redis correlation store named by ``config.redis_url``.

    Raises:
        ConfigError: when the Redis URL cannot be parsed.
    """
    try:
        return RedisCorrelationStore.from_url(config.redis_url, namespace=config.key_namespace)
    except ValueError as exc:
        raise ConfigError(f"REDIS_URL is not a valid Redis URL: {exc}") from exc


def build_components(
    config: LeaveHelperConfig,
) -> tuple[RedisCorrelationStore, LarkTimeOffCalendar, LeaveEventHandlers]:
    """Construct the store, calendar adapter and handlers from *config*.

    Raises:
        ConfigError: when the Redis URL is malformed.
    """
    store = build_store(config)
    calendar = LarkTimeOffCalendar(
        config.credentials,
        base_url=config.lark_api_base_url,
        timezone=config.timezone,
    )
    handlers = LeaveEventHandlers(store, calendar, timezone=config.timezone)
    return store, calendar, handlers


async def run_lark_event_connector(config: LeaveHelperConfig) -> None:
    """Entry point for ``leave-helper serve``.

    Raises when Redis cannot be reached at startup.
    """
    store, calendar, handlers = build_components(config)
    try:
        await store.ping()
        logger.info("Connected to correlation store", extra={"namespace": config.key_namespace})
        connector = LarkEventConnector(config, handlers, store)
        await connector.serve()
    finally:
        await calendar.aclose()
        await store.aclose()
