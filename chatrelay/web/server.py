"""HTTP surface of the relay (thin glue around the abuse gate)."""

import logging
from typing import Optional

from aiohttp import web

from chatrelay.services.abuse_gate import AbuseGate, DecisionKind, ValidationError, SERVICE_UNAVAILABLE_MESSAGE
from chatrelay.services.kv_store import StoreUnavailable
from chatrelay.services.message_store import MessageStore, MessageStoreError, SYSTEM_SENDER
from chatrelay.services.metrics import metrics, track_message_relayed
from chatrelay.services.presence import JoinTracker
from chatrelay.utils import now_ms, parse_optional_int

logger = logging.getLogger(__name__)

# Proxy headers checked in order before falling back to the peer address
ADDRESS_HEADERS = ("cf-connecting-ip", "x-real-ip")


def client_address(request: web.Request) -> Optional[str]:
    """Resolve the sender's network address."""
    for header in ADDRESS_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.remote


def _unavailable() -> web.Response:
    return web.Response(text=SERVICE_UNAVAILABLE_MESSAGE, status=503)


class RelayServer:
    """aiohttp application exposing /send, /join and /messages."""

    def __init__(
        self,
        gate: AbuseGate,
        join_tracker: JoinTracker,
        message_store: MessageStore,
        host: str = "0.0.0.0",
        port: int = 8080,
        page_limit: int = 100,
        metrics_enabled: bool = True,
    ):
        self.gate = gate
        self.join_tracker = join_tracker
        self.message_store = message_store
        self.host = host
        self.port = port
        self.page_limit = page_limit
        self.metrics_enabled = metrics_enabled
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    async def _handle_send(self, request: web.Request) -> web.Response:
        """Handle /send?u=<user>&m=<message>."""
        user = request.query.get("u")
        message = request.query.get("m")
        if not user or not message:
            return web.Response(text="Missing user or message", status=400)

        now = now_ms()
        try:
            decision = await self.gate.evaluate(client_address(request), user, now)
        except ValidationError as e:
            return web.Response(text=str(e), status=400)
        except StoreUnavailable:
            return _unavailable()

        if decision.kind is DecisionKind.BANNED:
            return web.Response(text=decision.reason, status=403)
        if not decision.allowed:
            if decision.degraded:
                return _unavailable()
            return web.Response(
                text=decision.reason,
                status=429,
                headers={"Retry-After": str(decision.retry_after.total_seconds)},
            )

        try:
            await self.message_store.append(user, message, now)
        except MessageStoreError:
            return _unavailable()
        await track_message_relayed()
        return web.Response(text="Message sent")

    async def _handle_join(self, request: web.Request) -> web.Response:
        """Handle /join?u=<user>."""
        user = request.query.get("u")
        address = client_address(request)
        if not user:
            return web.Response(text="Missing username", status=400)
        if not address:
            return web.Response(text="Missing sender address", status=400)

        now = now_ms()
        join_message = f"[{user}] has joined the chat"
        try:
            await self.join_tracker.join(address, user, now)
            await self.message_store.append(SYSTEM_SENDER, join_message, now)
        except (StoreUnavailable, MessageStoreError):
            return _unavailable()
        return web.Response(text=join_message)

    async def _handle_messages(self, request: web.Request) -> web.Response:
        """Handle /messages?u=<user>[&lastId=<id>]."""
        user = request.query.get("u")
        address = client_address(request)
        if not user or not address:
            return web.Response(text="Missing username", status=400)

        try:
            join_time = await self.join_tracker.get_join_time(address, user)
            if join_time is None:
                return web.Response(text="User not found", status=404)
            messages = await self.message_store.query(
                join_time,
                after_id=parse_optional_int(request.query.get("lastId")),
                limit=self.page_limit,
            )
        except (StoreUnavailable, MessageStoreError):
            return _unavailable()
        return web.json_response([m.to_dict() for m in messages])

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle /health endpoint for probes."""
        return web.json_response({"status": "healthy"})

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Handle /metrics endpoint."""
        return web.Response(
            text=await metrics.get_metrics(),
            content_type="text/plain",
            charset="utf-8",
        )

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/send", self._handle_send)
        app.router.add_get("/join", self._handle_join)
        app.router.add_get("/messages", self._handle_messages)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/healthz", self._handle_health)
        if self.metrics_enabled:
            app.router.add_get("/metrics", self._handle_metrics)
        return app

    async def start(self):
        """Start the relay HTTP server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        logger.info(f"Relay server started at http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the relay HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            logger.info("Relay server stopped")
