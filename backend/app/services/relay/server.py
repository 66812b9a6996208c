"""Transparent HTTP relay between Snapmaker Luban and a real printer.

Luban talks to "the printer" on port 8080. Pointed at this machine instead,
it reaches the relay, which forwards every request to the real printer and
streams the reply back untouched. On the way through the relay captures:

- the session token (query string, form body or multipart field)
- G-code bodies POSTed to the upload endpoint

Captured data is written to the database in the background; a failed write
is logged and never affects the forwarded request.
"""

import asyncio
import errno
import logging
from collections.abc import Callable, Coroutine
from enum import Enum

import aiohttp
from aiohttp import hdrs, web
from sqlalchemy.ext.asyncio import AsyncSession
from yarl import URL

from backend.app.core.config import settings
from backend.app.models.printer import Printer
from backend.app.models.uploaded_file import FileSource
from backend.app.services.printer_store import (
    RELAY_TARGET_KEY,
    add_uploaded_file,
    display_name_for,
    find_printers_by_ip,
    find_uploaded_file,
    get_setting,
    list_printers,
    save_captured_token,
)
from backend.app.services.relay.capture import extract_boundary, find_token, is_multipart, parse_multipart
from backend.app.services.thumbnail import extract_thumbnail

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/v1/upload"
CONNECT_PATH = "/api/v1/connect"

CHUNK_SIZE = 65536

# Connection-level headers; aiohttp manages these per hop
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}
_SKIP_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "expect"}

# Headers aiohttp's client adds on its own unless told not to
_CLIENT_AUTO_HEADERS = (hdrs.ACCEPT, hdrs.ACCEPT_ENCODING, hdrs.USER_AGENT, hdrs.CONTENT_TYPE)


class RelayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class SnapmakerRelay:
    """One relay session: listener, target printer and capture state."""

    def __init__(
        self,
        listen_port: int | None = None,
        target_port: int | None = None,
        bind_address: str | None = None,
        forward_timeout: float | None = None,
        session_factory: Callable | None = None,
    ):
        self.listen_port = settings.relay_port if listen_port is None else listen_port
        self.target_port = target_port or settings.printer_api_port
        self.bind_address = bind_address or settings.relay_bind_address
        self.forward_timeout = forward_timeout or settings.relay_forward_timeout
        self._session_factory = session_factory

        self._state = RelayState.STOPPED
        self._target_ip: str | None = None
        self._active_target_port = self.target_port
        # Last token written to a printer record, and one still being written
        self._last_token: str | None = None
        self._pending_token: str | None = None
        self._unmatched_token: str | None = None
        self._last_error: str | None = None

        self._runner: web.AppRunner | None = None
        self._client: aiohttp.ClientSession | None = None
        self._bound_port: int | None = None

        self._capture_tasks: set[asyncio.Task] = set()
        # Created per start() so it belongs to the loop serving the listener
        self._capture_lock: asyncio.Lock | None = None

    def set_session_factory(self, session_factory: Callable) -> None:
        """Set the database session factory used for captures."""
        self._session_factory = session_factory

    def _sessions(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            from backend.app.core.database import async_session

            return async_session
        return self._session_factory

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == RelayState.RUNNING

    @property
    def target_ip(self) -> str | None:
        return self._target_ip if self.is_running else None

    @property
    def last_token(self) -> str | None:
        return self._last_token

    @property
    def port(self) -> int:
        """Port actually bound (differs from ``listen_port`` when that is 0)."""
        return self._bound_port or self.listen_port

    def get_status(self) -> dict:
        return {
            "enabled": self.is_running,
            "state": self._state.value,
            "port": self.port,
            "target_printer_ip": self.target_ip,
            "token_captured": self._last_token is not None,
            "last_error": self._last_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, target_ip: str, target_port: int | None = None) -> bool:
        """Bind the listener and start relaying to ``target_ip``.

        An existing listener is torn down first. Returns False if the port
        can't be bound; the relay is then left stopped.
        """
        if self._runner is not None or self._state != RelayState.STOPPED:
            await self.stop()

        if target_ip != self._target_ip:
            self._last_token = None
            self._unmatched_token = None
        self._pending_token = None

        self._state = RelayState.STARTING
        self._capture_lock = asyncio.Lock()
        self._last_error = None
        self._target_ip = target_ip
        self._active_target_port = target_port or self.target_port

        logger.info(
            "Starting relay: %s:%s → %s:%s",
            self.bind_address,
            self.listen_port,
            target_ip,
            self._active_target_port,
        )

        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle_request)
        runner = web.AppRunner(app, shutdown_timeout=5.0)
        await runner.setup()

        site = web.TCPSite(runner, self.bind_address, self.listen_port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            if e.errno == errno.EADDRINUSE:
                self._last_error = f"Port {self.listen_port} is already in use"
            elif e.errno == errno.EACCES:
                self._last_error = f"Permission denied binding port {self.listen_port}"
            else:
                self._last_error = f"Relay server error: {e}"
            logger.error("Relay failed to start: %s", self._last_error)
            self._target_ip = None
            self._state = RelayState.STOPPED
            return False

        self._runner = runner
        self._bound_port = runner.addresses[0][1] if runner.addresses else self.listen_port
        self._client = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(
                total=None,
                sock_connect=self.forward_timeout,
                sock_read=self.forward_timeout,
            ),
            auto_decompress=False,
            cookie_jar=aiohttp.DummyCookieJar(),
        )
        self._state = RelayState.RUNNING

        logger.info("Relay started on port %s, forwarding to %s", self._bound_port, target_ip)
        return True

    async def stop(self) -> None:
        """Close the listener, the upstream session and flush pending captures."""
        runner, self._runner = self._runner, None
        client, self._client = self._client, None

        if runner is not None:
            await runner.cleanup()
        if client is not None:
            await client.close()

        await self.wait_for_captures()

        was_running = self._state != RelayState.STOPPED
        self._state = RelayState.STOPPED
        self._bound_port = None
        if was_running:
            logger.info("Relay stopped")

    async def wait_for_captures(self) -> None:
        """Wait until every background capture write has finished."""
        while self._capture_tasks:
            await asyncio.gather(*list(self._capture_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        target_ip = self._target_ip
        if not target_ip or self._client is None:
            return web.json_response({"error": "No printer configured for relay"}, status=503)

        # The body has to be inspected before it is forwarded
        body = await request.content.read()
        logger.info("Relay %s %s (%d bytes)", request.method, request.path, len(body))

        try:
            self._inspect(request, body, target_ip)
        except Exception as e:
            logger.error("Relay capture failed for %s %s: %s", request.method, request.path, e)

        return await self._forward(request, body, target_ip)

    def _inspect(self, request: web.Request, body: bytes, target_ip: str) -> None:
        content_type = request.headers.get(hdrs.CONTENT_TYPE)

        multipart = None
        if body and is_multipart(content_type):
            boundary = extract_boundary(content_type)
            if boundary:
                multipart = parse_multipart(body, boundary)
            else:
                logger.debug("Relay: multipart body without boundary on %s", request.path)

        token = find_token(request.query, content_type, body, multipart=multipart)
        if token and token not in (self._last_token, self._pending_token):
            self._pending_token = token
            # Retries for a token with no printer to land on stay quiet
            level = logging.DEBUG if token == self._unmatched_token else logging.INFO
            logger.log(level, "Relay captured token from %s %s", request.method, request.path)
            self._spawn_capture(self._save_token(token, target_ip), "token")

        if request.method == hdrs.METH_POST and request.path.startswith(UPLOAD_PATH) and multipart:
            if multipart.filename and multipart.file_content is not None:
                logger.info(
                    "Relay captured file: %s (%d bytes)",
                    multipart.filename,
                    len(multipart.file_content),
                )
                self._spawn_capture(
                    self._save_uploaded_file(multipart.filename, multipart.file_content, target_ip),
                    f"file {multipart.filename}",
                )

    async def _forward(self, request: web.Request, body: bytes, target_ip: str) -> web.StreamResponse:
        target_port = self._active_target_port
        url = URL(f"http://{target_ip}:{target_port}{request.raw_path}", encoded=True)

        headers = [(name, value) for name, value in request.headers.items() if name.lower() not in _SKIP_REQUEST_HEADERS]
        headers.append((hdrs.HOST, f"{target_ip}:{target_port}"))
        present = {name.lower() for name, _ in headers}
        skip_auto_headers = [name for name in _CLIENT_AUTO_HEADERS if name.lower() not in present]

        try:
            upstream = await self._client.request(
                request.method,
                url,
                headers=headers,
                data=body or None,
                allow_redirects=False,
                skip_auto_headers=skip_auto_headers,
            )
        except TimeoutError:
            logger.error("Relay request timeout: %s %s → %s", request.method, request.path, target_ip)
            return web.json_response({"error": "Printer request timeout"}, status=504)
        except aiohttp.ClientError as e:
            logger.error("Relay error forwarding to printer %s: %s", target_ip, e)
            return web.json_response({"error": "Failed to connect to printer"}, status=502)

        response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
        for name, value in upstream.headers.items():
            if name.lower() not in HOP_BY_HOP_HEADERS:
                response.headers.add(name, value)

        try:
            await response.prepare(request)
            async for chunk in upstream.content.iter_chunked(CHUNK_SIZE):
                await response.write(chunk)
            await response.write_eof()
        except (TimeoutError, aiohttp.ClientError) as e:
            # Status line is already out; all we can do is drop the connection
            logger.error("Relay lost printer %s mid-response: %s", target_ip, e)
            raise
        finally:
            upstream.release()

        return response

    # ------------------------------------------------------------------
    # Captures
    # ------------------------------------------------------------------

    def _spawn_capture(self, coro: Coroutine, what: str) -> None:
        task = asyncio.create_task(self._run_capture(coro, what), name=f"relay-capture-{what}")
        self._capture_tasks.add(task)
        task.add_done_callback(self._capture_tasks.discard)

    async def _run_capture(self, coro: Coroutine, what: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.error("Relay failed to save captured %s: %s", what, e)

    async def _save_token(self, token: str, target_ip: str) -> None:
        """Write ``token`` to the target's printers.

        Only a successful write advances the last token; after a failure or
        with no printer at the target the next request carrying it retries.
        """
        try:
            async with self._capture_lock, self._sessions()() as db:
                printers = await save_captured_token(db, target_ip, token)
                await db.commit()
        finally:
            if self._pending_token == token:
                self._pending_token = None

        if not printers:
            if token != self._unmatched_token:
                self._unmatched_token = token
                logger.warning("No printer registered at %s, captured token not persisted", target_ip)
            return

        if target_ip == self._target_ip:
            self._last_token = token
        logger.info("Saved captured token to printer(s) %s", ", ".join(p.name for p in printers))

    async def _resolve_printer(self, db: AsyncSession, target_ip: str) -> Printer | None:
        printers = await find_printers_by_ip(db, target_ip)
        if printers:
            return printers[0]

        printers = await list_printers(db)
        if not printers:
            return None
        if len(printers) > 1:
            logger.warning(
                "No printer registered at %s; filing captured upload under '%s'",
                target_ip,
                printers[0].name,
            )
        return printers[0]

    async def _save_uploaded_file(self, filename: str, content: bytes, target_ip: str) -> None:
        # Captures are written one at a time; a duplicate check can't race an insert
        async with self._capture_lock, self._sessions()() as db:
            printer = await self._resolve_printer(db, target_ip)
            if not printer:
                logger.warning("No printer configured, captured file %s not saved", filename)
                return

            if await find_uploaded_file(db, printer.id, filename):
                logger.info("Relay: file already exists, skipping: %s", filename)
                return

            text = content.decode("utf-8", errors="replace")
            await add_uploaded_file(
                db,
                printer_id=printer.id,
                filename=filename,
                source=FileSource.RELAY_CAPTURED.value,
                display_name=display_name_for(filename),
                file_content=text,
                thumbnail=extract_thumbnail(text),
            )
            await db.commit()

        logger.info("Relay saved file to database: %s", filename)


snapmaker_relay = SnapmakerRelay()


async def init_relay(db: AsyncSession) -> bool:
    """Start the relay if a target was saved by a previous run."""
    target_ip = await get_setting(db, RELAY_TARGET_KEY)
    if not target_ip:
        return False

    started = await snapmaker_relay.start(target_ip)
    if started:
        logger.info("Relay auto-started for printer at %s", target_ip)
    return started
