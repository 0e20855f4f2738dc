"""The HTTP server exposing the wallet API and transaction streams."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from werkzeug.exceptions import HTTPException, MethodNotAllowed, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.serving import BaseWSGIServer, make_server
from werkzeug.wrappers import Request, Response

from forohtoo.handlers import (
    Scheduler,
    get_wallet,
    list_transactions,
    list_wallets,
    register_wallet,
    unregister_wallet,
)
from forohtoo.sse import DEFAULT_KEEPALIVE_INTERVAL, EventSource, stream_transactions
from forohtoo.store import Store

__all__ = ["Server", "cors_middleware"]

logger = logging.getLogger(__name__)

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]

_CORS_HEADERS = [
    ("Access-Control-Allow-Origin", "*"),
    ("Access-Control-Allow-Methods", "GET, POST, DELETE, OPTIONS"),
    ("Access-Control-Allow-Headers", "Content-Type, Authorization"),
    ("Access-Control-Max-Age", "3600"),
]


def cors_middleware(app: WSGIApp) -> WSGIApp:
    """Wrap a WSGI app so every response carries CORS headers and OPTIONS gets 204."""

    def wrapped(environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        if environ.get("REQUEST_METHOD") == "OPTIONS":
            start_response("204 No Content", list(_CORS_HEADERS))
            return []

        def start_with_cors(status: str, headers: list, exc_info: Any = None) -> Any:
            present = {name.lower() for name, _ in headers}
            merged = list(headers) + [
                (name, value) for name, value in _CORS_HEADERS if name.lower() not in present
            ]
            if exc_info is None:
                return start_response(status, merged)
            return start_response(status, merged, exc_info)

        return app(environ, start_with_cors)

    return wrapped


def _split_addr(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


class Server:
    """WSGI application serving the wallet API, plus a blocking HTTP listener.

    Streaming endpoints are available only when an event source is given.
    """

    def __init__(
        self,
        addr: str,
        store: Store,
        scheduler: Scheduler,
        sse_source: EventSource | None = None,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
    ):
        self._addr = addr
        self._store = store
        self._scheduler = scheduler
        self._sse_source = sse_source
        self._keepalive_interval = keepalive_interval
        self._http: BaseWSGIServer | None = None

        rules = [
            Rule("/api/v1/wallets", methods=["POST"], endpoint=self._register_wallet),
            Rule("/api/v1/wallets/<address>", methods=["DELETE"], endpoint=self._unregister_wallet),
            Rule("/api/v1/wallets/<address>", methods=["GET"], endpoint=self._get_wallet),
            Rule("/api/v1/wallets", methods=["GET"], endpoint=self._list_wallets),
            Rule("/api/v1/transactions", methods=["GET"], endpoint=self._list_transactions),
            Rule("/health", methods=["GET"], endpoint=self._health),
        ]
        if sse_source is not None:
            rules += [
                Rule(
                    "/api/v1/stream/transactions/<address>",
                    methods=["GET"],
                    endpoint=self._stream_wallet,
                ),
                Rule("/api/v1/stream/transactions", methods=["GET"], endpoint=self._stream_all),
            ]
            logger.info("SSE streaming endpoints enabled")
        else:
            logger.warning("SSE source not configured, streaming endpoints disabled")

        self._url_map = Map(rules, strict_slashes=False, merge_slashes=False)
        self._app = cors_middleware(self._dispatch)

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        return self._app(environ, start_response)

    @property
    def bound_address(self) -> tuple[str, int] | None:
        """The (host, port) the listener is bound to while running."""
        http = self._http
        if http is None:
            return None
        host, port = http.server_address[:2]
        return str(host), int(port)

    def _dispatch(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        adapter = self._url_map.bind_to_environ(environ)
        try:
            endpoint, args = adapter.match()
        except NotFound:
            response = Response("404 page not found\n", status=404)
        except MethodNotAllowed as exc:
            response = Response("Method Not Allowed\n", status=405)
            response.headers["Allow"] = ", ".join(exc.valid_methods or [])
        except HTTPException as exc:
            return exc(environ, start_response)
        else:
            response = endpoint(Request(environ), **args)
        return response(environ, start_response)

    def _register_wallet(self, request: Request) -> Response:
        return register_wallet(self._store, self._scheduler, request)

    def _unregister_wallet(self, request: Request, address: str) -> Response:
        return unregister_wallet(self._store, self._scheduler, address)

    def _get_wallet(self, request: Request, address: str) -> Response:
        return get_wallet(self._store, address)

    def _list_wallets(self, request: Request) -> Response:
        return list_wallets(self._store)

    def _list_transactions(self, request: Request) -> Response:
        return list_transactions(self._store, request)

    def _health(self, request: Request) -> Response:
        return Response("OK", status=200)

    def _stream_all(self, request: Request) -> Response:
        return self._stream(request, "")

    def _stream_wallet(self, request: Request, address: str) -> Response:
        return self._stream(request, address)

    def _stream(self, request: Request, address: str) -> Response:
        assert self._sse_source is not None
        return Response(
            stream_transactions(self._sse_source, address, self._keepalive_interval),
            status=200,
            content_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    def start(self) -> None:
        """Listen on the configured address and serve until shutdown is called."""
        host, port = _split_addr(self._addr)
        http = make_server(host, port, self, threaded=True)
        self._http = http
        logger.info("starting HTTP server on %s", self._addr)
        try:
            http.serve_forever()
        finally:
            self._http = None
            http.server_close()

    def shutdown(self) -> None:
        """Disconnect streaming clients, then stop the listener."""
        logger.info("shutting down HTTP server")
        if self._sse_source is not None:
            self._sse_source.close()
        http = self._http
        if http is not None:
            http.shutdown()