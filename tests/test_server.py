import http.client
import json
import threading
import time
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from werkzeug.test import Client

from forohtoo.events import TransactionEvent
from forohtoo.handlers import Scheduler
from forohtoo.queries import create_schema
from forohtoo.server import Server, cors_middleware
from forohtoo.sse import EventSource
from forohtoo.store import Store

ADDRESS = "TestWa11et11111111111111111111111111111"
T = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeScheduler(Scheduler):
    def __init__(self):
        self.schedules = {}

    def create_wallet_schedule(self, address, interval):
        self.schedules[address] = interval

    def delete_wallet_schedule(self, address):
        self.schedules.pop(address, None)


@pytest.fixture
def store():
    engine = create_engine(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    create_schema(engine)
    with Store(engine) as s:
        yield s


@pytest.fixture
def scheduler():
    return FakeScheduler()


def test_health_has_cors_headers(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_data() == b"OK"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["Access-Control-Max-Age"] == "3600"


def test_options_preflight(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    resp = client.open("/api/v1/wallets", method="OPTIONS")
    assert resp.status_code == 204
    assert resp.headers["Access-Control-Allow-Methods"] == "GET, POST, DELETE, OPTIONS"
    assert resp.headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization"


def test_cors_middleware_keeps_handler_headers():
    def app(environ, start_response):
        start_response("200 OK", [("Access-Control-Allow-Origin", "https://example.com")])
        return [b"x"]

    resp = Client(cors_middleware(app)).get("/")
    assert resp.headers["Access-Control-Allow-Origin"] == "https://example.com"
    assert resp.headers["Access-Control-Max-Age"] == "3600"


def test_wallet_lifecycle(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    resp = client.post("/api/v1/wallets", json={"address": ADDRESS, "poll_interval": "30s"})
    assert resp.status_code == 201
    assert ADDRESS in scheduler.schedules

    resp = client.get(f"/api/v1/wallets/{ADDRESS}")
    assert resp.status_code == 200
    body = json.loads(resp.get_data())
    assert body["address"] == ADDRESS
    assert body["poll_interval"] == "30s"

    listed = json.loads(client.get("/api/v1/wallets").get_data())
    assert [w["address"] for w in listed["wallets"]] == [ADDRESS]

    resp = client.delete(f"/api/v1/wallets/{ADDRESS}")
    assert resp.status_code == 204
    assert ADDRESS not in scheduler.schedules
    assert client.get(f"/api/v1/wallets/{ADDRESS}").status_code == 404


def test_list_transactions_requires_wallet(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    resp = client.get("/api/v1/transactions")
    assert resp.status_code == 400
    assert json.loads(resp.get_data()) == {
        "error": "wallet_address query parameter is required"
    }


def test_unknown_path_is_404(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    resp = client.get("/nope")
    assert resp.status_code == 404


def test_wrong_method_is_405(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    resp = client.put("/api/v1/wallets")
    assert resp.status_code == 405
    assert "POST" in resp.headers["Allow"]


def test_stream_routes_absent_without_source(store, scheduler):
    client = Client(Server(":8080", store, scheduler))
    assert client.get("/api/v1/stream/transactions").status_code == 404


def test_stream_route_delivers_events(store, scheduler):
    source = EventSource()
    client = Client(Server(":8080", store, scheduler, source, keepalive_interval=5))
    resp = client.get("/api/v1/stream/transactions/WalletA", buffered=False)
    try:
        assert resp.status_code == 200
        assert resp.headers["Content-Type"] == "text/event-stream"
        assert resp.headers["Cache-Control"] == "no-cache"
        chunks = iter(resp.response)
        assert next(chunks) == b'event: connected\ndata: {"wallet":"WalletA"}\n\n'
        event = TransactionEvent(
            signature="sig1",
            slot=1,
            wallet_address="WalletA",
            amount=5,
            timestamp=T,
            block_time=T,
            confirmation_status="finalized",
            published_at=T,
        )
        source.publish_transaction(event)
        chunk = next(chunks).decode()
        assert chunk == f"event: transaction\ndata: {event.to_json()}\n\n"
    finally:
        resp.close()


def test_start_and_shutdown(store, scheduler):
    source = EventSource()
    server = Server("127.0.0.1:0", store, scheduler, source)
    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while server.bound_address is None and time.monotonic() < deadline:
        time.sleep(0.01)
    host, port = server.bound_address
    conn = http.client.HTTPConnection(host, port, timeout=5)
    conn.request("GET", "/health")
    response = conn.getresponse()
    assert response.status == 200
    assert response.read() == b"OK"
    conn.close()

    server.shutdown()
    thread.join(5)
    assert not thread.is_alive()
    assert source.closed is True
    assert server.bound_address is None