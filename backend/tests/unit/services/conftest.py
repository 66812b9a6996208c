"""Test fixtures for relay tests.

Provides a fake printer API on an ephemeral port, a relay instance bound
to another ephemeral port, and httpx clients that play the slicer.
"""

import httpx
import pytest

from backend.app.services.relay.server import SnapmakerRelay
from backend.tests.unit.services.fake_printer_api import FakePrinterAPI


@pytest.fixture
async def printer_api():
    api = FakePrinterAPI("A350")
    await api.start()
    yield api
    await api.stop()


@pytest.fixture
async def second_printer_api():
    api = FakePrinterAPI("J1")
    await api.start()
    yield api
    await api.stop()


@pytest.fixture
async def relay(session_factory):
    relay = SnapmakerRelay(
        listen_port=0,
        bind_address="127.0.0.1",
        forward_timeout=2.0,
        session_factory=session_factory,
    )
    yield relay
    await relay.stop()


@pytest.fixture
async def relay_client_factory():
    """Build httpx clients pointed at a relay's current port (like Luban would)."""
    clients: list[httpx.AsyncClient] = []

    def _make(relay: SnapmakerRelay) -> httpx.AsyncClient:
        client = httpx.AsyncClient(base_url=f"http://127.0.0.1:{relay.port}", trust_env=False, timeout=10.0)
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()
