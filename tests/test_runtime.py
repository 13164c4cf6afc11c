"""Tests for runtime startup, supervision and idempotent shutdown."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet
from sqlmodel import Session

from cryptobot.database import engine
from cryptobot.engine.runtime import TradingRuntime, load_client
from cryptobot.errors import ConfigurationError
from cryptobot.models.credential import Credential
from cryptobot.services.encryption import encrypt_secret
from cryptobot.utils.constants import GATEWAY_CLOSED, GATEWAY_CONNECTED, GATEWAY_FAILED
from cryptobot.utils.logging import SystemLogHandler


class BlockingWebSocket:
    """Stays open until closed."""

    def __init__(self):
        self.sent = []
        self._closed = asyncio.Event()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._closed.wait()
        raise StopAsyncIteration


@pytest.fixture(autouse=True)
def _remove_system_log_handler():
    yield
    root = logging.getLogger()
    for handler in [h for h in root.handlers if isinstance(h, SystemLogHandler)]:
        root.removeHandler(handler)


def _client():
    client = AsyncMock()
    client.get_klines.return_value = []
    return client


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def test_load_client_requires_credential(db):
    with pytest.raises(ConfigurationError):
        load_client()


def test_load_client_decrypts_secret(db):
    with Session(engine) as session:
        session.add(Credential(api_key="abc", api_secret_encrypted=encrypt_secret("s3cret")))
        session.commit()

    client = load_client()

    assert client.api_key == "abc"
    assert client.api_secret == "s3cret"


def test_load_client_rejects_secret_from_another_key(db):
    foreign = Fernet(Fernet.generate_key()).encrypt(b"s3cret").decode()
    with Session(engine) as session:
        session.add(Credential(api_key="abc", api_secret_encrypted=foreign))
        session.commit()

    with pytest.raises(ConfigurationError, match="re-run add-credential"):
        load_client()


@pytest.mark.asyncio
async def test_start_without_credential_fails(db):
    runtime = TradingRuntime(schedule=False)
    with pytest.raises(ConfigurationError):
        await runtime.start()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_subscribes_active_pairs_and_shuts_down_once(pair):
    ws = BlockingWebSocket()
    client = _client()
    runtime = TradingRuntime(client=client, connect=AsyncMock(return_value=ws), schedule=False)

    await runtime.start()
    await asyncio.sleep(0.01)

    assert runtime.gateway.status == GATEWAY_CONNECTED
    assert ws.sent[0]["params"] == ["btcusdt@kline_1m", "btcusdt@trade", "btcusdt@ticker"]
    client.get_klines.assert_awaited_once()
    assert runtime.health()["running"]

    runtime.request_shutdown()
    runtime.request_shutdown()
    await asyncio.wait_for(runtime.wait_closed(), timeout=2)
    await runtime.shutdown()

    assert runtime.gateway.status == GATEWAY_CLOSED
    client.close.assert_awaited_once()
    assert not runtime.health()["running"]


@pytest.mark.asyncio
async def test_concurrent_shutdown_calls_share_one_sequence(pair):
    client = _client()
    runtime = TradingRuntime(client=client, connect=AsyncMock(return_value=BlockingWebSocket()), schedule=False)
    await runtime.start()

    await asyncio.wait_for(asyncio.gather(runtime.shutdown(), runtime.shutdown()), timeout=2)

    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_shutdown_drains_processor(pair):
    runtime = TradingRuntime(client=_client(), connect=AsyncMock(return_value=BlockingWebSocket()), schedule=False)
    await runtime.start()
    runtime.processor.drain = AsyncMock(return_value=0)

    await asyncio.wait_for(runtime.shutdown(), timeout=2)

    runtime.processor.drain.assert_awaited_once()


# ---------------------------------------------------------------------------
# Watchdog
# ---------------------------------------------------------------------------

def _stale_gateway(status):
    gateway = MagicMock()
    gateway.is_stale.return_value = True
    gateway.status = status
    gateway.seconds_since_last_message.return_value = 400.0
    gateway.run = AsyncMock()
    return gateway


@pytest.mark.asyncio
async def test_watchdog_forces_reconnect_on_stale_stream(caplog):
    runtime = TradingRuntime(client=_client(), schedule=False)
    runtime.gateway = _stale_gateway(GATEWAY_CONNECTED)

    with caplog.at_level(logging.WARNING, logger="cryptobot.engine.runtime"):
        await runtime.check_gateway_health()

    runtime.gateway.force_reconnect.assert_called_once()
    assert any(getattr(r, "event", None) == "GATEWAY_STALE" for r in caplog.records)


@pytest.mark.asyncio
async def test_watchdog_restarts_failed_gateway():
    runtime = TradingRuntime(client=_client(), schedule=False)
    runtime.gateway = _stale_gateway(GATEWAY_FAILED)
    runtime.gateway.reconnect_attempts = 10

    await runtime.check_gateway_health()
    await asyncio.sleep(0)

    assert runtime.gateway.reconnect_attempts == 0
    runtime.gateway.run.assert_awaited_once()
    runtime.gateway.force_reconnect.assert_not_called()


@pytest.mark.asyncio
async def test_watchdog_ignores_healthy_gateway():
    runtime = TradingRuntime(client=_client(), schedule=False)
    runtime.gateway = _stale_gateway(GATEWAY_CONNECTED)
    runtime.gateway.is_stale.return_value = False

    await runtime.check_gateway_health()

    runtime.gateway.force_reconnect.assert_not_called()
