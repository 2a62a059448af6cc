import asyncio
import datetime as dt
import logging
import signal
from types import SimpleNamespace

import pytest

from email_worker import worker as worker_module
from email_worker.config import Settings
from email_worker.worker import Worker
from fakes import BlockingSender, RecordingSender, order_body


class DummyQueue:
    def __init__(self):
        self.callback = None
        self.consuming = asyncio.Event()
        self.cancelled = []

    async def consume(self, callback, no_ack=True):
        assert no_ack is False
        self.callback = callback
        self.consuming.set()
        return "ctag-1"

    async def cancel(self, consumer_tag):
        self.cancelled.append(consumer_tag)


class DummyChannel:
    def __init__(self):
        self.is_closed = False

    async def close(self):
        self.is_closed = True


class DummyConnection:
    def __init__(self, channel):
        self._channel = channel
        self.closed = False

    async def channel(self):
        return self._channel

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True
        return False


class DummyMessage:
    def __init__(self, channel, delivery_tag, body, user_id="ops0"):
        self.channel = channel
        self.delivery_tag = delivery_tag
        self.body = body
        self.user_id = user_id
        self.message_id = f"m{delivery_tag}"
        self.timestamp = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
        self.headers = {}
        self.redelivered = False
        self.calls = []

    async def ack(self, multiple=False):
        self.calls.append(("ack", multiple))

    async def nack(self, multiple=False, requeue=True):
        self.calls.append(("nack", multiple, requeue))


class SlowAckMessage(DummyMessage):
    """Ack takes a moment and records whether the connection was still open."""

    def __init__(self, connection, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.connection = connection
        self.ack_started = asyncio.Event()
        self.connection_open_at_ack = None

    async def ack(self, multiple=False):
        self.ack_started.set()
        await asyncio.sleep(0.05)
        self.connection_open_at_ack = not self.connection.closed
        await super().ack(multiple)


@pytest.fixture
def broker(monkeypatch):
    channel = DummyChannel()
    connection = DummyConnection(channel)
    queue = DummyQueue()

    async def fake_connect(settings):
        return connection

    async def fake_bind_queue(ch, name):
        assert ch is channel
        assert name == "ordering.emailworker"
        return queue, 2

    monkeypatch.setattr(worker_module, "connect", fake_connect)
    monkeypatch.setattr(worker_module, "bind_queue", fake_bind_queue)
    monkeypatch.setattr(worker_module, "start_tracing", lambda *a, **k: None)
    return SimpleNamespace(channel=channel, connection=connection, queue=queue)


def _settings() -> Settings:
    return Settings(metrics_enabled=False, send_delay_min_s=0.0, send_delay_max_s=0.0)


@pytest.mark.asyncio
async def test_worker_consumes_and_shuts_down(broker, caplog):
    caplog.set_level(logging.INFO, logger="email_worker")
    sender = RecordingSender()
    w = Worker(_settings(), sender=sender)

    run_task = asyncio.create_task(w.run())
    await asyncio.wait_for(broker.queue.consuming.wait(), timeout=1)

    good = DummyMessage(broker.channel, 1, order_body(42))
    bad = DummyMessage(broker.channel, 2, b"not json")
    await broker.queue.callback(good)
    await broker.queue.callback(bad)
    await asyncio.wait_for(w.inbox.join(), timeout=1)

    w.stop()
    await asyncio.wait_for(run_task, timeout=1)

    assert good.calls == [("ack", False)]
    assert bad.calls == [("nack", False, False)]
    assert broker.queue.cancelled == ["ctag-1"]
    assert broker.channel.is_closed is True
    assert broker.connection.closed is True

    messages = [r.getMessage() for r in caplog.records]
    assert "Queue [ordering.emailworker] is waiting for messages." in messages
    assert "\tDetected 2 message(s)." in messages
    assert messages[-1] == "RabbitMQ connection is closed."


@pytest.mark.asyncio
async def test_stop_during_send_leaves_message_unsettled(broker):
    sender = BlockingSender()
    w = Worker(_settings(), sender=sender)

    run_task = asyncio.create_task(w.run())
    await asyncio.wait_for(broker.queue.consuming.wait(), timeout=1)

    msg = DummyMessage(broker.channel, 1, order_body(42))
    await broker.queue.callback(msg)
    await asyncio.wait_for(sender.started.wait(), timeout=1)

    w.stop()
    await asyncio.wait_for(run_task, timeout=1)

    assert msg.calls == []
    assert broker.connection.closed is True


@pytest.mark.asyncio
async def test_startup_failure_propagates(monkeypatch):
    async def failing_connect(settings):
        raise ConnectionRefusedError("broker down")

    monkeypatch.setattr(worker_module, "connect", failing_connect)
    monkeypatch.setattr(worker_module, "start_tracing", lambda *a, **k: None)

    with pytest.raises(ConnectionRefusedError):
        await Worker(_settings(), sender=RecordingSender()).run()


def test_worker_builds_simulated_sender_from_settings():
    w = Worker(Settings(metrics_enabled=False, send_delay_min_s=0.5, send_delay_max_s=0.75))
    assert (w.sender.min_delay_s, w.sender.max_delay_s) == (0.5, 0.75)
    assert w.consumer.authorized_sender == "ops0"
    assert w.inbox.maxsize == 1


@pytest.mark.asyncio
async def test_stop_during_ack_lets_the_ack_complete(broker, caplog):
    caplog.set_level(logging.INFO, logger="email_worker")
    w = Worker(_settings(), sender=RecordingSender())

    run_task = asyncio.create_task(w.run())
    await asyncio.wait_for(broker.queue.consuming.wait(), timeout=1)

    msg = SlowAckMessage(broker.connection, broker.channel, 1, order_body(42))
    await broker.queue.callback(msg)
    await asyncio.wait_for(msg.ack_started.wait(), timeout=1)

    w.stop()
    await asyncio.wait_for(run_task, timeout=1)

    assert msg.calls == [("ack", False)]
    assert msg.connection_open_at_ack is True
    assert broker.connection.closed is True
    messages = [r.getMessage() for r in caplog.records]
    assert "Stopped while acknowledging order #42; delivery 1 settlement attempt finished first." in messages
    assert messages[-1] == "RabbitMQ connection is closed."


@pytest.mark.asyncio
async def test_main_installs_signal_handlers(monkeypatch):
    ran = []

    class DummyWorker:
        def __init__(self, settings=None):
            self.settings = settings

        def stop(self):
            pass

        async def run(self):
            ran.append(self.settings)

    installed = {}
    loop = asyncio.get_running_loop()
    monkeypatch.setattr(loop, "add_signal_handler", lambda sig, cb: installed.__setitem__(sig, cb))
    monkeypatch.setattr(worker_module, "Worker", DummyWorker)

    settings = _settings()
    await worker_module.main(settings)

    assert ran == [settings]
    assert set(installed) == {signal.SIGINT, signal.SIGTERM}
    assert all(getattr(cb, "__name__", None) == "stop" for cb in installed.values())


def test_cli_configures_logging_and_runs_main(monkeypatch, tmp_path):
    calls = {}

    async def fake_main(settings=None):
        calls["settings"] = settings

    def fake_setup_logging(level, log_file=None):
        calls["logging"] = (level, log_file)

    monkeypatch.setattr(worker_module, "main", fake_main)
    monkeypatch.setattr(worker_module, "setup_logging", fake_setup_logging)

    log_file = str(tmp_path / "worker.log")
    worker_module.cli(["--log-level", "DEBUG", "--log-file", log_file])

    assert calls["logging"] == ("DEBUG", log_file)
    assert isinstance(calls["settings"], Settings)


def test_cli_defaults_log_level_from_environment(monkeypatch):
    calls = {}

    async def fake_main(settings=None):
        calls["settings"] = settings

    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setattr(worker_module, "main", fake_main)
    monkeypatch.setattr(worker_module, "setup_logging", lambda level, log_file=None: calls.update(level=level))

    worker_module.cli([])

    assert calls["level"] == "WARNING"
    assert calls["settings"].log_level == "WARNING"
