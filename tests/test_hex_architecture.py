import json
import logging

import pytest
from pydantic import ValidationError

from http_caching_proxy.application.coordinator import ProxyCoordinator, ProxyRequest
from http_caching_proxy.application.ports import BackendResponse
from http_caching_proxy.application.request_context import request_id_var
from http_caching_proxy.domain.entry import CachedMetadata
from http_caching_proxy.domain.errors import BackendRequestError
from http_caching_proxy.infrastructure.config import ProxyOptions, get_env_int, load_options
from http_caching_proxy.infrastructure.logging import JsonFormatter, RequestIdFilter, configure_logging
from http_caching_proxy.infrastructure.memory_store import MemoryCacheStore
from http_caching_proxy.transport.http.proxy_server import NOT_RUNNING_URL, HttpCachingProxy


pytestmark = [pytest.mark.unit]


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class CountingForwarder:
    def __init__(self, error: Exception | None = None):
        self.calls: list[tuple[str, str, tuple, bytes]] = []
        self.error = error
        self.closed = False

    async def forward(self, method, url, headers, body):
        self.calls.append((method, url, headers, body))
        if self.error is not None:
            raise self.error
        return BackendResponse(
            status=201,
            headers=(("X-Counter", str(len(self.calls))),),
            body=f"call {len(self.calls)}".encode(),
        )

    async def close(self):
        self.closed = True


class RecordingObserver:
    def __init__(self):
        self.calls: list[tuple[ProxyRequest, BaseException]] = []

    def __call__(self, request, error):
        self.calls.append((request, error))


def _request(method="GET", url="http://backend.test/counter", body=b""):
    return ProxyRequest(method=method, url=url, headers=(("X-Client", "test"),), body=body)


def _coordinator(store=None, forwarder=None, *, ttl_ms=1_000, clock=None, observer=None):
    return ProxyCoordinator(
        store if store is not None else MemoryCacheStore(),
        forwarder if forwarder is not None else CountingForwarder(),
        ttl_ms=ttl_ms,
        on_error=observer if observer is not None else RecordingObserver(),
        clock=clock or FakeClock(),
    )


@pytest.mark.asyncio
async def test_miss_forwards_and_stores_then_hit_serves_cache():
    store = MemoryCacheStore()
    forwarder = CountingForwarder()
    clock = FakeClock()
    coordinator = _coordinator(store, forwarder, clock=clock)

    first = await coordinator.handle(_request())
    assert first.outcome == "miss"
    assert first.status == 201
    assert first.body == b"call 1"

    entry = store.get("GET http://backend.test/counter")
    assert entry.body == b"call 1"
    assert entry.metadata.created_at == clock.now

    clock.advance(999)
    second = await coordinator.handle(_request())
    assert second.outcome == "hit"
    assert second.body == b"call 1"
    assert second.headers == (("X-Counter", "1"),)
    assert len(forwarder.calls) == 1


@pytest.mark.asyncio
async def test_stale_entry_is_refreshed():
    store = MemoryCacheStore()
    forwarder = CountingForwarder()
    clock = FakeClock()
    coordinator = _coordinator(store, forwarder, ttl_ms=1, clock=clock)

    assert (await coordinator.handle(_request())).body == b"call 1"

    clock.advance(1)
    refreshed = await coordinator.handle(_request())
    assert refreshed.outcome == "stale"
    assert refreshed.body == b"call 2"
    assert store.get("GET http://backend.test/counter").body == b"call 2"
    assert store.get("GET http://backend.test/counter").metadata.created_at == clock.now


@pytest.mark.asyncio
async def test_forwarder_receives_client_method_headers_and_body():
    forwarder = CountingForwarder()
    coordinator = _coordinator(forwarder=forwarder)

    await coordinator.handle(_request(method="POST", body=b"a text body"))

    assert forwarder.calls == [
        ("POST", "http://backend.test/counter", (("X-Client", "test"),), b"a text body")
    ]


@pytest.mark.asyncio
async def test_requests_differing_only_in_body_share_an_entry():
    forwarder = CountingForwarder()
    coordinator = _coordinator(forwarder=forwarder)

    await coordinator.handle(_request(method="POST", body=b"one"))
    second = await coordinator.handle(_request(method="POST", body=b"two"))

    assert second.outcome == "hit"
    assert len(forwarder.calls) == 1


@pytest.mark.asyncio
async def test_cache_read_fault_is_logged_and_treated_as_miss(caplog):
    class BrokenReadStore(MemoryCacheStore):
        def get(self, key):
            raise OSError("disk on fire")

    forwarder = CountingForwarder()
    observer = RecordingObserver()
    coordinator = _coordinator(BrokenReadStore(), forwarder, observer=observer)

    with caplog.at_level(logging.WARNING, logger="http_caching_proxy.application.coordinator"):
        response = await coordinator.handle(_request())

    assert response.status == 201
    assert response.outcome == "miss"
    assert len(forwarder.calls) == 1
    assert observer.calls == []
    assert "Cannot load cached entry" in caplog.text


@pytest.mark.asyncio
async def test_backend_failure_maps_to_502_and_notifies_observer():
    store = MemoryCacheStore()
    error = BackendRequestError("connection refused")
    observer = RecordingObserver()
    coordinator = _coordinator(store, CountingForwarder(error=error), observer=observer)
    request = _request()

    response = await coordinator.handle(request)

    assert response.status == 502
    assert response.body == b""
    assert response.outcome == "error"
    assert observer.calls == [(request, error)]
    assert len(store) == 0


@pytest.mark.asyncio
async def test_store_write_failure_maps_to_500():
    class BrokenWriteStore(MemoryCacheStore):
        def put(self, key, body, metadata):
            raise PermissionError("read-only cache")

    observer = RecordingObserver()
    coordinator = _coordinator(BrokenWriteStore(), observer=observer)

    response = await coordinator.handle(_request())

    assert response.status == 500
    assert len(observer.calls) == 1
    assert isinstance(observer.calls[0][1], PermissionError)


@pytest.mark.asyncio
async def test_unexpected_forwarder_error_maps_to_500():
    observer = RecordingObserver()
    coordinator = _coordinator(forwarder=CountingForwarder(error=RuntimeError("boom")), observer=observer)

    response = await coordinator.handle(_request())

    assert response.status == 500
    assert isinstance(observer.calls[0][1], RuntimeError)


def test_proxy_options_defaults_and_validation():
    options = ProxyOptions(cache_path="/tmp/cache")
    assert options.ttl == 86_400_000
    assert options.port == 0
    assert options.host == "127.0.0.1"

    with pytest.raises(ValidationError, match="cache_path"):
        ProxyOptions()  # type: ignore[call-arg]
    with pytest.raises(ValidationError, match="cache_path"):
        ProxyOptions(cache_path="")
    with pytest.raises(ValidationError):
        ProxyOptions(cache_path="/tmp/cache", port=70000)
    with pytest.raises(ValidationError):
        ProxyOptions(cache_path="/tmp/cache", ttl=-1)

    with pytest.raises(ValidationError):
        options.ttl = 5  # type: ignore[misc]


def test_load_options_reads_environment(monkeypatch):
    monkeypatch.setenv("PROXY_CACHE_PATH", "/tmp/from-env")
    monkeypatch.setenv("PROXY_TTL_MS", "250")
    monkeypatch.setenv("PROXY_PORT", "8123")

    options = load_options()
    assert options.cache_path == "/tmp/from-env"
    assert options.ttl == 250
    assert options.port == 8123

    overridden = load_options(cache_path="/tmp/explicit", port=None, ttl=10)
    assert overridden.cache_path == "/tmp/explicit"
    assert overridden.port == 8123
    assert overridden.ttl == 10


def test_load_options_rejects_bad_environment(monkeypatch):
    monkeypatch.delenv("PROXY_CACHE_PATH", raising=False)
    with pytest.raises(ValueError, match="PROXY_CACHE_PATH must be set"):
        load_options()

    monkeypatch.setenv("PROXY_CACHE_PATH", "/tmp/cache")
    monkeypatch.setenv("PROXY_TTL_MS", "soon")
    with pytest.raises(ValueError, match="PROXY_TTL_MS must be an integer"):
        load_options()


def test_get_env_int_bounds(monkeypatch):
    monkeypatch.setenv("PROXY_PORT", "-1")
    with pytest.raises(ValueError, match="PROXY_PORT must be >= 0"):
        get_env_int("PROXY_PORT", 0, min_value=0)
    monkeypatch.delenv("PROXY_PORT")
    assert get_env_int("PROXY_PORT", 42) == 42


def test_request_id_filter_and_json_formatter_include_request_id():
    token = request_id_var.set("rid-123")
    try:
        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="hello",
            args=(),
            exc_info=None,
        )

        filt = RequestIdFilter()
        assert filt.filter(record) is True
        assert record.request_id == "rid-123"

        payload = json.loads(JsonFormatter().format(record))
        assert payload["request_id"] == "rid-123"
        assert payload["message"] == "hello"
    finally:
        request_id_var.reset(token)


def test_configure_logging_supports_text_and_json_formatters():
    configure_logging("INFO", "text")
    root = logging.getLogger()
    assert root.handlers
    assert not isinstance(root.handlers[0].formatter, JsonFormatter)

    configure_logging("INFO", "json")
    root = logging.getLogger()
    assert isinstance(root.handlers[0].formatter, JsonFormatter)


@pytest.mark.asyncio
async def test_proxy_url_sentinel_and_stop_when_not_running(tmp_path):
    forwarder = CountingForwarder()
    proxy = HttpCachingProxy(ProxyOptions(cache_path=str(tmp_path)), forwarder=forwarder)

    assert proxy.url == NOT_RUNNING_URL
    assert "not-running" in proxy.url
    assert proxy.port == 0

    await proxy.stop()
    assert proxy.running is False
    assert forwarder.closed is False


@pytest.mark.asyncio
async def test_failing_error_hook_keeps_502_mapping(caplog):
    def exploding_hook(request, error):
        raise RuntimeError("hook is broken")

    coordinator = _coordinator(
        forwarder=CountingForwarder(error=BackendRequestError("connection refused")),
        observer=exploding_hook,
    )

    with caplog.at_level(logging.ERROR, logger="http_caching_proxy.application.coordinator"):
        response = await coordinator.handle(_request())

    assert response.status == 502
    assert response.outcome == "error"
    assert "Error hook failed for GET http://backend.test/counter" in caplog.text


@pytest.mark.asyncio
async def test_error_hook_runs_before_exchange_is_logged(caplog):
    events: list[str] = []

    class OrderHandler(logging.Handler):
        def emit(self, record):
            events.append(f"logged {record.status}")

    def hook(request, error):
        events.append("hook")

    handler = OrderHandler()
    coordinator_logger = logging.getLogger("http_caching_proxy.application.coordinator")
    coordinator_logger.addHandler(handler)
    try:
        with caplog.at_level(logging.DEBUG, logger="http_caching_proxy.application.coordinator"):
            coordinator = _coordinator(
                forwarder=CountingForwarder(error=BackendRequestError("refused")),
                observer=hook,
            )
            await coordinator.handle(_request())
    finally:
        coordinator_logger.removeHandler(handler)

    assert events == ["hook", "logged 502"]


@pytest.mark.asyncio
async def test_exchange_fields_reach_json_log(caplog):
    coordinator = _coordinator()

    with caplog.at_level(logging.DEBUG, logger="http_caching_proxy.application.coordinator"):
        await coordinator.handle(_request())

    record = next(r for r in caplog.records if hasattr(r, "outcome"))
    assert record.method == "GET"
    assert record.url == "http://backend.test/counter"
    assert record.status == 201
    assert record.outcome == "miss"

    payload = json.loads(JsonFormatter().format(record))
    assert payload["method"] == "GET"
    assert payload["url"] == "http://backend.test/counter"
    assert payload["status"] == 201
    assert payload["outcome"] == "miss"
    assert payload["duration_ms"] >= 0


def test_json_formatter_omits_exchange_fields_on_plain_records():
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "plain", (), None)

    payload = json.loads(JsonFormatter().format(record))

    assert "outcome" not in payload
    assert "status" not in payload
    assert payload["message"] == "plain"
