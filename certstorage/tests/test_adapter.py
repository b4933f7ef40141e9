"""
Integration Tests: CertStorage

Runs the storage facade against the in-memory object store.

Tests:
    - Construction and the permission probe
    - store/load/delete/exists/list/stat semantics and error kinds
    - lock/unlock through the lock-handle cache
    - Operation metrics
"""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from certstorage.core.config import CertStorageConfig, LockConfig
from certstorage.core.errors import CertStorageError, ErrorCode, LockError, StorageError
from certstorage.core.types import Err, Ok
from certstorage.observability.metrics import MetricsCollector
from certstorage.storage import adapter as adapter_module
from certstorage.storage.adapter import CertStorage, KeyInfo, parse_key_info
from certstorage.storage.client import BytesReader, ObjectHeaders
from certstorage.storage.memory import InMemoryObjectClient


FAST = LockConfig(
    ttl_seconds=0.5,
    refresh_interval_seconds=0.1,
    backoff_base_ms=5,
    backoff_max_ms=20,
)


def run(coro):
    return asyncio.run(coro)


async def open_storage(client=None, path="certs/p", metrics=None):
    client = client or InMemoryObjectClient("certs")
    result = await CertStorage.open(
        None,
        path,
        client=client,
        lock_config=FAST,
        metrics=metrics or MetricsCollector(),
    )
    return result.unwrap()


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FailingCloseReader(BytesReader):
    async def close(self):
        await super().close()
        return Err(StorageError.backend("close", "certs", "k", cause=OSError("reset")))


class FailingCloseClient(InMemoryObjectClient):
    """Once armed, download readers fail to close; reads optionally fail too."""

    def __init__(self, *buckets):
        super().__init__(*buckets)
        self.readers = []
        self.armed = False
        self.fail_read = False

    async def download(self, bucket, key):
        result = await super().download(bucket, key)
        if not self.armed or result.is_err():
            return result
        inner = result.unwrap()
        data = (await inner.read()).unwrap()
        await inner.close()
        reader = FailingCloseReader(data, bucket, key)
        if self.fail_read:
            await BytesReader.close(reader)
        self.readers.append(reader)
        return Ok(reader)


class UnreadableClient(InMemoryObjectClient):
    """Accepts writes but denies reads."""

    async def download(self, bucket, key):
        self._record("download", bucket, key)
        return Err(StorageError.backend("download", bucket, key, cause=PermissionError("AccessDenied")))


class UnlistableClient(InMemoryObjectClient):
    """Accepts writes and reads but denies listing."""

    async def list(self, bucket, prefix, recursive):
        self._record("list", bucket, prefix)
        return Err(StorageError.backend("list", bucket, prefix, cause=PermissionError("AccessDenied")))


class FixedHeadersClient(InMemoryObjectClient):
    def __init__(self, headers):
        super().__init__("certs")
        self.headers = headers

    async def stat(self, bucket, key):
        return Ok(ObjectHeaders(self.headers))


class StubMutex:
    """Process-local mutex recording the order callers hold it."""

    def __init__(self, name, log):
        self.name = name
        self._lock = asyncio.Lock()
        self._log = log

    async def acquire(self):
        await self._lock.acquire()
        self._log.append(("acquire", self.name))
        return Ok(None)

    async def release(self):
        self._log.append(("release", self.name))
        self._lock.release()
        return Ok(None)


class StubbedStorage(CertStorage):
    """CertStorage whose mutexes are StubMutex instances sharing one event log."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.log = []
        self.created = 0

    def _new_mutex(self, name):
        self.created += 1
        return StubMutex(name, self.log)


# =============================================================================
# CONSTRUCTION
# =============================================================================

class TestOpen:
    """CertStorage.open / from_config."""

    def test_open_normalizes_prefix(self):
        storage = run(open_storage(path="certs/gateway//"))
        assert storage.bucket == "certs"
        assert storage.prefix == "gateway/"

    def test_probe_runs_once_and_cleans_up(self):
        client = InMemoryObjectClient("certs")
        run(open_storage(client))
        ops = [op for op, _, _ in client.calls]
        assert ops == ["upload", "download", "list", "delete"]
        probe_key = client.calls[0][2]
        assert probe_key.startswith("p/.certstorage-permission-probe-")
        assert client.objects("certs") == {}

    def test_failed_probe_fails_construction(self):
        client = InMemoryObjectClient("certs", read_only=True)
        result = run(CertStorage.open(None, "certs/p", client=client))
        assert result.is_err()
        assert result.error.code is ErrorCode.INITIALIZATION
        assert result.error.cause.code is ErrorCode.BACKEND
        # Nothing after the failing probe write
        assert [op for op, _, _ in client.calls] == ["upload"]

    def test_unreadable_bucket_is_left_empty(self):
        client = UnreadableClient("certs")
        result = run(CertStorage.open(None, "certs/p", client=client))
        assert result.error.code is ErrorCode.INITIALIZATION
        assert result.error.cause.context["operation"] == "download"
        assert [op for op, _, _ in client.calls] == ["upload", "download", "delete"]
        assert client.objects("certs") == {}

    def test_failed_cleanup_is_attached_to_permission_error(self):
        class UndeletableClient(UnreadableClient):
            async def delete(self, bucket, key):
                return Err(StorageError.backend("delete", bucket, key))

        result = run(CertStorage.open(None, "certs/p", client=UndeletableClient("certs")))
        cause = result.error.cause
        assert cause.context["operation"] == "download"
        assert "cleanup_error" in cause.context

    def test_unlistable_bucket_is_left_empty(self):
        client = UnlistableClient("certs")
        result = run(CertStorage.open(None, "certs/p", client=client))
        assert result.error.code is ErrorCode.INITIALIZATION
        assert client.objects("certs") == {}

    def test_missing_bucket_fails_construction(self):
        client = InMemoryObjectClient()
        result = run(CertStorage.open(None, "certs/p", client=client))
        assert result.error.code is ErrorCode.INITIALIZATION
        assert [op for op, _, _ in client.calls] == ["upload"]

    def test_path_without_bucket(self):
        result = run(CertStorage.open(None, "/p", client=InMemoryObjectClient("certs")))
        assert result.error.code is ErrorCode.INITIALIZATION

    def test_bad_credentials(self):
        result = run(CertStorage.open(b"{not json", "certs/p"))
        assert result.error.code is ErrorCode.INITIALIZATION
        assert result.error.cause.code is ErrorCode.CONFIGURATION

    def test_no_credentials(self):
        result = run(CertStorage.open(None, "certs/p"))
        assert result.error.code is ErrorCode.INITIALIZATION

    def test_from_config(self, tmp_path, monkeypatch):
        creds_file = tmp_path / "creds.json"
        creds_file.write_text(json.dumps({"access_key_id": "a", "secret_access_key": "b"}))
        seen = {}
        client = InMemoryObjectClient("certs")

        async def fake_connect(credentials, config=None):
            seen["credentials"] = credentials
            seen["config"] = config
            return Ok(client)

        monkeypatch.setattr(adapter_module.S3ObjectClient, "connect", fake_connect)
        config = CertStorageConfig(path="certs/gw", credentials_file=creds_file)

        async def scenario():
            storage = (await CertStorage.from_config(config, MetricsCollector())).unwrap()
            await storage.store("k", b"v")
            await storage.close()

        run(scenario())
        assert seen["credentials"].access_key_id == "a"
        assert seen["config"] is config.s3
        assert client.objects("certs") == {"gw/k": b"v"}

    def test_from_config_unreadable_credentials(self, tmp_path):
        config = CertStorageConfig(path="certs", credentials_file=tmp_path / "absent")
        result = run(CertStorage.from_config(config))
        assert result.error.code is ErrorCode.CONFIGURATION


# =============================================================================
# DATA OPERATIONS
# =============================================================================

class TestDataOperations:
    """store/load/delete/exists/stat."""

    @pytest.mark.parametrize("payload", [b"", b"-----BEGIN CERTIFICATE-----\n", bytes(range(256)) * 64])
    def test_round_trip(self, payload):
        client = InMemoryObjectClient("certs")

        async def scenario():
            storage = await open_storage(client)
            assert (await storage.store("certificates/example.com.crt", payload)).is_ok()
            return await storage.load("certificates/example.com.crt")

        assert run(scenario()).unwrap() == payload
        assert "p/certificates/example.com.crt" in client.objects("certs")
        assert client.unclosed_readers == 0

    def test_missing_key_is_not_found(self):
        async def scenario():
            storage = await open_storage()
            results = [
                await storage.load("absent"),
                await storage.delete("absent"),
                await storage.stat("absent"),
            ]
            return results, await storage.exists("absent")

        results, exists = run(scenario())
        for result in results:
            assert result.error.code is ErrorCode.NOT_FOUND
            assert isinstance(result.error, StorageError)
        assert exists is False

    def test_stored_key_exists_and_stats(self):
        before = datetime.now(timezone.utc).replace(microsecond=0)

        async def scenario():
            storage = await open_storage()
            await storage.store("a.crt", b"12345")
            return await storage.exists("a.crt"), (await storage.stat("a.crt")).unwrap()

        exists, info = run(scenario())
        assert exists is True
        assert isinstance(info, KeyInfo)
        assert info.key == "p/a.crt"
        assert info.size == 5
        assert info.is_terminal is True
        assert info.modified.tzinfo is timezone.utc
        assert info.modified >= before

    def test_delete(self):
        async def scenario():
            storage = await open_storage()
            await storage.store("a", b"x")
            assert (await storage.delete("a")).is_ok()
            return await storage.exists("a")

        assert run(scenario()) is False

    def test_exists_swallows_backend_errors(self):
        async def scenario():
            storage = await open_storage(InMemoryObjectClient("certs"))
            storage._client._buckets.clear()
            return await storage.exists("a")

        assert run(scenario()) is False

    def test_load_close_failure_is_returned(self):
        client = FailingCloseClient("certs")

        async def scenario():
            storage = await open_storage(client)
            await storage.store("a", b"x")
            client.armed = True
            return await storage.load("a")

        result = run(scenario())
        assert result.error.code is ErrorCode.BACKEND
        assert client.readers[0].closed

    def test_load_close_failure_is_attached_to_read_error(self):
        client = FailingCloseClient("certs")

        async def scenario():
            storage = await open_storage(client)
            await storage.store("a", b"x")
            client.armed = True
            client.fail_read = True
            return await storage.load("a")

        result = run(scenario())
        assert result.error.code is ErrorCode.BACKEND
        assert "reset" in result.error.context["close_error"]


class TestStatMetadata:
    """Header parsing for stat."""

    def _stat(self, headers):
        async def scenario():
            storage = await open_storage()
            storage._client = FixedHeadersClient(headers)
            return await storage.stat("a")

        return run(scenario())

    def test_parses_rfc1123(self):
        info = self._stat({
            "Last-Modified": "Tue, 15 Nov 1994 08:12:31 GMT",
            "Content-Length": "3495",
        }).unwrap()
        assert info.modified == datetime(1994, 11, 15, 8, 12, 31, tzinfo=timezone.utc)
        assert info.size == 3495

    @pytest.mark.parametrize("value", [
        "1994-11-15T08:12:31Z",
        "",
        "Tue, 15 Nov 1994",
        "15 Nov 1994 08:12:31 GMT",
        "Tue, 15 Nov 1994 08:12:31 +0000",
        "Tue, 32 Nov 1994 08:12:31 GMT",
        "Di, 15 Nov 1994 08:12:31 GMT",
    ])
    def test_malformed_last_modified(self, value):
        result = self._stat({"last-modified": value, "content-length": "1"})
        assert result.error.code is ErrorCode.METADATA_MALFORMED
        assert result.error.context["header"] == "last-modified"

    @pytest.mark.parametrize("value", ["", "12.5", "0x10", " 7", "1_000"])
    def test_malformed_content_length(self, value):
        result = self._stat({
            "last-modified": "Tue, 15 Nov 1994 08:12:31 GMT",
            "content-length": value,
        })
        assert result.error.code is ErrorCode.METADATA_MALFORMED
        assert result.error.context["header"] == "content-length"

    def test_missing_headers(self):
        assert self._stat({}).error.code is ErrorCode.METADATA_MALFORMED

    def test_parse_key_info_directly(self):
        headers = ObjectHeaders({
            "last-modified": "Sun, 06 Nov 1994 08:49:37 GMT",
            "content-length": "0",
        })
        assert parse_key_info("k", headers).unwrap().size == 0


class TestList:
    """list(prefix, recursive)."""

    def _scenario(self, prefix, recursive):
        async def scenario():
            storage = await open_storage()
            for key in ("a/1", "a/2", "a/b/3", "c"):
                await storage.store(key, b"")
            return await storage.list(prefix, recursive)

        return run(scenario()).unwrap()

    def test_non_recursive_returns_direct_children(self):
        assert self._scenario("a/", False) == ["p/a/1", "p/a/2", "p/a/b/"]

    def test_recursive_returns_all_descendants(self):
        assert self._scenario("a/", True) == ["p/a/1", "p/a/2", "p/a/b/3"]

    def test_root(self):
        assert self._scenario("", False) == ["p/a/", "p/c"]

    def test_no_match(self):
        assert self._scenario("zzz", True) == []


# =============================================================================
# LOCKING
# =============================================================================

class TestLocking:
    """lock/unlock through the lock-handle cache."""

    def test_sequential_cycles_reuse_cached_mutex(self):
        metrics = MetricsCollector()

        async def scenario():
            storage = await open_storage(metrics=metrics)
            assert (await storage.lock("example.com")).is_ok()
            first = storage.locks.get("example.com")
            assert (await storage.unlock("example.com")).is_ok()
            assert (await storage.lock("example.com")).is_ok()
            assert storage.locks.get("example.com") is first
            assert (await storage.unlock("example.com")).is_ok()
            return storage

        storage = run(scenario())
        hits = metrics.counter("certstorage_lockcache_total")
        assert hits.get(hit="false") == 1
        assert hits.get(hit="true") == 1
        assert len(storage.locks) == 1

    def test_lock_object_is_prefixed(self):
        client = InMemoryObjectClient("certs")

        async def scenario():
            storage = await open_storage(client)
            await storage.lock("example.com")
            keys = set(client.objects("certs"))
            await storage.unlock("example.com")
            return keys

        assert run(scenario()) == {"p/example.com"}

    def test_unlock_never_locked(self):
        metrics = MetricsCollector()

        async def scenario():
            storage = await open_storage(metrics=metrics)
            return await storage.unlock("never")

        result = run(scenario())
        assert isinstance(result.error, LockError)
        assert result.error.code is ErrorCode.LOCK_NOT_CACHED
        assert result.error.code is not ErrorCode.BACKEND
        assert metrics.counter("certstorage_mutex_not_exists_total").get() == 1

    def test_concurrent_lock_single_cache_entry(self):
        async def scenario():
            client = InMemoryObjectClient("certs")
            storage = (await StubbedStorage.open(
                None, "certs/p", client=client, metrics=MetricsCollector()
            )).unwrap()

            async def worker():
                assert (await storage.lock("example.com")).is_ok()
                await asyncio.sleep(0.01)
                assert (await storage.unlock("example.com")).is_ok()

            await asyncio.wait_for(asyncio.gather(worker(), worker()), 2)
            return storage

        storage = run(scenario())
        assert storage.created == 1
        assert len(storage.locks) == 1
        assert [event for event, _ in storage.log] == [
            "acquire", "release", "acquire", "release",
        ]

    def test_concurrent_lock_with_object_mutex(self):
        """Both callers proceed, one at a time."""
        order = []

        async def scenario():
            storage = await open_storage()

            async def worker(tag):
                assert (await storage.lock("example.com")).is_ok()
                order.append(tag)
                await asyncio.sleep(0.02)
                order.append(tag)
                assert (await storage.unlock("example.com")).is_ok()

            await asyncio.wait_for(asyncio.gather(worker("a"), worker("b")), 5)
            return storage

        storage = run(scenario())
        assert len(storage.locks) == 1
        assert order[0] == order[1] and order[2] == order[3]

    def test_lock_timeout(self):
        async def scenario():
            client = InMemoryObjectClient("certs")
            holder = await open_storage(client)
            contender = await open_storage(client)
            await holder.lock("example.com")
            result = await contender.lock("example.com", timeout=0.1)
            await holder.unlock("example.com")
            return result

        result = run(scenario())
        assert result.error.code is ErrorCode.LOCK_TIMEOUT

    def test_lock_cancellation_propagates(self):
        async def scenario():
            client = InMemoryObjectClient("certs")
            holder = await open_storage(client)
            contender = await open_storage(client)
            await holder.lock("example.com")
            task = asyncio.create_task(contender.lock("example.com"))
            await asyncio.sleep(0.02)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await holder.unlock("example.com")

        run(scenario())

    def test_mutex_init_failure_leaves_no_entry(self):
        async def scenario():
            storage = await open_storage(path="certs")
            return storage, await storage.lock("")

        storage, result = run(scenario())
        assert result.error.code is ErrorCode.MUTEX_INIT_FAILED
        assert len(storage.locks) == 0

    def test_unrelated_names_do_not_block(self):
        async def scenario():
            client = InMemoryObjectClient("certs")
            holder = await open_storage(client)
            other = await open_storage(client)
            await holder.lock("a.example.com")
            result = await other.lock("b.example.com", timeout=1)
            await other.unlock("b.example.com")
            await holder.unlock("a.example.com")
            return result

        assert run(scenario()).is_ok()


# =============================================================================
# METRICS
# =============================================================================

class TestOperationMetrics:
    """certstorage_operation_seconds outcomes."""

    def test_outcomes(self):
        metrics = MetricsCollector()

        async def scenario():
            storage = await open_storage(metrics=metrics)
            await storage.store("a", b"x")
            await storage.load("a")
            await storage.load("missing")
            await storage.unlock("never")

        run(scenario())
        hist = metrics.histogram("certstorage_operation_seconds")
        assert hist.count(operation="store", outcome="ok") == 1
        assert hist.count(operation="load", outcome="ok") == 1
        assert hist.count(operation="load", outcome="not_found") == 1
        assert hist.count(operation="unlock", outcome="error") == 1
        assert "certstorage_operation_seconds_count" in metrics.export_prometheus()

    def test_errors_are_package_errors(self):
        async def scenario():
            storage = await open_storage()
            return await storage.load("missing")

        assert isinstance(run(scenario()).error, CertStorageError)
