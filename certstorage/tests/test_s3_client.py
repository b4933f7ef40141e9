"""
Unit Tests: S3 Object Store Client

Runs S3ObjectClient against a fake aiobotocore client that raises real
botocore ClientError instances.

Tests:
    - Error classification (not found, precondition, backend)
    - Conditional write headers
    - Paginated delimiter listing
    - Stat headers and body handling
    - Session and client construction
"""

import asyncio
import itertools

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from certstorage.core.config import S3ClientConfig, S3Credentials
from certstorage.core.errors import ErrorCode
from certstorage.storage import s3_client as s3_module
from certstorage.storage.s3_client import S3ObjectClient, classify_error


def run(coro):
    return asyncio.run(coro)


def client_error(code, status, operation="GetObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


# =============================================================================
# FAKE AIOBOTOCORE CLIENT
# =============================================================================

class FakeBody:
    def __init__(self, data):
        self._data = data
        self.closed = False

    async def read(self):
        return self._data

    def close(self):
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        self.close()


class FakePaginator:
    def __init__(self, pages):
        self._pages = pages
        self.kwargs = None

    def paginate(self, **kwargs):
        self.kwargs = kwargs
        return self._iterate()

    async def _iterate(self):
        for page in self._pages:
            yield page


class FakeS3:
    """Dict-backed stand-in for an aiobotocore S3 client."""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.bodies = []
        self.pages = []
        self.paginator = None
        self.fail = {}
        self._etags = itertools.count(1)

    def _enter(self, method, kwargs):
        self.calls.append((method, kwargs))
        if method in self.fail:
            raise self.fail[method]

    def _current(self, key, method):
        if key not in self.objects:
            raise client_error("NoSuchKey", 404, method)
        return self.objects[key]

    async def put_object(self, **kwargs):
        self._enter("put_object", kwargs)
        key = kwargs["Key"]
        if kwargs.get("IfNoneMatch") == "*" and key in self.objects:
            raise client_error("PreconditionFailed", 412, "PutObject")
        if "IfMatch" in kwargs:
            if key not in self.objects:
                raise client_error("NoSuchKey", 404, "PutObject")
            if f'"{self.objects[key][1]}"' != kwargs["IfMatch"]:
                raise client_error("PreconditionFailed", 412, "PutObject")
        etag = f"etag{next(self._etags)}"
        self.objects[key] = (kwargs["Body"], etag)
        return {"ETag": f'"{etag}"'}

    async def get_object(self, **kwargs):
        self._enter("get_object", kwargs)
        data, etag = self._current(kwargs["Key"], "GetObject")
        body = FakeBody(data)
        self.bodies.append(body)
        return {"Body": body, "ETag": f'"{etag}"'}

    async def head_object(self, **kwargs):
        self._enter("head_object", kwargs)
        data, etag = self._current(kwargs["Key"], "HeadObject")
        return {
            "ContentLength": len(data),
            "ETag": f'"{etag}"',
            "ResponseMetadata": {
                "HTTPStatusCode": 200,
                "HTTPHeaders": {
                    "Last-Modified": "Tue, 15 Nov 1994 08:12:31 GMT",
                    "Content-Length": str(len(data)),
                    "ETag": f'"{etag}"',
                },
            },
        }

    async def delete_object(self, **kwargs):
        self._enter("delete_object", kwargs)
        key = kwargs["Key"]
        if "IfMatch" in kwargs:
            _, etag = self._current(key, "DeleteObject")
            if f'"{etag}"' != kwargs["IfMatch"]:
                raise client_error("PreconditionFailed", 412, "DeleteObject")
        self.objects.pop(key, None)
        return {}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        self.paginator = FakePaginator(self.pages)
        return self.paginator


@pytest.fixture
def fake():
    return FakeS3()


@pytest.fixture
def client(fake):
    return S3ObjectClient(fake, page_size=2)


# =============================================================================
# TESTS
# =============================================================================

class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize("code,status", [("NoSuchKey", 404), ("NotFound", 404), ("404", 404)])
    def test_not_found(self, code, status):
        err = classify_error("stat", "certs", "k", client_error(code, status))
        assert err.code is ErrorCode.NOT_FOUND
        assert err.context["operation"] == "stat"

    @pytest.mark.parametrize(
        "code,status",
        [("PreconditionFailed", 412), ("ConditionalRequestConflict", 409)],
    )
    def test_precondition(self, code, status):
        err = classify_error("create", "certs", "k", client_error(code, status))
        assert err.code is ErrorCode.PRECONDITION_FAILED

    def test_other_client_error(self):
        cause = client_error("AccessDenied", 403)
        err = classify_error("upload", "certs", "k", cause)
        assert err.code is ErrorCode.BACKEND
        assert err.cause is cause

    def test_transport_error(self):
        cause = EndpointConnectionError(endpoint_url="http://localhost:9000")
        assert classify_error("upload", "certs", "k", cause).code is ErrorCode.BACKEND


class TestPlainOperations:
    """upload/download/delete/stat."""

    def test_upload_then_download(self, fake, client):
        async def scenario():
            assert (await client.upload("certs", "a", b"pem")).is_ok()
            reader = (await client.download("certs", "a")).unwrap()
            data = (await reader.read()).unwrap()
            assert (await reader.close()).is_ok()
            return data

        assert run(scenario()) == b"pem"
        assert fake.bodies[0].closed

    def test_download_missing(self, client):
        assert run(client.download("certs", "nope")).error.is_not_found

    def test_access_denied_is_backend(self, fake, client):
        fake.fail["put_object"] = client_error("AccessDenied", 403, "PutObject")
        assert run(client.upload("certs", "a", b"")).error.code is ErrorCode.BACKEND

    def test_connection_error_is_backend(self, fake, client):
        fake.fail["get_object"] = EndpointConnectionError(endpoint_url="http://x")
        assert run(client.download("certs", "a")).error.code is ErrorCode.BACKEND

    def test_delete_missing_is_not_found(self, fake, client):
        result = run(client.delete("certs", "nope"))
        assert result.error.is_not_found
        assert [m for m, _ in fake.calls] == ["head_object"]

    def test_delete(self, fake, client):
        fake.objects["a"] = (b"x", "e1")
        assert run(client.delete("certs", "a")).is_ok()
        assert "a" not in fake.objects

    def test_stat_uses_raw_headers(self, fake, client):
        fake.objects["a"] = (b"xyz", "e1")
        headers = run(client.stat("certs", "a")).unwrap()
        assert headers["last-modified"] == "Tue, 15 Nov 1994 08:12:31 GMT"
        assert headers["content-length"] == "3"
        assert headers.etag == "e1"

    def test_stat_missing(self, client):
        assert run(client.stat("certs", "nope")).error.is_not_found


class TestList:
    """Paginated listing."""

    def test_non_recursive_uses_delimiter(self, fake, client):
        fake.pages = [
            {"Contents": [{"Key": "p/a/1"}, {"Key": "p/a/2"}]},
            {"CommonPrefixes": [{"Prefix": "p/a/b/"}]},
        ]
        keys = run(client.list("certs", "p/a/", False)).unwrap()
        assert keys == ["p/a/1", "p/a/2", "p/a/b/"]
        assert fake.paginator.kwargs["Delimiter"] == "/"
        assert fake.paginator.kwargs["Prefix"] == "p/a/"
        assert fake.paginator.kwargs["PaginationConfig"] == {"PageSize": 2}

    def test_recursive_has_no_delimiter(self, fake, client):
        fake.pages = [
            {"Contents": [{"Key": "p/a/1"}, {"Key": "p/a/2"}]},
            {"Contents": [{"Key": "p/a/b/3"}]},
        ]
        keys = run(client.list("certs", "p/a/", True)).unwrap()
        assert keys == ["p/a/1", "p/a/2", "p/a/b/3"]
        assert "Delimiter" not in fake.paginator.kwargs

    def test_keeps_store_order(self, fake, client):
        fake.pages = [
            {
                "Contents": [{"Key": "p/z"}, {"Key": "p/b"}],
                "CommonPrefixes": [{"Prefix": "p/a/"}],
            },
            {"Contents": [{"Key": "p/c"}]},
        ]
        keys = run(client.list("certs", "p/", False)).unwrap()
        assert keys == ["p/z", "p/b", "p/a/", "p/c"]

    def test_list_error(self, fake, client):
        def broken(name):
            raise client_error("NoSuchBucket", 404, "ListObjectsV2")

        fake.get_paginator = broken
        result = run(client.list("certs", "p/", True))
        assert result.error.code is ErrorCode.BACKEND


class TestConditionalOperations:
    """create/replace/delete_if_match/read."""

    def test_create_and_conflict(self, fake, client):
        async def scenario():
            first = await client.create("certs", "lock", b"a")
            second = await client.create("certs", "lock", b"b")
            return first, second

        first, second = run(scenario())
        assert first.unwrap() == "etag1"
        assert second.error.code is ErrorCode.PRECONDITION_FAILED
        method, kwargs = fake.calls[0]
        assert kwargs["IfNoneMatch"] == "*"

    def test_replace_sends_quoted_etag(self, fake, client):
        async def scenario():
            etag = (await client.create("certs", "lock", b"a")).unwrap()
            return await client.replace("certs", "lock", b"b", etag)

        assert run(scenario()).unwrap() == "etag2"
        assert fake.calls[-1][1]["IfMatch"] == '"etag1"'

    def test_delete_if_match_mismatch(self, fake, client):
        fake.objects["lock"] = (b"a", "etag9")
        result = run(client.delete_if_match("certs", "lock", "etag1"))
        assert result.error.code is ErrorCode.PRECONDITION_FAILED
        assert "lock" in fake.objects

    def test_read(self, fake, client):
        fake.objects["lock"] = (b"lease", "etag3")
        assert run(client.read("certs", "lock")).unwrap() == (b"lease", "etag3")
        assert fake.bodies[0].closed


class TestPermissions:
    """test_permissions probe cycle."""

    def test_probe(self, fake, client):
        fake.pages = [{"Contents": [{"Key": "p/.probe"}]}]
        assert run(client.test_permissions("certs", "p/.probe")).is_ok()
        assert fake.objects == {}

    def test_probe_denied(self, fake, client):
        fake.fail["put_object"] = client_error("AccessDenied", 403, "PutObject")
        result = run(client.test_permissions("certs", "p/.probe"))
        assert result.error.code is ErrorCode.BACKEND


class TestConnect:
    """S3ObjectClient.connect session and client wiring."""

    def test_connect(self, monkeypatch):
        captured = {}
        fake = FakeS3()

        class FakeClientContext:
            def __init__(self):
                self.exited = False

            async def __aenter__(self):
                return fake

            async def __aexit__(self, *args):
                self.exited = True

        context = FakeClientContext()

        class FakeSession:
            def __init__(self, **kwargs):
                captured["session"] = kwargs

            def client(self, service, **kwargs):
                captured["service"] = service
                captured["client"] = kwargs
                return context

        monkeypatch.setattr(s3_module.aioboto3, "Session", FakeSession)
        credentials = S3Credentials(
            access_key_id="AKIA",
            secret_access_key="secret",
            endpoint_url="http://localhost:9000",
        )

        async def scenario():
            client = (await S3ObjectClient.connect(
                credentials, S3ClientConfig(verify_ssl=False, addressing_style="path")
            )).unwrap()
            await client.close()
            await client.close()

        run(scenario())
        assert captured["service"] == "s3"
        assert captured["session"]["aws_access_key_id"] == "AKIA"
        assert captured["client"]["endpoint_url"] == "http://localhost:9000"
        assert captured["client"]["verify"] is False
        assert captured["client"]["config"].s3 == {"addressing_style": "path"}
        assert context.exited
