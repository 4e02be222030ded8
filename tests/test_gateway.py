"""
Tests for RequestGateway against an in-process Graph stand-in.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from device_dna.exceptions import (
    MaxRetriesExceededError,
    NonRetriableTransportError,
    NotConnectedError,
    ParseError,
)
from device_dna.graph.gateway import RequestGateway, rows_from_table
from device_dna.graph.session import GraphSession


class Recorder:
    """Collects sleeps and requests seen by the server."""

    def __init__(self):
        self.sleeps = []
        self.requests = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


@pytest.fixture
def recorder():
    return Recorder()


async def connected_session(token):
    session = GraphSession(access_token=token)
    await session.connect()
    return session


def paged_app(pages, recorder):
    """Serve `pages` as a nextLink chain starting at /items."""
    app = web.Application()

    async def handler(request):
        recorder.requests.append((request.method, request.path_qs, request.headers.get("Authorization")))
        index = int(request.query.get("page", "0"))
        body = {"value": pages[index]} if pages else {"value": []}
        if index + 1 < len(pages):
            body["@odata.nextLink"] = str(request.url.with_query({"page": str(index + 1)}))
        return web.json_response(body)

    app.router.add_route("*", "/items", handler)
    return app


def scripted_app(responses, recorder, path="/items"):
    """Return the scripted (status, body, headers) responses in order."""
    app = web.Application()
    queue = list(responses)

    async def handler(request):
        recorder.requests.append((request.method, request.path_qs, request.headers.get("Authorization")))
        status, body, headers = queue.pop(0)
        if isinstance(body, bytes):
            return web.Response(status=status, body=body, headers=headers)
        return web.json_response(body, status=status, headers=headers)

    app.router.add_route("*", path, handler)
    return app


class TestPagination:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pages", [
        [],
        [[{"id": 1}]],
        [[{"id": 1}, {"id": 2}], [{"id": 3}]],
        [[{"id": 1}], [], [{"id": 2}], [{"id": 3}, {"id": 4}]],
    ])
    async def test_concatenates_pages_in_order(self, pages, recorder, token):
        """Output equals the in-order concatenation of every page."""
        async with TestServer(paged_app(pages, recorder)) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/")), sleep=recorder.sleep) as gateway:
                records = await gateway.call("GET", "items")

        assert records == [item for page in pages for item in page]
        assert len(recorder.requests) == max(len(pages), 1)

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, recorder, token):
        async with TestServer(paged_app([[{"id": 1}]], recorder)) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/"))) as gateway:
                await gateway.call("GET", "items")

        assert recorder.requests[0][2] == f"Bearer {token}"

    @pytest.mark.asyncio
    async def test_follow_up_pages_are_get(self, recorder, token):
        """A POST query continues with plain GETs."""
        async with TestServer(paged_app([[{"id": 1}], [{"id": 2}]], recorder)) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/"))) as gateway:
                await gateway.call("POST", "items", json={"q": 1})

        assert [method for method, _, _ in recorder.requests] == ["POST", "GET"]

    @pytest.mark.asyncio
    async def test_single_object_body(self, recorder, token):
        app = scripted_app([(200, {"id": "g1", "displayName": "Pilot"}, None)], recorder)
        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/"))) as gateway:
                records = await gateway.call("GET", "items")

        assert records == [{"id": "g1", "displayName": "Pilot"}]


class TestRetry:

    @pytest.mark.asyncio
    async def test_two_throttles_then_success(self, recorder, token):
        """Two 429s then 200: success after exactly two backoff delays."""
        app = scripted_app([
            (429, {"error": {"code": "TooManyRequests"}}, None),
            (429, {"error": {"code": "TooManyRequests"}}, None),
            (200, {"value": [{"id": 1}]}, None),
        ], recorder)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/")), sleep=recorder.sleep) as gateway:
                records = await gateway.call("GET", "items")

        assert records == [{"id": 1}]
        assert recorder.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_third_throttle_exhausts_retries(self, recorder, token):
        app = scripted_app([(429, {}, None)] * 3, recorder)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/")), sleep=recorder.sleep) as gateway:
                with pytest.raises(MaxRetriesExceededError) as exc_info:
                    await gateway.call("GET", "items")

        assert exc_info.value.last_error.status_code == 429
        assert len(recorder.requests) == 3
        assert recorder.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, recorder, token):
        app = scripted_app([(503, {}, None), (200, {"value": []}, None)], recorder)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/")), sleep=recorder.sleep) as gateway:
                assert await gateway.call("GET", "items") == []

        assert recorder.sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_retry_after_header_honoured(self, recorder, token):
        app = scripted_app([
            (429, {}, {"Retry-After": "7"}),
            (200, {"value": []}, None),
        ], recorder)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/")), sleep=recorder.sleep) as gateway:
                await gateway.call("GET", "items")

        assert recorder.sleeps == [7.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, recorder, token):
        app = scripted_app([
            (403, {"error": {"code": "Forbidden", "message": "Insufficient privileges"}}, None),
        ], recorder)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/")), sleep=recorder.sleep) as gateway:
                with pytest.raises(NonRetriableTransportError) as exc_info:
                    await gateway.call("GET", "items")

        assert exc_info.value.status_code == 403
        assert "Insufficient privileges" in str(exc_info.value)
        assert recorder.sleeps == []

    @pytest.mark.asyncio
    async def test_invalid_json_is_parse_error(self, recorder, token):
        app = scripted_app([(200, b"<html>", {"Content-Type": "text/html"})], recorder)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/"))) as gateway:
                with pytest.raises(ParseError):
                    await gateway.call("GET", "items")


class TestNotConnected:

    @pytest.mark.asyncio
    async def test_no_network_attempt(self, recorder):
        app = scripted_app([], recorder)

        async with TestServer(app) as server:
            session = GraphSession(access_token="x")
            async with RequestGateway(session, base_url=str(server.make_url("/"))) as gateway:
                with pytest.raises(NotConnectedError):
                    await gateway.call("GET", "items")
                with pytest.raises(NotConnectedError):
                    await gateway.download(str(server.make_url("/items")))

        assert recorder.requests == []


class TestReport:

    def test_rows_from_table(self):
        body = {
            "Schema": [{"Column": "PolicyId"}, {"Column": "PolicyStatus"}],
            "Values": [["p1", 2], ["p2", 4]],
        }
        assert rows_from_table(body) == [
            {"PolicyId": "p1", "PolicyStatus": 2},
            {"PolicyId": "p2", "PolicyStatus": 4},
        ]

    @pytest.mark.asyncio
    async def test_report_pages_with_skip(self, recorder, token):
        app = web.Application()
        payloads = []

        async def handler(request):
            payload = await request.json()
            payloads.append(payload)
            values = [["p1"], ["p2"]] if payload["skip"] == 0 else [["p3"]]
            return web.json_response({
                "TotalRowCount": 3,
                "Schema": [{"Column": "PolicyId"}],
                "Values": values,
            })

        app.router.add_post("/reports/byDevice", handler)

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url=str(server.make_url("/"))) as gateway:
                rows = await gateway.report(
                    "reports/byDevice", filter="(IntuneDeviceId eq 'm1')", select=["PolicyId"], top=2
                )

        assert [r["PolicyId"] for r in rows] == ["p1", "p2", "p3"]
        assert [p["skip"] for p in payloads] == [0, 2]
        assert payloads[0]["filter"] == "(IntuneDeviceId eq 'm1')"

    @pytest.mark.asyncio
    async def test_download_sends_no_token(self, recorder, token):
        app = scripted_app([(200, b"PK\x03\x04", {"Content-Type": "application/zip"})], recorder, path="/blob")

        async with TestServer(app) as server:
            session = await connected_session(token)
            async with RequestGateway(session, base_url="https://graph.invalid") as gateway:
                data = await gateway.download(str(server.make_url("/blob")))

        assert data == b"PK\x03\x04"
        assert recorder.requests[0][2] is None


class TestResolve:

    def test_relative_and_absolute(self):
        gateway = RequestGateway(GraphSession(access_token="x"), base_url="https://graph.microsoft.com/beta/")
        assert gateway.resolve("devices") == "https://graph.microsoft.com/beta/devices"
        assert gateway.resolve("/devices") == "https://graph.microsoft.com/beta/devices"
        assert gateway.resolve("https://other/x") == "https://other/x"
