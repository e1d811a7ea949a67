import json
import os
import sys
import unittest
from unittest import mock

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.sync_client import DEFAULT_TIMEOUT_S, JournalApiClient, api_timeout_s, api_url
from quickjournal.canonical_json import canonical_dumps
from sync_boundary import SyncError


BASE = "http://journal.test"


class _Recorder:
    def __init__(self, responder) -> None:
        self.requests = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)


def _client(responder, token: str = "tok") -> tuple:
    recorder = _Recorder(responder)
    client = JournalApiClient(BASE, token, 5.0, httpx.MockTransport(recorder))
    return client, recorder


class TestJournalApiClient(unittest.IsolatedAsyncioTestCase):
    async def test_fetch_structure_sends_date_and_token(self) -> None:
        client, recorder = _client(lambda r: httpx.Response(200, json={"structureId": "s1", "groups": []}))
        async with client:
            body = await client.fetch_structure("2024-05-10")
        self.assertEqual(body["structureId"], "s1")
        request = recorder.requests[0]
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.url.path, "/api/v1/journal/structure")
        self.assertEqual(request.url.params["date"], "2024-05-10")
        self.assertEqual(request.headers["Authorization"], "Bearer tok")

    async def test_no_token_no_auth_header(self) -> None:
        client, recorder = _client(lambda r: httpx.Response(200, json=[]), token="")
        async with client:
            await client.fetch_actions()
        self.assertNotIn("Authorization", recorder.requests[0].headers)

    async def test_error_status_raises_with_message(self) -> None:
        client, _ = _client(lambda r: httpx.Response(404, json={"message": "No structure found."}))
        async with client:
            with self.assertRaises(SyncError) as ctx:
                await client.fetch_structure("2024-05-10")
        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.message, "No structure found.")
        self.assertTrue(ctx.exception.not_found)

    async def test_error_without_json_body(self) -> None:
        client, _ = _client(lambda r: httpx.Response(500, text="upstream down"))
        async with client:
            with self.assertRaises(SyncError) as ctx:
                await client.fetch_actions()
        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(ctx.exception.message, "upstream down")

    async def test_invalid_date_is_not_sent(self) -> None:
        client, recorder = _client(lambda r: httpx.Response(200, json={}))
        async with client:
            with self.assertRaises(SyncError) as ctx:
                await client.fetch_entry("2024-5-1")
        self.assertIsNone(ctx.exception.status)
        self.assertEqual(recorder.requests, [])

    async def test_save_structure_sends_canonical_json(self) -> None:
        payload = {"groups": [{"name": "Habits", "id": "g1", "order": 0, "fields": []}], "currentDate": "2024-05-10"}
        client, recorder = _client(lambda r: httpx.Response(200, json={"structureId": "s1", "groups": []}))
        async with client:
            await client.save_structure(payload)
        request = recorder.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.content, canonical_dumps(payload).encode("utf-8"))
        self.assertEqual(request.headers["Content-Type"], "application/json")

    async def test_transport_error_has_no_status(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _client(refuse)
        async with client:
            with self.assertRaises(SyncError) as ctx:
                await client.fetch_actions()
        self.assertIsNone(ctx.exception.status)

    async def test_invalid_json_response(self) -> None:
        client, _ = _client(lambda r: httpx.Response(200, content=b"<html>"))
        async with client:
            with self.assertRaises(SyncError):
                await client.fetch_entry("2024-05-10")

    async def test_action_routes(self) -> None:
        client, recorder = _client(lambda r: httpx.Response(200, json={"success": True}))
        async with client:
            await client.register_action("a1")
            await client.register_action("a2", 7.5)
            await client.remove_action("a3")
            await client.reorder_action("a4", 2)
        paths = [r.url.path for r in recorder.requests]
        self.assertEqual(
            paths,
            [
                "/api/v1/journal/actions/register",
                "/api/v1/journal/actions/register",
                "/api/v1/journal/actions/remove",
                "/api/v1/journal/actions/reorder",
            ],
        )
        bodies = [json.loads(r.content) for r in recorder.requests]
        self.assertEqual(bodies, [{"id": "a1"}, {"id": "a2", "value": 7.5}, {"id": "a3"}, {"id": "a4", "order": 2}])

    async def test_first_entry_date(self) -> None:
        client, _ = _client(lambda r: httpx.Response(200, json={"date": "2024-01-02"}))
        async with client:
            self.assertEqual(await client.fetch_first_entry_date(), "2024-01-02")
        client, _ = _client(lambda r: httpx.Response(404, json={"message": "No entries found."}))
        async with client:
            self.assertIsNone(await client.fetch_first_entry_date())

    async def test_fetch_actions_non_list(self) -> None:
        client, _ = _client(lambda r: httpx.Response(200, json={"items": []}))
        async with client:
            self.assertEqual(await client.fetch_actions(), [])


class TestEnvironment(unittest.TestCase):
    def test_api_url(self) -> None:
        with mock.patch.dict(os.environ, {"JOURNAL_API_URL": " http://api.journal.test/ "}):
            self.assertEqual(api_url(), "http://api.journal.test")
        with mock.patch.dict(os.environ, {"JOURNAL_API_URL": ""}):
            self.assertEqual(api_url(), "http://localhost:3000")

    def test_api_timeout(self) -> None:
        with mock.patch.dict(os.environ, {"JOURNAL_API_TIMEOUT_S": "2.5"}):
            self.assertEqual(api_timeout_s(), 2.5)
        with mock.patch.dict(os.environ, {"JOURNAL_API_TIMEOUT_S": "soon"}):
            with self.assertLogs("quickjournal.sync", level="WARNING"):
                self.assertEqual(api_timeout_s(), DEFAULT_TIMEOUT_S)


if __name__ == "__main__":
    unittest.main()
