import threading
import unittest

import httpx

from skillsync.client import HttpClient
from skillsync.errors import CancelledError, FetchError, FetchKind


def _client(handler, *, token: str | None = "tok_123") -> HttpClient:
    return HttpClient(
        server_url="https://skills.example.com/",
        token=token,
        transport=httpx.MockTransport(handler),
    )


class TestRedirectAuth(unittest.TestCase):
    def test_authorization_is_kept_on_same_origin_redirect(self) -> None:
        seen: list[tuple[str, str | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((str(request.url), request.headers.get("authorization")))
            if request.url.path == "/v1/artifacts/helper":
                return httpx.Response(302, headers={"location": "/v1/files/helper.zip"})
            return httpx.Response(200, content=b"ok")

        client = _client(handler)
        try:
            data = client.get_bytes("https://skills.example.com/v1/artifacts/helper")
        finally:
            client.close()

        self.assertEqual(data, b"ok")
        self.assertEqual(seen[0][1], "Bearer tok_123")
        self.assertEqual(seen[1][1], "Bearer tok_123")

    def test_authorization_is_not_sent_to_other_hosts(self) -> None:
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, content=b"ok")

        with _client(handler) as client:
            client.get_bytes("https://cdn.example.com/helper.zip")

        self.assertEqual(seen, [None])


class TestErrors(unittest.TestCase):
    def test_status_codes_map_to_fetch_kinds(self) -> None:
        statuses = {"/missing": 404, "/private": 403, "/login": 401, "/broken": 502}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(statuses[request.url.path], text="nope")

        expected = {
            "/missing": FetchKind.NOT_FOUND,
            "/private": FetchKind.AUTH,
            "/login": FetchKind.AUTH,
            "/broken": FetchKind.NETWORK,
        }
        with _client(handler) as client:
            for path, kind in expected.items():
                with self.subTest(path=path):
                    with self.assertRaises(FetchError) as ctx:
                        client.get_bytes(f"https://skills.example.com{path}")
                    self.assertEqual(ctx.exception.kind, kind)

    def test_transport_failure_is_a_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with self.assertRaises(FetchError) as ctx:
                client.get_bytes("https://skills.example.com/x.zip")
        self.assertEqual(ctx.exception.kind, FetchKind.NETWORK)

    def test_cancelled_download_stops(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"x" * 1024)

        cancel = threading.Event()
        cancel.set()
        with _client(handler) as client:
            with self.assertRaises(CancelledError):
                client.get_bytes("https://skills.example.com/x.zip", cancel=cancel)


class TestConditionalGet(unittest.TestCase):
    def test_etag_round_trip(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.headers.get("if-none-match") == '"abc"':
                return httpx.Response(304)
            return httpx.Response(200, content=b"body", headers={"ETag": '"abc"'})

        with _client(handler, token=None) as client:
            first = client.get_conditional("https://skills.example.com/skills.lock")
            second = client.get_conditional("https://skills.example.com/skills.lock", etag=first.etag)

        self.assertFalse(first.not_modified)
        self.assertEqual(first.content, b"body")
        self.assertEqual(first.etag, '"abc"')
        self.assertTrue(second.not_modified)
        self.assertEqual(second.etag, '"abc"')


if __name__ == "__main__":
    unittest.main()
