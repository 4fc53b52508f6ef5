"""Shared fixtures: on-disk fixture files and a scripted mock service."""

import asyncio
import re
from pathlib import Path

import httpx
import pytest

from scenario import RequestSpec, Scenario, Stage, Threshold, file_parts

FIXTURE_FILES = {
    "office": {"document.docx": b"PK\x03\x04 fake docx payload \x00\xff"},
    "html": {
        "index.html": b"<html><body>index</body></html>",
        "style.css": b"body { color: red; }",
        "header.html": b"<header>h</header>",
        "footer.html": b"<footer>f</footer>",
        "font.woff": b"wOFF\x00\x01\x00\x00",
        "img.gif": b"GIF89a\x01\x00\x01\x00",
    },
    "pdf": {
        "gotenberg.pdf": b"%PDF-1.4 first",
        "gotenberg_bis.pdf": b"%PDF-1.4 second",
    },
}


@pytest.fixture
def fixtures_root(tmp_path: Path) -> Path:
    root = tmp_path / "testdata"
    for kind, files in FIXTURE_FILES.items():
        directory = root / kind
        directory.mkdir(parents=True)
        for name, content in files.items():
            (directory / name).write_bytes(content)
    return root


def office_scenario(stages, thresholds=()) -> Scenario:
    return Scenario(
        name="office",
        request=RequestSpec(endpoint="/convert/office", parts=file_parts("document.docx")),
        stages=tuple(Stage(duration_s=d, target=t) for d, t in stages),
        thresholds=tuple(thresholds),
        fixture_dir="office",
    )


def failed_requests_threshold() -> Threshold:
    return Threshold(metric="failed requests", condition="count>=1", abort_on_breach=True)


class MockService:
    """Async handler for httpx.MockTransport that tracks concurrency."""

    def __init__(self, status_code: int = 200, delay_s: float = 0.01) -> None:
        self.status_code = status_code
        self.delay_s = delay_s
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await request.aread()
            self.requests.append(request)
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            return httpx.Response(self.status_code, content=b"%PDF-1.4 converted")
        finally:
            self.in_flight -= 1

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def parse_multipart(content_type: str, body: bytes) -> list[tuple[str, str, bytes]]:
    """Split a multipart/form-data body into (field, filename, content) tuples."""
    boundary = content_type.split("boundary=", 1)[1].strip('"').encode("ascii")
    parts = []
    for chunk in body.split(b"--" + boundary):
        if not chunk.strip() or chunk.startswith(b"--"):
            continue
        if chunk.startswith(b"\r\n"):
            chunk = chunk[2:]
        raw_headers, _, content = chunk.partition(b"\r\n\r\n")
        if content.endswith(b"\r\n"):
            content = content[:-2]
        headers = raw_headers.decode("utf-8")
        name = re.search(r'(?<![\w])name="([^"]*)"', headers).group(1)
        filename_match = re.search(r'filename="([^"]*)"', headers)
        filename = filename_match.group(1) if filename_match else None
        parts.append((name, filename, content))
    return parts


class DripServer:
    """Local HTTP server answering 200 and streaming the body a few bytes at a time."""

    def __init__(self, interval_s: float = 0.1, chunks: int = 40) -> None:
        self.interval_s = interval_s
        self.chunks = chunks
        self.base_url = ""
        self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            length = re.search(rb"(?i)content-length:\s*(\d+)", head)
            if length:
                await reader.readexactly(int(length.group(1)))
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Type: application/pdf\r\nTransfer-Encoding: chunked\r\n\r\n")
            for _ in range(self.chunks):
                if reader.at_eof() or writer.is_closing():
                    break
                writer.write(b"4\r\n%PDF\r\n")
                await writer.drain()
                await asyncio.sleep(self.interval_s)
            else:
                writer.write(b"0\r\n\r\n")
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    async def __aenter__(self) -> "DripServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self._server.sockets[0].getsockname()[1]
        self.base_url = f"http://127.0.0.1:{port}"
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._server.close()
        await self._server.wait_closed()
