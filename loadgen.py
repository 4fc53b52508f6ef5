from __future__ import annotations

import asyncio
import math
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

import httpx

from fixtures import FixtureSet
from scenario import Check, RequestSpec


def now_unix_ms() -> int:
    return int(time.time() * 1000)


def percentile(values: list[float], pct: float) -> Optional[float]:
    if not values:
        return None
    if pct <= 0:
        return float(min(values))
    if pct >= 100:
        return float(max(values))
    ordered = sorted(values)
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


@dataclass
class RequestSettings:
    base_url: str
    timeout_s: float


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool


@dataclass(frozen=True)
class TransportOutcome:
    http_status: Optional[int]
    status: str
    error: Optional[str]
    start_time_unix_ms: int
    end_time_unix_ms: int
    duration_ms: float
    bytes_received: int = 0

    @property
    def transport_failed(self) -> bool:
        return self.http_status is None

    @property
    def is_failure(self) -> bool:
        return self.http_status is None or not 200 <= self.http_status < 300


@dataclass
class IterationRecord:
    request_id: str
    client_id: int
    iteration: int
    stage_index: Optional[int]
    endpoint: str
    start_time_unix_ms: int
    end_time_unix_ms: int
    duration_ms: float
    status: str
    http_status: Optional[int]
    error: Optional[str]
    bytes_received: int
    checks: dict[str, bool]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_request(
    spec: RequestSpec,
    fixtures: FixtureSet,
    base_url: str,
    timeout_s: Optional[float] = None,
) -> httpx.Request:
    files = []
    for part in spec.parts:
        fixture = fixtures.get_fixture(part.fixture_name)
        files.append((part.field_name, (fixture.name, fixture.content)))
    data = dict(spec.form_fields) if spec.form_fields else None

    extensions: dict[str, Any] = {}
    if timeout_s is not None:
        extensions["timeout"] = httpx.Timeout(timeout_s).as_dict()

    url = f"{base_url.rstrip('/')}{spec.endpoint}"
    return httpx.Request("POST", url, files=files, data=data, extensions=extensions)


async def _send_and_read(client: httpx.AsyncClient, request: httpx.Request) -> tuple[int, bytes]:
    response = await client.send(request)
    try:
        body = await response.aread()
    finally:
        await response.aclose()
    return int(response.status_code), body


async def send_request(
    client: httpx.AsyncClient,
    request: httpx.Request,
    timeout_s: Optional[float] = None,
) -> TransportOutcome:
    start_time_ms = now_unix_ms()
    started = time.perf_counter()
    http_status: Optional[int] = None
    status = "ok"
    error_text: Optional[str] = None
    bytes_received = 0

    try:
        # httpx times each phase separately; this deadline covers the whole exchange.
        http_status, body = await asyncio.wait_for(_send_and_read(client, request), timeout=timeout_s)
        bytes_received = len(body)
        if not 200 <= http_status < 300:
            status = "error"
            error_text = body[:2000].decode("utf-8", errors="replace")
    except asyncio.TimeoutError:
        http_status = None
        status = "timeout"
        error_text = f"Request exceeded {timeout_s:g}s timeout"
    except httpx.TimeoutException as exc:
        http_status = None
        status = "timeout"
        error_text = str(exc) or exc.__class__.__name__
    except httpx.HTTPError as exc:
        http_status = None
        status = "error"
        error_text = str(exc) or exc.__class__.__name__

    return TransportOutcome(
        http_status=http_status,
        status=status,
        error=error_text,
        start_time_unix_ms=start_time_ms,
        end_time_unix_ms=now_unix_ms(),
        duration_ms=float((time.perf_counter() - started) * 1000.0),
        bytes_received=bytes_received,
    )


def evaluate_checks(checks: Sequence[Check], outcome: TransportOutcome) -> list[CheckResult]:
    # Every check is reported; a transport failure fails all of them.
    return [
        CheckResult(name=check.name, passed=check.evaluate(outcome.http_status))
        for check in checks
    ]


def new_request_id() -> str:
    return str(uuid.uuid4())
