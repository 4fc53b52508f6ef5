from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from fixtures import FixtureSet
from loadgen import (
    IterationRecord,
    RequestSettings,
    TransportOutcome,
    build_request,
    evaluate_checks,
    new_request_id,
    now_unix_ms,
    send_request,
)
from metrics import (
    FAILED_REQUESTS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ITERATIONS,
    TIMEOUTS,
    AbortSignal,
    MetricsAggregator,
)
from scenario import Scenario

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    client: httpx.AsyncClient
    scenario: Scenario
    fixtures: FixtureSet
    settings: RequestSettings
    aggregator: MetricsAggregator
    abort_signal: AbortSignal
    current_stage_fn: Callable[[], Optional[int]] = lambda: None
    on_iteration: Optional[Callable[[IterationRecord], Awaitable[None]]] = None


def _record_outcome(ctx: ClientContext, outcome: TransportOutcome, check_results) -> None:
    aggregator = ctx.aggregator
    aggregator.increment(HTTP_REQS)
    aggregator.observe(HTTP_REQ_DURATION, outcome.duration_ms)
    aggregator.observe(HTTP_REQ_FAILED, 1.0 if outcome.is_failure else 0.0)
    if outcome.status == "timeout":
        aggregator.increment(TIMEOUTS)
    aggregator.record_checks(check_results)
    if outcome.is_failure:
        aggregator.increment(FAILED_REQUESTS)


async def run_iteration(ctx: ClientContext, client_id: int, iteration: int) -> IterationRecord:
    ctx.aggregator.increment(ITERATIONS)
    stage_index = ctx.current_stage_fn()
    try:
        request = build_request(
            ctx.scenario.request,
            ctx.fixtures,
            base_url=ctx.settings.base_url,
            timeout_s=ctx.settings.timeout_s,
        )
        outcome = await send_request(ctx.client, request, timeout_s=ctx.settings.timeout_s)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.debug("Client %d iteration %d failed: %s", client_id, iteration, exc)
        timestamp_ms = now_unix_ms()
        outcome = TransportOutcome(
            http_status=None,
            status="error",
            error=str(exc),
            start_time_unix_ms=timestamp_ms,
            end_time_unix_ms=timestamp_ms,
            duration_ms=0.0,
        )

    check_results = evaluate_checks(ctx.scenario.checks, outcome)
    _record_outcome(ctx, outcome, check_results)
    if outcome.is_failure:
        logger.debug(
            "Client %d iteration %d: status=%s http_status=%s",
            client_id,
            iteration,
            outcome.status,
            outcome.http_status,
        )

    record = IterationRecord(
        request_id=new_request_id(),
        client_id=client_id,
        iteration=iteration,
        stage_index=stage_index,
        endpoint=ctx.scenario.request.endpoint,
        start_time_unix_ms=outcome.start_time_unix_ms,
        end_time_unix_ms=outcome.end_time_unix_ms,
        duration_ms=outcome.duration_ms,
        status=outcome.status,
        http_status=outcome.http_status,
        error=outcome.error,
        bytes_received=outcome.bytes_received,
        checks={result.name: result.passed for result in check_results},
    )
    if ctx.on_iteration is not None:
        await ctx.on_iteration(record)
    return record


async def client_loop(ctx: ClientContext, client_id: int, retire_event: asyncio.Event) -> int:
    # Flags are only read between iterations, so an in-flight request always completes.
    iteration = 0
    while not ctx.abort_signal.is_set() and not retire_event.is_set():
        await run_iteration(ctx, client_id, iteration)
        iteration += 1
    return iteration


class _VirtualClient:
    def __init__(self, client_id: int, task: "asyncio.Task[int]", retire_event: asyncio.Event) -> None:
        self.client_id = client_id
        self.task = task
        self.retire_event = retire_event

    @property
    def retiring(self) -> bool:
        return self.retire_event.is_set()


class VirtualClientPool:
    def __init__(self, context: ClientContext) -> None:
        self.context = context
        self._clients: list[_VirtualClient] = []
        self._next_id = 0
        self._target = 0
        self.peak_active = 0

    @property
    def target(self) -> int:
        return self._target

    def _prune(self) -> None:
        finished = [vc for vc in self._clients if vc.task.done()]
        for vc in finished:
            self._clients.remove(vc)
            if not vc.task.cancelled() and vc.task.exception() is not None:
                logger.error(
                    "Virtual client %d stopped unexpectedly: %s",
                    vc.client_id,
                    vc.task.exception(),
                )

    @property
    def active_count(self) -> int:
        return sum(1 for vc in self._clients if not vc.task.done())

    @property
    def serving_count(self) -> int:
        return sum(1 for vc in self._clients if not vc.task.done() and not vc.retiring)

    def _spawn(self) -> None:
        client_id = self._next_id
        self._next_id += 1
        retire_event = asyncio.Event()
        task = asyncio.create_task(
            client_loop(self.context, client_id, retire_event),
            name=f"virtual-client-{client_id}",
        )
        self._clients.append(_VirtualClient(client_id, task, retire_event))

    def scale_to(self, target: int) -> None:
        if target < 0:
            raise ValueError(f"Target concurrency must be >= 0, got {target}")
        self._prune()
        if target != self._target:
            logger.info("Scaling virtual clients %d -> %d", self._target, target)
        self._target = target
        if self.context.abort_signal.is_set():
            return

        live = self.active_count
        if target > live:
            for _ in range(target - live):
                self._spawn()

        serving = [vc for vc in self._clients if not vc.task.done() and not vc.retiring]
        surplus = len(serving) - target
        if surplus > 0:
            for vc in reversed(serving[-surplus:]):
                vc.retire_event.set()
        self.peak_active = max(self.peak_active, self.active_count)

    def stop(self) -> None:
        self._target = 0
        for vc in self._clients:
            vc.retire_event.set()

    async def drain(self, timeout_s: float) -> int:
        # Returns the number of clients cancelled after the timeout.
        tasks = [vc.task for vc in self._clients]
        if not tasks:
            return 0
        done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
        if pending:
            logger.warning("Cancelling %d virtual client(s) still running after drain timeout", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if done:
            await asyncio.gather(*done, return_exceptions=True)
        self._prune()
        return len(pending)
