from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx

from fixtures import FixtureSet, load_fixture_set
from loadgen import IterationRecord, RequestSettings, build_request, now_unix_ms
from metrics import AbortReason, AbortSignal, MetricsAggregator
from pool import ClientContext, VirtualClientPool
from report import build_final_report, write_report_json, write_summary_markdown
from scenario import Scenario
from schedule import StageScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SETUP_ERROR = 1
EXIT_THRESHOLD_ABORT = 99


@dataclass
class RunConfig:
    scenario: Scenario
    base_url: str = "http://localhost:3000"
    fixtures_dir: Path = Path("testdata")
    timeout_s: float = 30.0
    control_interval_s: float = 1.0
    output_dir: Optional[Path] = Path("runs")
    run_name: Optional[str] = None
    write_requests: bool = True
    transport: Optional[httpx.AsyncBaseTransport] = None


@dataclass
class RunState:
    abort_signal: AbortSignal = field(repr=False)
    start_time_unix_ms: int = 0
    elapsed_s: float = 0.0
    current_target: int = 0
    current_stage: Optional[int] = None
    stages_completed: bool = False

    # A breach after the last stage ended cut nothing short, so it is not an abort.
    @property
    def aborted(self) -> bool:
        return self.abort_signal.is_set() and not self.stages_completed

    @property
    def abort_reason(self) -> Optional[AbortReason]:
        return self.abort_signal.reason if self.aborted else None


@dataclass
class RunResult:
    aborted: bool
    abort_reason: Optional[AbortReason]
    report: dict[str, Any]
    output_dir: Optional[Path]

    @property
    def exit_code(self) -> int:
        return EXIT_THRESHOLD_ABORT if self.aborted else EXIT_OK


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _resolved_config_dict(config: RunConfig, output_dir: Path) -> dict[str, Any]:
    scenario = config.scenario
    return {
        "scenario": scenario.name,
        "base_url": config.base_url,
        "endpoint": scenario.request.endpoint,
        "parts": [
            {"field": part.field_name, "fixture": part.fixture_name}
            for part in scenario.request.parts
        ],
        "form_fields": dict(scenario.request.form_fields),
        "stages": [
            {"duration_s": stage.duration_s, "target": stage.target} for stage in scenario.stages
        ],
        "thresholds": [
            {
                "metric": threshold.metric,
                "condition": threshold.condition,
                "abort_on_breach": threshold.abort_on_breach,
            }
            for threshold in scenario.thresholds
        ],
        "checks": [check.name for check in scenario.checks],
        "fixtures_dir": str(config.fixtures_dir),
        "timeout_s": config.timeout_s,
        "control_interval_s": config.control_interval_s,
        "resolved_run_dir": str(output_dir),
        "started_at_utc": datetime.now(timezone.utc).isoformat(),
    }


def _load_fixtures(config: RunConfig) -> FixtureSet:
    scenario = config.scenario
    directory = config.fixtures_dir / scenario.fixture_dir if scenario.fixture_dir else config.fixtures_dir
    fixtures = load_fixture_set(directory, scenario.request.fixture_names())
    # Resolve every part once so a bad reference fails before any client starts.
    build_request(scenario.request, fixtures, base_url=config.base_url)
    return fixtures


async def _control_loop(
    *,
    scheduler: StageScheduler,
    pool: VirtualClientPool,
    aggregator: MetricsAggregator,
    state: RunState,
    control_interval_s: float,
) -> None:
    started = time.monotonic()
    while True:
        state.elapsed_s = time.monotonic() - started
        if state.aborted:
            break
        stage_index = scheduler.stage_index_at(state.elapsed_s)
        if stage_index is None:
            logger.info("All stages complete after %.1fs", state.elapsed_s)
            state.stages_completed = True
            break
        if stage_index != state.current_stage:
            stage = scheduler.stages[stage_index]
            logger.info(
                "Entering stage %d/%d: target=%d for %.1fs",
                stage_index + 1,
                len(scheduler.stages),
                stage.target,
                stage.duration_s,
            )
            state.current_stage = stage_index
        state.current_target = scheduler.stages[stage_index].target
        pool.scale_to(state.current_target)
        # Percentile thresholds are too costly for every write; check them per tick.
        aggregator.evaluate_thresholds()

        until_boundary = scheduler.stage_end_s(stage_index) - (time.monotonic() - started)
        await asyncio.sleep(max(0.001, min(control_interval_s, until_boundary)))


async def run_load_test(config: RunConfig) -> RunResult:
    scenario = config.scenario
    scheduler = StageScheduler(scenario.stages)
    fixtures = _load_fixtures(config)

    abort_signal = AbortSignal()
    aggregator = MetricsAggregator(scenario.thresholds, abort_signal)
    state = RunState(abort_signal=abort_signal, start_time_unix_ms=now_unix_ms())
    settings = RequestSettings(base_url=config.base_url, timeout_s=float(config.timeout_s))

    output_dir: Optional[Path] = None
    request_writer: Optional[AsyncJSONLWriter] = None
    if config.output_dir is not None:
        output_dir = _ensure_output_dir(config.output_dir, config.run_name or scenario.name)
        _write_json(output_dir / "config.json", _resolved_config_dict(config, output_dir))
        if config.write_requests:
            request_writer = AsyncJSONLWriter(output_dir / "requests.jsonl")

    async def on_iteration(record: IterationRecord) -> None:
        if request_writer is not None:
            await request_writer.write(record.to_dict())

    max_connections = max(scheduler.max_target * 4, 64)
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 32),
    )

    logger.info(
        "Starting scenario '%s' against %s%s: %d stage(s), %.1fs total, up to %d virtual client(s)",
        scenario.name,
        config.base_url,
        scenario.request.endpoint,
        len(scheduler.stages),
        scheduler.total_duration_s,
        scheduler.max_target,
    )

    peak_active = 0
    cancelled = 0
    try:
        async with httpx.AsyncClient(limits=limits, transport=config.transport) as client:
            context = ClientContext(
                client=client,
                scenario=scenario,
                fixtures=fixtures,
                settings=settings,
                aggregator=aggregator,
                abort_signal=abort_signal,
                current_stage_fn=lambda: state.current_stage,
                on_iteration=on_iteration,
            )
            pool = VirtualClientPool(context)
            try:
                await _control_loop(
                    scheduler=scheduler,
                    pool=pool,
                    aggregator=aggregator,
                    state=state,
                    control_interval_s=float(config.control_interval_s),
                )
            finally:
                pool.stop()
                logger.info("Waiting for %d virtual client(s) to drain", pool.active_count)
                drain_timeout_s = max(5.0, float(config.timeout_s) + 1.0)
                cancelled = await pool.drain(timeout_s=drain_timeout_s)
                peak_active = pool.peak_active
    finally:
        if request_writer is not None:
            request_writer.close()

    state.current_target = 0
    breached = aggregator.evaluate_thresholds()
    snapshot = aggregator.snapshot()
    report = build_final_report(
        scenario=scenario,
        base_url=config.base_url,
        snapshot=snapshot,
        aborted=state.aborted,
        abort_reason=state.abort_reason,
        breached_thresholds=breached,
        peak_virtual_clients=peak_active,
        cancelled_clients=cancelled,
    )

    if output_dir is not None:
        write_report_json(output_dir / "summary.json", report)
        write_summary_markdown(output_dir / "summary.md", run_name=config.run_name or scenario.name, report=report)
        (output_dir / "metrics.prom").write_text(aggregator.render_prometheus(), encoding="utf-8")

    if state.aborted:
        reason = state.abort_reason
        logger.warning(
            "Run aborted by threshold '%s' (observed %s)",
            reason.threshold if reason else "?",
            reason.observed_value if reason else "?",
        )
    elif abort_signal.is_set():
        logger.info("Run completed all stages; thresholds breached after the last stage are reported only")
    else:
        logger.info("Run completed normally")

    return RunResult(
        aborted=state.aborted,
        abort_reason=state.abort_reason,
        report=report,
        output_dir=output_dir,
    )
