from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from metrics import (
    FAILED_REQUESTS,
    HTTP_REQ_DURATION,
    HTTP_REQS,
    ITERATIONS,
    TIMEOUTS,
    AbortReason,
    MetricsSnapshot,
)
from scenario import Scenario


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def build_final_report(
    *,
    scenario: Scenario,
    base_url: str,
    snapshot: MetricsSnapshot,
    aborted: bool,
    abort_reason: Optional[AbortReason],
    breached_thresholds: dict[str, float],
    peak_virtual_clients: int = 0,
    cancelled_clients: int = 0,
) -> dict[str, Any]:
    checks = {
        check.name: dict(snapshot.checks.get(check.name, {"passes": 0, "fails": 0}))
        for check in scenario.checks
    }
    duration = snapshot.series.get(HTTP_REQ_DURATION, {})
    http_reqs = snapshot.counter(HTTP_REQS)
    failed = snapshot.counter(FAILED_REQUESTS)

    return {
        "scenario": scenario.name,
        "base_url": base_url,
        "endpoint": scenario.request.endpoint,
        "elapsed_s": snapshot.elapsed_s,
        "aborted": aborted,
        "abort_reason": abort_reason.to_dict() if abort_reason is not None else None,
        "iterations": int(snapshot.counter(ITERATIONS)),
        "http_reqs": int(http_reqs),
        "failed_requests": int(failed),
        "timeouts": int(snapshot.counter(TIMEOUTS)),
        "error_rate": float(failed / http_reqs) if http_reqs else 0.0,
        "peak_virtual_clients": peak_virtual_clients,
        "cancelled_clients": cancelled_clients,
        "checks": checks,
        "http_req_duration_ms": {
            "avg": duration.get("avg"),
            "p50": duration.get("p50"),
            "p90": duration.get("p90"),
            "p95": duration.get("p95"),
            "p99": duration.get("p99"),
            "max": duration.get("max"),
        },
        "thresholds": [
            {
                "name": threshold.name,
                "abort_on_breach": threshold.abort_on_breach,
                "breached": threshold.name in breached_thresholds,
                "observed_value": breached_thresholds.get(threshold.name),
            }
            for threshold in scenario.thresholds
        ],
        "counters": dict(snapshot.counters),
    }


def write_report_json(output_path: Path, report: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(report, indent=2), encoding="utf-8")


def write_summary_markdown(output_path: Path, run_name: str, report: dict[str, Any]) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"- Target: `{report['base_url']}{report['endpoint']}`")
    lines.append(f"- Elapsed: {_fmt(report['elapsed_s'])} s")
    lines.append(f"- Iterations: {report['iterations']}")
    lines.append(f"- Failed requests: {report['failed_requests']} ({_fmt(report['error_rate'] * 100.0)} %)")
    lines.append(f"- Peak virtual clients: {report['peak_virtual_clients']}")
    reason = report["abort_reason"]
    if report["aborted"] and reason:
        lines.append(
            f"- **Aborted** by threshold `{reason['threshold']}` "
            f"(observed {_fmt(reason['observed_value'])})"
        )
    else:
        lines.append("- Completed all stages")
    lines.append("")
    lines.append("## Checks")
    lines.append("")
    lines.append("| Check | Passes | Fails |")
    lines.append("|---|---:|---:|")
    for name, counts in report["checks"].items():
        lines.append(f"| `{name}` | {counts['passes']} | {counts['fails']} |")
    lines.append("")
    lines.append("## Thresholds")
    lines.append("")
    lines.append("| Threshold | Abort on breach | Breached | Observed |")
    lines.append("|---|---|---|---:|")
    for threshold in report["thresholds"]:
        lines.append(
            f"| `{threshold['name']}` | {threshold['abort_on_breach']} | "
            f"{threshold['breached']} | {_fmt(threshold['observed_value'])} |"
        )
    lines.append("")
    latency = report["http_req_duration_ms"]
    lines.append("## Request Duration (ms)")
    lines.append("")
    lines.append("| avg | p50 | p90 | p95 | p99 | max |")
    lines.append("|---:|---:|---:|---:|---:|---:|")
    lines.append(
        "| "
        f"{_fmt(latency['avg'])} | "
        f"{_fmt(latency['p50'])} | "
        f"{_fmt(latency['p90'])} | "
        f"{_fmt(latency['p95'])} | "
        f"{_fmt(latency['p99'])} | "
        f"{_fmt(latency['max'])} |"
    )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
