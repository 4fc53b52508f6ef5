from __future__ import annotations

import json
import operator
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from errors import ScenarioError


DEFAULT_CHECKS = ("status==200", "status!=504", "status!=500")
FAILED_REQUESTS_METRIC = "failed requests"
# Built-in counters hold a single running total, so only these aggregations apply.
COUNTER_METRICS = frozenset({"iterations", "http_reqs", FAILED_REQUESTS_METRIC, "timeouts"})
COUNTER_AGGREGATIONS = frozenset({"count", "sum", "rate"})

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}
_OPERATOR_PATTERN = "<=|>=|==|!=|<|>"
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_THRESHOLD_CONDITION = re.compile(
    r"^\s*(count|rate|sum|avg|min|max|med|p\((\d+(?:\.\d+)?)\))\s*"
    rf"({_OPERATOR_PATTERN})\s*(-?\d+(?:\.\d+)?)\s*$"
)
_CHECK_EXPRESSION = re.compile(rf"^\s*status\s*({_OPERATOR_PATTERN})\s*(\d{{3}})\s*$")


def parse_duration(value: Any) -> float:
    if isinstance(value, bool):
        raise ScenarioError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            position = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                position = match.end()
            if not text or position != len(text):
                raise ScenarioError(f"Invalid duration: {value!r}") from None
    else:
        raise ScenarioError(f"Invalid duration: {value!r}")
    if seconds < 0:
        raise ScenarioError(f"Duration must be >= 0, got {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    duration_s: float
    target: int

    def __post_init__(self) -> None:
        if self.duration_s < 0:
            raise ScenarioError(f"Stage duration must be >= 0, got {self.duration_s}")
        if isinstance(self.target, bool) or not isinstance(self.target, int):
            raise ScenarioError(f"Stage target must be an integer, got {self.target!r}")
        if self.target < 0:
            raise ScenarioError(f"Stage target must be >= 0, got {self.target}")

    @classmethod
    def parse(cls, duration: Any, target: Any) -> "Stage":
        try:
            parsed_target = int(target)
        except (TypeError, ValueError) as exc:
            raise ScenarioError(f"Invalid stage target: {target!r}") from exc
        return cls(duration_s=parse_duration(duration), target=parsed_target)


def parse_stages(value: str) -> list[Stage]:
    stages: list[Stage] = []
    for part in (item.strip() for item in value.split(",")):
        if not part:
            continue
        duration, sep, target = part.rpartition(":")
        if not sep:
            raise ScenarioError(
                f"Invalid stage '{part}'. Expected <duration>:<target>, e.g. 30s:10."
            )
        stages.append(Stage.parse(duration, target))
    if not stages:
        raise ScenarioError("A scenario must define at least one stage")
    return stages


@dataclass(frozen=True)
class Threshold:
    # condition describes the breach: "count>=1" on failed requests breaches on the first failure.

    metric: str
    condition: str
    abort_on_breach: bool = True
    aggregation: str = field(init=False, repr=False, compare=False)
    percentile: Optional[float] = field(init=False, repr=False, compare=False)
    op: str = field(init=False, repr=False, compare=False)
    value: float = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.metric.strip():
            raise ScenarioError("Threshold metric name cannot be empty")
        match = _THRESHOLD_CONDITION.match(self.condition)
        if match is None:
            raise ScenarioError(
                f"Invalid threshold condition '{self.condition}' for metric '{self.metric}'. "
                "Expected <aggregation><op><number>, e.g. count>=1 or p(95)>500."
            )
        aggregation = match.group(1)
        pct = float(match.group(2)) if match.group(2) is not None else None
        if pct is not None:
            if pct > 100:
                raise ScenarioError(f"Percentile must be <= 100, got {pct}")
            aggregation = "p"
        if self.metric in COUNTER_METRICS and aggregation not in COUNTER_AGGREGATIONS:
            raise ScenarioError(
                f"Threshold condition '{self.condition}' cannot apply to counter '{self.metric}'. "
                f"Counters support {', '.join(sorted(COUNTER_AGGREGATIONS))}."
            )
        object.__setattr__(self, "aggregation", aggregation)
        object.__setattr__(self, "percentile", pct)
        object.__setattr__(self, "op", match.group(3))
        object.__setattr__(self, "value", float(match.group(4)))

    @property
    def name(self) -> str:
        return f"{self.metric}: {self.condition}"

    def is_breached(self, observed: Optional[float]) -> bool:
        if observed is None:
            return False
        return _OPERATORS[self.op](observed, self.value)


def parse_threshold(value: str) -> Threshold:
    pieces = value.split(":")
    abort_on_breach = True
    if len(pieces) >= 3 and pieces[-1].strip().lower() in {"abort", "continue"}:
        abort_on_breach = pieces.pop().strip().lower() == "abort"
    if len(pieces) != 2:
        raise ScenarioError(
            f"Invalid threshold '{value}'. Expected <metric>:<condition>[:abort|:continue]."
        )
    return Threshold(
        metric=pieces[0].strip(),
        condition=pieces[1].strip(),
        abort_on_breach=abort_on_breach,
    )


@dataclass(frozen=True)
class Check:
    expression: str
    op: str = field(init=False, repr=False, compare=False)
    expected_status: int = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        match = _CHECK_EXPRESSION.match(self.expression)
        if match is None:
            raise ScenarioError(
                f"Invalid check '{self.expression}'. Expected status<op><code>, e.g. status==200."
            )
        object.__setattr__(self, "op", match.group(1))
        object.__setattr__(self, "expected_status", int(match.group(2)))

    @property
    def name(self) -> str:
        return self.expression

    def evaluate(self, status: Optional[int]) -> bool:
        if status is None:
            return False
        return _OPERATORS[self.op](status, self.expected_status)


@dataclass(frozen=True)
class RequestPart:
    field_name: str
    fixture_name: str


@dataclass(frozen=True)
class RequestSpec:
    endpoint: str
    parts: tuple[RequestPart, ...]
    form_fields: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.endpoint.startswith("/"):
            raise ScenarioError(f"Endpoint must start with '/', got '{self.endpoint}'")
        if not self.parts:
            raise ScenarioError(f"Request to {self.endpoint} has no file parts")
        field_names = [part.field_name for part in self.parts] + [
            key for key, _ in self.form_fields
        ]
        duplicates = sorted({name for name in field_names if field_names.count(name) > 1})
        if duplicates:
            raise ScenarioError(f"Duplicate multipart field name(s): {', '.join(duplicates)}")

    def fixture_names(self) -> list[str]:
        return [part.fixture_name for part in self.parts]


def file_parts(*fixture_names: str) -> tuple[RequestPart, ...]:
    return tuple(RequestPart(field_name=name, fixture_name=name) for name in fixture_names)


@dataclass(frozen=True)
class Scenario:
    name: str
    request: RequestSpec
    stages: tuple[Stage, ...]
    thresholds: tuple[Threshold, ...] = ()
    checks: tuple[Check, ...] = tuple(Check(expression) for expression in DEFAULT_CHECKS)
    fixture_dir: str = ""

    def __post_init__(self) -> None:
        if not self.stages:
            raise ScenarioError(f"Scenario '{self.name}' must define at least one stage")
        if not self.checks:
            raise ScenarioError(f"Scenario '{self.name}' must define at least one check")

    @property
    def total_duration_s(self) -> float:
        return float(sum(stage.duration_s for stage in self.stages))

    @property
    def max_target(self) -> int:
        return max(stage.target for stage in self.stages)

    def with_overrides(
        self,
        stages: Optional[list[Stage]] = None,
        thresholds: Optional[list[Threshold]] = None,
        form_fields: Optional[dict[str, str]] = None,
    ) -> "Scenario":
        request = self.request
        if form_fields:
            merged = dict(request.form_fields)
            merged.update(form_fields)
            request = RequestSpec(
                endpoint=request.endpoint,
                parts=request.parts,
                form_fields=tuple(merged.items()),
            )
        return Scenario(
            name=self.name,
            request=request,
            stages=tuple(stages) if stages is not None else self.stages,
            thresholds=tuple(thresholds) if thresholds is not None else self.thresholds,
            checks=self.checks,
            fixture_dir=self.fixture_dir,
        )


def _default_thresholds() -> tuple[Threshold, ...]:
    return (Threshold(metric=FAILED_REQUESTS_METRIC, condition="count>=1", abort_on_breach=True),)


BUILTIN_REQUESTS: dict[str, tuple[str, RequestSpec]] = {
    "html": (
        "html",
        RequestSpec(
            endpoint="/convert/html",
            parts=file_parts(
                "index.html",
                "style.css",
                "header.html",
                "footer.html",
                "font.woff",
                "img.gif",
            ),
        ),
    ),
    "office": (
        "office",
        RequestSpec(endpoint="/convert/office", parts=file_parts("document.docx")),
    ),
    "merge": (
        "pdf",
        RequestSpec(endpoint="/merge", parts=file_parts("gotenberg.pdf", "gotenberg_bis.pdf")),
    ),
}


def builtin_scenario(name: str, max_vus: int, duration: Any = "10m") -> Scenario:
    if name not in BUILTIN_REQUESTS:
        raise ScenarioError(
            f"Unknown scenario '{name}'. Available: {', '.join(sorted(BUILTIN_REQUESTS))}"
        )
    fixture_dir, request = BUILTIN_REQUESTS[name]
    return Scenario(
        name=name,
        request=request,
        stages=(Stage.parse(duration, max_vus),),
        thresholds=_default_thresholds(),
        fixture_dir=fixture_dir,
    )


def _require(payload: dict[str, Any], key: str, source: str) -> Any:
    if key not in payload:
        raise ScenarioError(f"Missing '{key}' in scenario {source}")
    return payload[key]


def scenario_from_dict(payload: Any, source: str = "definition") -> Scenario:
    if not isinstance(payload, dict):
        raise ScenarioError(f"Scenario {source} must be a JSON object")

    raw_parts = payload.get("parts", [])
    if not isinstance(raw_parts, list):
        raise ScenarioError(f"'parts' must be a list in scenario {source}")
    parts: list[RequestPart] = []
    for raw in raw_parts:
        if isinstance(raw, str):
            parts.append(RequestPart(field_name=raw, fixture_name=raw))
        elif isinstance(raw, dict):
            fixture_name = str(_require(raw, "fixture", source))
            parts.append(
                RequestPart(field_name=str(raw.get("field", fixture_name)), fixture_name=fixture_name)
            )
        else:
            raise ScenarioError(f"Unsupported part {raw!r} in scenario {source}")

    raw_fields = payload.get("form_fields", {})
    if not isinstance(raw_fields, dict):
        raise ScenarioError(f"'form_fields' must be an object in scenario {source}")

    raw_stages = _require(payload, "stages", source)
    if not isinstance(raw_stages, list):
        raise ScenarioError(f"'stages' must be a list in scenario {source}")
    stages = []
    for raw in raw_stages:
        if not isinstance(raw, dict):
            raise ScenarioError(f"Unsupported stage {raw!r} in scenario {source}")
        stages.append(Stage.parse(_require(raw, "duration", source), _require(raw, "target", source)))

    thresholds = []
    for raw in payload.get("thresholds", []):
        if not isinstance(raw, dict):
            raise ScenarioError(f"Unsupported threshold {raw!r} in scenario {source}")
        thresholds.append(
            Threshold(
                metric=str(_require(raw, "metric", source)),
                condition=str(_require(raw, "condition", source)),
                abort_on_breach=bool(raw.get("abort_on_breach", True)),
            )
        )

    checks = tuple(Check(str(expression)) for expression in payload.get("checks", DEFAULT_CHECKS))

    return Scenario(
        name=str(payload.get("name", "custom")),
        request=RequestSpec(
            endpoint=str(_require(payload, "endpoint", source)),
            parts=tuple(parts),
            form_fields=tuple((str(key), str(value)) for key, value in raw_fields.items()),
        ),
        stages=tuple(stages),
        thresholds=tuple(thresholds),
        checks=checks,
        fixture_dir=str(payload.get("fixture_dir", "")),
    )


def load_scenario_file(path: Path) -> Scenario:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ScenarioError(f"Cannot read scenario file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ScenarioError(f"Malformed scenario file {path}: {exc}") from exc
    return scenario_from_dict(payload, source=str(path))
