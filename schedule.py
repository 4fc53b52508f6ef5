from __future__ import annotations

import bisect
from typing import Optional, Sequence

from errors import ScenarioError
from scenario import Stage


class StageScheduler:
    # Stages run back to back over half-open windows [start, end).
    def __init__(self, stages: Sequence[Stage]) -> None:
        if not stages:
            raise ScenarioError("A scenario must define at least one stage")
        self.stages = tuple(stages)
        self._ends: list[float] = []
        elapsed = 0.0
        for stage in self.stages:
            elapsed += stage.duration_s
            self._ends.append(elapsed)

    @property
    def total_duration_s(self) -> float:
        return self._ends[-1]

    @property
    def max_target(self) -> int:
        return max(stage.target for stage in self.stages)

    def stage_index_at(self, elapsed_s: float) -> Optional[int]:
        if elapsed_s < 0:
            raise ValueError(f"Elapsed time must be >= 0, got {elapsed_s}")
        # bisect_right skips zero-duration stages whose window is empty.
        index = bisect.bisect_right(self._ends, elapsed_s)
        if index >= len(self.stages):
            return None
        return index

    def target_at(self, elapsed_s: float) -> Optional[int]:
        index = self.stage_index_at(elapsed_s)
        if index is None:
            return None
        return self.stages[index].target

    def is_complete(self, elapsed_s: float) -> bool:
        return self.stage_index_at(elapsed_s) is None

    def stage_end_s(self, index: int) -> float:
        return self._ends[index]
