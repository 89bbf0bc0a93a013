"""
Orderer: sequence-level invariants.

After ``order`` runs, a viewport step (if any) is first and a screenshot step is
last. No caller step is ever dropped; only the first viewport and the last
screenshot are moved.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from pagecapture.pipeline.models import CanonicalStep, Correction, ScreenshotStep, ViewportStep

log = logger.bind(module="order")


@dataclass
class OrderResult:
    steps: List[CanonicalStep]
    viewport_moved_from: Optional[int] = None
    screenshot_moved_from: Optional[int] = None
    screenshot_added: bool = False
    # input positions of steps that followed the last screenshot
    after_capture: List[int] = field(default_factory=list)

    @property
    def reordered(self) -> bool:
        return self.viewport_moved_from is not None or self.screenshot_moved_from is not None

    def corrections(self) -> List[Correction]:
        moves = []
        if self.viewport_moved_from is not None:
            moves.append(
                Correction(
                    step_index=self.viewport_moved_from,
                    field="position",
                    from_=self.viewport_moved_from,
                    to=0,
                    reason="viewport must be first step for correct rendering",
                )
            )
        if self.screenshot_moved_from is not None:
            moves.append(
                Correction(
                    step_index=self.screenshot_moved_from,
                    field="position",
                    from_=self.screenshot_moved_from,
                    to=len(self.steps) - 1,
                    reason="screenshot must be last step so the capture reflects every action",
                )
            )
        return moves


def order_steps(steps: List[CanonicalStep]) -> OrderResult:
    ordered = list(steps)
    result = OrderResult(steps=ordered)
    # positions reported against the caller's sequence; models compare by value, so key on identity
    position = {id(step): index for index, step in enumerate(steps)}

    viewport_at = next((i for i, step in enumerate(ordered) if isinstance(step, ViewportStep)), None)
    if viewport_at is not None and viewport_at > 0:
        ordered.insert(0, ordered.pop(viewport_at))
        result.viewport_moved_from = viewport_at

    captures = [i for i, step in enumerate(ordered) if isinstance(step, ScreenshotStep)]
    if not captures:
        ordered.append(ScreenshotStep())
        result.screenshot_added = True
    elif captures[-1] != len(ordered) - 1:
        last = captures[-1]
        result.after_capture = [position[id(step)] for step in ordered[last + 1 :]]
        result.screenshot_moved_from = position[id(ordered[last])]
        ordered.append(ordered.pop(last))

    if result.after_capture:
        log.warning(
            "order:steps_after_capture moved screenshot from {} past steps {}",
            result.screenshot_moved_from,
            result.after_capture,
        )
    elif result.reordered:
        log.debug("order:reordered viewport_from={}", result.viewport_moved_from)
    return result


def order(steps: List[CanonicalStep]) -> List[CanonicalStep]:
    return order_steps(steps).steps
