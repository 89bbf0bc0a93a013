from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel

# Canonical step kinds exposed to callers, in recommended order of use.
STEP_KINDS = ("viewport", "wait", "fill", "click", "scroll", "screenshot")

# Fields holding a selector, per kind.
SELECTOR_FIELDS = {
    "wait": ("for_",),
    "fill": ("target",),
    "click": ("target", "wait_for"),
    "scroll": ("to",),
    "screenshot": ("element",),
}


class _Step(BaseModel):
    # Unknown fields are kept under their original names.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def primary_selector(self) -> Optional[str]:
        return None


class ViewportStep(_Step):
    type: Literal["viewport"] = "viewport"
    device: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    device_scale_factor: Optional[float] = Field(None, alias="deviceScaleFactor")
    is_mobile: Optional[bool] = Field(None, alias="isMobile")
    has_touch: Optional[bool] = Field(None, alias="hasTouch")
    is_landscape: Optional[bool] = Field(None, alias="isLandscape")
    user_agent: Optional[str] = Field(None, alias="userAgent")


class WaitStep(_Step):
    type: Literal["wait"] = "wait"
    for_: Optional[str] = Field(None, alias="for")
    duration: Optional[float] = None
    timeout: Optional[float] = None

    def primary_selector(self) -> Optional[str]:
        return self.for_


class FillStep(_Step):
    type: Literal["fill"] = "fill"
    target: Optional[str] = None
    value: Optional[str] = None
    submit: Optional[bool] = None

    def primary_selector(self) -> Optional[str]:
        return self.target


class ClickStep(_Step):
    type: Literal["click"] = "click"
    target: Optional[str] = None
    wait_for: Optional[str] = Field(None, alias="waitFor")

    def primary_selector(self) -> Optional[str]:
        return self.target


class ScrollStep(_Step):
    type: Literal["scroll"] = "scroll"
    to: Optional[str] = None
    y: Optional[float] = None

    def primary_selector(self) -> Optional[str]:
        return self.to


class ScreenshotStep(_Step):
    type: Literal["screenshot"] = "screenshot"
    full_page: Optional[bool] = Field(None, alias="fullPage")
    element: Optional[str] = None

    def primary_selector(self) -> Optional[str]:
        return self.element


class PassthroughStep(_Step):
    """A step outside the canonical vocabulary (hover, cookie, ...) or one that could not be interpreted."""

    type: str = ""
    _issues: List[str] = PrivateAttr(default_factory=list)

    @property
    def issues(self) -> List[str]:
        return self._issues

    def primary_selector(self) -> Optional[str]:
        target = (self.model_extra or {}).get("target")
        return target if isinstance(target, str) else None


CanonicalStep = Union[ViewportStep, WaitStep, FillStep, ClickStep, ScrollStep, ScreenshotStep, PassthroughStep]

KIND_MODELS = {
    "viewport": ViewportStep,
    "wait": WaitStep,
    "fill": FillStep,
    "click": ClickStep,
    "scroll": ScrollStep,
    "screenshot": ScreenshotStep,
}


def steps_to_wire(steps: List[CanonicalStep]) -> List[Dict[str, Any]]:
    return [step.to_wire() for step in steps]


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Correction(_Record):
    step_index: int
    field: str
    from_: Any = Field(None, alias="from")
    to: Any = None
    reason: str


class StepAnalysis(_Record):
    index: int
    type: str
    target: Optional[str] = None
    status: Literal["ok", "warning", "error"] = "ok"
    notes: List[str] = Field(default_factory=list)


class ValidationResult(_Record):
    valid: bool
    can_proceed: bool
    corrections: List[Correction] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    corrected_steps: Optional[List[CanonicalStep]] = None
    # Steps after correction, always set; corrected_steps only when something changed.
    steps: List[CanonicalStep] = Field(default_factory=list, exclude=True)
    analysis: List[StepAnalysis] = Field(default_factory=list, exclude=True)

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, exclude={"corrected_steps"})
        if self.corrected_steps is not None:
            data["correctedSteps"] = [step.to_wire() for step in self.corrected_steps]
        return data


class Suggestion(_Record):
    step_index: int
    issue: str
    fix: str
    corrected_step: Optional[Dict[str, Any]] = None


class ValidateReport(_Record):
    """What validate mode returns: the validation result plus a dry-run analysis."""

    validation: ValidationResult
    step_count: int
    estimated_time_ms: int
    suggestions: List[Suggestion] = Field(default_factory=list)
    step_analysis: List[StepAnalysis] = Field(default_factory=list)
    ordered_steps: List[CanonicalStep] = Field(default_factory=list, exclude=True)

    @property
    def valid(self) -> bool:
        return self.validation.valid

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, exclude={"validation"})
        data["validation"] = self.validation.to_wire()
        data["orderedSteps"] = [step.to_wire() for step in self.ordered_steps]
        return data


class RetryPolicy(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_retries: int = Field(3, ge=0, le=10)
    initial_delay_ms: float = Field(1000, ge=0)
    max_delay_ms: float = Field(10000, ge=0)
    backoff_multiplier: float = Field(2, ge=1)
    retryable_status_codes: List[int] = Field(default_factory=lambda: [408, 429, 500, 502, 503, 504])
    retryable_error_patterns: List[str] = Field(
        default_factory=lambda: ["ETIMEDOUT", "ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "EAI_AGAIN"]
    )


class StepResult(_Record):
    index: int
    kind: str
    target: Optional[str] = None
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None
    note: Optional[str] = None
    duration_ms: int = 0


class ExecutionOutcome(_Record):
    step_results: List[StepResult] = Field(default_factory=list)
    artifact: bytes = Field(b"", exclude=True)
    retry_attempts: int = 0
    status: Optional[int] = None
    viewport_width: int = 0
    viewport_height: int = 0
    device: Optional[str] = None
    full_page: bool = False
    mime_type: str = "image/png"
    page_title: Optional[str] = None
    scroll_width: Optional[int] = None
    scroll_height: Optional[int] = None

    @property
    def steps_completed(self) -> int:
        return sum(1 for result in self.step_results if result.success)

    @property
    def last_successful_step(self) -> Optional[int]:
        successes = [result.index for result in self.step_results if result.success]
        return successes[-1] if successes else None


class CaptureRequest(_Record):
    url: str = Field(min_length=1)
    steps: Optional[List[Any]] = None
    headers: Optional[Dict[str, str]] = None
    cookies: Optional[List[Dict[str, Any]]] = None
    full_page: bool = False
    validate_only: bool = Field(False, alias="validate")
    retry_policy: Optional[RetryPolicy] = None


class ExtractRequest(_Record):
    url: str = Field(min_length=1)
    selector: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
