"""
Error taxonomy and structured, recovery-oriented error responses.

Codes are stable strings a caller can branch on; every fatal error response
carries a ``recovery`` block and, where one exists, a corrected-steps example
the caller can resubmit as-is.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ErrorCode(str, Enum):
    ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"
    ELEMENT_NOT_VISIBLE = "ELEMENT_NOT_VISIBLE"
    ELEMENT_NOT_CLICKABLE = "ELEMENT_NOT_CLICKABLE"
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    INVALID_SELECTOR = "INVALID_SELECTOR"
    INVALID_URL = "INVALID_URL"
    STEP_TIMEOUT = "STEP_TIMEOUT"
    FILL_FAILED = "FILL_FAILED"
    SCROLL_FAILED = "SCROLL_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    CAPTURE_FAILED = "CAPTURE_FAILED"


class BackendError(Exception):
    """Raised by a page backend primitive. ``status`` is the HTTP status when one is known."""

    def __init__(self, code: ErrorCode, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


class CaptureFailure(Exception):
    """A fatal failure that aborts the remainder of a capture request."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        step: Optional[int] = None,
        step_type: Optional[str] = None,
        target: Optional[str] = None,
        status: Optional[int] = None,
        corrected_steps: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.step = step
        self.step_type = step_type
        self.target = target
        self.status = status
        self.corrected_steps = corrected_steps


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorInfo(_Wire):
    code: ErrorCode
    message: str
    step: Optional[int] = None
    step_type: Optional[str] = None
    target: Optional[str] = None


class Recovery(_Wire):
    action: Literal["retry", "modify", "skip", "abort"]
    description: str
    corrected_steps: Optional[List[Dict[str, Any]]] = None


class ErrorContext(_Wire):
    url: str = ""
    steps_total: int = 0
    steps_completed: int = 0
    last_successful_step: Optional[int] = None
    execution_time_ms: int = 0


class ErrorResponse(_Wire):
    success: Literal[False] = False
    error: ErrorInfo
    recovery: Recovery
    context: ErrorContext

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass
class ErrorDetails:
    message: str
    url: str = ""
    step: Optional[int] = None
    step_type: Optional[str] = None
    target: Optional[str] = None
    steps_total: int = 0
    steps_completed: int = 0
    last_successful_step: Optional[int] = None
    execution_time_ms: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


def _recovery_for(code: ErrorCode, details: ErrorDetails) -> Recovery:
    target = details.target
    kind = details.step_type or "click"
    if code == ErrorCode.ELEMENT_NOT_FOUND:
        return Recovery(
            action="modify",
            description=f'Element "{target}" not found. Add a wait step before this action, or verify the selector.',
            corrected_steps=[{"type": "wait", "for": target, "timeout": 10000}, {"type": kind, "target": target}],
        )
    if code == ErrorCode.ELEMENT_NOT_VISIBLE:
        return Recovery(
            action="modify",
            description=f'Element "{target}" exists but is not visible. Scroll to it first.',
            corrected_steps=[
                {"type": "scroll", "to": target},
                {"type": "wait", "for": target, "timeout": 2000},
                {"type": kind, "target": target},
            ],
        )
    if code == ErrorCode.ELEMENT_NOT_CLICKABLE:
        return Recovery(
            action="modify",
            description=f'Element "{target}" is covered by another element. Try scrolling or waiting.',
            corrected_steps=[
                {"type": "scroll", "to": target},
                {"type": "wait", "duration": 300},
                {"type": "click", "target": target},
            ],
        )
    if code == ErrorCode.FILL_FAILED:
        return Recovery(
            action="modify",
            description=f'Could not fill "{target}". Element may be disabled, readonly, or the wrong type.',
            corrected_steps=[
                {"type": "wait", "for": target},
                {"type": "click", "target": target},
                {"type": "fill", "target": target, "value": details.extra.get("value", "your-value")},
            ],
        )
    if code == ErrorCode.SCROLL_FAILED:
        return Recovery(
            action="modify",
            description=f'Could not scroll to "{target}". Wait for it to load, or scroll by pixels instead.',
            corrected_steps=[{"type": "wait", "for": target}, {"type": "scroll", "to": target}],
        )
    if code == ErrorCode.STEP_TIMEOUT:
        return Recovery(
            action="modify",
            description="The step did not finish in time. Increase its timeout or wait for a more specific element.",
            corrected_steps=[{"type": "wait", "for": target or ".expected-element", "timeout": 30000}],
        )
    if code == ErrorCode.INVALID_SELECTOR:
        return Recovery(
            action="modify",
            description=(
                f'Invalid CSS selector "{target}". Use "#id", ".class", a tag name, '
                "\"[data-test='value']\" or \".parent .child\"."
            ),
        )
    if code == ErrorCode.NAVIGATION_TIMEOUT:
        return Recovery(
            action="retry",
            description="The page took too long to load. Retry, or check that the URL is reachable.",
        )
    if code == ErrorCode.NAVIGATION_FAILED:
        status = details.extra.get("status")
        suffix = f" (HTTP {status})" if status else ""
        return Recovery(
            action="retry",
            description=f"Navigation failed{suffix}. Retry later, or check the URL and any required headers.",
        )
    if code == ErrorCode.VALIDATION_FAILED:
        return Recovery(
            action="modify",
            description="Fix the listed step errors and resubmit.",
            corrected_steps=details.extra.get("corrected_steps"),
        )
    if code == ErrorCode.INVALID_URL:
        return Recovery(action="abort", description="Provide an absolute http(s) URL, e.g. https://example.com.")
    return Recovery(action="abort", description=details.message)


def build_error_response(code: ErrorCode, details: ErrorDetails) -> ErrorResponse:
    recovery = _recovery_for(code, details)
    if details.extra.get("corrected_steps") and recovery.corrected_steps is None:
        recovery.corrected_steps = details.extra["corrected_steps"]
    return ErrorResponse(
        error=ErrorInfo(
            code=code,
            message=details.message,
            step=details.step,
            step_type=details.step_type,
            target=details.target,
        ),
        recovery=recovery,
        context=ErrorContext(
            url=details.url,
            steps_total=details.steps_total,
            steps_completed=details.steps_completed,
            last_successful_step=details.last_successful_step,
            execution_time_ms=details.execution_time_ms,
        ),
    )


def failure_to_response(failure: CaptureFailure, details: ErrorDetails) -> ErrorResponse:
    details.message = failure.message
    details.step = failure.step if failure.step is not None else details.step
    details.step_type = failure.step_type or details.step_type
    details.target = failure.target or details.target
    if failure.status is not None:
        details.extra.setdefault("status", failure.status)
    if failure.corrected_steps:
        details.extra.setdefault("corrected_steps", failure.corrected_steps)
    return build_error_response(failure.code, details)


def format_error_text(response: ErrorResponse) -> str:
    lines = [
        f"✗ {response.error.code.value}: {response.error.message}",
        "",
        f"RECOVERY ({response.recovery.action}): {response.recovery.description}",
    ]
    if response.recovery.corrected_steps:
        lines.append("")
        lines.append("CORRECTED STEPS:")
        lines.append("```json")
        lines.append(json.dumps(response.recovery.corrected_steps, indent=2))
        lines.append("```")
    ctx = response.context
    last = ctx.last_successful_step + 1 if ctx.last_successful_step is not None else "none"
    lines.append("")
    lines.append(f"Context: {ctx.steps_completed}/{ctx.steps_total} steps completed, last success: step {last}")
    lines.append(f"Execution time: {ctx.execution_time_ms}ms")
    return "\n".join(lines)
