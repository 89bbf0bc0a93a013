"""
Corrector/Validator for canonical step sequences.

Safe fixes (whitespace, device aliases, out-of-range durations) are applied to a
copy of the steps and reported as corrections. Problems that cannot be fixed are
errors; everything else is a warning and never blocks execution.
"""
from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple

from loguru import logger

from pagecapture.devices import resolve_device_name
from pagecapture.pipeline.canonicalize import DeprecationLog
from pagecapture.pipeline.models import (
    SELECTOR_FIELDS,
    CanonicalStep,
    ClickStep,
    Correction,
    FillStep,
    PassthroughStep,
    ScreenshotStep,
    StepAnalysis,
    Suggestion,
    ValidateReport,
    ValidationResult,
    ViewportStep,
    WaitStep,
)

log = logger.bind(module="validate")

MAX_WAIT_MS = 30_000

BASE_ESTIMATE_MS = 2000
PER_STEP_ESTIMATE_MS = 1000

# A fixed id; tag names are checked against HTML_TAGS
_STATIC_ID = re.compile(r"^#[A-Za-z_][\w-]*$")
_BARE_WORD = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
_QUOTED = re.compile(r"(\"[^\"]*\"|'[^']*')")

HTML_TAGS = frozenset(
    """
    a abbr address area article aside audio b base bdi bdo blockquote body br button
    canvas caption cite code col colgroup data datalist dd del details dfn dialog div dl dt
    em embed fieldset figcaption figure footer form h1 h2 h3 h4 h5 h6 head header hgroup hr html
    i iframe img input ins kbd label legend li link main map mark menu meta meter nav noscript
    object ol optgroup option output p param picture pre progress q rp rt ruby
    s samp script section select slot small source span strong style sub summary sup svg
    table tbody td template textarea tfoot th thead time title tr track u ul var video wbr
    """.split()
)

# Kinds that do not change what the page shows
_PASSIVE_KINDS = ("wait", "delay")


def is_static_selector(selector: str) -> bool:
    """A bare tag name or fixed id, present as soon as the document is."""
    return selector.lower() in HTML_TAGS or bool(_STATIC_ID.match(selector))


def normalize_selector_whitespace(selector: str) -> Tuple[str, Optional[str]]:
    """Trim a selector and collapse whitespace runs outside quoted strings.

    Returns the normalized selector and the reason for the change, or None when unchanged.
    """
    trimmed = selector.strip()
    parts = _QUOTED.split(trimmed)
    collapsed = "".join(part if index % 2 else re.sub(r"\s+", " ", part) for index, part in enumerate(parts))
    if trimmed != selector:
        return collapsed, "Removed leading/trailing whitespace"
    if collapsed != selector:
        return collapsed, "Collapsed repeated whitespace"
    return selector, None


def check_selector_syntax(selector: str) -> Tuple[Optional[str], Optional[str]]:
    """Cheap structural checks that need no DOM. Returns ``(error, warning)``."""
    if selector.startswith("##") or selector.startswith(".."):
        return "Invalid selector: double prefix", None
    if selector.count("[") != selector.count("]"):
        return "Unclosed brackets in selector", None
    if selector.count("(") != selector.count(")"):
        return "Unclosed parentheses in selector", None
    if _BARE_WORD.match(selector) and selector.lower() not in HTML_TAGS:
        return None, (
            f'"{selector}" looks like an ID or class. '
            f'Did you mean "#{selector}" (ID) or ".{selector}" (class)?'
        )
    return None, None


def _wire_name(step: CanonicalStep, attr: str) -> str:
    info = type(step).model_fields.get(attr)
    return info.alias if info is not None and info.alias else attr


class _Checker:
    def __init__(self, steps: List[CanonicalStep]) -> None:
        self.steps = steps
        self.corrections: List[Correction] = []
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.analysis = [
            StepAnalysis(index=index, type=step.type or "(missing)", target=step.primary_selector())
            for index, step in enumerate(steps)
        ]

    def _mark(self, index: int, status: str, note: Optional[str]) -> None:
        entry = self.analysis[index]
        if status == "error" or (status == "warning" and entry.status == "ok"):
            entry.status = status  # type: ignore[assignment]
        if note:
            entry.notes.append(note)

    def error(self, index: int, message: str, note: Optional[str] = None) -> None:
        self.errors.append(f"Step {index + 1}: {message}")
        self._mark(index, "error", note or message)

    def warn(self, index: int, message: str, note: Optional[str] = None) -> None:
        self.warnings.append(f"Step {index + 1}: {message}")
        self._mark(index, "warning", note or message)

    def note(self, index: int, note: str, status: str = "ok") -> None:
        self._mark(index, status, note)

    def correct(self, index: int, field: str, before: Any, after: Any, reason: str) -> None:
        self.corrections.append(Correction(step_index=index, field=field, from_=before, to=after, reason=reason))
        self.note(index, f"Corrected {field}: {reason}")

    # per-step checks

    def selectors(self, index: int, step: CanonicalStep) -> None:
        for attr in SELECTOR_FIELDS.get(step.type, ()):
            value = getattr(step, attr)
            if not isinstance(value, str):
                continue
            field = _wire_name(step, attr)
            normalized, reason = normalize_selector_whitespace(value)
            if not normalized:
                setattr(step, attr, None)
                self.correct(index, field, value, None, "Removed empty selector")
                continue
            if reason:
                setattr(step, attr, normalized)
                self.correct(index, field, value, normalized, reason)
            error, warning = check_selector_syntax(normalized)
            if error:
                self.error(index, f'Invalid selector "{normalized}" - {error}', f"INVALID_SELECTOR: {error}")
            elif warning:
                self.warn(index, warning)
        self.analysis[index].target = step.primary_selector()

    def viewport(self, index: int, step: ViewportStep) -> None:
        if step.device:
            resolved = resolve_device_name(step.device)
            if resolved is None:
                # unknown names may be custom presets understood by the backend
                self.note(index, f'Unknown device "{step.device}" passed through unchanged')
                log.debug("validate:unknown_device {}", step.device)
            elif resolved != step.device:
                self.correct(index, "device", step.device, resolved, f'Resolved device alias "{step.device}"')
                step.device = resolved
        for name in ("width", "height"):
            value = getattr(step, name)
            if value is not None and value <= 0:
                self.error(index, f"viewport {name} must be a positive number of pixels, got {value}")

    def wait(self, index: int, step: WaitStep) -> None:
        if not step.for_ and step.duration is None:
            self.error(
                index,
                "wait step requires 'for' (selector) or 'duration' (ms)",
                "Missing 'for' (selector) or 'duration' (ms)",
            )
            return
        if step.duration is not None:
            clamped = min(max(step.duration, 0), MAX_WAIT_MS)
            if clamped != step.duration:
                self.correct(index, "duration", step.duration, clamped, f"Clamped duration to 0..{MAX_WAIT_MS} ms")
                step.duration = clamped
            if step.for_:
                self.warn(index, "wait step sets both 'for' and 'duration'; the selector wait runs first, then the delay")
            else:
                self.note(index, "Fixed duration wait - prefer 'for' with selector when possible", "warning")

    def fill(self, index: int, step: FillStep) -> None:
        if not step.target:
            self.error(index, "fill step requires 'target' (selector)", "Missing 'target' parameter")
        if step.value is None:
            self.error(index, "fill step requires 'value'", "Missing 'value' parameter")

    def click(self, index: int, step: ClickStep) -> None:
        if not step.target:
            self.error(index, "click step requires 'target' (selector)", "Missing 'target' parameter")

    def passthrough(self, index: int, step: PassthroughStep) -> None:
        for issue in step.issues:
            self.error(index, issue)

    # sequence checks

    def dynamic_selectors(self) -> None:
        awaited = set()
        for index, step in enumerate(self.steps):
            if isinstance(step, WaitStep) and step.for_:
                awaited.add(step.for_)
            elif isinstance(step, (ClickStep, FillStep)) and step.target:
                if step.target not in awaited and not is_static_selector(step.target):
                    self.warn(
                        index,
                        f'Consider adding {{"type": "wait", "for": "{step.target}"}} '
                        f"before {step.type} for dynamic pages",
                        "Selector may not exist yet; no preceding wait",
                    )
                if isinstance(step, ClickStep) and step.wait_for:
                    awaited.add(step.wait_for)

    def viewports(self) -> None:
        positions = [index for index, step in enumerate(self.steps) if isinstance(step, ViewportStep)]
        if positions and positions[0] > 0:
            self.note(positions[0], "Should be first step (will be auto-moved)", "warning")
        if len(positions) > 1:
            listed = ", ".join(str(index + 1) for index in positions)
            self.warnings.append(
                f"Multiple viewport steps (steps {listed}); only the first is moved to the start, "
                "later ones change the viewport mid-sequence"
            )
            for index in positions[1:]:
                self.note(index, "Changes the viewport mid-sequence", "warning")

    def screenshots(self) -> None:
        positions = [index for index, step in enumerate(self.steps) if isinstance(step, ScreenshotStep)]
        if not positions:
            return
        if len(positions) > 1:
            listed = ", ".join(str(index + 1) for index in positions)
            self.warnings.append(
                f"Steps {listed} are screenshot steps; only the last one produces the returned image"
            )
            for index in positions[:-1]:
                self.note(index, "Intermediate capture; its image is not returned", "warning")
        last = positions[-1]
        for index in range(last + 1, len(self.steps)):
            step = self.steps[index]
            if step.type in _PASSIVE_KINDS:
                continue
            self.warn(
                index,
                f"{step.type} step follows the screenshot at step {last + 1}; it will still run, "
                f"but the page state at step {last + 1} is not captured because the screenshot "
                "moves to the end of the sequence",
                "Runs after the requested screenshot position",
            )


def validate(
    steps: List[CanonicalStep],
    url: str = "",
    deprecations: Optional[DeprecationLog] = None,
) -> ValidationResult:
    """Check and correct a canonical sequence. The input steps are not modified."""
    working = [step.model_copy(deep=True) for step in steps]
    checker = _Checker(working)

    for index, step in enumerate(working):
        if isinstance(step, PassthroughStep):
            checker.passthrough(index, step)
            continue
        checker.selectors(index, step)
        if isinstance(step, ViewportStep):
            checker.viewport(index, step)
        elif isinstance(step, WaitStep):
            checker.wait(index, step)
        elif isinstance(step, FillStep):
            checker.fill(index, step)
        elif isinstance(step, ClickStep):
            checker.click(index, step)

    checker.dynamic_selectors()
    checker.viewports()
    checker.screenshots()

    warnings = (deprecations.notices if deprecations is not None else []) + checker.warnings
    result = ValidationResult(
        valid=not checker.errors,
        can_proceed=not checker.errors,
        corrections=checker.corrections,
        warnings=warnings,
        errors=checker.errors,
        corrected_steps=working if checker.corrections else None,
        steps=working,
        analysis=checker.analysis,
    )
    log.debug(
        "validate:done url={} steps={} errors={} warnings={} corrections={}",
        url,
        len(working),
        len(result.errors),
        len(result.warnings),
        len(result.corrections),
    )
    return result


def suggest(steps: List[CanonicalStep], analysis: List[StepAnalysis]) -> List[Suggestion]:
    suggestions: List[Suggestion] = []
    for index, step in enumerate(steps):
        following = steps[index + 1] if index + 1 < len(steps) else None

        if isinstance(step, WaitStep) and not step.for_ and step.duration is None:
            suggestions.append(
                Suggestion(
                    step_index=index,
                    issue="wait step missing condition",
                    fix="Add 'for' parameter with CSS selector, or 'duration' for fixed wait",
                    corrected_step={"type": "wait", "for": ".your-element", "timeout": 10000},
                )
            )

        if isinstance(step, ClickStep) and not step.wait_for and following is not None:
            if following.type not in ("wait", "screenshot"):
                analysis[index].notes.append("Consider adding 'waitFor' if click loads dynamic content")
                if analysis[index].status == "ok":
                    analysis[index].status = "warning"
                suggestions.append(
                    Suggestion(
                        step_index=index,
                        issue="Click may need waitFor",
                        fix="Add 'waitFor' parameter if click loads dynamic content",
                        corrected_step={**step.to_wire(), "waitFor": ".expected-element"},
                    )
                )

        if (
            isinstance(step, (ClickStep, FillStep))
            and isinstance(following, WaitStep)
            and step.target
            and following.for_ == step.target
        ):
            suggestions.append(
                Suggestion(
                    step_index=index + 1,
                    issue=f'Wait for "{following.for_}" should come before {step.type}',
                    fix=f"Move wait step before the {step.type} step for reliability",
                )
            )
    return suggestions


def analyze_steps(
    steps: List[CanonicalStep],
    result: ValidationResult,
    ordered_steps: Optional[List[CanonicalStep]] = None,
) -> ValidateReport:
    """Dry-run report for validate mode. Touches no backend."""
    analysis = [entry.model_copy(deep=True) for entry in result.analysis]
    suggestions = suggest(result.steps, analysis)
    has_screenshot = any(isinstance(step, ScreenshotStep) for step in result.steps)
    if not has_screenshot:
        analysis.append(
            StepAnalysis(
                index=len(result.steps),
                type="screenshot",
                notes=["Auto-added at end" if result.steps else "Auto-added screenshot step"],
            )
        )
    return ValidateReport(
        validation=result,
        step_count=len(result.steps) + (0 if has_screenshot else 1),
        estimated_time_ms=BASE_ESTIMATE_MS + PER_STEP_ESTIMATE_MS * len(steps),
        suggestions=suggestions,
        step_analysis=analysis,
        ordered_steps=ordered_steps or [],
    )
