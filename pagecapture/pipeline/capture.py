"""
Entry points for one capture or extraction request.

The host builds a ``CaptureContext`` per request (backend session, telemetry
sink, storage target, settings) and passes it in; nothing here reads
process-wide state.
"""
from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlsplit

from loguru import logger

from pagecapture.browser.backend import PageBackend
from pagecapture.config import Settings, settings as default_settings
from pagecapture.pipeline.canonicalize import DeprecationLog, canonicalize_all
from pagecapture.pipeline.errors import (
    BackendError,
    CaptureFailure,
    ErrorCode,
    ErrorDetails,
    ErrorResponse,
    build_error_response,
    failure_to_response,
    format_error_text,
)
from pagecapture.pipeline.executor import Executor
from pagecapture.pipeline.extract import ExtractionResult, build_extraction
from pagecapture.pipeline.models import (
    CaptureRequest,
    ExecutionOutcome,
    ExtractRequest,
    ValidateReport,
    ValidationResult,
    steps_to_wire,
)
from pagecapture.pipeline.order import order_steps
from pagecapture.pipeline.response import (
    capture_content,
    capture_summary,
    extraction_content,
    validate_report_text,
    validation_issues_text,
)
from pagecapture.pipeline.retry import policy_from_settings
from pagecapture.pipeline.validate import analyze_steps, suggest, validate
from pagecapture.storage import StorageMetadata, StorageTarget

log = logger.bind(module="capture")

_SCHEME_TYPOS = ((re.compile(r"^htps://", re.IGNORECASE), "https://"), (re.compile(r"^htp://", re.IGNORECASE), "http://"))
_DOUBLED_SCHEME = re.compile(r"^(https?://)+(https?://)", re.IGNORECASE)
# "mailto:", "javascript:" but not "localhost:8080"
_OTHER_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*:(?!\d)", re.IGNORECASE)


class InvalidUrl(ValueError):
    pass


class TelemetrySink(Protocol):
    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None: ...


@dataclass
class CaptureContext:
    # None is only valid for validate-only requests
    backend: Optional[PageBackend]
    settings: Settings = field(default_factory=lambda: default_settings)
    telemetry: Optional[TelemetrySink] = None
    storage: Optional[StorageTarget] = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event_type, data)


@dataclass
class CaptureResult:
    success: bool
    content: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[ErrorResponse] = None
    validation: Optional[ValidationResult] = None
    report: Optional[ValidateReport] = None
    outcome: Optional[ExecutionOutcome] = None
    extraction: Optional[ExtractionResult] = None
    storage_location: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        if self.error is not None:
            return {**self.error.to_wire(), "content": self.content}
        data: Dict[str, Any] = {"success": True, "content": self.content}
        if self.report is not None:
            data["validation"] = self.report.to_wire()
        elif self.validation is not None:
            data["validation"] = self.validation.to_wire()
        if self.outcome is not None:
            data["outcome"] = self.outcome.to_wire()
        if self.extraction is not None:
            data["extraction"] = self.extraction.model_dump(by_alias=True)
        if self.storage_location:
            data["storageLocation"] = self.storage_location
        return data


def normalize_url(raw: str) -> str:
    url = (raw or "").strip()
    if not url:
        raise InvalidUrl("URL is empty")
    for pattern, replacement in _SCHEME_TYPOS:
        url = pattern.sub(replacement, url)
    url = _DOUBLED_SCHEME.sub(r"\2", url)
    if "://" not in url:
        if _OTHER_SCHEME.match(url):
            raise InvalidUrl(f"Unsupported URL scheme in {raw!r}; only http and https are allowed")
        url = f"https://{url}"
    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https"):
        raise InvalidUrl(f"Unsupported URL scheme {parts.scheme!r}; only http and https are allowed")
    if not parts.hostname or " " in parts.netloc:
        raise InvalidUrl(f"URL {raw!r} has no valid host")
    if not parts.path:
        url = parts._replace(path="/").geturl()
    return url


def normalize_headers(headers: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not headers:
        return None
    cleaned = {}
    for name, value in headers.items():
        name = str(name).strip()
        value = str(value).strip()
        if name and value:
            cleaned[name] = value
    return cleaned or None


def normalize_cookies(cookies: Optional[List[Dict[str, Any]]], url: str) -> List[Dict[str, Any]]:
    """
    Trim cookie names, drop cookies without a name or value, and scope each
    remaining cookie to ``url``'s origin unless it names a domain or url itself.
    """
    parts = urlsplit(url)
    origin = f"{parts.scheme}://{parts.netloc}"
    cleaned = []
    for cookie in cookies or ():
        name = str(cookie.get("name") or "").strip()
        value = cookie.get("value")
        value = "" if value is None else str(value)
        if not name or not value:
            continue
        param = {key: item for key, item in cookie.items() if item is not None}
        param.update(name=name, value=value)
        if not param.get("domain"):
            param.pop("domain", None)
            param.setdefault("url", origin)
        elif not param.get("path"):
            param["path"] = "/"
        cleaned.append(param)
    return cleaned


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _error_result(response: ErrorResponse, ctx: CaptureContext, validation=None) -> CaptureResult:
    ctx.emit("tool.failed", {"code": response.error.code.value, "message": response.error.message})
    return CaptureResult(
        success=False,
        content=[{"type": "text", "text": format_error_text(response)}],
        error=response,
        validation=validation,
    )


def _validation_example(validation: ValidationResult) -> Optional[List[Dict[str, Any]]]:
    analysis = [entry.model_copy(deep=True) for entry in validation.analysis]
    fixes = {
        suggestion.step_index: suggestion.corrected_step
        for suggestion in suggest(validation.steps, analysis)
        if suggestion.corrected_step is not None and validation.analysis[suggestion.step_index].status == "error"
    }
    if not fixes:
        return None
    wire = steps_to_wire(validation.steps)
    return [fixes.get(index, step) for index, step in enumerate(wire)]


async def run_capture(request: CaptureRequest, ctx: CaptureContext) -> CaptureResult:
    started = time.perf_counter()
    ctx.emit("tool.invoked", {"tool": "capture", "url": request.url, "steps": len(request.steps or [])})

    try:
        url = normalize_url(request.url)
    except InvalidUrl as exc:
        return _error_result(
            build_error_response(
                ErrorCode.INVALID_URL,
                ErrorDetails(message=str(exc), url=request.url, execution_time_ms=_elapsed_ms(started)),
            ),
            ctx,
        )

    deprecations = DeprecationLog()
    canonical = canonicalize_all(request.steps, deprecations)
    validation = validate(canonical, url, deprecations)
    ordering = order_steps(validation.steps)
    if ordering.reordered:
        validation.corrections.extend(ordering.corrections())
    if validation.corrections:
        validation.corrected_steps = ordering.steps

    if request.validate_only:
        report = analyze_steps(canonical, validation, ordering.steps)
        ctx.emit("tool.completed", {"tool": "capture", "mode": "validate", "valid": report.valid})
        return CaptureResult(
            success=True,
            content=[{"type": "text", "text": validate_report_text(report)}],
            validation=validation,
            report=report,
        )

    if not validation.can_proceed:
        first = next((entry.index for entry in validation.analysis if entry.status == "error"), None)
        failing = validation.steps[first] if first is not None else None
        response = build_error_response(
            ErrorCode.VALIDATION_FAILED,
            ErrorDetails(
                message="Step validation failed: " + "; ".join(validation.errors),
                url=url,
                step=first,
                step_type=failing.type if failing is not None else None,
                target=failing.primary_selector() if failing is not None else None,
                steps_total=len(ordering.steps),
                execution_time_ms=_elapsed_ms(started),
                extra={"corrected_steps": _validation_example(validation)},
            ),
        )
        result = _error_result(response, ctx, validation)
        result.content.append({"type": "text", "text": validation_issues_text(validation)})
        return result

    policy = policy_from_settings(ctx.settings, request.retry_policy)
    executor = Executor(ctx.backend, emit=ctx.emit, settings=ctx.settings, sleep=ctx.sleep)
    try:
        outcome = await executor.execute(
            ordering.steps,
            url,
            policy,
            normalize_headers(request.headers),
            full_page=request.full_page,
            cookies=normalize_cookies(request.cookies, url),
        )
    except CaptureFailure as failure:
        partial = executor.outcome
        details = ErrorDetails(
            message=failure.message,
            url=url,
            steps_total=len(ordering.steps),
            steps_completed=partial.steps_completed if partial else 0,
            last_successful_step=partial.last_successful_step if partial else None,
            execution_time_ms=_elapsed_ms(started),
        )
        log.error("capture:failed url={} code={} message={}", url, failure.code.value, failure.message)
        return _error_result(failure_to_response(failure, details), ctx, validation)

    location = None
    if ctx.storage is not None:
        try:
            stored = await ctx.storage.save(
                outcome.artifact,
                StorageMetadata(url=url, mime_type=outcome.mime_type, extra={"device": outcome.device}),
            )
            location = stored.location
        except OSError as exc:
            # the image is still returned inline
            log.warning("capture:storage_failed url={} error={}", url, exc)

    summary = capture_summary(url, outcome, location, validation.warnings + validation_corrections(validation))
    ctx.emit(
        "tool.completed",
        {
            "tool": "capture",
            "url": url,
            "bytes": len(outcome.artifact),
            "steps_completed": outcome.steps_completed,
            "retries": outcome.retry_attempts,
            "duration_ms": _elapsed_ms(started),
        },
    )
    log.info("capture:completed url={} bytes={} in {}ms", url, len(outcome.artifact), _elapsed_ms(started))
    return CaptureResult(
        success=True,
        content=capture_content(summary, outcome),
        validation=validation,
        outcome=outcome,
        storage_location=location,
    )


def validation_corrections(validation: ValidationResult) -> List[str]:
    return [
        f"Step {correction.step_index + 1}: {correction.reason} ({correction.field})"
        for correction in validation.corrections
    ]


async def run_extract(request: ExtractRequest, ctx: CaptureContext) -> CaptureResult:
    started = time.perf_counter()
    ctx.emit("tool.invoked", {"tool": "extract", "url": request.url, "selector": request.selector})
    try:
        url = normalize_url(request.url)
    except InvalidUrl as exc:
        return _error_result(
            build_error_response(
                ErrorCode.INVALID_URL,
                ErrorDetails(message=str(exc), url=request.url, execution_time_ms=_elapsed_ms(started)),
            ),
            ctx,
        )

    selector = request.selector.strip() if request.selector and request.selector.strip() else None
    headers = normalize_headers(request.headers)
    if headers:
        await ctx.backend.set_extra_headers(headers)
    executor = Executor(ctx.backend, emit=ctx.emit, settings=ctx.settings, sleep=ctx.sleep)
    try:
        await executor.navigate(url, policy_from_settings(ctx.settings))
        raw = await ctx.backend.extract_dom(selector, ctx.settings.max_dom_nodes)
    except CaptureFailure as failure:
        details = ErrorDetails(message=failure.message, url=url, execution_time_ms=_elapsed_ms(started))
        return _error_result(failure_to_response(failure, details), ctx)
    except BackendError as exc:
        details = ErrorDetails(
            message=exc.message,
            url=url,
            step_type="extract",
            target=selector,
            execution_time_ms=_elapsed_ms(started),
        )
        return _error_result(build_error_response(exc.code, details), ctx)

    extraction = build_extraction(url, selector, raw, ctx.settings)
    ctx.emit(
        "dom.extracted",
        {
            "url": url,
            "selector": selector,
            "nodes": extraction.node_count,
            "truncated": extraction.html.truncated or extraction.text.truncated or extraction.tree.truncated,
        },
    )
    ctx.emit("tool.completed", {"tool": "extract", "url": url, "duration_ms": _elapsed_ms(started)})
    return CaptureResult(success=True, content=extraction_content(extraction), extraction=extraction)
