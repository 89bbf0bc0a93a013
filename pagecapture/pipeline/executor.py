import asyncio
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from pagecapture.browser.backend import NavigationResponse, PageBackend, ViewportSettings
from pagecapture.config import Settings, settings as default_settings
from pagecapture.devices import get_viewport_preset, resolve_device_name
from pagecapture.pipeline.errors import BackendError, CaptureFailure, ErrorCode
from pagecapture.pipeline.models import (
    CanonicalStep,
    ClickStep,
    ExecutionOutcome,
    FillStep,
    PassthroughStep,
    RetryPolicy,
    ScreenshotStep,
    ScrollStep,
    StepResult,
    ViewportStep,
    WaitStep,
)
from pagecapture.pipeline.retry import RetryRecorder, with_retry

log = logger.bind(module="executor")

Emit = Callable[[str, Dict[str, Any]], Any]

_STORAGE_SCRIPT = """([storageType, action, key, value]) => {
    const storage = storageType === "sessionStorage" ? sessionStorage : localStorage;
    if (action === "set") storage.setItem(key, value ?? "");
    else if (action === "delete") storage.removeItem(key);
    else if (action === "clear") storage.clear();
}"""


class ExecutionState(str, Enum):
    INIT = "init"
    NAVIGATING = "navigating"
    RUNNING_STEPS = "running_steps"
    CAPTURING = "capturing"
    DONE = "done"
    FAILED = "failed"


class StepFailure(Exception):
    """A step-level failure that is recorded and does not stop the sequence."""

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.code = code


class Executor:
    """
    Drives a PageBackend through an ordered step sequence.

    Exactly one navigation per run. Step failures are recorded and execution moves
    on to the next step; only a navigation failure that survives the retry
    wrapper, or a capture that yields no image at all, aborts the run.
    """

    def __init__(
        self,
        backend: PageBackend,
        emit: Optional[Emit] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._backend = backend
        self._emit = emit
        self._settings = settings or default_settings
        self._sleep = sleep
        self._rng = rng
        self.state = ExecutionState.INIT
        self.outcome: Optional[ExecutionOutcome] = None
        self.retry_attempts = 0
        self._handlers = {
            "viewport": self._run_viewport,
            "wait": self._run_wait,
            "fill": self._run_fill,
            "click": self._run_click,
            "scroll": self._run_scroll,
            "hover": self._run_hover,
            "evaluate": self._run_evaluate,
            "cookie": self._run_cookie,
            "storage": self._run_storage,
        }

    def _transition(self, state: ExecutionState) -> None:
        log.debug("executor:state {} -> {}", self.state.value, state.value)
        self.state = state

    def _event(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._emit is not None:
            self._emit(event_type, data)

    async def execute(
        self,
        steps: List[CanonicalStep],
        url: str,
        policy: Optional[RetryPolicy] = None,
        headers: Optional[Dict[str, str]] = None,
        full_page: bool = False,
        cookies: Optional[List[Dict[str, Any]]] = None,
    ) -> ExecutionOutcome:
        outcome = ExecutionOutcome(
            viewport_width=self._settings.viewport_width,
            viewport_height=self._settings.viewport_height,
        )
        self.outcome = outcome
        start_index = 0

        # viewport configuration must happen before the page loads
        if steps and isinstance(steps[0], ViewportStep):
            outcome.step_results.append(await self._run_step(0, steps[0], outcome))
            start_index = 1
        if headers:
            await self._backend.set_extra_headers(headers)
        for cookie in cookies or ():
            await self._backend.set_cookie(cookie)

        response = await self.navigate(url, policy)
        outcome.retry_attempts = self.retry_attempts
        outcome.status = response.status

        self._transition(ExecutionState.RUNNING_STEPS)
        final = len(steps) - 1
        for index in range(start_index, len(steps)):
            step = steps[index]
            if isinstance(step, ScreenshotStep):
                if index == final:
                    self._transition(ExecutionState.CAPTURING)
                result = await self._capture(index, step, outcome, full_page, required=index == final)
            else:
                result = await self._run_step(index, step, outcome)
            outcome.step_results.append(result)

        if not outcome.artifact:
            # the sequence was not ordered; a capture request still returns an image
            self._transition(ExecutionState.CAPTURING)
            outcome.artifact = await self._page_screenshot(full_page)
            outcome.full_page = full_page

        await self._record_metrics(outcome)
        self._transition(ExecutionState.DONE)
        log.info(
            "executor:done url={} steps={}/{} retries={}",
            url,
            outcome.steps_completed,
            len(outcome.step_results),
            outcome.retry_attempts,
        )
        return outcome

    async def _record_metrics(self, outcome: ExecutionOutcome) -> None:
        try:
            metrics = await self._backend.metrics()
        except Exception as exc:
            log.debug("executor:metrics_unavailable error={}", exc)
            return
        outcome.page_title = metrics.title or None
        outcome.scroll_width = metrics.scroll_width or None
        outcome.scroll_height = metrics.scroll_height or None

    async def navigate(self, url: str, policy: Optional[RetryPolicy] = None) -> NavigationResponse:
        """The single navigation of a run, wrapped in retry. Raises CaptureFailure once retries are exhausted."""
        self._transition(ExecutionState.NAVIGATING)
        recorder = RetryRecorder(emit=self._emit, url=url)
        try:
            response = await with_retry(
                lambda: self._navigate(url),
                policy,
                observer=recorder,
                sleep=self._sleep,
                rng=self._rng,
                context="navigation",
            )
        except BackendError as exc:
            self.retry_attempts = recorder.retry_attempts
            self._transition(ExecutionState.FAILED)
            self._event("navigation.failed", {"url": url, "error": exc.message, "code": exc.code.value})
            raise CaptureFailure(exc.code, exc.message, status=exc.status) from exc
        except Exception as exc:
            self.retry_attempts = recorder.retry_attempts
            self._transition(ExecutionState.FAILED)
            self._event("navigation.failed", {"url": url, "error": str(exc)})
            raise CaptureFailure(ErrorCode.NAVIGATION_FAILED, f"Navigation to {url} failed: {exc}") from exc
        self.retry_attempts = recorder.retry_attempts
        self._event("navigation.completed", {"url": url, "status": response.status, "retries": recorder.retry_attempts})
        return response

    async def _navigate(self, url: str) -> NavigationResponse:
        timeout_ms = self._settings.capture_timeout_ms
        self._event("navigation.started", {"url": url})
        try:
            response = await asyncio.wait_for(self._backend.navigate(url, timeout_ms), timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise BackendError(ErrorCode.NAVIGATION_TIMEOUT, f"Navigation timeout of {timeout_ms}ms exceeded") from exc
        if response.status is not None and response.status >= 400:
            raise BackendError(
                ErrorCode.NAVIGATION_FAILED,
                f"Navigation to {url} failed with status: {response.status}",
                status=response.status,
            )
        return response

    async def _run_step(self, index: int, step: CanonicalStep, outcome: ExecutionOutcome) -> StepResult:
        started = time.perf_counter()
        result = StepResult(index=index, kind=step.type, target=step.primary_selector(), success=True)
        handler = self._handlers.get(step.type)
        try:
            if isinstance(step, PassthroughStep) and step.issues:
                raise StepFailure("; ".join(step.issues))
            if handler is None:
                raise StepFailure(f"unsupported step type '{step.type}'")
            await handler(step, outcome)
        except BackendError as exc:
            result.success = False
            result.error = exc.message
            result.code = exc.code.value
        except StepFailure as exc:
            result.success = False
            result.error = str(exc)
            result.code = exc.code.value if exc.code else None
        except asyncio.TimeoutError:
            result.success = False
            result.error = f"{step.type} step timed out"
            result.code = ErrorCode.STEP_TIMEOUT.value
        except Exception as exc:
            result.success = False
            result.error = str(exc) or type(exc).__name__
        result.duration_ms = int((time.perf_counter() - started) * 1000)

        if result.success:
            self._event("step.completed", {"index": index, "type": step.type, "duration_ms": result.duration_ms})
        else:
            log.warning("step:failed index={} type={} error={}", index, step.type, result.error)
            self._event(
                "step.failed",
                {"index": index, "type": step.type, "error": result.error, "code": result.code},
            )
        return result

    def _timeout(self, explicit: Optional[float] = None) -> int:
        return int(explicit) if explicit else self._settings.step_timeout_ms

    async def _run_viewport(self, step: ViewportStep, outcome: ExecutionOutcome) -> None:
        viewport = self._viewport_settings(step)
        await self._backend.set_viewport(viewport)
        outcome.viewport_width = viewport.width
        outcome.viewport_height = viewport.height
        outcome.device = viewport.device

    def _viewport_settings(self, step: ViewportStep) -> ViewportSettings:
        preset = get_viewport_preset(step.device) if step.device else None
        device = (resolve_device_name(step.device) or step.device) if step.device else None
        if preset is None:
            base = ViewportSettings(self._settings.viewport_width, self._settings.viewport_height, device=device)
        else:
            base = ViewportSettings(
                width=preset.width,
                height=preset.height,
                device_scale_factor=preset.device_scale_factor,
                is_mobile=preset.is_mobile,
                has_touch=preset.has_touch,
                is_landscape=preset.is_landscape,
                user_agent=preset.user_agent,
                device=device,
            )
        for name in ("width", "height", "device_scale_factor", "is_mobile", "has_touch", "is_landscape", "user_agent"):
            value = getattr(step, name)
            if value is not None:
                setattr(base, name, value)
        if step.is_landscape and base.width < base.height:
            base.width, base.height = base.height, base.width
        return base

    async def _run_wait(self, step: WaitStep, outcome: ExecutionOutcome) -> None:
        if step.for_:
            await self._backend.wait_for_selector(step.for_, self._timeout(step.timeout))
        if step.duration is not None:
            await self._backend.wait(step.duration)
        if not step.for_ and step.duration is None:
            raise StepFailure("wait step has neither 'for' nor 'duration'")

    async def _run_fill(self, step: FillStep, outcome: ExecutionOutcome) -> None:
        if not step.target or step.value is None:
            raise StepFailure("fill step requires 'target' and 'value'", ErrorCode.FILL_FAILED)
        await self._backend.fill(step.target, step.value, self._timeout(), submit=bool(step.submit))

    async def _run_click(self, step: ClickStep, outcome: ExecutionOutcome) -> None:
        if not step.target:
            raise StepFailure("click step requires 'target'", ErrorCode.ELEMENT_NOT_FOUND)
        await self._backend.click(step.target, self._timeout())
        if step.wait_for:
            await self._backend.wait_for_selector(step.wait_for, self._timeout())

    async def _run_scroll(self, step: ScrollStep, outcome: ExecutionOutcome) -> None:
        if step.to:
            await self._backend.scroll(selector=step.to)
        else:
            await self._backend.scroll(y=step.y if step.y is not None else 0)

    async def _run_hover(self, step: PassthroughStep, outcome: ExecutionOutcome) -> None:
        extra = step.model_extra or {}
        target = extra.get("target") or extra.get("selector")
        if not isinstance(target, str) or not target:
            raise StepFailure("hover step requires 'target'")
        await self._backend.hover(target, self._timeout())
        duration = extra.get("duration")
        if isinstance(duration, (int, float)) and duration > 0:
            await self._backend.wait(duration)

    async def _run_evaluate(self, step: PassthroughStep, outcome: ExecutionOutcome) -> None:
        script = (step.model_extra or {}).get("script")
        if not isinstance(script, str) or not script.strip():
            raise StepFailure("evaluate step requires 'script'")
        await self._backend.evaluate(script)

    async def _run_cookie(self, step: PassthroughStep, outcome: ExecutionOutcome) -> None:
        extra = dict(step.model_extra or {})
        action = extra.pop("action", "set")
        name = extra.get("name")
        if not isinstance(name, str) or not name:
            raise StepFailure("cookie step requires 'name'")
        if action == "set":
            cookie = {key: value for key, value in extra.items() if value is not None}
            cookie.setdefault("value", "")
            await self._backend.set_cookie(cookie)
        elif action == "delete":
            await self._backend.delete_cookie(name)
        else:
            raise StepFailure(f"unsupported cookie action '{action}'")

    async def _run_storage(self, step: PassthroughStep, outcome: ExecutionOutcome) -> None:
        extra = step.model_extra or {}
        storage_type = extra.get("storageType", "localStorage")
        action = extra.get("action")
        if storage_type not in ("localStorage", "sessionStorage"):
            raise StepFailure(f"unsupported storageType '{storage_type}'")
        if action not in ("set", "delete", "clear"):
            raise StepFailure(f"unsupported storage action '{action}'")
        if action != "clear" and not extra.get("key"):
            raise StepFailure(f"storage {action} requires 'key'")
        await self._backend.evaluate(_STORAGE_SCRIPT, [storage_type, action, extra.get("key"), extra.get("value")])

    async def _capture(
        self,
        index: int,
        step: ScreenshotStep,
        outcome: ExecutionOutcome,
        default_full_page: bool,
        required: bool,
    ) -> StepResult:
        started = time.perf_counter()
        full_page = step.full_page if step.full_page is not None else default_full_page
        result = StepResult(index=index, kind="screenshot", target=step.element, success=True)
        image = b""

        if step.element:
            try:
                if await self._backend.element_exists(step.element):
                    image = await self._backend.screenshot(full_page=False, element=step.element)
                else:
                    result.note = f'element "{step.element}" not found, captured the page instead'
            except Exception as exc:
                result.note = f"element capture failed ({exc}), captured the page instead"
            if not image:
                log.warning("step:screenshot:element_fallback index={} element={}", index, step.element)

        if not image:
            try:
                image = await self._page_screenshot(full_page)
            except CaptureFailure as exc:
                if required:
                    raise
                result.success = False
                result.error = exc.message
                result.code = exc.code.value

        if image:
            outcome.artifact = image
            outcome.full_page = full_page and not (step.element and result.note is None)
            self._event(
                "screenshot.captured",
                {"index": index, "bytes": len(image), "full_page": outcome.full_page, "element": step.element},
            )
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        return result

    async def _page_screenshot(self, full_page: bool) -> bytes:
        try:
            image = await self._backend.screenshot(full_page=full_page)
        except Exception as exc:
            message = exc.message if isinstance(exc, BackendError) else str(exc)
            raise CaptureFailure(ErrorCode.CAPTURE_FAILED, f"Screenshot failed: {message}") from exc
        if not image:
            raise CaptureFailure(ErrorCode.CAPTURE_FAILED, "Screenshot produced no image data")
        return image


async def execute(
    steps: List[CanonicalStep],
    backend: PageBackend,
    url: str,
    policy: Optional[RetryPolicy] = None,
    **kwargs: Any,
) -> ExecutionOutcome:
    return await Executor(backend, **kwargs).execute(steps, url, policy)
