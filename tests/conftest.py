from typing import Any, Dict, List, Optional

import pytest

from pagecapture.browser.backend import NavigationResponse, PageMetrics, ViewportSettings
from pagecapture.config import Settings
from pagecapture.pipeline.errors import BackendError, ErrorCode

PNG = b"\x89PNG\r\n\x1a\nfake-image"


class FakeBackend:
    """In-memory PageBackend: scripted navigation outcomes, missing selectors, recorded calls."""

    def __init__(
        self,
        *,
        missing=(),
        nav_results=(),
        image: bytes = PNG,
        screenshot_error: Optional[Exception] = None,
        dom: Optional[Dict[str, Any]] = None,
        metrics_error: Optional[Exception] = None,
    ) -> None:
        self.missing = set(missing)
        # consumed one per navigate call: exceptions are raised, responses returned
        self.nav_results = list(nav_results)
        self.image = image
        self.screenshot_error = screenshot_error
        self.dom = dom or {"html": "<html></html>", "text": "", "tree": {"tag": "html"}, "nodeCount": 1}
        self.metrics_error = metrics_error
        self.calls: List[tuple] = []
        self.viewport: Optional[ViewportSettings] = None
        self.headers: Optional[Dict[str, str]] = None
        self.closed = False

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def called(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    def _check(self, selector: str) -> None:
        if selector in self.missing:
            raise BackendError(ErrorCode.ELEMENT_NOT_FOUND, f'Element "{selector}" not found')

    async def set_viewport(self, viewport: ViewportSettings) -> None:
        self.calls.append(("set_viewport", viewport.width, viewport.height))
        self.viewport = viewport

    async def set_extra_headers(self, headers: Dict[str, str]) -> None:
        self.calls.append(("set_extra_headers", dict(headers)))
        self.headers = dict(headers)

    async def navigate(self, url: str, timeout_ms: int) -> NavigationResponse:
        self.calls.append(("navigate", url))
        if self.nav_results:
            result = self.nav_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return NavigationResponse(url=url, status=200)

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None:
        self.calls.append(("wait_for_selector", selector))
        self._check(selector)

    async def wait(self, duration_ms: float) -> None:
        self.calls.append(("wait", duration_ms))

    async def click(self, selector: str, timeout_ms: int) -> None:
        self.calls.append(("click", selector))
        self._check(selector)

    async def fill(self, selector: str, value: str, timeout_ms: int, submit: bool = False) -> None:
        self.calls.append(("fill", selector, value, submit))
        self._check(selector)

    async def scroll(self, selector: Optional[str] = None, y: Optional[float] = None) -> None:
        self.calls.append(("scroll", selector, y))
        if selector:
            self._check(selector)

    async def hover(self, selector: str, timeout_ms: int) -> None:
        self.calls.append(("hover", selector))
        self._check(selector)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.calls.append(("evaluate", script, arg))
        return None

    async def set_cookie(self, cookie: Dict[str, Any]) -> None:
        self.calls.append(("set_cookie", cookie))

    async def delete_cookie(self, name: str) -> None:
        self.calls.append(("delete_cookie", name))

    async def element_exists(self, selector: str) -> bool:
        self.calls.append(("element_exists", selector))
        return selector not in self.missing

    async def screenshot(self, full_page: bool = False, element: Optional[str] = None) -> bytes:
        self.calls.append(("screenshot", full_page, element))
        if self.screenshot_error is not None:
            raise self.screenshot_error
        return self.image

    async def extract_dom(self, selector: Optional[str], max_nodes: int) -> Dict[str, Any]:
        self.calls.append(("extract_dom", selector, max_nodes))
        if selector:
            self._check(selector)
        return self.dom

    async def metrics(self) -> PageMetrics:
        if self.metrics_error is not None:
            raise self.metrics_error
        return PageMetrics(
            url="https://example.com/",
            title="Example Domain",
            viewport_width=1280,
            viewport_height=720,
            scroll_width=1280,
            scroll_height=2400,
        )

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class EventSink:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.events.append((event_type, data or {}))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def sink():
    return EventSink()


@pytest.fixture
def test_settings():
    return Settings(max_retries=3, retry_initial_delay_ms=10, retry_max_delay_ms=50, capture_timeout_ms=5000)
