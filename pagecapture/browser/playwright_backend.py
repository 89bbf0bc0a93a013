import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from loguru import logger
from playwright.sync_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    sync_playwright,
)

from pagecapture.browser.backend import NavigationResponse, PageMetrics, ViewportSettings
from pagecapture.config import Settings, settings as default_settings
from pagecapture.pipeline.errors import BackendError, ErrorCode

log = logger.bind(module="playwright")

_EXTRACT_SCRIPT = """([selector, maxNodes]) => {
    const root = selector ? document.querySelector(selector) : document.documentElement;
    if (!root) return null;
    let count = 0;
    let truncated = false;
    const walk = (el) => {
        if (count >= maxNodes) { truncated = true; return null; }
        count += 1;
        const node = { tag: el.tagName.toLowerCase() };
        if (el.id) node.id = el.id;
        const cls = typeof el.className === "string" ? el.className.trim() : "";
        if (cls) node.classes = cls.split(/\\s+/);
        const own = Array.from(el.childNodes)
            .filter((n) => n.nodeType === Node.TEXT_NODE)
            .map((n) => n.textContent.trim())
            .filter(Boolean)
            .join(" ");
        if (own) node.text = own.slice(0, 200);
        const children = [];
        for (const child of el.children) {
            const mapped = walk(child);
            if (mapped) children.push(mapped);
        }
        if (children.length) node.children = children;
        return node;
    };
    const tree = walk(root);
    return {
        html: root.outerHTML,
        text: root.innerText || root.textContent || "",
        tree,
        nodeCount: count,
        nodesTruncated: truncated,
    };
}"""

_METRICS_SCRIPT = """() => ({
    title: document.title,
    viewportWidth: window.innerWidth,
    viewportHeight: window.innerHeight,
    scrollWidth: document.documentElement.scrollWidth,
    scrollHeight: document.documentElement.scrollHeight,
    scrollX: Math.round(window.scrollX),
    scrollY: Math.round(window.scrollY),
})"""


def _selector_error(exc: Exception, selector: str, timeout_code: ErrorCode = ErrorCode.ELEMENT_NOT_FOUND) -> BackendError:
    message = str(exc)
    lowered = message.lower()
    if "is not a valid selector" in lowered or "unexpected token" in lowered or "malformed" in lowered:
        return BackendError(ErrorCode.INVALID_SELECTOR, f'Invalid selector "{selector}": {message.splitlines()[0]}')
    if "intercepts pointer events" in lowered:
        return BackendError(ErrorCode.ELEMENT_NOT_CLICKABLE, f'Element "{selector}" is covered by another element')
    if "not visible" in lowered:
        return BackendError(ErrorCode.ELEMENT_NOT_VISIBLE, f'Element "{selector}" is not visible')
    if isinstance(exc, PlaywrightTimeoutError):
        if timeout_code == ErrorCode.ELEMENT_NOT_FOUND:
            return BackendError(timeout_code, f'Element "{selector}" not found')
        return BackendError(timeout_code, f'"{selector}": {message.splitlines()[0]}')
    return BackendError(timeout_code, message.splitlines()[0] if message else type(exc).__name__)


class PlaywrightBrowser:
    """Process-wide browser. All Playwright calls run on its single worker thread."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or default_settings
        self._playwright = None
        self._browser: Browser | None = None
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self._loop.run_in_executor(self._executor, self._start_sync)

    async def stop(self) -> None:
        if self._loop:
            await self._loop.run_in_executor(self._executor, self._stop_sync)
        self._executor.shutdown(wait=True, cancel_futures=True)

    async def run(self, func: Callable[..., Any], *args: Any) -> Any:
        if not self._loop or not self._browser:
            raise RuntimeError("Browser is not started")
        return await self._loop.run_in_executor(self._executor, func, *args)

    def new_context_sync(self, options: Dict[str, Any]) -> BrowserContext:
        if not self._browser:
            raise RuntimeError("Browser is not started")
        return self._browser.new_context(**options)

    async def new_session(self) -> "PlaywrightBackend":
        return PlaywrightBackend(self)

    def _start_sync(self) -> None:
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self._settings.playwright_headless)
        log.info("browser:launched headless={}", self._settings.playwright_headless)

    def _stop_sync(self) -> None:
        for name, closer in (("browser", self._browser), ("playwright", self._playwright)):
            if closer is None:
                continue
            try:
                if name == "browser":
                    closer.close()
                else:
                    closer.stop()
            except PlaywrightError as exc:
                log.warning("browser:close_failed {} {}", name, exc)
        self._browser = None
        self._playwright = None


class PlaywrightBackend:
    """One capture session: its own browser context and page."""

    def __init__(self, browser: PlaywrightBrowser) -> None:
        self._browser = browser
        self._settings = browser.settings
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._viewport: ViewportSettings | None = None
        self._headers: Dict[str, str] = {}

    async def close(self) -> None:
        if self._context is not None:
            await self._browser.run(self._close_sync)

    def _close_sync(self) -> None:
        try:
            if self._context:
                self._context.close()
        except PlaywrightError as exc:
            log.warning("session:close_failed {}", exc)
        self._context = None
        self._page = None

    def _page_sync(self) -> Page:
        if self._page is not None:
            return self._page
        viewport = self._viewport or ViewportSettings(self._settings.viewport_width, self._settings.viewport_height)
        # scale factor, mobile and touch can only be set when the context is created
        options: Dict[str, Any] = {
            "viewport": {"width": viewport.width, "height": viewport.height},
            "device_scale_factor": viewport.device_scale_factor,
            "is_mobile": viewport.is_mobile,
            "has_touch": viewport.has_touch,
        }
        if viewport.user_agent:
            options["user_agent"] = viewport.user_agent
        if self._headers:
            options["extra_http_headers"] = self._headers
        self._context = self._browser.new_context_sync(options)
        self._page = self._context.new_page()
        self._page.set_default_timeout(self._settings.step_timeout_ms)
        return self._page

    async def set_viewport(self, viewport: ViewportSettings) -> None:
        await self._browser.run(self._set_viewport_sync, viewport)

    def _set_viewport_sync(self, viewport: ViewportSettings) -> None:
        self._viewport = viewport
        if self._page is not None:
            self._page.set_viewport_size({"width": viewport.width, "height": viewport.height})

    async def set_extra_headers(self, headers: Dict[str, str]) -> None:
        await self._browser.run(self._set_headers_sync, headers)

    def _set_headers_sync(self, headers: Dict[str, str]) -> None:
        self._headers = dict(headers)
        if self._context is not None:
            self._context.set_extra_http_headers(self._headers)

    async def navigate(self, url: str, timeout_ms: int) -> NavigationResponse:
        return await self._browser.run(self._navigate_sync, url, timeout_ms)

    def _navigate_sync(self, url: str, timeout_ms: int) -> NavigationResponse:
        page = self._page_sync()
        try:
            response = page.goto(url, wait_until="load", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise BackendError(ErrorCode.NAVIGATION_TIMEOUT, f"Navigation timeout of {timeout_ms}ms exceeded") from exc
        except PlaywrightError as exc:
            raise BackendError(ErrorCode.NAVIGATION_FAILED, str(exc).splitlines()[0]) from exc
        if response is None:
            return NavigationResponse(url=page.url)
        return NavigationResponse(url=page.url, status=response.status, ok=response.ok)

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None:
        await self._browser.run(self._wait_for_selector_sync, selector, timeout_ms)

    def _wait_for_selector_sync(self, selector: str, timeout_ms: int) -> None:
        try:
            self._page_sync().wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightError as exc:
            raise _selector_error(exc, selector) from exc

    async def wait(self, duration_ms: float) -> None:
        await self._browser.run(self._wait_sync, duration_ms)

    def _wait_sync(self, duration_ms: float) -> None:
        self._page_sync().wait_for_timeout(duration_ms)

    async def click(self, selector: str, timeout_ms: int) -> None:
        await self._browser.run(self._click_sync, selector, timeout_ms)

    def _click_sync(self, selector: str, timeout_ms: int) -> None:
        try:
            self._page_sync().click(selector, timeout=timeout_ms)
        except PlaywrightError as exc:
            raise _selector_error(exc, selector) from exc

    async def fill(self, selector: str, value: str, timeout_ms: int, submit: bool = False) -> None:
        await self._browser.run(self._fill_sync, selector, value, timeout_ms, submit)

    def _fill_sync(self, selector: str, value: str, timeout_ms: int, submit: bool) -> None:
        page = self._page_sync()
        try:
            page.wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightError as exc:
            raise _selector_error(exc, selector) from exc
        try:
            page.fill(selector, value, timeout=timeout_ms)
            if submit:
                page.press(selector, "Enter", timeout=timeout_ms)
        except PlaywrightError as exc:
            raise _selector_error(exc, selector, ErrorCode.FILL_FAILED) from exc

    async def scroll(self, selector: Optional[str] = None, y: Optional[float] = None) -> None:
        await self._browser.run(self._scroll_sync, selector, y)

    def _scroll_sync(self, selector: Optional[str], y: Optional[float]) -> None:
        page = self._page_sync()
        if selector:
            try:
                page.locator(selector).first.scroll_into_view_if_needed(timeout=self._settings.step_timeout_ms)
            except PlaywrightError as exc:
                raise _selector_error(exc, selector, ErrorCode.SCROLL_FAILED) from exc
            return
        page.evaluate("(y) => window.scrollTo(0, y)", y or 0)

    async def hover(self, selector: str, timeout_ms: int) -> None:
        await self._browser.run(self._hover_sync, selector, timeout_ms)

    def _hover_sync(self, selector: str, timeout_ms: int) -> None:
        try:
            self._page_sync().hover(selector, timeout=timeout_ms)
        except PlaywrightError as exc:
            raise _selector_error(exc, selector) from exc

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return await self._browser.run(self._evaluate_sync, script, arg)

    def _evaluate_sync(self, script: str, arg: Any) -> Any:
        return self._page_sync().evaluate(script, arg)

    async def set_cookie(self, cookie: Dict[str, Any]) -> None:
        await self._browser.run(self._set_cookie_sync, cookie)

    def _set_cookie_sync(self, cookie: Dict[str, Any]) -> None:
        page = self._page_sync()
        data = dict(cookie)
        if "url" not in data and "domain" not in data:
            data["url"] = page.url
        if "domain" in data:
            data.setdefault("path", "/")
        self._context.add_cookies([data])

    async def delete_cookie(self, name: str) -> None:
        await self._browser.run(self._delete_cookie_sync, name)

    def _delete_cookie_sync(self, name: str) -> None:
        self._page_sync()
        self._context.clear_cookies(name=name)

    async def element_exists(self, selector: str) -> bool:
        return await self._browser.run(self._element_exists_sync, selector)

    def _element_exists_sync(self, selector: str) -> bool:
        try:
            return self._page_sync().query_selector(selector) is not None
        except PlaywrightError as exc:
            raise _selector_error(exc, selector) from exc

    async def screenshot(self, full_page: bool = False, element: Optional[str] = None) -> bytes:
        return await self._browser.run(self._screenshot_sync, full_page, element)

    def _screenshot_sync(self, full_page: bool, element: Optional[str]) -> bytes:
        page = self._page_sync()
        try:
            if element:
                return page.locator(element).first.screenshot(type="png")
            return page.screenshot(type="png", full_page=full_page)
        except PlaywrightError as exc:
            raise BackendError(ErrorCode.CAPTURE_FAILED, str(exc).splitlines()[0]) from exc

    async def extract_dom(self, selector: Optional[str], max_nodes: int) -> Dict[str, Any]:
        return await self._browser.run(self._extract_sync, selector, max_nodes)

    def _extract_sync(self, selector: Optional[str], max_nodes: int) -> Dict[str, Any]:
        try:
            data = self._page_sync().evaluate(_EXTRACT_SCRIPT, [selector, max_nodes])
        except PlaywrightError as exc:
            raise _selector_error(exc, selector or "html") from exc
        if data is None:
            raise BackendError(ErrorCode.ELEMENT_NOT_FOUND, f'Element "{selector}" not found')
        return data

    async def metrics(self) -> PageMetrics:
        return await self._browser.run(self._metrics_sync)

    def _metrics_sync(self) -> PageMetrics:
        page = self._page_sync()
        data = page.evaluate(_METRICS_SCRIPT)
        return PageMetrics(
            url=page.url,
            title=data.get("title", ""),
            viewport_width=data.get("viewportWidth", 0),
            viewport_height=data.get("viewportHeight", 0),
            scroll_width=data.get("scrollWidth", 0),
            scroll_height=data.get("scrollHeight", 0),
            scroll_x=data.get("scrollX", 0),
            scroll_y=data.get("scrollY", 0),
        )
