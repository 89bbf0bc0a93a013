"""
The page-automation capability the pipeline drives.

Any object with these coroutines can serve a capture request; the Playwright
implementation lives in ``playwright_backend`` and tests use an in-memory fake.
Primitives raise ``BackendError`` with a taxonomy code on failure.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pagecapture.pipeline.errors import BackendError, ErrorCode

__all__ = ["BackendError", "ErrorCode", "NavigationResponse", "PageMetrics", "ViewportSettings", "PageBackend"]


@dataclass
class NavigationResponse:
    url: str
    status: Optional[int] = None
    ok: bool = True


@dataclass
class ViewportSettings:
    width: int
    height: int
    device_scale_factor: float = 1
    is_mobile: bool = False
    has_touch: bool = False
    is_landscape: bool = False
    user_agent: Optional[str] = None
    device: Optional[str] = None


@dataclass
class PageMetrics:
    url: str = ""
    title: str = ""
    viewport_width: int = 0
    viewport_height: int = 0
    scroll_width: int = 0
    scroll_height: int = 0
    scroll_x: int = 0
    scroll_y: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PageBackend(Protocol):
    async def set_viewport(self, viewport: ViewportSettings) -> None: ...

    async def set_extra_headers(self, headers: Dict[str, str]) -> None: ...

    async def navigate(self, url: str, timeout_ms: int) -> NavigationResponse: ...

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> None: ...

    async def wait(self, duration_ms: float) -> None: ...

    async def click(self, selector: str, timeout_ms: int) -> None: ...

    async def fill(self, selector: str, value: str, timeout_ms: int, submit: bool = False) -> None: ...

    async def scroll(self, selector: Optional[str] = None, y: Optional[float] = None) -> None: ...

    async def hover(self, selector: str, timeout_ms: int) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def set_cookie(self, cookie: Dict[str, Any]) -> None: ...

    async def delete_cookie(self, name: str) -> None: ...

    async def element_exists(self, selector: str) -> bool: ...

    async def screenshot(self, full_page: bool = False, element: Optional[str] = None) -> bytes: ...

    async def extract_dom(self, selector: Optional[str], max_nodes: int) -> Dict[str, Any]: ...

    async def metrics(self) -> PageMetrics: ...
