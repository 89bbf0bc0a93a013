import base64

import pytest

from conftest import PNG, FakeBackend
from pagecapture.browser.backend import NavigationResponse
from pagecapture.config import Settings
from pagecapture.pipeline.capture import (
    CaptureContext,
    InvalidUrl,
    normalize_cookies,
    normalize_headers,
    normalize_url,
    run_capture,
    run_extract,
)
from pagecapture.pipeline.errors import ErrorCode
from pagecapture.pipeline.models import CaptureRequest, ExtractRequest
from pagecapture.storage import MemoryStorageTarget


def _ctx(backend, sleep, settings, sink=None, storage=None):
    return CaptureContext(backend=backend, settings=settings, telemetry=sink, storage=storage, sleep=sleep)


def _request(url="https://example.com", steps=None, **kwargs):
    return CaptureRequest(url=url, steps=steps, **kwargs)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("example.com", "https://example.com/"),
        ("  https://example.com/path?q=1  ", "https://example.com/path?q=1"),
        ("htps://example.com", "https://example.com/"),
        ("htp://example.com", "http://example.com/"),
        ("https://https://example.com/a", "https://example.com/a"),
        ("localhost:3000", "https://localhost:3000/"),
        ("http://127.0.0.1:8080/status", "http://127.0.0.1:8080/status"),
    ],
)
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "ftp://files.example.com", "mailto:someone@example.com", "javascript:alert(1)", "https://"])
def test_normalize_url_rejects(raw):
    with pytest.raises(InvalidUrl):
        normalize_url(raw)


def test_normalize_headers_trims_and_drops_empty():
    assert normalize_headers({" X-Token ": " abc ", "X-Empty": "  ", "": "x"}) == {"X-Token": "abc"}
    assert normalize_headers({"X-Empty": ""}) is None
    assert normalize_headers(None) is None


def test_normalize_cookies_scopes_to_the_request_origin():
    cookies = normalize_cookies(
        [
            {"name": " session ", "value": "abc"},
            {"name": "prefs", "value": 1, "domain": ".example.com"},
            {"name": "scoped", "value": "x", "url": "https://api.example.com", "secure": True},
            {"name": "  ", "value": "dropped"},
            {"name": "empty", "value": ""},
        ],
        "https://example.com:8443/shop?q=1",
    )

    assert cookies == [
        {"name": "session", "value": "abc", "url": "https://example.com:8443"},
        {"name": "prefs", "value": "1", "domain": ".example.com", "path": "/"},
        {"name": "scoped", "value": "x", "url": "https://api.example.com", "secure": True},
    ]
    assert normalize_cookies(None, "https://example.com/") == []


@pytest.mark.asyncio
async def test_successful_capture_returns_summary_and_image(backend, sleep, test_settings, sink):
    request = _request(
        steps=[{"type": "viewport", "device": "desktop"}, {"type": "click", "target": "#go"}, {"type": "screenshot"}],
        headers={"Accept-Language": "en"},
    )

    result = await run_capture(request, _ctx(backend, sleep, test_settings, sink))

    assert result.success is True
    text, image = result.content
    assert text["type"] == "text"
    assert text["text"].startswith("✓ Screenshot captured successfully")
    assert "Steps executed: 3/3" in text["text"]
    assert "Device: desktop-fhd (1920x1080)" in text["text"]
    assert image["type"] == "image"
    assert image["mimeType"] == "image/png"
    assert base64.b64decode(image["data"]) == PNG
    assert backend.headers == {"Accept-Language": "en"}
    assert sink.types()[0] == "tool.invoked"
    assert sink.types()[-1] == "tool.completed"


@pytest.mark.asyncio
async def test_missing_steps_still_capture_the_page(backend, sleep, test_settings):
    result = await run_capture(_request(), _ctx(backend, sleep, test_settings))

    assert result.success is True
    assert backend.names() == ["navigate", "screenshot"]
    assert len(result.outcome.step_results) == 1


@pytest.mark.asyncio
async def test_validate_mode_touches_no_backend(sleep, test_settings):
    request = _request(
        steps=[{"type": "click", "target": ".load-more"}, {"type": "viewport", "device": "mobile"}],
        validate_only=True,
    )

    result = await run_capture(request, _ctx(None, sleep, test_settings))

    assert result.success is True
    assert result.report.estimated_time_ms == 4000
    assert [step.type for step in result.report.ordered_steps] == ["viewport", "click", "screenshot"]
    assert any(correction.field == "position" for correction in result.validation.corrections)
    assert result.content[0]["text"].startswith("VALIDATION PASSED")
    wire = result.to_wire()
    assert wire["validation"]["orderedSteps"][0]["device"] == "iphone-16-pro"


@pytest.mark.asyncio
async def test_validate_mode_reports_failures_without_error_response(sleep, test_settings):
    result = await run_capture(_request(steps=[{"type": "wait"}], validate_only=True), _ctx(None, sleep, test_settings))

    assert result.success is True
    assert result.error is None
    assert result.report.valid is False
    assert result.content[0]["text"].startswith("VALIDATION FAILED")


@pytest.mark.asyncio
async def test_validation_errors_block_execution(backend, sleep, test_settings, sink):
    result = await run_capture(
        _request(steps=[{"type": "wait"}, {"type": "click", "target": "#go"}]), _ctx(backend, sleep, test_settings, sink)
    )

    assert result.success is False
    assert backend.calls == []
    error = result.error
    assert error.error.code == ErrorCode.VALIDATION_FAILED
    assert error.error.step == 0
    assert error.error.step_type == "wait"
    assert error.recovery.action == "modify"
    assert error.recovery.corrected_steps[0] == {"type": "wait", "for": ".your-element", "timeout": 10000}
    assert "CORRECTED STEPS:" in result.content[0]["text"]
    assert "ERRORS:" in result.content[1]["text"]
    assert sink.types()[-1] == "tool.failed"


@pytest.mark.asyncio
async def test_invalid_url_fails_before_any_backend_call(backend, sleep, test_settings):
    result = await run_capture(_request(url="ftp://files.example.com"), _ctx(backend, sleep, test_settings))

    assert result.success is False
    assert result.error.error.code == ErrorCode.INVALID_URL
    assert result.error.recovery.action == "abort"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_navigation_failure_reports_retry_recovery(sleep, test_settings):
    backend = FakeBackend(nav_results=[NavigationResponse("https://example.com/", status=503)] * 10)

    result = await run_capture(_request(steps=[{"type": "click", "target": "#go"}]), _ctx(backend, sleep, test_settings))

    wire = result.to_wire()
    assert wire["success"] is False
    assert wire["error"]["code"] == "NAVIGATION_FAILED"
    assert wire["recovery"]["action"] == "retry"
    assert "HTTP 503" in wire["recovery"]["description"]
    assert wire["context"]["stepsCompleted"] == 0
    assert wire["context"]["stepsTotal"] == 2
    assert len(backend.called("navigate")) == test_settings.max_retries + 1


@pytest.mark.asyncio
async def test_request_retry_policy_overrides_settings(sleep, test_settings):
    backend = FakeBackend(nav_results=[NavigationResponse("https://example.com/", status=503)] * 10)
    request = _request(retry_policy={"maxRetries": 1, "initialDelayMs": 5})

    result = await run_capture(request, _ctx(backend, sleep, test_settings))

    assert result.success is False
    assert len(backend.called("navigate")) == 2


@pytest.mark.asyncio
async def test_step_failures_are_reported_in_summary(sleep, test_settings):
    backend = FakeBackend(missing={".gone"})

    result = await run_capture(
        _request(steps=[{"type": "click", "target": ".gone"}, {"type": "screenshot"}]), _ctx(backend, sleep, test_settings)
    )

    assert result.success is True
    summary = result.content[0]["text"]
    assert "Steps executed: 1/2" in summary
    assert "✗ 1. click (.gone)" in summary


@pytest.mark.asyncio
async def test_corrections_and_deprecations_appear_as_warnings(backend, sleep, test_settings):
    result = await run_capture(
        _request(steps=[{"type": "click", "selector": "  #go "}, {"type": "screenshot"}]), _ctx(backend, sleep, test_settings)
    )

    summary = result.content[0]["text"]
    assert "Parameter 'selector' is deprecated in click steps, use 'target' instead" in summary
    assert "Removed leading/trailing whitespace" in summary
    assert backend.called("click") == [("click", "#go")]


@pytest.mark.asyncio
async def test_storage_target_receives_the_artifact(backend, sleep, test_settings):
    storage = MemoryStorageTarget()

    result = await run_capture(_request(), _ctx(backend, sleep, test_settings, storage=storage))

    assert result.storage_location.startswith("memory://")
    assert storage.get(result.storage_location) == PNG
    assert storage.metadata[result.storage_location].url == "https://example.com/"
    assert f"Stored at: {result.storage_location}" in result.content[0]["text"]


@pytest.mark.asyncio
async def test_storage_failure_does_not_fail_the_capture(backend, sleep, test_settings):
    class _BrokenStorage:
        async def save(self, data, metadata):
            raise OSError("disk full")

    result = await run_capture(_request(), _ctx(backend, sleep, test_settings, storage=_BrokenStorage()))

    assert result.success is True
    assert result.storage_location is None


@pytest.mark.asyncio
async def test_extract_bounds_every_block(sleep, sink):
    settings = Settings(max_html_chars=10, max_text_chars=5)
    backend = FakeBackend(
        dom={"html": "<main>" + "x" * 50 + "</main>", "text": "hello world", "tree": {"tag": "main"}, "nodeCount": 1}
    )

    result = await run_extract(ExtractRequest(url="example.com", selector=" main "), _ctx(backend, sleep, settings, sink))

    assert result.success is True
    extraction = result.extraction
    assert extraction.selector == "main"
    assert extraction.html.truncated is True
    assert len(extraction.html.content) == 10
    assert extraction.html.original_length == 63
    assert extraction.text.content == "hello"
    assert backend.called("extract_dom")[0][1] == "main"
    assert "dom.extracted" in sink.types()


@pytest.mark.asyncio
async def test_extract_missing_selector_is_an_element_error(sleep, test_settings):
    backend = FakeBackend(missing={"#nope"})

    result = await run_extract(ExtractRequest(url="https://example.com", selector="#nope"), _ctx(backend, sleep, test_settings))

    assert result.success is False
    assert result.error.error.code == ErrorCode.ELEMENT_NOT_FOUND
    assert result.error.error.target == "#nope"


@pytest.mark.asyncio
async def test_request_full_page_and_cookies_reach_the_backend(backend, sleep, test_settings):
    request = CaptureRequest.model_validate(
        {"url": "https://example.com/shop", "fullPage": True, "cookies": [{"name": "session", "value": "abc"}]}
    )

    result = await run_capture(request, _ctx(backend, sleep, test_settings))

    assert result.success is True
    assert backend.called("set_cookie") == [("set_cookie", {"name": "session", "value": "abc", "url": "https://example.com"})]
    assert backend.names().index("set_cookie") < backend.names().index("navigate")
    assert backend.called("screenshot") == [("screenshot", True, None)]
    assert "Full page: yes" in result.content[0]["text"]


@pytest.mark.asyncio
async def test_summary_reports_page_title_and_dimensions(backend, sleep, test_settings):
    result = await run_capture(_request(), _ctx(backend, sleep, test_settings))

    summary = result.content[0]["text"]
    assert "Title: Example Domain" in summary
    assert "Page dimensions: 1280x2400" in summary
    assert result.to_wire()["outcome"]["scrollHeight"] == 2400


@pytest.mark.asyncio
async def test_navigation_failure_counts_a_completed_viewport_step(sleep, test_settings):
    backend = FakeBackend(nav_results=[NavigationResponse("https://example.com/", status=404)])
    steps = [{"type": "viewport", "device": "mobile"}, {"type": "click", "target": "#go"}]

    result = await run_capture(_request(steps=steps), _ctx(backend, sleep, test_settings))

    context = result.to_wire()["context"]
    assert result.error.error.code == ErrorCode.NAVIGATION_FAILED
    assert context["stepsCompleted"] == 1
    assert context["lastSuccessfulStep"] == 0
    assert context["stepsTotal"] == 3
