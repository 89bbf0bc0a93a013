import pytest

from pagecapture.pipeline.canonicalize import DeprecationLog, canonicalize_all
from pagecapture.pipeline.validate import (
    MAX_WAIT_MS,
    analyze_steps,
    check_selector_syntax,
    normalize_selector_whitespace,
    validate,
)


def _validate(raw_steps):
    deprecations = DeprecationLog()
    return validate(canonicalize_all(raw_steps, deprecations), "https://example.com/", deprecations)


def test_wait_without_condition_is_an_error():
    result = _validate([{"type": "wait"}])

    assert result.valid is False
    assert result.can_proceed is False
    assert any("wait step requires 'for'" in error for error in result.errors)
    assert result.errors[0].startswith("Step 1:")


def test_warnings_alone_never_block():
    result = _validate([{"type": "click", "target": ".dynamic-button"}])

    assert result.errors == []
    assert result.warnings
    assert result.valid is True
    assert result.can_proceed is True


def test_dynamic_selector_warning_suggests_a_wait():
    result = _validate([{"type": "click", "target": ".load-more"}])

    assert any('{"type": "wait", "for": ".load-more"}' in warning for warning in result.warnings)


@pytest.mark.parametrize(
    "target", ["#submit", "button", "form", "body", "a", "div", "select", "textarea", "DIV", "#main_content"]
)
def test_static_selectors_do_not_need_a_wait(target):
    result = _validate([{"type": "click", "target": target}])

    assert not any("Consider adding" in warning for warning in result.warnings)


@pytest.mark.parametrize("target", [".menu", "div.card", "#main .item", "[data-test=go]", "custom-widget"])
def test_dynamic_selectors_want_a_wait(target):
    result = _validate([{"type": "click", "target": target}])

    assert any("Consider adding" in warning for warning in result.warnings)


def test_preceding_wait_satisfies_dynamic_selector():
    result = _validate([{"type": "wait", "for": ".menu"}, {"type": "click", "target": ".menu"}])

    assert not any("Consider adding" in warning for warning in result.warnings)


def test_selector_whitespace_is_trimmed_and_reported():
    raw = [{"type": "fill", "target": "  #email  ", "value": "a@b.c"}]
    steps = canonicalize_all(raw)
    result = validate(steps)

    assert result.steps[0].target == "#email"
    assert steps[0].target == "  #email  "
    assert result.corrected_steps is not None
    correction = result.corrections[0]
    assert correction.field == "target"
    assert correction.from_ == "  #email  "
    assert correction.to == "#email"
    assert correction.reason == "Removed leading/trailing whitespace"


def test_correction_wire_shape_uses_from_key():
    result = _validate([{"type": "click", "target": " #go"}])

    wire = result.to_wire()
    assert wire["corrections"][0] == {
        "stepIndex": 0,
        "field": "target",
        "from": " #go",
        "to": "#go",
        "reason": "Removed leading/trailing whitespace",
    }
    assert wire["correctedSteps"][0]["target"] == "#go"
    assert wire["canProceed"] is True


def test_whitespace_inside_quotes_is_preserved():
    selector = '[title="two  spaces"]'
    assert normalize_selector_whitespace(selector) == (selector, None)
    assert normalize_selector_whitespace(".a   .b") == (".a .b", "Collapsed repeated whitespace")


def test_click_wait_for_selector_is_trimmed():
    result = _validate([{"type": "click", "target": "#go", "waitFor": " .done "}])

    assert result.steps[0].wait_for == ".done"
    assert result.corrections[0].field == "waitFor"


def test_whitespace_only_selector_is_removed_then_reported_missing():
    result = _validate([{"type": "click", "target": "   "}])

    assert result.corrections[0].reason == "Removed empty selector"
    assert result.steps[0].target is None
    assert any("click step requires 'target'" in error for error in result.errors)


def test_no_corrections_leaves_corrected_steps_unset():
    result = _validate([{"type": "wait", "for": "#main"}, {"type": "screenshot"}])

    assert result.corrections == []
    assert result.corrected_steps is None
    assert "correctedSteps" not in result.to_wire()


def test_device_alias_is_resolved():
    result = _validate([{"type": "viewport", "device": "iPhone"}])

    assert result.steps[0].device == "iphone-16-pro"
    assert result.corrections[0].field == "device"
    assert result.corrections[0].from_ == "iPhone"


def test_unknown_device_passes_through():
    result = _validate([{"type": "viewport", "device": "kiosk-portrait"}])

    assert result.valid is True
    assert result.corrections == []
    assert result.steps[0].device == "kiosk-portrait"
    assert any("Unknown device" in note for note in result.analysis[0].notes)


def test_non_positive_viewport_size_is_an_error():
    result = _validate([{"type": "viewport", "width": 0, "height": 800}])

    assert any("viewport width" in error for error in result.errors)


def test_duration_is_clamped():
    result = _validate([{"type": "wait", "duration": 120000}])

    assert result.steps[0].duration == MAX_WAIT_MS
    assert result.corrections[0].to == MAX_WAIT_MS
    assert result.valid is True


def test_wait_with_selector_and_duration_warns():
    result = _validate([{"type": "wait", "for": "#main", "duration": 500}])

    assert any("both 'for' and 'duration'" in warning for warning in result.warnings)


def test_fill_requires_target_and_value():
    result = _validate([{"type": "fill"}])

    assert any("fill step requires 'target'" in error for error in result.errors)
    assert any("fill step requires 'value'" in error for error in result.errors)


def test_click_requires_target():
    result = _validate([{"type": "click"}])

    assert result.errors == ["Step 1: click step requires 'target' (selector)"]


@pytest.mark.parametrize(
    "selector, expected",
    [
        ("##main", "double prefix"),
        ("..item", "double prefix"),
        ("[data-id='x'", "Unclosed brackets"),
        ("li:nth-child(2", "Unclosed parentheses"),
    ],
)
def test_malformed_selectors_are_errors(selector, expected):
    result = _validate([{"type": "click", "target": selector}])

    assert result.valid is False
    assert any(expected in error and selector in error for error in result.errors)


def test_bare_word_selector_is_a_warning():
    error, warning = check_selector_syntax("submitBtn")

    assert error is None
    assert '"#submitBtn"' in warning
    assert check_selector_syntax("div") == (None, None)


def test_steps_after_screenshot_warn_about_uncaptured_state():
    result = _validate([{"type": "screenshot"}, {"type": "click", "target": "#go"}])

    assert result.valid is True
    assert any("not captured" in warning for warning in result.warnings)


def test_waits_after_screenshot_do_not_warn():
    result = _validate([{"type": "screenshot"}, {"type": "wait", "duration": 100}])

    assert not any("not captured" in warning for warning in result.warnings)


def test_multiple_viewports_and_screenshots_warn():
    result = _validate(
        [
            {"type": "viewport", "device": "desktop"},
            {"type": "screenshot"},
            {"type": "viewport", "device": "mobile"},
            {"type": "screenshot"},
        ]
    )

    assert any("Multiple viewport steps" in warning for warning in result.warnings)
    assert any("only the last one produces the returned image" in warning for warning in result.warnings)


def test_uninterpretable_steps_become_errors():
    result = _validate([{"target": "#a"}, "not a step"])

    assert len(result.errors) == 2
    assert "missing its 'type'" in result.errors[0]


def test_unknown_kinds_are_not_validated():
    result = _validate([{"type": "hover", "target": ".menu"}])

    assert result.errors == []


def test_deprecation_notices_lead_the_warnings():
    result = _validate([{"type": "delay", "ms": 200}])

    assert result.warnings[0] == "Step type 'delay' is deprecated, use 'wait' instead"
    assert "Parameter 'ms' is deprecated in wait steps, use 'duration' instead" in result.warnings


def test_analysis_reports_estimate_and_auto_added_screenshot():
    steps = canonicalize_all([{"type": "click", "target": "#go"}, {"type": "fill", "target": "#q", "value": "x"}])
    report = analyze_steps(steps, validate(steps))

    assert report.estimated_time_ms == 2000 + 1000 * 2
    assert report.step_count == 3
    assert report.step_analysis[-1].notes == ["Auto-added at end"]
    assert report.suggestions[0].issue == "Click may need waitFor"
    assert report.suggestions[0].corrected_step == {"type": "click", "target": "#go", "waitFor": ".expected-element"}


def test_analysis_suggests_condition_for_empty_wait():
    steps = canonicalize_all([{"type": "wait"}])
    report = analyze_steps(steps, validate(steps))

    assert report.valid is False
    assert report.suggestions[0].corrected_step == {"type": "wait", "for": ".your-element", "timeout": 10000}
    assert report.step_analysis[0].status == "error"
