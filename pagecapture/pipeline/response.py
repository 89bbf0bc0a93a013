"""
Caller-facing rendering: text summaries and content blocks.
"""
import base64
from typing import Any, Dict, List, Optional

from pagecapture.pipeline.extract import BoundedText, ExtractionResult
from pagecapture.pipeline.models import ExecutionOutcome, ValidateReport, ValidationResult

ContentBlock = Dict[str, Any]

_STATUS_ICONS = {"ok": "✓", "warning": "⚠", "error": "✗"}


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def capture_summary(
    url: str,
    outcome: ExecutionOutcome,
    storage_location: Optional[str] = None,
    notices: Optional[List[str]] = None,
) -> str:
    lines = [
        "✓ Screenshot captured successfully",
        f"URL: {url}",
    ]
    if outcome.page_title:
        lines.append(f"Title: {outcome.page_title}")
    if outcome.device:
        lines.append(f"Device: {outcome.device} ({outcome.viewport_width}x{outcome.viewport_height})")
    else:
        lines.append(f"Viewport: {outcome.viewport_width}x{outcome.viewport_height}")
    lines.append(f"Size: {format_bytes(len(outcome.artifact))}")
    lines.append(f"Full page: {'yes' if outcome.full_page else 'no'}")
    if outcome.scroll_width and outcome.scroll_height:
        lines.append(f"Page dimensions: {outcome.scroll_width}x{outcome.scroll_height}")

    if outcome.step_results:
        lines.append(f"Steps executed: {outcome.steps_completed}/{len(outcome.step_results)}")
        for result in outcome.step_results:
            icon = "✓" if result.success else "✗"
            target = f" ({result.target})" if result.target else ""
            detail = f": {result.error}" if result.error else ""
            lines.append(f"  {icon} {result.index + 1}. {result.kind}{target}{detail}")
            if result.note:
                lines.append(f"       {result.note}")
    if outcome.retry_attempts:
        lines.append(f"Retries: {outcome.retry_attempts}")
    if storage_location:
        lines.append(f"Stored at: {storage_location}")
    if notices:
        lines.append("")
        lines.append("WARNINGS:")
        lines.extend(f"  ⚠ {notice}" for notice in notices)
    return "\n".join(lines)


def capture_content(summary: str, outcome: ExecutionOutcome) -> List[ContentBlock]:
    return [
        {"type": "text", "text": summary},
        {
            "type": "image",
            "data": base64.b64encode(outcome.artifact).decode("ascii"),
            "mimeType": outcome.mime_type,
        },
    ]


def validation_issues_text(result: ValidationResult) -> str:
    lines = []
    if result.errors:
        lines.append("ERRORS:")
        lines.extend(f"  ✗ {error}" for error in result.errors)
    if result.warnings:
        lines.append("WARNINGS:")
        lines.extend(f"  ⚠ {warning}" for warning in result.warnings)
    if result.corrections:
        lines.append("CORRECTIONS:")
        for correction in result.corrections:
            lines.append(
                f"  Step {correction.step_index + 1} {correction.field}: "
                f"{correction.from_!r} -> {correction.to!r} ({correction.reason})"
            )
    return "\n".join(lines)


def validate_report_text(report: ValidateReport) -> str:
    result = report.validation
    lines = [
        f"VALIDATION {'PASSED ✓' if result.valid else 'FAILED ✗'}",
        f"Steps: {report.step_count} | Estimated time: {report.estimated_time_ms}ms",
        "",
    ]
    issues = validation_issues_text(result)
    if issues:
        lines.append(issues)
        lines.append("")
    if report.suggestions:
        lines.append("SUGGESTIONS:")
        for suggestion in report.suggestions:
            lines.append(f"  Step {suggestion.step_index + 1}: {suggestion.issue}")
            lines.append(f"    → {suggestion.fix}")
        lines.append("")
    lines.append("STEP ANALYSIS:")
    for entry in report.step_analysis:
        target = f" ({entry.target})" if entry.target else ""
        lines.append(f"  {entry.index + 1}. {_STATUS_ICONS[entry.status]} {entry.type}{target}")
        lines.extend(f"       {note}" for note in entry.notes)
    return "\n".join(lines)


def _block_text(label: str, block: BoundedText) -> str:
    header = f"{label} ({block.original_length} chars"
    header += f", truncated to {len(block.content)})" if block.truncated else ")"
    return f"{header}\n{block.content}"


def extraction_content(result: ExtractionResult) -> List[ContentBlock]:
    summary = [
        "✓ DOM extracted successfully",
        f"URL: {result.url}",
        f"Selector: {result.selector or '(document)'}",
        f"Nodes: {result.node_count}{' (truncated)' if result.nodes_truncated else ''}",
    ]
    return [
        {"type": "text", "text": "\n".join(summary)},
        {"type": "text", "text": _block_text("HTML", result.html), "truncated": result.html.truncated},
        {"type": "text", "text": _block_text("TEXT", result.text), "truncated": result.text.truncated},
        {"type": "text", "text": _block_text("TREE", result.tree), "truncated": result.tree.truncated},
    ]
