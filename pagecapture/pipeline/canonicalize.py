"""
Canonicalizer: maps every accepted step shape onto the canonical vocabulary.

Raw steps are plain dicts (decoded JSON). Legacy step types and field names are
renamed, composite shapes (``fillForm``, ``login``, ``search``) are expanded, and
anything that cannot be interpreted becomes a ``PassthroughStep`` carrying the
reasons, so the Validator can report them. Nothing here raises.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Union

from loguru import logger
from pydantic import ValidationError

from pagecapture.pipeline.models import KIND_MODELS, CanonicalStep, PassthroughStep, _Step

log = logger.bind(module="canonicalize")

DEFAULT_SUBMIT_SELECTOR = 'button[type="submit"]'

# Legacy step type -> canonical kind
TYPE_ALIASES: Dict[str, str] = {
    "quickFill": "fill",
    "text": "fill",
    "type": "fill",
    "select": "fill",
    "checkbox": "fill",
    "radio": "fill",
    "waitForSelector": "wait",
    "delay": "wait",
    "submit": "click",
    "fullPage": "screenshot",
}

# Per canonical kind: canonical field -> legacy names, highest priority first
FIELD_ALIASES: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "viewport": {"device": ("preset",)},
    "wait": {"for": ("awaitElement", "selector", "waitFor"), "duration": ("ms",)},
    "fill": {"target": ("selector",), "value": ("text", "checked"), "submit": ("pressEnter",)},
    "click": {"target": ("selector",), "waitFor": ("waitAfter", "waitForSelector", "wait")},
    "scroll": {"to": ("scrollTo", "selector")},
    "screenshot": {"fullPage": ("enabled",), "element": ("captureElement", "selector")},
}

COMPOSITE_TYPES = ("fillForm", "login", "search")

RawStep = Dict[str, Any]


class DeprecationLog:
    """Request-scoped collector of deprecation notices, one per legacy name."""

    def __init__(self) -> None:
        self._notices: Dict[str, str] = {}

    def note(self, key: str, message: str) -> None:
        if key in self._notices:
            return
        self._notices[key] = message
        log.debug("canonicalize:deprecated {}", message)

    @property
    def notices(self) -> List[str]:
        return list(self._notices.values())

    def __len__(self) -> int:
        return len(self._notices)


def _stringify(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error["loc"])
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return "; ".join(parts)


def _passthrough(raw: Any, issues: List[str]) -> PassthroughStep:
    if isinstance(raw, dict):
        data = {str(key): value for key, value in raw.items()}
    else:
        data = {"value": raw}
    kind = data.get("type")
    data["type"] = kind if isinstance(kind, str) else ("" if kind is None else str(kind))
    step = PassthroughStep.model_validate(data)
    step.issues.extend(issues)
    return step


def _build(kind: str, data: RawStep, raw: RawStep) -> CanonicalStep:
    try:
        return KIND_MODELS[kind].model_validate(data)
    except ValidationError as exc:
        return _passthrough(raw, [f"{kind} step has invalid fields ({_describe(exc)})"])


def _rename_fields(kind: str, data: RawStep, deprecations: DeprecationLog) -> None:
    for canonical, legacy_names in FIELD_ALIASES.get(kind, {}).items():
        for legacy in legacy_names:
            if legacy not in data:
                continue
            value = data.pop(legacy)
            # a numeric click 'wait' is a delay, not a selector; keep it as-is
            if kind == "click" and legacy == "wait" and not isinstance(value, str):
                data[legacy] = value
                continue
            deprecations.note(
                f"{kind}.{legacy}", f"Parameter '{legacy}' is deprecated in {kind} steps, use '{canonical}' instead"
            )
            if data.get(canonical) is None and value is not None:
                data[canonical] = value


def _map_single(raw: RawStep, deprecations: DeprecationLog) -> CanonicalStep:
    legacy_type = raw["type"]
    data = dict(raw)
    kind = TYPE_ALIASES.get(legacy_type, legacy_type)
    if kind != legacy_type:
        deprecations.note(f"type.{legacy_type}", f"Step type '{legacy_type}' is deprecated, use '{kind}' instead")
    data["type"] = kind
    if legacy_type == "checkbox" and data.get("checked") is not None:
        data["value"] = data.pop("checked")

    _rename_fields(kind, data, deprecations)

    if legacy_type == "submit" and not data.get("target"):
        data["target"] = DEFAULT_SUBMIT_SELECTOR
    if legacy_type == "fullPage" and data.get("fullPage") is None:
        data["fullPage"] = True
    if kind == "fill" and "value" in data:
        data["value"] = _stringify(data["value"])

    return _build(kind, data, raw)


def _field_value(field: Any, *names: str) -> Any:
    if not isinstance(field, dict):
        return None
    for name in names:
        if field.get(name) is not None:
            return field[name]
    return None


def _expand_fill_form(raw: RawStep, deprecations: DeprecationLog) -> List[CanonicalStep]:
    fields = raw.get("fields")
    if not isinstance(fields, list) or not fields:
        return [_passthrough(raw, ["fillForm step requires a non-empty 'fields' list"])]
    deprecations.note("type.fillForm", "Step type 'fillForm' is deprecated, use one 'fill' step per field")

    steps: List[CanonicalStep] = []
    for field in fields:
        data = {
            "type": "fill",
            "target": _field_value(field, "selector", "target"),
            "value": _stringify(_field_value(field, "value")),
        }
        steps.append(_build("fill", data, {"type": "fill", **(field if isinstance(field, dict) else {})}))

    if raw.get("submit"):
        target = raw.get("submitSelector")
        if not target:
            form = raw.get("formSelector") or ""
            target = f'{form} [type="submit"], {form} button[type="submit"]'.strip()
        steps.append(_build("click", {"type": "click", "target": target or DEFAULT_SUBMIT_SELECTOR}, raw))
    return steps


def _expand_login(raw: RawStep) -> List[CanonicalStep]:
    email = raw.get("email")
    password = raw.get("password")
    if not isinstance(email, dict) or not isinstance(password, dict) or not raw.get("submit"):
        return [_passthrough(raw, ["login step requires 'email', 'password' ({selector, value}) and 'submit'"])]
    click: RawStep = {"type": "click", "target": raw["submit"]}
    if raw.get("successIndicator"):
        click["waitFor"] = raw["successIndicator"]
    return [
        _build("fill", {"type": "fill", "target": email.get("selector"), "value": _stringify(email.get("value"))}, raw),
        _build(
            "fill", {"type": "fill", "target": password.get("selector"), "value": _stringify(password.get("value"))}, raw
        ),
        _build("click", click, raw),
    ]


def _expand_search(raw: RawStep) -> List[CanonicalStep]:
    if not raw.get("input") or raw.get("query") is None:
        return [_passthrough(raw, ["search step requires 'input' (selector) and 'query'"])]
    steps = [
        _build(
            "fill",
            {
                "type": "fill",
                "target": raw["input"],
                "value": _stringify(raw["query"]),
                "submit": raw.get("submit") is not False,
            },
            raw,
        )
    ]
    # without a results indicator there is nothing to wait for
    if raw.get("resultsIndicator"):
        steps.append(_build("wait", {"type": "wait", "for": raw["resultsIndicator"]}, raw))
    return steps


def canonicalize(
    raw: Any, deprecations: Optional[DeprecationLog] = None
) -> Union[CanonicalStep, List[CanonicalStep]]:
    """
    Map one raw step to its canonical form.

    Returns a list only for composite shapes. Already-canonical input comes back
    unchanged; unknown types come back as ``PassthroughStep`` with their fields intact.
    """
    if isinstance(raw, _Step):
        return raw
    if deprecations is None:
        deprecations = DeprecationLog()
    if not isinstance(raw, dict):
        return _passthrough(raw, [f"step must be an object, got {type(raw).__name__}"])

    kind = raw.get("type")
    if not isinstance(kind, str) or not kind.strip():
        return _passthrough(raw, ["step is missing its 'type'"])

    if kind == "fillForm":
        return _expand_fill_form(raw, deprecations)
    if kind == "login":
        return _expand_login(raw)
    if kind == "search":
        return _expand_search(raw)
    if kind in KIND_MODELS or kind in TYPE_ALIASES:
        return _map_single(raw, deprecations)
    return _passthrough(raw, [])


def canonicalize_all(raw_steps: Optional[List[Any]], deprecations: Optional[DeprecationLog] = None) -> List[CanonicalStep]:
    if deprecations is None:
        deprecations = DeprecationLog()
    steps: List[CanonicalStep] = []
    for raw in raw_steps or []:
        mapped = canonicalize(raw, deprecations)
        if isinstance(mapped, list):
            steps.extend(mapped)
        else:
            steps.append(mapped)
    return steps
