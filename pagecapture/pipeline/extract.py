"""DOM extraction variant: bounded html, text and structured-tree blocks."""
import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BoundedText(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content: str
    truncated: bool = False
    original_length: int = 0


class ExtractionResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: str
    selector: Optional[str] = None
    html: BoundedText
    text: BoundedText
    tree: BoundedText
    node_count: int = 0
    nodes_truncated: bool = False


def bound(content: str, limit: int) -> BoundedText:
    if len(content) <= limit:
        return BoundedText(content=content, original_length=len(content))
    return BoundedText(content=content[:limit], truncated=True, original_length=len(content))


def build_extraction(url: str, selector: Optional[str], raw: Dict[str, Any], settings) -> ExtractionResult:
    tree = raw.get("tree")
    tree_json = json.dumps(tree, indent=2, ensure_ascii=False) if tree is not None else ""
    return ExtractionResult(
        url=url,
        selector=selector,
        html=bound(raw.get("html") or "", settings.max_html_chars),
        text=bound(raw.get("text") or "", settings.max_text_chars),
        tree=bound(tree_json, settings.max_html_chars),
        node_count=int(raw.get("nodeCount") or 0),
        nodes_truncated=bool(raw.get("nodesTruncated")),
    )
