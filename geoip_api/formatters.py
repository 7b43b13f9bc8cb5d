"""Content negotiation and payload serialization.

Every payload is first converted into a plain tree of ordered dicts, lists
and scalars (`to_tree`); each serializer consumes only that tree.
"""

import csv
import io
import json
import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any
from xml.etree import ElementTree

import yaml
from pydantic import BaseModel

from geoip_api.errors import SerializationError

Tree = dict[str, Any]


class OutputFormat(str, Enum):
    json = "json"
    xml = "xml"
    csv = "csv"
    yaml = "yaml"


class PayloadKind(str, Enum):
    """Kind of payload; the value is the XML root element name."""

    data = "geoip"
    error = "error"


MEDIA_TYPES: dict[OutputFormat, str] = {
    OutputFormat.json: "application/json",
    OutputFormat.xml: "application/xml",
    OutputFormat.csv: "text/csv",
    OutputFormat.yaml: "application/x-yaml",
}
JSONP_MEDIA_TYPE = "application/javascript"

# Checked in order; the first matching substring of the Accept header wins.
ACCEPT_PATTERNS: tuple[tuple[OutputFormat, tuple[str, ...]], ...] = (
    (OutputFormat.xml, ("application/xml", "text/xml")),
    (OutputFormat.csv, ("text/csv",)),
    (OutputFormat.yaml, ("application/x-yaml", "text/yaml")),
)

_CALLBACK_UNSAFE = re.compile(r"[^A-Za-z0-9_$]")
_XML_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def negotiate(
    format_param: str | None,
    accept_header: str | None,
    default: str = OutputFormat.json.value,
    supported: Iterable[str] = tuple(f.value for f in OutputFormat),
) -> OutputFormat:
    """Pick the output format: `format` parameter, then Accept header, then the default."""
    supported_formats = {str(value).lower() for value in supported}

    if format_param and format_param.lower() in supported_formats:
        return OutputFormat(format_param.lower())

    if accept_header:
        for output_format, media_types in ACCEPT_PATTERNS:
            if output_format.value in supported_formats and any(media in accept_header for media in media_types):
                return output_format

    try:
        return OutputFormat(default.lower())
    except ValueError:
        return OutputFormat.json


def sanitize_callback(callback: str) -> str:
    return _CALLBACK_UNSAFE.sub("", callback)


def to_tree(data: Any) -> Any:
    """Convert models, mappings and sequences into JSON-compatible plain values."""
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, Mapping):
        return {str(key): to_tree(value) for key, value in data.items()}
    if isinstance(data, (list, tuple)):
        return [to_tree(value) for value in data]
    if data is None or isinstance(data, (str, int, float, bool)):
        return data
    return str(data)


def serialize(
    output_format: OutputFormat,
    data: Any,
    kind: PayloadKind = PayloadKind.data,
    callback: str | None = None,
) -> tuple[bytes, str]:
    """Render `data` and return (body, content type).

    A callback only applies to JSON output; it is reduced to [A-Za-z0-9_$]
    and ignored if nothing remains.
    """
    tree = to_tree(data)
    try:
        if output_format is OutputFormat.xml:
            body = _to_xml(tree, kind)
        elif output_format is OutputFormat.csv:
            body = _to_csv(tree)
        elif output_format is OutputFormat.yaml:
            body = _to_yaml(tree)
        else:
            body = json.dumps(tree, indent=4, ensure_ascii=False)
    except (TypeError, ValueError, yaml.YAMLError) as exc:
        raise SerializationError(f"Failed to render {output_format.value} response: {exc}") from exc

    content_type = MEDIA_TYPES[output_format]
    if output_format is OutputFormat.json and callback:
        safe_callback = sanitize_callback(callback)
        if safe_callback:
            body = f"{safe_callback}({body});"
            content_type = JSONP_MEDIA_TYPE

    return body.encode("utf-8"), content_type


def flatten(tree: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten nested mappings/lists into `_`-joined key paths."""
    if isinstance(tree, dict):
        items = tree.items()
    elif isinstance(tree, list):
        items = ((str(index), value) for index, value in enumerate(tree))
    else:
        return {prefix or "value": tree}

    flat: dict[str, Any] = {}
    for key, value in items:
        path = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, (dict, list)):
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_csv(tree: Any) -> str:
    flat = flatten(tree)
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(flat.keys())
    writer.writerow(_scalar_text(value) for value in flat.values())
    return output.getvalue()


def _to_yaml(tree: Any) -> str:
    return yaml.safe_dump(tree, default_flow_style=False, sort_keys=False, allow_unicode=True, indent=2)


def _xml_tag(key: str) -> str:
    tag = _XML_TAG_UNSAFE.sub("_", key) or "item"
    if not (tag[0].isalpha() or tag[0] == "_"):
        tag = f"_{tag}"
    return tag


def _append_xml(parent: ElementTree.Element, value: Any) -> None:
    if isinstance(value, dict):
        for key, child_value in value.items():
            child = ElementTree.SubElement(parent, _xml_tag(str(key)))
            _append_xml(child, child_value)
    elif isinstance(value, list):
        for item in value:
            child = ElementTree.SubElement(parent, "item")
            _append_xml(child, item)
    else:
        parent.text = _scalar_text(value)


def _to_xml(tree: Any, kind: PayloadKind) -> str:
    root = ElementTree.Element(kind.value)
    _append_xml(root, tree)
    return ElementTree.tostring(root, encoding="utf-8", xml_declaration=True).decode("utf-8")
