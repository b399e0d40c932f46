"""Flatten capability-server content parts into display text."""

import json
from typing import Any


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _resource_text(resource: Any) -> str:
    if not isinstance(resource, dict):
        return f"[Resource: {_dump(resource)}]"
    text = resource.get("text")
    if isinstance(text, str):
        return text
    uri = resource.get("uri") or "unknown"
    mime_type = resource.get("mimeType")
    if mime_type:
        return f"[Resource: {uri} ({mime_type})]"
    return f"[Resource: {uri}]"


def flatten_part(part: Any) -> str:
    """Render one content part; unknown shapes become a JSON dump."""
    if isinstance(part, str):
        return part
    if not isinstance(part, dict):
        return _dump(part)

    part_type = part.get("type")
    if part_type == "text" and isinstance(part.get("text"), str):
        return part["text"]
    if part_type == "image":
        return f"[Image: {part.get('mimeType') or 'unknown'}]"
    if part_type == "audio":
        return f"[Audio: {part.get('mimeType') or 'unknown'}]"
    if part_type == "resource":
        return _resource_text(part.get("resource"))
    if part_type == "resource_link":
        return f"[Resource: {part.get('uri') or 'unknown'}]"
    return _dump(part)


def extract_content(content: Any) -> str:
    """Join a sequence of typed content parts with newlines.

    ``None`` yields an empty string; a single non-list payload is rendered as
    one part.
    """
    if content is None:
        return ""
    if isinstance(content, (list, tuple)):
        return "\n".join(flatten_part(part) for part in content)
    return flatten_part(content)


def extract_resource_contents(contents: Any) -> str:
    """Render ``resources/read`` contents (text entries verbatim)."""
    if not contents:
        return ""
    return "\n".join(_resource_text(entry) for entry in contents)


def extract_prompt_messages(messages: Any) -> str:
    """Render ``prompts/get`` messages as newline-joined text."""
    if not messages:
        return ""
    rendered = []
    for message in messages:
        body = message.get("content") if isinstance(message, dict) else message
        rendered.append(extract_content(body))
    return "\n".join(rendered)
