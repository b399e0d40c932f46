from vibey.mcp.content import extract_content, extract_prompt_messages, extract_resource_contents


def test_text_image_and_resource_parts_are_flattened_in_order():
    content = [
        {"type": "text", "text": "first"},
        {"type": "image", "data": "aGVsbG8=", "mimeType": "image/png"},
        {"type": "resource", "resource": {"uri": "file:///a.txt", "text": "inline body"}},
        {"type": "resource", "resource": {"uri": "file:///b.bin", "blob": "AAAA"}},
        {"type": "resource_link", "uri": "file:///c.md", "name": "c"},
    ]

    assert extract_content(content) == "\n".join(
        [
            "first",
            "[Image: image/png]",
            "inline body",
            "[Resource: file:///b.bin]",
            "[Resource: file:///c.md]",
        ]
    )


def test_unknown_parts_fall_back_to_json_dump():
    assert extract_content([{"type": "hologram", "frames": 3}]) == '{"frames": 3, "type": "hologram"}'


def test_none_and_plain_strings():
    assert extract_content(None) == ""
    assert extract_content(["raw text"]) == "raw text"
    assert extract_content([]) == ""


def test_resource_contents_and_prompt_messages():
    assert extract_resource_contents([{"uri": "mem://x", "text": "hello"}]) == "hello"
    assert extract_resource_contents([{"uri": "mem://y", "blob": "AA", "mimeType": "image/png"}]) == (
        "[Resource: mem://y (image/png)]"
    )
    messages = [
        {"role": "user", "content": {"type": "text", "text": "Review this"}},
        {"role": "assistant", "content": {"type": "text", "text": "Sure"}},
    ]
    assert extract_prompt_messages(messages) == "Review this\nSure"
