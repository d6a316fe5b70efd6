from parlor.platform.base import detect_image_type, extract_configs, split_message


def test_split_message_on_lines() -> None:
    text = "\n".join(["x" * 30] * 5)
    chunks = split_message(text, max_length=70)
    assert chunks == ["x" * 30 + "\n" + "x" * 30] * 2 + ["x" * 30]


def test_split_message_hard_splits_long_lines() -> None:
    assert split_message("y" * 25, max_length=10) == ["y" * 10, "y" * 10, "y" * 5]


def test_short_message_is_one_chunk() -> None:
    assert split_message("hello") == ["hello"]


def test_extract_configs_filters_by_target() -> None:
    pinned = [
        ".config Claude\n---\ntemperature: 0.5",
        ".config Other\n---\ntemperature: 0.1",
        ".config\n---\nmaxTokens: 100",
        "just a pinned note",
        ".config Claude\nmissing separator",
    ]
    assert extract_configs(pinned, "Claude") == ["temperature: 0.5", "maxTokens: 100"]


def test_detect_image_type() -> None:
    assert detect_image_type(b"\x89PNG\r\n\x1a\n") == "image/png"
    assert detect_image_type(b"\xff\xd8\xff\xe0") == "image/jpeg"
    assert detect_image_type(b"GIF89a") == "image/gif"
    assert detect_image_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert detect_image_type(b"text") is None
