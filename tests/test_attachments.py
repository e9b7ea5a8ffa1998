"""Tests for intermediator/attachments.py."""

import base64
import typing

import pytest

from intermediator.attachments import (
    AttachmentError,
    AttachmentRegistry,
    file_type_category,
    format_attachment_list,
    format_for_prompt,
)
from intermediator.models import Attachment, AttachmentContent, Stage
from intermediator.store import StorageError


def test_file_type_category():
    assert file_type_category("image/png") == "image"
    assert file_type_category("text/plain") == "text"
    assert file_type_category("text/csv") == "csv"
    assert file_type_category("application/pdf") == "pdf"
    assert file_type_category("application/msword") == "document"


def test_add_and_list(registry):
    first = registry.add("s1", 1, Stage.P1_INITIAL, "receipt.txt", "text/plain", b"paid 1000")
    second = registry.add("s1", 2, Stage.P2_RESPONSE, "photo.png", "image/png", b"\x89PNG")
    assert (first.id, second.id) == (1, 2)
    assert first.file_type == "text"
    assert first.file_size == 9
    assert first.file_name.endswith(".txt")
    assert [a.id for a in registry.list_attachments("s1")] == [1, 2]
    assert [a.id for a in registry.list_attachments("s1", Stage.P2_RESPONSE)] == [2]


def test_list_unknown_session_is_empty(registry):
    assert registry.list_attachments("nothing") == []


def test_registry_annotations_resolve():
    """No method may shadow the builtin list used in the class annotations."""
    assert "list" not in vars(AttachmentRegistry)
    hints = typing.get_type_hints(AttachmentRegistry.read_contents)
    assert hints["attachments"] == list[Attachment]
    assert hints["return"] == list[AttachmentContent]


def test_corrupt_metadata_is_storage_error(registry):
    (registry.root / "s1").mkdir(parents=True)
    (registry.root / "s1" / "attachments.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError, match="Cannot read attachments of session s1"):
        registry.list_attachments("s1")


def test_add_rejects_mime_type(registry):
    with pytest.raises(AttachmentError, match="not allowed"):
        registry.add("s1", 1, Stage.P1_INITIAL, "run.sh", "application/x-sh", b"echo")


def test_add_rejects_oversized_file(registry):
    registry.config.max_file_bytes = 4
    with pytest.raises(AttachmentError, match="too large"):
        registry.add("s1", 1, Stage.P1_INITIAL, "a.txt", "text/plain", b"12345")


def test_delete(registry):
    record = registry.add("s1", 1, Stage.P1_INITIAL, "a.txt", "text/plain", b"abc")
    registry.delete("s1", record.id)
    assert registry.list_attachments("s1") == []
    assert not (registry.root / "s1" / record.file_name).exists()
    with pytest.raises(AttachmentError):
        registry.get("s1", record.id)


def test_read_contents_truncates_text(registry):
    registry.config.max_text_chars = 10
    record = registry.add("s1", 1, Stage.P1_INITIAL, "long.txt", "text/plain", b"x" * 50)
    [content] = registry.read_contents([record])
    assert content.content == "x" * 10 + "\n[... content truncated ...]"


def test_read_contents_images_as_base64_and_skips_pdf(registry):
    image = registry.add("s1", 2, Stage.P2_RESPONSE, "p.png", "image/png", b"imgdata")
    pdf = registry.add("s1", 2, Stage.P2_RESPONSE, "doc.pdf", "application/pdf", b"%PDF")
    contents = registry.read_contents([image, pdf])
    assert len(contents) == 1
    assert contents[0].is_image
    assert base64.b64decode(contents[0].content) == b"imgdata"


def test_read_contents_skips_missing_file(registry):
    record = registry.add("s1", 1, Stage.P1_INITIAL, "a.txt", "text/plain", b"abc")
    (registry.root / "s1" / record.file_name).unlink()
    assert registry.read_contents([record]) == []


def test_format_for_prompt_splits_images(registry, app_config):
    labels = app_config.prompts["en"].labels
    text_file = registry.add("s1", 1, Stage.P1_INITIAL, "receipt.txt", "text/plain", b"paid 1000")
    image = registry.add("s1", 2, Stage.P2_RESPONSE, "p.png", "image/png", b"img")
    text, images = format_for_prompt(registry.read_contents([text_file, image]), labels)

    assert "=== ATTACHED DOCUMENTS ===" in text
    assert "--- receipt.txt (TEXT from Participant 1) ---" in text
    assert "paid 1000" in text
    assert "[IMAGE ATTACHED: p.png from Participant 2]" in text
    assert [i.name for i in images] == ["p.png"]
    assert images[0].mime_type == "image/png"


def test_format_for_prompt_empty():
    assert format_for_prompt([], {}) == ("", [])


def test_format_attachment_list_names_every_file(registry, app_config):
    labels = app_config.prompts["en"].labels
    registry.add("s1", 1, Stage.P1_INITIAL, "lease.pdf", "application/pdf", b"%PDF")
    listing = format_attachment_list(registry.list_attachments("s1"), labels)
    assert "Attachments/Evidence provided:" in listing
    assert "- lease.pdf (pdf, from Participant 1)" in listing
    assert format_attachment_list([], labels) == ""
