"""Tests for intermediator/inputs.py narrative file parsing."""

from pathlib import Path

from intermediator.inputs import (
    guess_mime_type,
    load_answers,
    load_context,
    load_response,
    load_verifications,
    parse_file,
)

ANSWERS_MD = """\
---
what_happened: My roommate kept the deposit
what_led_to_it: The landlord paid her account
how_it_made_them_feel: Cheated
desired_outcome: Half the deposit
---
"""


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_parse_file_without_frontmatter(tmp_path):
    content, meta = parse_file(_write(tmp_path, "plain.md", "  Just text.  \n"))
    assert content == "Just text."
    assert meta == {}


def test_load_answers(tmp_path):
    answers = load_answers(_write(tmp_path, "answers.md", ANSWERS_MD))
    assert answers["what_happened"] == "My roommate kept the deposit"
    assert answers["desired_outcome"] == "Half the deposit"


def test_load_answers_leaves_out_missing_fields(tmp_path):
    answers = load_answers(_write(tmp_path, "answers.md", "---\nwhat_happened: Rent\n---\n"))
    assert answers == {"what_happened": "Rent"}


def test_load_response_answer_set(tmp_path):
    response = load_response(_write(tmp_path, "response.md", ANSWERS_MD))
    assert response["response_type"] == "answer_set"
    assert response["how_it_made_them_feel"] == "Cheated"


def test_load_response_dispute_text_from_body(tmp_path):
    response = load_response(_write(tmp_path, "response.md", "The cleaning fee came out of it.\n"))
    assert response == {"response_type": "dispute_text", "dispute_text": "The cleaning fee came out of it."}


def test_load_response_explicit_type(tmp_path):
    text = "---\nresponse_type: dispute_text\nwhat_happened: ignored\n---\nNot what happened.\n"
    response = load_response(_write(tmp_path, "response.md", text))
    assert response == {"response_type": "dispute_text", "dispute_text": "Not what happened."}


def test_load_context(tmp_path):
    assert load_context(_write(tmp_path, "context.md", "\nI have receipts.\n")) == "I have receipts."


def test_load_verifications_list(tmp_path):
    text = "---\nverifications:\n  - {status: agree}\n  - {status: disagree, comment: It was Tuesday}\n---\n"
    entries = load_verifications(_write(tmp_path, "verify.md", text))
    assert entries == {0: {"status": "agree"}, 1: {"status": "disagree", "comment": "It was Tuesday"}}


def test_load_verifications_mapping(tmp_path):
    text = "---\nverifications:\n  1: {status: partially}\n---\n"
    assert load_verifications(_write(tmp_path, "verify.md", text)) == {1: {"status": "partially"}}


def test_guess_mime_type():
    assert guess_mime_type(Path("receipt.txt")) == "text/plain"
    assert guess_mime_type(Path("photo.png")) == "image/png"
    assert guess_mime_type(Path("blob.unknownext")) == "application/octet-stream"
