"""Narrative input files: markdown with optional YAML frontmatter.

Answers and responses keep their fields in the frontmatter; free text
(dispute text or additional context) is the body. Verification files list
entries under a `verifications` key.

    ---
    what_happened: We agreed to split the rent
    what_led_to_it: A new lease
    how_it_made_them_feel: Frustrated
    desired_outcome: Pay half each
    ---
"""

import mimetypes
from pathlib import Path

import frontmatter

_ANSWER_FIELDS = ("what_happened", "what_led_to_it", "how_it_made_them_feel", "desired_outcome")


def parse_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML frontmatter.

    Returns:
        (content, metadata) where content is the stripped body text.
        If no frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    return post.content.strip(), dict(post.metadata)


def load_answers(file_path: Path) -> dict:
    """The four answer fields from frontmatter. Missing fields are left out."""
    _, meta = parse_file(file_path)
    return {name: str(meta[name]) for name in _ANSWER_FIELDS if meta.get(name) is not None}


def load_response(file_path: Path) -> dict:
    """Participant 2's response: an answer set when frontmatter has the fields, else dispute text."""
    content, meta = parse_file(file_path)
    answers = {name: str(meta[name]) for name in _ANSWER_FIELDS if meta.get(name) is not None}
    response_type = meta.get("response_type") or ("answer_set" if answers else "dispute_text")
    if response_type == "dispute_text":
        return {"response_type": "dispute_text", "dispute_text": content}
    return {"response_type": str(response_type), **answers}


def load_context(file_path: Path) -> str:
    content, _ = parse_file(file_path)
    return content


def load_verifications(file_path: Path) -> dict[int, dict]:
    """Verification entries keyed by position in the participant's fact list.

    Accepts a list in list order, or a mapping of position to entry:

        verifications:
          - {status: agree}
          - {status: disagree, comment: It was Tuesday}
    """
    _, meta = parse_file(file_path)
    raw = meta.get("verifications", [])
    if isinstance(raw, list):
        return dict(enumerate(raw))
    if isinstance(raw, dict):
        return dict(raw)
    return {}


def guess_mime_type(file_path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(file_path.name)
    return mime_type or "application/octet-stream"
