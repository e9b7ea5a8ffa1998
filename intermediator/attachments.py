"""Attachment registry: uploaded evidence files per session and stage.

Files live under <root>/<session_id>/ with their metadata in
attachments.json beside them. Records are immutable once stored.
"""

import base64
import json
import logging
import time
import uuid
from dataclasses import asdict
from pathlib import Path

from config.config_loader import AttachmentsConfig
from intermediator.models import Attachment, AttachmentContent, ImageInput, Stage
from intermediator.store import StorageError, write_text_atomic

logger = logging.getLogger(__name__)

_METADATA_FILE = "attachments.json"
_TRUNCATION_MARKER = "\n[... content truncated ...]"


class AttachmentError(Exception):
    """Upload refused (type, size, unknown id or closed stage)."""


def file_type_category(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "image"
    if mime_type == "text/plain":
        return "text"
    if mime_type == "text/csv":
        return "csv"
    if mime_type == "application/pdf":
        return "pdf"
    return "document"


class AttachmentRegistry:
    def __init__(self, root: Path, config: AttachmentsConfig) -> None:
        self.root = Path(root)
        self.config = config

    def _session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def _load_records(self, session_id: str) -> list[Attachment]:
        path = self._session_dir(session_id) / _METADATA_FILE
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [Attachment(**{**item, "stage": Stage(item["stage"])}) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"Cannot read attachments of session {session_id}: {exc}") from exc

    def _save_records(self, session_id: str, records: list[Attachment]) -> None:
        data = [{**asdict(r), "stage": r.stage.value} for r in records]
        try:
            write_text_atomic(
                self._session_dir(session_id) / _METADATA_FILE,
                json.dumps(data, indent=2, ensure_ascii=False),
            )
        except OSError as exc:
            raise StorageError(f"Cannot save attachments of session {session_id}: {exc}") from exc

    def add(
        self,
        session_id: str,
        participant_number: int,
        stage: Stage,
        original_name: str,
        mime_type: str,
        data: bytes,
    ) -> Attachment:
        """Store a file and its metadata. Raises AttachmentError on type or size."""
        if mime_type not in self.config.allowed_mime_types:
            raise AttachmentError(f"File type not allowed: {mime_type}")
        if len(data) > self.config.max_file_bytes:
            raise AttachmentError(
                f"File too large: {len(data)} bytes (limit {self.config.max_file_bytes})"
            )

        records = self._load_records(session_id)
        next_id = max((r.id for r in records), default=0) + 1
        suffix = Path(original_name).suffix
        file_name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{suffix}"

        session_dir = self._session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / file_name).write_bytes(data)

        attachment = Attachment(
            id=next_id,
            session_id=session_id,
            participant_number=participant_number,
            stage=stage,
            file_name=file_name,
            original_name=original_name,
            file_type=file_type_category(mime_type),
            mime_type=mime_type,
            file_size=len(data),
            uploaded_at=time.time(),
        )
        records.append(attachment)
        self._save_records(session_id, records)
        logger.info(
            "Attachment %d stored for session %s (participant %d, %s, %s)",
            attachment.id, session_id, participant_number, stage.value, attachment.file_type,
        )
        return attachment

    def list_attachments(self, session_id: str, stage: Stage | None = None) -> list[Attachment]:
        """Attachments in upload order, optionally for one stage."""
        records = self._load_records(session_id)
        if stage is None:
            return records
        return [r for r in records if r.stage == stage]

    def get(self, session_id: str, attachment_id: int) -> Attachment:
        for record in self._load_records(session_id):
            if record.id == attachment_id:
                return record
        raise AttachmentError(f"Attachment {attachment_id} not found in session {session_id}")

    def delete(self, session_id: str, attachment_id: int) -> Attachment:
        record = self.get(session_id, attachment_id)
        remaining = [r for r in self._load_records(session_id) if r.id != attachment_id]
        self._save_records(session_id, remaining)
        (self._session_dir(session_id) / record.file_name).unlink(missing_ok=True)
        logger.info("Attachment %d deleted from session %s", attachment_id, session_id)
        return record

    def read_contents(self, attachments: list[Attachment]) -> list[AttachmentContent]:
        """Text and CSV files as (truncated) text, images as base64.

        PDFs and other documents are referenced by name only and skipped here.
        Missing or unreadable files are logged and skipped.
        """
        contents: list[AttachmentContent] = []
        limit = self.config.max_text_chars
        for attachment in attachments:
            path = self._session_dir(attachment.session_id) / attachment.file_name
            if not path.exists():
                logger.warning("Attachment file missing: %s", path)
                continue
            try:
                if attachment.file_type in ("text", "csv"):
                    text = path.read_text(encoding="utf-8", errors="replace")
                    if len(text) > limit:
                        text = text[:limit] + _TRUNCATION_MARKER
                    contents.append(AttachmentContent(
                        name=attachment.original_name,
                        file_type=attachment.file_type,
                        participant_number=attachment.participant_number,
                        content=text,
                    ))
                elif attachment.file_type == "image":
                    contents.append(AttachmentContent(
                        name=attachment.original_name,
                        file_type=attachment.file_type,
                        participant_number=attachment.participant_number,
                        content=base64.b64encode(path.read_bytes()).decode("ascii"),
                        mime_type=attachment.mime_type or "image/jpeg",
                        is_image=True,
                    ))
            except OSError as exc:
                logger.warning("Cannot read attachment %s: %s", attachment.original_name, exc)
        return contents


def format_for_prompt(
    contents: list[AttachmentContent],
    labels: dict[str, str],
) -> tuple[str, list[ImageInput]]:
    """Render text documents into a prompt block and split out images.

    Each image also gets a one-line text reference so the model knows it exists.
    """
    if not contents:
        return "", []

    from_participant = labels.get("from_participant", "from Participant")
    text = ""
    documents = [c for c in contents if not c.is_image]
    if documents:
        text = f"\n\n{labels.get('attached_documents', '=== ATTACHED DOCUMENTS ===')}\n"
        for doc in documents:
            text += f"\n--- {doc.name} ({doc.file_type.upper()} {from_participant} {doc.participant_number}) ---\n"
            text += doc.content
            text += f"\n{labels.get('end_of_document', '--- END OF DOCUMENT ---')}\n"

    images: list[ImageInput] = []
    for item in contents:
        if not item.is_image:
            continue
        images.append(ImageInput(
            name=item.name,
            participant_number=item.participant_number,
            mime_type=item.mime_type or "image/jpeg",
            data_base64=item.content,
        ))
        text += f"\n[{labels.get('image_attached', 'IMAGE ATTACHED')}: {item.name} {from_participant} {item.participant_number}]\n"

    return text, images


def format_attachment_list(attachments: list[Attachment], labels: dict[str, str]) -> str:
    """Name-only listing of every attachment, documents included."""
    if not attachments:
        return ""
    from_participant = labels.get("from_participant", "from Participant")
    lines = [f"- {a.original_name} ({a.file_type}, {from_participant} {a.participant_number})" for a in attachments]
    return f"\n\n{labels.get('attachments_provided', 'Attachments/Evidence provided:')}\n" + "\n".join(lines)
