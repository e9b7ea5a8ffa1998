"""Render participant narrative as labelled prompt text."""

from intermediator.models import InitialAnswers, P2Response, ResponseType

_ANSWER_FIELDS = ("what_happened", "what_led_to_it", "how_it_made_them_feel", "desired_outcome")


def format_answers(answers: InitialAnswers, labels: dict[str, str]) -> str:
    return "\n".join(
        f"{labels.get(name, name)}: {getattr(answers, name)}" for name in _ANSWER_FIELDS
    )


def format_response(response: P2Response, labels: dict[str, str]) -> str:
    """Dispute text is passed through; an answer set uses the four labelled fields."""
    if response.response_type == ResponseType.DISPUTE_TEXT:
        return response.dispute_text or ""
    not_specified = labels.get("not_specified", "")
    return "\n".join(
        f"{labels.get(name, name)}: {getattr(response, name) or not_specified}"
        for name in _ANSWER_FIELDS
    )


def format_context(context: str | None, labels: dict[str, str]) -> str:
    """Optional trailing block; empty when no context was given."""
    if not context:
        return ""
    return f"\n\n{labels.get('additional_context', 'Additional context')}: {context}"
