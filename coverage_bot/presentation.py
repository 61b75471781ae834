"""JSON payloads for the verification widget.

The widget only needs plain data: message text, an icon tag, the actions to
offer as buttons, and whether the input box should be enabled.
"""

from __future__ import annotations

from typing import Any

from coverage_bot.models.session import ConversationSession, Message, Step

_PLACEHOLDERS = {
    Step.CONSENT: 'Reply "I agree" to continue...',
    Step.DOB: "MM/DD/YYYY",
    Step.SUBMITTING: "Please wait...",
    Step.RESULT: "Type \"restart\" to start a new verification",
    Step.ERROR: "Type \"restart\" to try again",
    Step.END: "Type \"restart\" to start a new verification",
}


def accepts_input(session: ConversationSession, in_flight: bool = False) -> bool:
    """Whether the widget should enable its text box."""
    return not in_flight and session.step not in (Step.INTRO, Step.SUBMITTING)


def render_message(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "sender": message.sender,
        "text": message.text,
        "kind": message.kind.value,
        "icon": message.icon.value if message.icon else None,
        "actions": list(message.actions),
        "timestamp": message.timestamp.isoformat(),
    }


def render_session(
    session: ConversationSession,
    is_open: bool = True,
    in_flight: bool = False,
) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "step": session.step.value,
        "is_open": is_open,
        "accepts_input": accepts_input(session, in_flight),
        "placeholder": _PLACEHOLDERS.get(session.step, "Type your message..."),
        "show_consent_form": session.step == Step.CONSENT,
        "collected_fields": session.collected_fields.model_dump(by_alias=True, exclude_none=True),
        "messages": [render_message(m) for m in session.transcript],
        "result": session.result.model_dump(mode="json", by_alias=True) if session.result else None,
    }
