"""
Conversation formatting shared by the completion call and token metering.
Both must agree on the exact prompt text the simulated patient sees.
"""

from collections.abc import Sequence

from aivp.data.schemas import MessageSchema, MessageType

PARTICIPANT_PREFIX = "Student: "
SIMULATED_PREFIX = "Virtual Patient: "


def format_message(message: MessageSchema) -> str:
    prefix = PARTICIPANT_PREFIX if message.type == MessageType.PARTICIPANT else SIMULATED_PREFIX
    return f"{prefix}{message.content}"


def prompt_text(messages: Sequence[MessageSchema], system_prompt: str) -> str:
    """Plain-text prompt: system prompt followed by one prefixed line per message."""
    return "\n".join([system_prompt, *(format_message(m) for m in messages)])


def chat_messages(messages: Sequence[MessageSchema], system_prompt: str) -> list[dict[str, str]]:
    """Chat-completion message list for the same conversation."""
    chat = [{"role": "system", "content": system_prompt}]
    for message in messages:
        role = "user" if message.type == MessageType.PARTICIPANT else "assistant"
        chat.append({"role": role, "content": format_message(message)})
    return chat


def strip_simulated_prefix(text: str) -> str:
    """Remove a leading speaker label the model sometimes echoes."""
    text = text.strip()
    if text.startswith(SIMULATED_PREFIX):
        return text[len(SIMULATED_PREFIX):].strip()
    return text
