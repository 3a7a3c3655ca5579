"""Template variables for automation texts and captions."""
from database.models import Conversation


def build_variables(conversation: Conversation) -> dict[str, str]:
    """
    Current values for every supported `{token}`.

    Expects `conversation.client` and `conversation.channel` to be loaded.
    Missing values render as empty strings.
    """
    client = conversation.client
    channel = conversation.channel

    name = (client.name if client else None) or ""
    parts = name.split()
    first_name = parts[0] if parts else ""

    return {
        "client_name": name,
        "client_first_name": first_name,
        "client_phone": (client.phone if client else None) or "",
        "client_email": (client.email if client else None) or "",
        "conversation_id": str(conversation.id),
        # legacy alias kept for flows authored before conversations were renamed
        "chat_id": str(conversation.id),
        "channel_name": (channel.name if channel else None) or "",
    }


def render(text: str, variables: dict[str, str]) -> str:
    """
    Replace `{name}` tokens by plain substitution.

    No escaping: the transport may interpret markup inside substituted values.
    """
    if not text:
        return ""
    for name, value in variables.items():
        text = text.replace("{" + name + "}", value)
    return text
