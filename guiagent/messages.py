"""messages.py - Turn history to chat-completion messages, with the image window."""

from guiagent.models import MAX_IMAGES, Turn


def image_message(screenshot_base64: str, mime: str | None = None) -> dict:
    return {
        "role": "user",
        "content": [
            {
                "type": "image_url",
                "image_url": {"url": f"data:{mime or 'image/png'};base64,{screenshot_base64}"},
            }
        ],
    }


def build_model_messages(
    turns: list[Turn],
    system_prompt: str,
    history_messages: list[dict] | None = None,
    max_images: int = MAX_IMAGES,
) -> tuple[list[dict], list[str]]:
    """Build the outgoing message list and the image payloads it references.

    Only the `max_images` most recent screenshots are sent. Screenshot turns
    outside that window are dropped whole; text turns and agent turns are
    always kept. The window is chosen by turn position, so two identical
    screenshots never alias each other.
    """
    image_positions = [i for i, turn in enumerate(turns) if turn.is_image]
    keep = set(image_positions[-max_images:]) if max_images > 0 else set()

    messages: list[dict] = [{"role": "system", "content": system_prompt}]
    for msg in history_messages or []:
        role = msg.get("role")
        if role in ("user", "assistant") and isinstance(msg.get("content"), str):
            messages.append({"role": role, "content": msg["content"]})

    images: list[str] = []
    for i, turn in enumerate(turns):
        if turn.sender == "human":
            if turn.is_image:
                if i not in keep:
                    continue
                mime = turn.screenshot_context.mime if turn.screenshot_context else None
                messages.append(image_message(turn.screenshot_base64, mime))
                images.append(turn.screenshot_base64)
            else:
                messages.append({"role": "user", "content": turn.value})
        elif turn.sender == "agent":
            messages.append({"role": "assistant", "content": turn.value})
    return messages, images
