from guiagent.messages import build_model_messages
from guiagent.models import IMAGE_PLACEHOLDER, ScreenshotContext, Timing, Turn

_T = Timing(0, 0, 0)


def _image(b64: str) -> Turn:
    return Turn(
        sender="human",
        value=IMAGE_PLACEHOLDER,
        timing=_T,
        screenshot_base64=b64,
        screenshot_context=ScreenshotContext(100, 200, 1.0, "image/png"),
    )


def _agent(text: str) -> Turn:
    return Turn(sender="agent", value=text, timing=_T)


def _image_urls(messages):
    return [
        m["content"][0]["image_url"]["url"]
        for m in messages
        if m["role"] == "user" and isinstance(m["content"], list)
    ]


def test_history_maps_roles_in_order():
    turns = [Turn(sender="human", value="open settings", timing=_T), _image("AAA"), _agent("click it")]
    messages, images = build_model_messages(turns, "SYSTEM")

    assert messages[0] == {"role": "system", "content": "SYSTEM"}
    assert messages[1] == {"role": "user", "content": "open settings"}
    assert messages[2]["content"][0]["image_url"]["url"] == "data:image/png;base64,AAA"
    assert messages[3] == {"role": "assistant", "content": "click it"}
    assert images == ["AAA"]


def test_only_last_five_images_are_sent():
    turns = [Turn(sender="human", value="task", timing=_T)]
    for i in range(7):
        turns.append(_image(f"IMG{i}"))
        turns.append(_agent(f"step {i}"))

    messages, images = build_model_messages(turns, "SYSTEM")

    assert images == [f"IMG{i}" for i in range(2, 7)]
    assert len(_image_urls(messages)) == 5
    assert sum(1 for m in messages if m["role"] == "assistant") == 7
    assert {"role": "user", "content": "task"} in messages


def test_identical_screenshots_are_windowed_by_position():
    turns = [_image("SAME") for _ in range(7)]
    messages, images = build_model_messages(turns, "SYSTEM")
    assert images == ["SAME"] * 5
    assert len(_image_urls(messages)) == 5


def test_history_messages_follow_system_prompt():
    history = [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
        {"role": "tool", "content": "ignored"},
    ]
    messages, _ = build_model_messages([_image("A")], "SYSTEM", history_messages=history)
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "earlier question"
