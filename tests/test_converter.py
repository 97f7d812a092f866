from __future__ import annotations

import pytest

from services.converter import InboundConverter
from services.message import MessageType, make_message
from tests.conftest import FakeDriver, native_message


@pytest.mark.asyncio
async def test_plain_text_message(driver: FakeDriver) -> None:
    msg = await InboundConverter(driver).convert(native_message("m1", text="hello"))

    assert msg.type is MessageType.TEXT
    assert msg.content == "hello"
    assert msg.reply is None
    assert msg.extra.mentions is None
    assert msg.conversation.id == "123"
    assert msg.conversation.title == "Alice Smith"
    assert msg.sender.username == "alice"
    assert msg.timestamp == 1700000000

    envelope = make_message("polaris", "fake", msg)
    assert envelope["type"] == "message"
    assert envelope["message"]["content"] == "hello"
    assert envelope["message"]["reply"] is None


@pytest.mark.asyncio
async def test_mentions_are_recorded(driver: FakeDriver) -> None:
    msg = await InboundConverter(driver).convert(native_message(text="hi @5 @6", mentions=["5", "6"]))
    assert msg.extra.mentions == ["5", "6"]


@pytest.mark.asyncio
async def test_group_and_direct_ids_differ_for_same_number(driver: FakeDriver) -> None:
    converter = InboundConverter(driver)
    direct = await converter.convert(native_message("a", chat_id="555", group=False))
    group = await converter.convert(native_message("b", chat_id="555", chat_name="Team", group=True))

    assert direct.conversation.id == "555"
    assert group.conversation.id == "-555"
    assert group.conversation.title == "Team"


@pytest.mark.asyncio
async def test_reply_chain_is_resolved_recursively(driver: FakeDriver) -> None:
    first = native_message("1", text="first")
    second = native_message("2", text="second", quoted=first)
    third = native_message("3", text="third", quoted=second)

    msg = await InboundConverter(driver).convert(third)

    assert msg.reply is not None
    assert msg.reply.content == "second"
    assert msg.reply.reply is not None
    assert msg.reply.reply.content == "first"
    assert msg.reply.reply.reply is None


@pytest.mark.asyncio
async def test_reply_chain_stops_at_depth_ceiling(driver: FakeDriver) -> None:
    native = native_message("0")
    for i in range(1, 6):
        native = native_message(str(i), quoted=native)

    msg = await InboundConverter(driver, max_reply_depth=2).convert(native)

    assert msg.depth() == 2


@pytest.mark.asyncio
async def test_quote_cycle_returns_partial_chain(driver: FakeDriver) -> None:
    a = native_message("a")
    b = native_message("b", quoted=a)
    a["quoted"] = b

    msg = await InboundConverter(driver).convert(a)

    assert msg.id == "a"
    assert msg.reply is not None and msg.reply.id == "b"
    assert msg.reply.reply is None


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", [
    MessageType.PHOTO, MessageType.DOCUMENT, MessageType.AUDIO,
    MessageType.VIDEO, MessageType.VOICE, MessageType.STICKER,
])
async def test_media_content_is_downloaded(driver: FakeDriver, kind: MessageType) -> None:
    msg = await InboundConverter(driver).convert(
        native_message("m9", text=None, kind=kind, caption="look")
    )
    assert msg.type is kind
    assert msg.content == "m9.bin"
    assert msg.extra.caption == "look"
    assert ("download", "m9") in driver.calls


@pytest.mark.asyncio
async def test_animated_video_is_animation(driver: FakeDriver) -> None:
    msg = await InboundConverter(driver).convert(
        native_message(text=None, kind=MessageType.VIDEO, animated=True)
    )
    assert msg.type is MessageType.ANIMATION


@pytest.mark.asyncio
async def test_unsupported_message_has_no_content(driver: FakeDriver) -> None:
    msg = await InboundConverter(driver).convert(native_message(text=None, kind=MessageType.UNSUPPORTED))
    assert msg.type is MessageType.UNSUPPORTED
    assert msg.content is None
    assert not [c for c in driver.calls if c[0] == "download"]


@pytest.mark.asyncio
async def test_conversation_is_marked_read_once(driver: FakeDriver) -> None:
    quoted = native_message("q")
    await InboundConverter(driver).convert(native_message("m", quoted=quoted))
    assert [c for c in driver.calls if c[0] == "read"] == [("read", "m")]


@pytest.mark.asyncio
async def test_mark_read_failure_is_not_fatal(driver: FakeDriver) -> None:
    driver.fail_mark_read = True
    msg = await InboundConverter(driver).convert(native_message("m"))
    assert msg.id == "m"


@pytest.mark.asyncio
async def test_sdk_failure_propagates(driver: FakeDriver) -> None:
    async def broken(native):
        raise ConnectionError("media server down")

    driver.download_media = broken
    with pytest.raises(ConnectionError):
        await InboundConverter(driver).convert(native_message(text=None, kind=MessageType.PHOTO))
