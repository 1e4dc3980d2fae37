# tests/test_client.py

from typing import List

import httpx
import pytest

from vqa_gateway.api.v1.process import get_vision_services
from vqa_gateway.client import Conversation, VQAClient, VQAClientError
from vqa_gateway.core.exceptions import EventStreamError, GenerationError
from vqa_gateway.main import app
from vqa_gateway.schemas.process import ChatMessage, SessionMode
from vqa_gateway.services.prompts import DEFAULT_ITERATIVE_PROMPT

from conftest import TINY_PNG


@pytest.fixture
def asgi_client(vision_services):
    app.dependency_overrides[get_vision_services] = lambda: vision_services
    client = VQAClient(
        "http://testserver",
        client=httpx.AsyncClient(transport=httpx.ASGITransport(app=app)),
    )
    yield client
    app.dependency_overrides.clear()


async def _collect(stream) -> List[str]:
    return [text async for text in stream]


@pytest.mark.asyncio
async def test_stream_turn_yields_decoded_fragments(asgi_client: VQAClient) -> None:
    texts = await _collect(asgi_client.stream_turn(TINY_PNG, SessionMode.one_pass))

    assert texts == ["Hello", ", world"]
    await asgi_client.aclose()


@pytest.mark.asyncio
async def test_server_validation_error_is_raised_with_its_message(asgi_client: VQAClient) -> None:
    with pytest.raises(VQAClientError) as excinfo:
        await _collect(asgi_client.stream_turn("A" * 7_000_000, SessionMode.one_pass))

    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "Image exceeds maximum size of 5MB"


@pytest.mark.asyncio
async def test_iterative_conversation_carries_history(asgi_client: VQAClient, fake_provider, fake_preprocessor) -> None:
    conversation = Conversation(client=asgi_client)
    conversation.set_image(TINY_PNG)
    conversation.set_mode(SessionMode.iterative)

    first = await _collect(conversation.send())
    second = await _collect(conversation.send("Is the dog asleep?"))

    assert first == second == ["Hello", ", world"]
    fake_preprocessor.preprocess.assert_awaited_once()
    assert len(fake_provider.generate_calls) == 1
    [follow_up] = fake_provider.chat_calls
    assert follow_up.history == (
        ChatMessage(role="user", content=DEFAULT_ITERATIVE_PROMPT),
        ChatMessage(role="assistant", content="Hello, world"),
    )
    assert follow_up.user_message == "Is the dog asleep?"
    assert len(conversation.history) == 4


@pytest.mark.asyncio
async def test_one_pass_conversation_keeps_no_history(asgi_client: VQAClient) -> None:
    conversation = Conversation(client=asgi_client)
    conversation.set_image(TINY_PNG)

    await _collect(conversation.send())

    assert conversation.history == []


@pytest.mark.asyncio
async def test_error_record_keeps_fragments_but_not_history(asgi_client: VQAClient, fake_provider) -> None:
    fake_provider.fragments = ["It looks like"]
    fake_provider.error = GenerationError("connection reset")
    conversation = Conversation(client=asgi_client, mode=SessionMode.iterative, image=TINY_PNG)
    received: List[str] = []

    with pytest.raises(EventStreamError, match="connection reset"):
        async for text in conversation.send():
            received.append(text)

    assert received == ["It looks like"]
    assert conversation.history == []


def test_new_image_resets_history() -> None:
    conversation = Conversation(
        client=VQAClient(),
        mode=SessionMode.iterative,
        image=TINY_PNG,
        history=[ChatMessage(role="user", content="Q0")],
    )

    conversation.set_image("iVBORnew")

    assert conversation.history == []
    assert conversation.mode is SessionMode.iterative
