# tests/conftest.py

from typing import AsyncIterator, List, Optional

import pytest
from fastapi.testclient import TestClient
from pytest_mock import MockerFixture

from vqa_gateway.api.v1.process import get_vision_services
from vqa_gateway.core.lazy import LazyResource
from vqa_gateway.main import app
from vqa_gateway.schemas.process import ChatParams, GenerateParams
from vqa_gateway.schemas.vision import VisionPreprocessResult
from vqa_gateway.services.event_stream import EventStreamDecoder, StreamEvent
from vqa_gateway.services.session_service import VisionServices

# Minimal 1x1 red pixel PNG in base64
TINY_PNG = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/PchI7wAAAABJRU5ErkJggg=="


class FakeProvider:
    """Records every call and replays a fixed list of fragments."""

    name = "fake"

    def __init__(self, fragments: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.fragments = fragments if fragments is not None else ["Hello", ", world"]
        self.error = error
        self.ready_calls = 0
        self.generate_calls: List[GenerateParams] = []
        self.chat_calls: List[ChatParams] = []
        self.closed = False

    async def ensure_ready(self) -> None:
        self.ready_calls += 1

    async def _replay(self) -> AsyncIterator[str]:
        for text in self.fragments:
            yield text
        if self.error is not None:
            raise self.error

    async def generate_stream(self, params: GenerateParams) -> AsyncIterator[str]:
        self.generate_calls.append(params)
        async for text in self._replay():
            yield text

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[str]:
        self.chat_calls.append(params)
        async for text in self._replay():
            yield text

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_preprocessor(mocker: MockerFixture):
    preprocessor = mocker.MagicMock()
    preprocessor.preprocess = mocker.AsyncMock(return_value=VisionPreprocessResult())
    return preprocessor


@pytest.fixture
def vision_services(fake_preprocessor, fake_provider) -> VisionServices:
    return VisionServices(
        preprocessor=fake_preprocessor,
        provider=LazyResource(lambda: fake_provider, name="fake-provider", in_thread=False),
    )


@pytest.fixture
def api(vision_services: VisionServices):
    """TestClient without lifespan; the services are injected through the dependency."""
    app.dependency_overrides[get_vision_services] = lambda: vision_services
    yield TestClient(app)
    app.dependency_overrides.clear()


def parse_events(body: str) -> List[StreamEvent]:
    decoder = EventStreamDecoder()
    return decoder.feed(body) + decoder.flush()
