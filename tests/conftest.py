from collections.abc import Callable

import pytest

from tests.fakes import ORG, USER, FakeBackend, FakeClock, FakeStorage, at
from zapdesk.session import ChatSession, Notice


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(backend: FakeBackend) -> FakeStorage:
    return FakeStorage(backend)


@pytest.fixture
def notices() -> list[Notice]:
    return []


@pytest.fixture
def make_session(
    backend: FakeBackend,
    clock: FakeClock,
    storage: FakeStorage,
    notices: list[Notice],
) -> Callable[..., ChatSession]:
    def _factory(**kwargs) -> ChatSession:
        kwargs.setdefault("upload_client", storage.client())
        return ChatSession(
            backend,
            organization_id=ORG,
            user_id=USER,
            clock=clock,
            now=lambda: at(30),
            on_notice=notices.append,
            **kwargs,
        )

    return _factory
