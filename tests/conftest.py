import pytest

from securechat.session import SessionRegistry


@pytest.fixture
def alice():
    registry = SessionRegistry("alice")
    yield registry
    registry.teardown()


@pytest.fixture
def bob():
    registry = SessionRegistry("bob")
    yield registry
    registry.teardown()
