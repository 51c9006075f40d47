import pytest

from steamquery.utils import Config, ServerAddress
from tests.helpers import FakeUDPTransport


@pytest.fixture
def config():
    return Config(None)


@pytest.fixture
def address():
    return ServerAddress('127.0.0.1', 27015)


@pytest.fixture
def udp():
    return FakeUDPTransport()
