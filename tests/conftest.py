import sys
import pytest
from pathlib import Path

# Add project root (1 level up from tests/) to sys.path so tests can import 'caption_call'
root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))


from caption_call.services.core.timers import TimerRegistry
from tests.helpers import (
    FakeClock,
    FakeEngineFactory,
    FakeTranslationBackend,
    FakeTransportFactory,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def timers():
    """Timer registry bound to the test's event loop; nothing outlives the test."""
    registry = TimerRegistry()
    yield registry
    registry.cancel_all()


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def engine_factory():
    return FakeEngineFactory()


@pytest.fixture
def translation_backend():
    return FakeTranslationBackend()
