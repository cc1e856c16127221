import pytest

from tests.telegram_fakes import _FakeBot, _RecordingLogger


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_bot() -> _FakeBot:
    return _FakeBot()


@pytest.fixture
def recording_logger() -> _RecordingLogger:
    return _RecordingLogger()
