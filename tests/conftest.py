import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from hybrid_memory.db.base import create_engine, create_sessionmaker, init_db
from hybrid_memory.memory.types import Message, MessageRole

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    """Monotonic clock stand-in; sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def build_message(
    index: int,
    content: str,
    role: MessageRole = MessageRole.USER,
    message_id: str | None = None,
) -> Message:
    return Message(
        id=message_id or f"m{index}",
        role=role,
        content=content,
        timestamp=BASE_TIME + timedelta(minutes=index),
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_message():
    return build_message


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_memory.db'}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()
