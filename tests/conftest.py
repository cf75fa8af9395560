"""Shared test fixtures and configuration."""
import asyncio
import pytest
import os
from unittest.mock import Mock, AsyncMock
import httpx
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CLINIC_NAME", "Test Clinic")

from app.main import app
from app.db.database import Base, get_db
from app.core.config import Settings
from app.services.extraction.extractor import ClinicalExtractionService
from app.services.intake.repository import IntakeRepository
from app.services.intake.yaml_protocol import YamlIntakeProtocolProvider
from app.services.persistence.store import ConversationStore
from app.services.realtime.client import ModelConnectionError
from app.services.session.controller import SessionController


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def test_settings():
    """Override settings for testing."""
    return Settings(
        openai_api_key="test-key",
        database_url=TEST_DATABASE_URL,
        clinic_name="Test Clinic",
        greeting_fallback_seconds=0.05,
        closing_grace_seconds=0.0,
    )


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_factory(test_db_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_db(test_session_factory):
    """Create test database session."""
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def test_store(test_session_factory):
    """Conversation store writing to the test database."""
    return ConversationStore(session_factory=test_session_factory)


@pytest.fixture
def test_intake_repository():
    """Intake repository backed by the bundled protocol file."""
    return IntakeRepository(provider=YamlIntakeProtocolProvider())


@pytest.fixture
async def test_protocol(test_intake_repository):
    return await test_intake_repository.get_protocol()


@pytest.fixture
async def api_client(test_db):
    """HTTP client for the app with the test database."""
    async def _override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = _override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    # Clear overrides
    app.dependency_overrides.clear()


@pytest.fixture
def mock_openai():
    """Mock OpenAI API client."""
    mock_client = Mock()
    mock_completion = Mock()
    mock_completion.choices = [
        Mock(
            message=Mock(
                content='{"allergies": "penicillin", "medications": []}'
            )
        )
    ]
    mock_client.chat.completions.create = AsyncMock(return_value=mock_completion)
    return mock_client


class FakeTelephonyLeg:
    """In-memory stand-in for the caller's media stream."""

    def __init__(self):
        self.sent = []
        self.close_calls = 0
        self._open = True
        self._frames = asyncio.Queue()

    @property
    def is_open(self):
        return self._open

    def push(self, frame):
        self._frames.put_nowait(frame)

    def disconnect(self):
        self._frames.put_nowait(None)

    def fail(self, exc):
        """Make the stream raise ``exc`` once queued frames are consumed."""
        self._frames.put_nowait(exc)

    async def frames(self):
        while True:
            frame = await self._frames.get()
            if frame is None:
                break
            if isinstance(frame, Exception):
                self._open = False
                raise frame
            yield frame
        self._open = False

    async def send_media(self, stream_sid, payload):
        self.sent.append({"event": "media", "streamSid": stream_sid, "media": {"payload": payload}})
        return True

    async def send_clear(self, stream_sid):
        self.sent.append({"event": "clear", "streamSid": stream_sid})
        return True

    async def close(self):
        self.close_calls += 1
        if self._open:
            self._open = False
            self._frames.put_nowait(None)


class FakeModelLeg:
    """In-memory stand-in for the speech model connection."""

    def __init__(self, is_open=True, fail_connect=False):
        self._open = is_open
        self.fail_connect = fail_connect
        self.calls = []
        self.close_calls = 0
        self.close_error = None
        self._events = asyncio.Queue()

    @property
    def is_open(self):
        return self._open

    def push(self, event):
        self._events.put_nowait(event)

    def names(self):
        return [name for name, _ in self.calls]

    def spoken(self):
        return [arg for name, arg in self.calls if name == "speak"]

    async def connect(self):
        if self.fail_connect:
            raise ModelConnectionError("connection refused")
        self._open = True

    async def configure_session(self, config):
        self.calls.append(("configure_session", config))
        return True

    async def update_voice(self, voice):
        self.calls.append(("update_voice", voice))
        return True

    async def append_audio(self, payload):
        if not self._open:
            return False
        self.calls.append(("append_audio", payload))
        return True

    async def cancel_response(self):
        self.calls.append(("cancel_response", None))
        return True

    async def speak(self, text):
        self.calls.append(("speak", text))
        return True

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                break
            yield event
        self._open = False

    async def close(self):
        self.close_calls += 1
        if self._open:
            self._open = False
            self._events.put_nowait(None)


@pytest.fixture
def telephony():
    return FakeTelephonyLeg()


@pytest.fixture
def model():
    return FakeModelLeg()


@pytest.fixture
def mock_store():
    """Conversation store double."""
    store = AsyncMock(spec=ConversationStore)
    store.resolve_conversation.return_value = "conv-from-callsid"
    return store


@pytest.fixture
def mock_extractor():
    """Extraction service double; extracts nothing by default."""
    extractor = AsyncMock(spec=ClinicalExtractionService)
    extractor.extract_fields.return_value = {}
    extractor.summarize.return_value = "You mentioned headaches and that you take metformin"
    return extractor


@pytest.fixture
async def make_controller(telephony, model, test_protocol, test_intake_repository, mock_store, mock_extractor, test_settings):
    """Build a session controller wired to fakes."""
    controllers = []

    def _make(conversation_ref="conv-1", **overrides):
        kwargs = dict(
            telephony=telephony,
            model=model,
            protocol=test_protocol,
            intake_repository=test_intake_repository,
            store=mock_store,
            extractor=mock_extractor,
            conversation_ref=conversation_ref,
            config=test_settings,
        )
        kwargs.update(overrides)
        controller = SessionController(**kwargs)
        controllers.append(controller)
        return controller

    yield _make

    for controller in controllers:
        await controller.tasks.drain(timeout=0)


def start_frame(stream_sid="MZ123", conversation_id=None, call_sid="CA123"):
    """Twilio-style start frame."""
    custom = {}
    if conversation_id is not None:
        custom["conversation_id"] = conversation_id
    return {
        "event": "start",
        "start": {
            "streamSid": stream_sid,
            "callSid": call_sid,
            "customParameters": custom,
        },
    }


def transcript_event(text, item_id="item_caller"):
    return {
        "type": "conversation.item.input_audio_transcription.completed",
        "item_id": item_id,
        "transcript": text,
    }


def assistant_item_event(*fragments, item_id="item_assistant", event_type="response.output_item.done"):
    return {
        "type": event_type,
        "item": {
            "id": item_id,
            "type": "message",
            "role": "assistant",
            "content": [{"type": "audio", "transcript": f} for f in fragments],
        },
    }
