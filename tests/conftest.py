import pytest

from hrms_qr.modules.attendance_store import SqliteAttendanceStore
from hrms_qr.modules.audit_log import AuditLog
from hrms_qr.modules.database_manager import DatabaseManager
from hrms_qr.modules.dispatcher import UseCaseDispatcher
from hrms_qr.modules.payload_validator import PayloadValidator
from hrms_qr.modules.qr_generator import QRGenerator
from hrms_qr.modules.qr_service import QRCodeService
from hrms_qr.modules.replay_cache import InMemoryReplayCache
from hrms_qr.web import create_app

SIGNING_KEY = 'test-qr-signing-key'
START_MS = 1_760_000_000_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def add_location(database, location_id, name='Test Site', is_active=True):
    database.execute_update(
        "INSERT INTO locations (id, name, is_active) VALUES (?, ?, ?)",
        (location_id, name, 1 if is_active else 0)
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    db = DatabaseManager(tmp_path / 'hrms_qr.db', seed_sample_data=True)
    add_location(db, 'loc-9', 'Warehouse 9')
    yield db
    db.close_all_connections()


@pytest.fixture
def replay_cache():
    return InMemoryReplayCache(retention_ms=60 * 60 * 1000)


@pytest.fixture
def generator(clock):
    return QRGenerator(signing_key=SIGNING_KEY, clock=clock)


@pytest.fixture
def validator(replay_cache, clock):
    return PayloadValidator(replay_cache, signing_key=SIGNING_KEY, require_signature=True, clock=clock)


@pytest.fixture
def store(database):
    return SqliteAttendanceStore(database)


@pytest.fixture
def dispatcher(store, replay_cache, clock):
    return UseCaseDispatcher(store, replay_cache, clock=clock)


@pytest.fixture
def service(generator, validator, dispatcher, database):
    return QRCodeService(generator, validator, dispatcher, AuditLog(database))


@pytest.fixture
def app(tmp_path, clock):
    app = create_app(
        'testing',
        clock=clock,
        DATABASE_PATH=tmp_path / 'app.db',
        SEED_SAMPLE_DATA=True,
    )
    add_location(app.extensions['hrms_qr']['database'], 'loc-9', 'Warehouse 9')
    yield app
    app.extensions['hrms_qr']['database'].close_all_connections()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(user_id):
        with client.session_transaction() as sess:
            sess['user_id'] = user_id
    return _login
