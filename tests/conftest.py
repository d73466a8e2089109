import sys, os, tempfile
from datetime import datetime, timezone
import pytest

# Always force tests to use an isolated SQLite database file under a temp dir.
# Do this before importing any mhealth_core modules (especially mhealth_core.db).
if "MHEALTH_DB_URL" not in os.environ and "MHEALTH_DATABASE_URL" not in os.environ:
    _test_db_dir = tempfile.mkdtemp(prefix="mhealth_test_db_")
    os.environ["MHEALTH_DB_URL"] = f"sqlite:///{os.path.join(_test_db_dir, 'test_health.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.pop("MHEALTH_CRON_SECRET", None)

# Ensure core and api src dirs are on sys.path for imports without installation
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
for _src in (os.path.join(ROOT, 'packages', 'core', 'src'), os.path.join(ROOT, 'apps', 'api', 'src')):
    if _src not in sys.path:
        sys.path.insert(0, _src)

from mhealth_core.db import Base, SessionLocal, engine  # noqa: E402
from mhealth_core.models import Profile, Routine, RoutineVariable, User, Variable  # noqa: E402

# Monday 2025-09-08 08:00 in Europe/Stockholm (CEST, UTC+2)
MONDAY_0800_STOCKHOLM = datetime(2025, 9, 8, 6, 0, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(username="alice", tz=None):
        user = User(username=username, password_hash="x")
        db.add(user)
        db.commit()
        if tz is not None:
            db.add(Profile(id=user.id, timezone=tz))
            db.commit()
        return user
    return _make


@pytest.fixture
def make_routine_variable(db):
    def _make(user, weekdays=(1,), times=("08:00",), default_value="1", label="Water", routine=None, name="Morning"):
        if routine is None:
            routine = Routine(user_id=user.id, name=name)
            db.add(routine)
            db.commit()
        variable = Variable(label=label)
        db.add(variable)
        db.commit()
        rv = RoutineVariable(
            routine_id=routine.id,
            variable_id=variable.id,
            weekdays=list(weekdays),
            times=[{"time": t} for t in times],
            default_value=default_value,
        )
        db.add(rv)
        db.commit()
        return rv
    return _make


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from mhealth_api.main import app
    return TestClient(app)


@pytest.fixture
def auth_headers(client):
    r = client.post("/users", json={"username": "tester", "password": "s3cret!"})
    assert r.status_code == 200, r.text
    token = client.post("/users/login", json={"username": "tester", "password": "s3cret!"}).json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def monday_8am():
    return MONDAY_0800_STOCKHOLM
