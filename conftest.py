import os
import shutil
import tempfile

import pytest
from sqlalchemy import event

# Create a temporary SQLite database file for the whole test session
_TEMP_DIR = tempfile.mkdtemp(prefix="promodesk_tests_")
_DB_FILE = os.path.join(_TEMP_DIR, "test_promodesk.db")
os.environ["PROMODESK_DATABASE_URL"] = f"sqlite:///{_DB_FILE}"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Initialize a fresh temporary SQLite database for tests and clean it up after."""
    # Import after setting env var so the app uses the temp DB
    from promodesk.database import engine, init_db

    if "sqlite" in str(engine.url):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    init_db()

    yield

    engine.dispose()
    shutil.rmtree(_TEMP_DIR, ignore_errors=True)


# Each test starts with empty domain tables and no cached roster sessions;
# user accounts are kept for the authentication tests.
@pytest.fixture(autouse=True)
def _clean_domain_tables():
    from promodesk import crud
    from promodesk.database import SessionLocal
    from promodesk.main import app

    session = SessionLocal()
    try:
        crud.reset_application_data(session)
    finally:
        session.close()
    app.state.roster_sessions.clear()
