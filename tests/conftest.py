from io import BytesIO
from pathlib import Path
import sys

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from membership_api import main
from membership_api.database import Base
from membership_api.membership_import import TEMPLATE_FIELDS


@pytest.fixture()
def engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client_and_engine(engine, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    original_startup = list(main.app.router.on_startup)
    original_shutdown = list(main.app.router.on_shutdown)
    original_lifespan = main.app.router.lifespan_context

    async def _noop_lifespan(_app):
        yield

    main.app.router.on_startup = []
    main.app.router.on_shutdown = []
    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db

    client = TestClient(main.app)
    try:
        yield client, engine
    finally:
        client.close()
        main.app.dependency_overrides.clear()
        main.app.router.on_startup = original_startup
        main.app.router.on_shutdown = original_shutdown
        main.app.router.lifespan_context = original_lifespan


def seed_user(
    engine,
    user_id: int,
    email: str,
    *,
    first_name: str = "Asha",
    surname: str = "Verma",
    membership_no: str | None = None,
    is_boa_member: bool = False,
    is_active: bool = True,
):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO users (id, first_name, surname, email, membership_no, is_boa_member, is_active, created_at)
                VALUES (:id, :first_name, :surname, :email, :membership_no, :is_boa_member, :is_active, :created_at)
                """
            ),
            {
                "id": user_id,
                "first_name": first_name,
                "surname": surname,
                "email": email,
                "membership_no": membership_no,
                "is_boa_member": is_boa_member,
                "is_active": is_active,
                "created_at": "2024-04-01 09:30:00",
            },
        )


def seed_registration(engine, email: str, *, payment_status: str = "active"):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO membership_registrations
                  (email, name, membership_type, payment_status, payment_method, amount, created_at)
                VALUES
                  (:email, 'Existing Member', 'Life', :payment_status, 'online', 0, :created_at)
                """
            ),
            {"email": email, "payment_status": payment_status, "created_at": "2024-04-01 00:00:00"},
        )


def build_workbook_bytes(rows: list[dict], headers: list[str] | None = None) -> bytes:
    wb = Workbook()
    sheet = wb.active
    sheet.title = "Memberships"
    columns = headers or TEMPLATE_FIELDS
    sheet.append(columns)
    for row in rows:
        sheet.append([row.get(column) for column in columns])

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def membership_row(email: str, **overrides) -> dict:
    row = {
        "email": email,
        "name": "Dr. Asha Verma",
        "membership_type": "Yearly",
        "mobile": "9876543210",
    }
    row.update(overrides)
    return row
