import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ["JUDIT_API_KEY"] = ""
os.environ["JUDIT_BASE_URL"] = "https://requests.prod.judit.io"
os.environ["SCHEDULED_SYNC_ENABLED"] = "false"
os.environ["JUDIT_POLL_INTERVAL_SECONDS"] = "0"

from datetime import datetime, timedelta

import httpx
import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.db.database import Base
from app.db import models
from app.services.judit_client import JuditClient

CNJ = "0000001-11.2024.1.11.0001"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def plan(db):
    row = models.Plan(name="Pro", sync_enabled=True, sync_quota=None)
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def tenant(db, plan):
    row = models.Tenant(name="Silva Advogados", plan_id=plan.id)
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def user(db, tenant):
    row = models.User(tenant_id=tenant.id, email="ana@silva.adv.br", name="Ana", is_active=True)
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def case(db, tenant):
    row = models.Case(tenant_id=tenant.id, process_number=CNJ)
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def credential(db, tenant):
    row = models.IntegrationCredential(
        provider="judit",
        tenant_id=tenant.id,
        key_value="tenant-key",
        environment="producao",
        active=True,
    )
    db.add(row)
    db.commit()
    return row


def make_token(user_id, expires_in=timedelta(hours=1)):
    payload = {"user_id": user_id, "exp": datetime.utcnow() + expires_in}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ============================================================================
# Provider stub
# ============================================================================

def lawsuit_page(process_number=CNJ, request_id="req-1"):
    return {
        "page": 1,
        "page_count": 1,
        "all_count": 1,
        "page_data": [
            {
                "request_id": request_id,
                "response_id": f"resp-{request_id}",
                "response_type": "lawsuit",
                "origin": "api",
                "origin_id": "orig-1",
                "response_data": {
                    "code": process_number,
                    "name": "Fulano x Beltrano",
                    "instance": 1,
                    "area": "Civel",
                    "state": "DF",
                    "tribunal_acronym": "TJDFT",
                    "court": "1a Vara Civel",
                    "amount": "1500.50",
                    "free_justice": "sim",
                    "subjects": [{"code": "7780", "name": "Indenizacao"}],
                    "classifications": [{"code": "7", "name": "Procedimento Comum"}],
                    "parties": [
                        {"name": "Fulano de Tal", "side": "Active", "person_type": "Fisica",
                         "documents": [{"document": "123.456.789-00", "document_type": "CPF"}],
                         "lawyers": [{"name": "Dra. Ana"}]},
                        {"nome": "Beltrano Ltda", "polo": "Passive", "lawyers": []},
                    ],
                    "steps": [
                        {"step_id": "s1", "step_type": "Distribuicao", "content": "Distribuido", "step_date": "2024-01-10"},
                        {"step_id": "s2", "step_type": "Peticao", "content": "Juntada de peticao", "step_date": "2024-02-01",
                         "attachments": [{"attachment_id": "a1", "attachment_name": "Peticao inicial", "extension": "pdf"}]},
                        {"id": "s3", "type": "Despacho", "content": "Cite-se", "date": "2024-03-05"},
                    ],
                    "last_step": {"step_id": "s3", "content": "Cite-se"},
                },
            }
        ],
    }


class JuditStub:
    """In-memory Judit API served through httpx.MockTransport."""

    def __init__(self, pages=None, final_status="completed", request_error=None, status_error=None):
        self.calls = []
        self.pages = pages if pages is not None else [lawsuit_page()]
        self.final_status = final_status
        self.request_error = request_error
        self.status_error = status_error

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.host, request.url.path))
        host, path = request.url.host, request.url.path

        if host.startswith("tracking.") and request.method in ("POST", "PUT"):
            return httpx.Response(200, json={"tracking_id": "trk-1", "status": "created", "hour_range": "8-12", "recurrence": 1})
        if path == "/requests" and request.method == "POST":
            if self.request_error:
                return httpx.Response(self.request_error, json={"message": "bad search"})
            return httpx.Response(201, json={"request_id": "req-1", "status": "pending"})
        if path.startswith("/requests/"):
            if self.status_error:
                return httpx.Response(self.status_error, json={"message": "request unavailable"})
            return httpx.Response(200, json={"request_id": path.rsplit("/", 1)[-1], "status": self.final_status})
        if path == "/responses":
            page = int(request.url.params.get("page", "1"))
            return httpx.Response(200, json=self.pages[page - 1])
        return httpx.Response(404, json={"message": "not found"})

    def client_factory(self, credential):
        return JuditClient(credential, transport=httpx.MockTransport(self.handler), sleep=lambda seconds: None)


@pytest.fixture
def judit():
    return JuditStub()


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient

    from app.db.database import get_db
    from app.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {make_token(user.id)}"}
