"""
Fixtures compartidas de la suite de QuestLine.

- Cada test tiene su propia BD SQLite en un archivo temporal (así se pueden
  abrir varias sesiones a la vez y simular la carrera completar/caducar).
- FakeProvider sustituye a la IA: nunca hay red en los tests.
- El TestClient se usa SIN context manager para que no arranque el lifespan
  (ni el sweeper real). Los barridos se lanzan a mano.
"""

import itertools
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import lifecycle
import storage
from database import build_engine, get_db, init_db
from main import app, get_provider
from models import CreatedBy

NOW = datetime(2026, 3, 10, 12, 0, 0)


class FakeProvider:
    """Proveedor de IA en memoria. Guarda las peticiones que recibe."""

    def __init__(self, proposal=None, error=None):
        self.proposal = proposal
        self.error = error
        self.requests = []

    async def propose(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if callable(self.proposal):
            return self.proposal(request)
        if self.proposal is not None:
            return dict(self.proposal)
        return {
            "title": f"Quest #{len(self.requests)}",
            "description": "Do something that moves you forward today",
            "difficulty": "hard" if request.special else request.difficulty,
            "category": "Fitness",
            "proofType": "photo",
            "xpReward": 160 if request.difficulty == "medium" else 300,
            "aiRecommendation": "Start early in the morning",
            "failurePenalty": {"type": "credits", "amount": 30},
        }


# ============================================================================
# BASE DE DATOS
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'questline-test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


# ============================================================================
# FACTORÍAS
# ============================================================================

@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = {
            "username": f"hero{n}",
            "email": f"hero{n}@example.com",
            "password_hash": "not-a-real-hash",
            "display_name": f"Hero {n}",
            "level": 1,
            "xp": 0,
            "xpass": 100,
            "title": "Novice Challenger",
            "streak": 0,
            "is_locked": False,
        }
        fields.update(overrides)
        user = storage.create_user(db, **fields)
        db.commit()
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def make_quest(db, user, now):
    def _make(owner=None, difficulty="medium", created_by=CreatedBy.user,
              expires_in=timedelta(hours=24), **extra):
        data = {
            "title": "Morning run",
            "description": "Run 5km before breakfast",
            "difficulty": difficulty,
            "expires_at": now + expires_in,
            **extra,
        }
        return lifecycle.create_quest(db, (owner or user).id, data, created_by=created_by, now=now)

    return _make


# ============================================================================
# API
# ============================================================================

@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def client(session_factory, provider):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    """Registra un usuario por la API y devuelve (user_id, headers)"""
    counter = itertools.count(1)

    def _register(username=None):
        username = username or f"player{next(counter)}"
        response = client.post("/auth/register", json={
            "username": username,
            "email": f"{username}@example.com",
            "password": "secret123",
            "display_name": username.title(),
        })
        assert response.status_code == 200, response.text
        body = response.json()
        return body["user_id"], {"Authorization": f"Bearer {body['access_token']}"}

    return _register
