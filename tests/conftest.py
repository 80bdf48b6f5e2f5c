import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from records.main import create_app
from records.store import store

JWT_TEST_SECRET = "jwt_test_secret"


def issue_token(*, user_id: str, name: str = "", email: str = "", ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if name:
        payload["name"] = name
    if email:
        payload["email"] = email
    return jwt.encode(payload, JWT_TEST_SECRET, algorithm="HS256")


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, user_id: str = "user_owner", name: str = "Asha Rao", email: str = ""):
        self._client = client
        self.user_id = user_id
        self._name = name
        self._email = email or f"{user_id}@example.com"

    def as_user(self, user_id: str, *, name: str = "") -> "AuthenticatedClient":
        return AuthenticatedClient(self._client, user_id=user_id, name=name or user_id)

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            token = issue_token(user_id=self.user_id, name=self._name, email=self._email)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RECORDS_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.setenv("FRONTEND_URL", "http://frontend.test")
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_TEST_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.delenv("SHARE_LINK_SECRET", raising=False)
    for name in ("EMAIL_HOST", "EMAIL_USER", "EMAIL_PASS", "SMS_API_URL", "SMS_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    store.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base)


@pytest.fixture
def upload_document(client):
    def _upload(
        *,
        category: str = "personal",
        document_type: str = "passport",
        title: str = "Passport",
        filename: str = "passport.pdf",
        content: bytes = b"%PDF-1.4 demo",
        as_client=None,
        **form: str,
    ):
        data = {"category": category, "document_type": document_type, "title": title, **form}
        return (as_client or client).post(
            "/api/v1/documents/upload",
            data=data,
            files={"file": (filename, content, "application/pdf")},
        )

    return _upload
