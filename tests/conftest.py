from __future__ import annotations

from dataclasses import dataclass
from email.message import Message
import http.cookiejar
import json
import os
from pathlib import Path
import shutil
import socket
import subprocess
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid

import pytest
import pytest_asyncio

from auth import PasswordHasher, SessionCookieSigner
from auth_service import AuthService, SignUpInput
from database import Database, UserRecord
from gallery import Gallery
from storage import LocalObjectStore


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


@dataclass
class TestResponse:
    __test__ = False
    status: int
    headers: Message
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self):
        return json.loads(self.text)


def encode_multipart(
    fields: dict[str, str], files: dict[str, tuple[str, bytes, str]]
) -> tuple[bytes, str]:
    """Build a multipart/form-data body; ``files`` maps field -> (name, data, type)."""
    boundary = f"----gallery{uuid.uuid4().hex}"
    parts: list[bytes] = []
    for name, value in fields.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for name, (filename, data, content_type) in files.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
            + data
            + b"\r\n"
        )
    parts.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"


class TestClient:
    __test__ = False

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.cookie_jar = http.cookiejar.CookieJar()
        self.opener = urllib.request.build_opener(
            urllib.request.HTTPCookieProcessor(self.cookie_jar),
            _NoRedirect(),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        json_data: dict | None = None,
        fields: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes, str]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        body = None
        req_headers = headers.copy() if headers else {}
        if json_data is not None:
            body = json.dumps(json_data).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")
        elif fields is not None or files is not None:
            body, content_type = encode_multipart(fields or {}, files or {})
            req_headers.setdefault("Content-Type", content_type)
        request = urllib.request.Request(
            url, data=body, headers=req_headers, method=method
        )
        try:
            response = self.opener.open(request, timeout=5)
        except urllib.error.HTTPError as exc:
            response = exc
        content = response.read()
        return TestResponse(status=response.code, headers=response.headers, body=content)

    def get_cookie(self, name: str) -> str | None:
        for cookie in self.cookie_jar:
            if cookie.name == name and not cookie.is_expired():
                return cookie.value
        return None


@dataclass
class ServerInfo:
    base_url: str
    db_path: Path
    storage_dir: Path


def _find_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError as exc:
        raise RuntimeError("Socket binding is not permitted in this environment.") from exc


def _wait_for_server(base_url: str, proc: subprocess.Popen[str]) -> None:
    deadline = time.time() + 15
    last_error: Exception | None = None
    while time.time() < deadline:
        if proc.poll() is not None:
            raise RuntimeError("Robyn server process exited early.")
        try:
            with urllib.request.urlopen(f"{base_url}/welcome", timeout=1) as resp:
                if resp.status == 200:
                    return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> ServerInfo:
    if shutil.which("robyn") is None:
        pytest.skip("Robyn CLI is not available in this environment.")
    repo_root = Path(__file__).resolve().parents[1]
    db_path = tmp_path_factory.mktemp("db") / "gallery.db"
    storage_dir = tmp_path_factory.mktemp("images")
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    for name in ("KEY_ID", "APP_KEY", "BUCKET_NAME"):
        env.pop(name, None)
    env.update(
        {
            "ROBYN_HOST": "127.0.0.1",
            "ROBYN_PORT": str(port),
            "GALLERY_DB_PATH": str(db_path),
            "GALLERY_STORAGE_DIR": str(storage_dir),
            "GALLERY_SECURE_COOKIES": "0",
            "AUTH_SECRET": "integration-test-secret",
            "BASE_URL": f"http://127.0.0.1:{port}",
        }
    )
    proc = subprocess.Popen(
        ["robyn", "app.py", "--log-level", "ERROR"],
        cwd=repo_root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        _wait_for_server(f"http://127.0.0.1:{port}", proc)
        yield ServerInfo(
            base_url=f"http://127.0.0.1:{port}",
            db_path=db_path,
            storage_dir=storage_dir,
        )
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover - safety net
            proc.kill()


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "gallery.db")
    await db.initialize()
    return db


@pytest.fixture
def store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "images")


@pytest.fixture
def gallery(database: Database, store: LocalObjectStore) -> Gallery:
    return Gallery(database, store)


@pytest.fixture
def auth_service(database: Database) -> AuthService:
    # Fewer pbkdf2 rounds keep hashing fast in tests.
    hasher = PasswordHasher()
    hasher.context.update(pbkdf2_sha256__default_rounds=1000)
    return AuthService(database, SessionCookieSigner("test-secret"), hasher=hasher)


@pytest.fixture
def make_user(auth_service: AuthService):
    async def _make_user(name: str, email: str | None = None) -> UserRecord:
        email = email or f"{name.lower()}-{uuid.uuid4().hex[:6]}@example.com"
        result = await auth_service.sign_up(
            SignUpInput(name=name, email=email, password="password123")
        )
        return result.user

    return _make_user
