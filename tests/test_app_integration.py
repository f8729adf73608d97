from __future__ import annotations

import re
from uuid import uuid4

from tests.conftest import ServerInfo, TestClient

PASSWORD = "password123"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x01" * 256


def _signup(client: TestClient, name: str) -> str:
    email = f"{name.lower()}-{uuid4().hex[:8]}@example.com"
    response = client.request(
        "POST",
        "/api/auth/sign-up/email",
        json_data={"name": name, "email": email, "password": PASSWORD},
    )
    assert response.status == 200, response.text
    assert client.get_cookie("gallery_session")
    return email


def _upload(client: TestClient, title: str, data: bytes = PNG_BYTES, filename: str = "cat.png"):
    return client.request(
        "POST",
        "/upload",
        fields={"title": title, "contents": "a caption"},
        files={"image": (filename, data, "image/png")},
    )


def _picture_ids(html: str) -> list[int]:
    return [int(value) for value in re.findall(r'href="/detail/(\d+)"', html)]


def _image_keys(html: str) -> list[str]:
    return re.findall(r'src="/api/images/([^"]+)"', html)


def test_welcome_is_public(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    response = client.request("GET", "/welcome")
    assert response.status == 200
    assert "Picture Gallery" in response.text


def test_protected_pages_redirect_to_login(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    for path in ("/", "/upload", "/mypage", "/user/1", "/detail/1", "/delete/1", "/logout"):
        response = client.request("GET", path)
        assert response.status in {302, 303}, path
        assert response.headers.get("Location") == "/login"


def test_login_page_redirects_when_signed_in(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    _signup(client, "Walker")
    for path in ("/login", "/signup"):
        response = client.request("GET", path)
        assert response.status in {302, 303}
        assert response.headers.get("Location") == "/"


def test_duplicate_sign_up_returns_message(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    email = _signup(client, "Dana")
    other = TestClient(server.base_url)
    response = other.request(
        "POST",
        "/api/auth/sign-up/email",
        json_data={"name": "Dana", "email": email, "password": PASSWORD},
    )
    assert response.status == 422
    assert response.json()["message"]


def test_sign_in_with_wrong_password(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    email = _signup(client, "Erin")
    fresh = TestClient(server.base_url)
    for _ in range(3):
        response = fresh.request(
            "POST",
            "/api/auth/sign-in/email",
            json_data={"email": email, "password": "wrong-password"},
        )
        assert response.status == 401
        assert response.json()["message"]
    response = fresh.request(
        "POST",
        "/api/auth/sign-in/email",
        json_data={"email": email, "password": PASSWORD},
    )
    assert response.status == 200
    assert fresh.request("GET", "/").status == 200


def test_foreign_origin_is_rejected(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    response = client.request(
        "POST",
        "/api/auth/sign-up/email",
        json_data={"name": "Mal", "email": "mal@example.com", "password": PASSWORD},
        headers={"Origin": "https://evil.example"},
    )
    assert response.status == 403
    assert response.json()["message"]


def test_get_session_reports_current_user(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    assert client.request("GET", "/api/auth/get-session").json() is None
    email = _signup(client, "Gina")
    payload = client.request("GET", "/api/auth/get-session").json()
    assert payload["user"]["email"] == email


def test_upload_list_and_delete_flow(server: ServerInfo) -> None:
    alice = TestClient(server.base_url)
    bob = TestClient(server.base_url)
    _signup(alice, "Alice")
    _signup(bob, "Bob")

    response = _upload(alice, "Cat")
    assert response.status in {302, 303}
    assert response.headers.get("Location") == "/mypage"

    mypage = alice.request("GET", "/mypage")
    assert mypage.status == 200
    ids = _picture_ids(mypage.text)
    assert len(ids) == 1
    picture_id = ids[0]
    key = _image_keys(mypage.text)[0]

    gallery = bob.request("GET", "/")
    assert picture_id in _picture_ids(gallery.text)
    assert "by Alice" in gallery.text

    detail = bob.request("GET", f"/detail/{picture_id}")
    assert detail.status == 200
    assert "a caption" in detail.text

    forbidden = bob.request("GET", f"/delete/{picture_id}")
    assert forbidden.status == 403
    assert alice.request("GET", f"/detail/{picture_id}").status == 200

    image = TestClient(server.base_url).request("GET", f"/api/images/{key}")
    assert image.status == 200
    assert image.body == PNG_BYTES
    assert image.headers.get("Content-Type") == "image/png"
    assert image.headers.get("Cache-Control") == "private, max-age=604800"

    deleted = alice.request("GET", f"/delete/{picture_id}")
    assert deleted.status in {302, 303}
    assert deleted.headers.get("Location") == "/mypage"
    assert alice.request("GET", f"/detail/{picture_id}").status == 404
    assert alice.request("GET", f"/delete/{picture_id}").status == 404
    assert TestClient(server.base_url).request("GET", f"/api/images/{key}").status == 404


def test_upload_validation_errors(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    _signup(client, "Vera")

    missing_title = _upload(client, "")
    assert missing_title.status == 400

    too_big = _upload(client, "Huge", data=b"\x00" * (1_572_864 + 1))
    assert too_big.status == 400

    wrong_type = client.request(
        "POST",
        "/upload",
        fields={"title": "Doc", "contents": ""},
        files={"image": ("notes.txt", b"hello", "text/plain")},
    )
    assert wrong_type.status == 400

    assert _picture_ids(client.request("GET", "/mypage").text) == []


def test_user_page_falls_back_to_unknown(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    _signup(client, "Uma")
    response = client.request("GET", "/user/999999")
    assert response.status == 200
    assert "Unknown" in response.text


def test_missing_image_is_404(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    assert client.request("GET", "/api/images/0-doesnotexist.png").status == 404


def test_logout_clears_session(server: ServerInfo) -> None:
    client = TestClient(server.base_url)
    _signup(client, "Liam")
    response = client.request("GET", "/logout")
    assert response.status in {302, 303}
    assert response.headers.get("Location") == "/welcome"
    set_cookies = response.headers.get_all("Set-Cookie") or []
    assert any(
        header.lower().startswith("gallery_session=") and "max-age=0" in header.lower()
        for header in set_cookies
    )
    assert client.request("GET", "/").status in {302, 303}
