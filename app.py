from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit
import json
import logging
import os
import pathlib

import jinja2
from robyn import Request, Response, Robyn

from auth import (
    SESSION_COOKIE_NAME,
    SessionCookieSigner,
    cookie_clear_settings,
    cookie_settings,
    resolve_client_ip,
)
from auth_service import (
    AuthService,
    AuthenticatedSession,
    ClientInfo,
    SignInInput,
    SignUpInput,
)
from config import Settings
from database import Database, SessionRecord, UserRecord, parse_iso
from errors import AuthError, GalleryError, Unauthenticated
from gallery import DEFAULT_IMAGE_CONTENT_TYPE, MAX_IMAGE_BYTES, Gallery, UploadForm
from storage import build_object_store

# Robyn rejects bodies over 1 MB unless told otherwise; leave room for multipart framing.
os.environ.setdefault("ROBYN_MAX_PAYLOAD_SIZE", str(MAX_IMAGE_BYTES + 64 * 1024))

app = Robyn(__file__)
logger = logging.getLogger(__name__)

current_file_path = pathlib.Path(__file__).parent.resolve()

settings = Settings.from_env()

templates = jinja2.Environment(
    loader=jinja2.FileSystemLoader(current_file_path / "templates"),
    autoescape=jinja2.select_autoescape(["html"]),
)

# Singletons used by every request
db = Database(settings.db_path)
store = build_object_store(settings)
auth_service = AuthService(db, SessionCookieSigner(settings.auth_secret))
gallery = Gallery(db, store)

IMAGE_CACHE_CONTROL = "private, max-age=604800"


async def _ensure_database() -> None:
    """Prepare the sqlite file before handling the first request."""
    await db.initialize()


app.startup_handler(_ensure_database)


@dataclass
class RequestContext:
    """Per-request caller state handed explicitly to every handler step."""

    user: Optional[UserRecord]
    session: Optional[SessionRecord]
    client: ClientInfo
    clear_cookie: bool = False
    renewed_cookie: Optional[str] = None


def _format_timestamp(value: str) -> str:
    try:
        return parse_iso(value).strftime("%Y-%m-%d %H:%M UTC")
    except ValueError:
        return value


templates.filters["timestamp"] = _format_timestamp


def _raw_body_bytes(request: Request) -> bytes:
    raw_body = request.body
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, list):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return b""


def _json_data(request: Request) -> dict:
    body = _raw_body_bytes(request)
    if not body:
        return {}
    try:
        parsed = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _form_data(request: Request) -> dict[str, str]:
    """Return form fields, including urlencoded fallback parsing."""
    native = request.form_data or {}
    if native:
        return {str(k): str(v) for k, v in native.items()}
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" not in content_type:
        return {}
    parsed = parse_qs(
        _raw_body_bytes(request).decode("utf-8", errors="replace"),
        keep_blank_values=True,
    )
    return {key: values[0] if values else "" for key, values in parsed.items()}


def _first_file(request: Request) -> tuple[Optional[str], Optional[bytes]]:
    """Robyn exposes uploads as ``{filename: bytes}``; take the first one."""
    files = request.files or {}
    for filename, data in files.items():
        if isinstance(data, (list, bytearray)):
            data = bytes(data)
        elif isinstance(data, str):
            data = data.encode("latin-1")
        return str(filename), data
    return None, None


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=resolve_client_ip(request.headers.get, settings.ip_headers),
        user_agent=request.headers.get("user-agent"),
    )


def _origin_allowed(request: Request) -> bool:
    """Reject cross-site POSTs whose Origin does not match BASE_URL."""
    origin = request.headers.get("origin")
    if not origin:
        return True
    expected = urlsplit(settings.base_url)
    provided = urlsplit(origin.strip())
    return (provided.scheme, provided.netloc) == (expected.scheme, expected.netloc)


def _path_int(request: Request, name: str) -> Optional[int]:
    raw = str(request.path_params.get(name, "")).strip()
    try:
        return int(raw)
    except ValueError:
        return None


def _html_response(body: str, *, status: int = 200) -> Response:
    return Response(
        status_code=status,
        headers={"content-type": "text/html; charset=utf-8"},
        description=body,
    )


def _render(template_name: str, *, status: int = 200, **context: Any) -> Response:
    body = templates.get_template(template_name).render(**context)
    return _html_response(body, status=status)


def _text_response(message: str, *, status: int) -> Response:
    return Response(
        status_code=status,
        headers={"content-type": "text/plain; charset=utf-8"},
        description=message,
    )


def _json_response(payload: Any, *, status: int = 200) -> Response:
    return Response(
        status_code=status,
        headers={"content-type": "application/json; charset=utf-8"},
        description=json.dumps(payload),
    )


def _redirect(location: str) -> Response:
    """Send a 303 redirect to the user agent."""
    return Response(
        status_code=303,
        headers={"location": location},
        description="",
    )


def _set_session_cookie(response: Response, value: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME, value, **cookie_settings(secure=settings.secure_cookies)
    )


def _clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME, "", **cookie_clear_settings(secure=settings.secure_cookies)
    )


def _apply_session_cookie(response: Response, context: RequestContext) -> Response:
    if context.clear_cookie:
        _clear_session_cookie(response)
    elif context.renewed_cookie:
        _set_session_cookie(response, context.renewed_cookie)
    return response


async def _get_context(request: Request) -> RequestContext:
    """Resolve the current user and session from the cookie, if present."""
    cookie_header = request.headers.get("cookie")
    client = _client_info(request)
    try:
        resolved = await auth_service.get_session(cookie_header)
    except Exception:
        logger.exception("session lookup failed")
        resolved = None
    if resolved is None:
        had_cookie = SESSION_COOKIE_NAME in (cookie_header or "")
        return RequestContext(user=None, session=None, client=client, clear_cookie=had_cookie)
    return RequestContext(
        user=resolved.user,
        session=resolved.session,
        client=client,
        renewed_cookie=resolved.cookie_value,
    )


async def _ensure_authenticated(request: Request) -> Response | RequestContext:
    """Return the authenticated context or issue a login redirect if missing."""
    cookie_header = request.headers.get("cookie")
    try:
        resolved = await auth_service.require_session(cookie_header)
    except Unauthenticated:
        response = _redirect("/login")
        if SESSION_COOKIE_NAME in (cookie_header or ""):
            _clear_session_cookie(response)
        return response
    return RequestContext(
        user=resolved.user,
        session=resolved.session,
        client=_client_info(request),
        renewed_cookie=resolved.cookie_value,
    )


def _user_payload(user: UserRecord) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "emailVerified": user.email_verified,
        "createdAt": user.created_at,
        "updatedAt": user.updated_at,
    }


def _session_payload(session: SessionRecord) -> dict:
    return {
        "id": session.id,
        "userId": session.user_id,
        "expiresAt": session.expires_at,
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
        "ipAddress": session.ip_address,
        "userAgent": session.user_agent,
    }


def _signed_in_response(result: AuthenticatedSession) -> Response:
    response = _json_response({"token": None, "user": _user_payload(result.user)})
    _set_session_cookie(response, result.cookie_value)
    return response


@app.get("/welcome")
async def welcome(request: Request) -> Response:
    return _render("welcome.html", title="Welcome - Picture Gallery", show_nav=False)


@app.get("/login")
async def login_page(request: Request) -> Response:
    context = await _get_context(request)
    if context.user:
        return _redirect("/")
    response = _render("login.html", title="Log in - Picture Gallery", show_nav=False)
    return _apply_session_cookie(response, context)


@app.get("/signup")
async def signup_page(request: Request) -> Response:
    context = await _get_context(request)
    if context.user:
        return _redirect("/")
    response = _render("signup.html", title="Sign up - Picture Gallery", show_nav=False)
    return _apply_session_cookie(response, context)


@app.post("/api/auth/sign-up/email")
async def sign_up_api(request: Request) -> Response:
    if not _origin_allowed(request):
        return _json_response({"message": "Invalid origin"}, status=403)
    try:
        data = SignUpInput.from_payload(_json_data(request))
        result = await auth_service.sign_up(data, _client_info(request))
    except AuthError as exc:
        return _json_response({"message": exc.message}, status=exc.status)
    except Exception:
        logger.exception("sign-up failed unexpectedly")
        return _json_response({"message": "Sign-up failed."}, status=500)
    return _signed_in_response(result)


@app.post("/api/auth/sign-in/email")
async def sign_in_api(request: Request) -> Response:
    if not _origin_allowed(request):
        return _json_response({"message": "Invalid origin"}, status=403)
    try:
        data = SignInInput.from_payload(_json_data(request))
        result = await auth_service.sign_in(
            data,
            _client_info(request),
            cookie_header=request.headers.get("cookie"),
        )
    except AuthError as exc:
        return _json_response({"message": exc.message}, status=exc.status)
    except Exception:
        logger.exception("sign-in failed unexpectedly")
        return _json_response({"message": "Sign-in failed."}, status=500)
    return _signed_in_response(result)


@app.post("/api/auth/sign-out")
async def sign_out_api(request: Request) -> Response:
    if not _origin_allowed(request):
        return _json_response({"message": "Invalid origin"}, status=403)
    await auth_service.sign_out(request.headers.get("cookie"))
    response = _json_response({"success": True})
    _clear_session_cookie(response)
    return response


@app.get("/api/auth/get-session")
async def get_session_api(request: Request) -> Response:
    context = await _get_context(request)
    if not context.user:
        return _apply_session_cookie(_json_response(None), context)
    response = _json_response(
        {
            "session": _session_payload(context.session),
            "user": _user_payload(context.user),
        }
    )
    return _apply_session_cookie(response, context)


@app.get("/logout")
async def logout(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    await auth_service.sign_out(request.headers.get("cookie"))
    response = _redirect("/welcome")
    _clear_session_cookie(response)
    return response


@app.get("/")
async def index(request: Request) -> Response:
    """Shared gallery, newest first."""
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    pictures = await gallery.list_all()
    response = _render(
        "gallery.html",
        title="Shared pictures - Picture Gallery",
        username=auth.user.name,
        pictures=pictures,
        show_owner=True,
    )
    return _apply_session_cookie(response, auth)


@app.get("/upload")
async def upload_page(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    response = _render(
        "upload.html", title="Upload - Picture Gallery", username=auth.user.name
    )
    return _apply_session_cookie(response, auth)


@app.post("/upload")
async def upload(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    if not _origin_allowed(request):
        return _text_response("Invalid origin", status=403)
    fields = _form_data(request)
    filename, image_bytes = _first_file(request)
    form = UploadForm.build(
        title=fields.get("title"),
        contents=fields.get("contents"),
        image_bytes=image_bytes,
        filename=filename,
    )
    try:
        await gallery.upload(auth.user, form)
    except GalleryError as exc:
        return _text_response(exc.message, status=exc.status)
    return _apply_session_cookie(_redirect("/mypage"), auth)


@app.get("/mypage")
async def mypage(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    pictures = await gallery.list_mine(auth.user)
    response = _render(
        "gallery.html",
        title="My page - Picture Gallery",
        heading="My uploads",
        username=auth.user.name,
        pictures=pictures,
        can_delete=True,
    )
    return _apply_session_cookie(response, auth)


@app.get("/user/:user_id")
async def user_pictures(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    user_id = _path_int(request, "user_id")
    pictures = await gallery.list_by_user(user_id) if user_id is not None else []
    owner_name = pictures[0].user_name if pictures else "Unknown"
    response = _render(
        "gallery.html",
        title=f"{owner_name}'s pictures - Picture Gallery",
        heading=f"Pictures by {owner_name}",
        username=auth.user.name,
        pictures=pictures,
    )
    return _apply_session_cookie(response, auth)


@app.get("/detail/:id")
async def detail(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    picture_id = _path_int(request, "id")
    if picture_id is None:
        return _text_response("Picture not found.", status=404)
    try:
        picture = await gallery.get_detail(picture_id)
    except GalleryError as exc:
        return _text_response(exc.message, status=exc.status)
    response = _render(
        "detail.html",
        title=f"{picture.title} - Picture Gallery",
        username=auth.user.name,
        picture=picture,
    )
    return _apply_session_cookie(response, auth)


@app.get("/delete/:id")
async def delete(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    picture_id = _path_int(request, "id")
    if picture_id is None:
        return _text_response("Picture not found.", status=404)
    try:
        await gallery.delete(auth.user, picture_id)
    except GalleryError as exc:
        return _text_response(exc.message, status=exc.status)
    return _apply_session_cookie(_redirect("/mypage"), auth)


@app.get("/api/images/:file_name")
async def image(request: Request) -> Response:
    """Serve a stored image to anyone holding its key."""
    key = str(request.path_params.get("file_name", ""))
    try:
        stored = await gallery.fetch_image(key)
    except GalleryError as exc:
        return _text_response(exc.message, status=exc.status)
    return Response(
        status_code=200,
        headers={
            "content-type": stored.content_type or DEFAULT_IMAGE_CONTENT_TYPE,
            "cache-control": IMAGE_CACHE_CONTROL,
        },
        description=stored.data,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app.start(_check_port=False)
