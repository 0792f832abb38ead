"""HTTP plumbing shared by the broker's API controllers."""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from urllib.parse import parse_qs, unquote, urlencode, urlsplit, urlunsplit

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"
HEADER_CONTENT_TYPE = "Content-Type"
HEADER_UNMODIFIED_SINCE = "If-Unmodified-Since"
HEADER_LAST_MODIFIED = "Last-Modified"
HEADER_REQUEST_ID = "X-Request-ID"
PREVIOUS_KEY = "previous"
NEXT_KEY = "next"
TOKEN_CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
TOKEN_LENGTH = 12
HANDLER_METHODS = ("get", "put", "post", "delete")

_REQUEST_ID_CONTEXT_KEY = "request_id"
_access_log = logging.getLogger("hookbroker.access")


class HTTPError(Exception):
    """An error that is answered with an HTTP status and its message as body."""

    status = 500
    default_message = "Internal Server Error"

    def __init__(self, message: str | None = None, status: int | None = None):
        super().__init__(self.default_message if message is None else message)
        if status is not None:
            self.status = status


class NotFound(HTTPError):
    status = 404
    default_message = "Request resource not found"


class BadRequest(HTTPError):
    status = 400
    default_message = "Bad Request: Update is missing `If-Unmodified-Since` header "


class UnsupportedMediaType(HTTPError):
    status = 415
    default_message = "Media type not supported"


class PreconditionFailed(HTTPError):
    status = 412
    # The broker answers failed preconditions with the media type message.
    default_message = "Media type not supported"


class RecordNotFound(LookupError):
    """Raised by repositories when the requested record does not exist."""


@dataclass
class Pagination:
    """Opaque cursors pointing at the previous and next page of a listing."""

    previous: str | None = None
    next: str | None = None


@dataclass
class Request:
    """An incoming HTTP request."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, str] | None = None
    body: bytes = b""
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self._headers = {key.lower(): value for key, value in self.headers.items()}
        self._parts = urlsplit(self.url)
        self._query = parse_qs(self._parts.query, keep_blank_values=True)
        self._parsed_form: dict[str, str] | None = None

    @property
    def path(self) -> str:
        return unquote(self._parts.path)

    def header(self, name: str) -> str:
        return self._headers.get(name.lower(), "")

    def query_value(self, name: str) -> str:
        values = self._query.get(name)
        return values[0] if values else ""

    def form_value(self, name: str) -> str:
        if self._parsed_form is None:
            self._parsed_form = self._parse_form()
        return self._parsed_form.get(name, "")

    def _parse_form(self) -> dict[str, str]:
        if self.form is not None:
            return dict(self.form)
        content_type = self.header(HEADER_CONTENT_TYPE).split(";")[0].strip()
        if self.method not in {"POST", "PUT", "PATCH"} or content_type != FORM_CONTENT_TYPE:
            return {}
        parsed = parse_qs(self.body.decode("utf-8", "replace"), keep_blank_values=True)
        return {key: values[0] for key, values in parsed.items()}


@dataclass
class Response:
    """An outgoing HTTP response."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.body)


Handler = Callable[[Request, dict], Response]


def _segments(path: str) -> tuple[str, ...]:
    return tuple(path.split("/"))


def _match(pattern: tuple[str, ...], segments: tuple[str, ...]) -> dict[str, str] | None:
    if len(pattern) != len(segments):
        return None
    params: dict[str, str] = {}
    for expected, actual in zip(pattern, segments):
        if expected.startswith(":"):
            if not actual:
                return None
            params[expected[1:]] = actual
        elif expected != actual:
            return None
    return params


class Router:
    """Routes requests to handlers by method and path template."""

    def __init__(self) -> None:
        self._routes: list[tuple[str, tuple[str, ...], Handler]] = []

    def add(self, method: str, path: str, handler: Handler) -> None:
        method = method.upper()
        pattern = _segments(path)
        if any(m == method and p == pattern for m, p, _ in self._routes):
            raise ValueError(f"route {method} {path} is already registered")
        self._routes.append((method, pattern, handler))

    def dispatch(self, request: Request) -> Response:
        segments = _segments(request.path)
        allowed: set[str] = set()
        for method, pattern, handler in self._routes:
            params = _match(pattern, segments)
            if params is None:
                continue
            if method == request.method:
                try:
                    return handler(request, params)
                except HTTPError as err:
                    return error_response(err.status, err)
            allowed.add(method)
        if allowed:
            return Response(405, b"Method Not Allowed", {"Allow": ", ".join(sorted(allowed))})
        return Response(404, b"404 page not found", {HEADER_CONTENT_TYPE: "text/plain; charset=utf-8"})

    def __call__(self, request: Request) -> Response:
        rid = request_id(request)
        started = time.monotonic()
        response = self.dispatch(request)
        response.headers[HEADER_REQUEST_ID] = rid
        _access_log.info(
            "requestId=%s method=%s url=%s status=%d size=%d duration=%.3fms",
            rid,
            request.method,
            request.url,
            response.status,
            len(response.body),
            (time.monotonic() - started) * 1000,
        )
        return response


def setup_api_routes(router: Router, *endpoints: Any) -> Router:
    """Register every HTTP method handler each endpoint provides at its path."""
    for endpoint in endpoints:
        for method in HANDLER_METHODS:
            handler = getattr(endpoint, method, None)
            if callable(handler):
                router.add(method.upper(), endpoint.path, handler)
    return router


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat()
    if moment.tzinfo is not None and moment.utcoffset() == timezone.utc.utcoffset(None):
        text = text.replace("+00:00", "Z")
    return text


def _to_jsonable(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, datetime):
        return _rfc3339(value)
    if isinstance(value, enum.Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def json_response(data: Any, headers: Mapping[str, str] | None = None) -> Response:
    """Serialise data as a 200 JSON response, or a 500 if it cannot be encoded."""
    try:
        payload = json.dumps(data, default=_to_jsonable)
    except (TypeError, ValueError) as err:
        return error_response(500, err)
    response_headers = dict(headers or {})
    response_headers[HEADER_CONTENT_TYPE] = JSON_CONTENT_TYPE
    return Response(200, (payload + "\n").encode("utf-8"), response_headers)


def error_response(status: int, error: BaseException | str | None) -> Response:
    body = b"" if error is None else str(error).encode("utf-8")
    return Response(status, body)


def format_url(params: Mapping[str, str] | None, template: str, *names: str) -> str:
    """Fill the named, non-empty params into a path template."""
    params = params or {}
    result = template
    for name in names:
        value = params.get(name, "")
        if value:
            result = result.replace(":" + name, value)
    return result


def random_token() -> str:
    return "".join(secrets.choice(TOKEN_CHARSET) for _ in range(TOKEN_LENGTH))


def get_pagination(request: Request) -> Pagination:
    return Pagination(
        previous=request.query_value(PREVIOUS_KEY) or None,
        next=request.query_value(NEXT_KEY) or None,
    )


def get_pagination_links(request: Request, pagination: Pagination | None) -> dict[str, str]:
    """Build previous/next page URLs on the request's base URL."""
    links: dict[str, str] = {}
    if pagination is None:
        return links
    parts = urlsplit(request.url)
    for key, cursor in ((PREVIOUS_KEY, pagination.previous), (NEXT_KEY, pagination.next)):
        if cursor is not None:
            links[key] = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode({key: cursor}), ""))
    return links


def check_form_content_type(request: Request) -> None:
    if request.header(HEADER_CONTENT_TYPE) != FORM_CONTENT_TYPE:
        raise UnsupportedMediaType()


def check_conditional_update(request: Request, model: Any) -> None:
    """Require If-Unmodified-Since to match the model's last update time."""
    unmodified_since = request.header(HEADER_UNMODIFIED_SINCE)
    if not unmodified_since:
        raise BadRequest()
    if unmodified_since != model.last_updated_http_time():
        raise PreconditionFailed()


def get_update_data(request: Request, default_name: str) -> tuple[str, str]:
    """Return (token, name) from the form, generating or defaulting when absent."""
    token = request.form_value("token") or random_token()
    name = request.form_value("name") or default_name
    return token, name


def request_id(request: Request) -> str:
    """Return the request's id, taking it from the header or generating one once."""
    existing = request.context.get(_REQUEST_ID_CONTEXT_KEY)
    if isinstance(existing, str):
        return existing
    rid = request.header(HEADER_REQUEST_ID) or uuid.uuid4().hex
    request.context[_REQUEST_ID_CONTEXT_KEY] = rid
    return rid