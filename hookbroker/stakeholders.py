"""Producer and status endpoints, and the stakeholder models they expose."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .web import (
    HEADER_LAST_MODIFIED,
    HTTPError,
    NotFound,
    Request,
    Response,
    check_conditional_update,
    check_form_content_type,
    format_url,
    get_pagination,
    get_pagination_links,
    get_update_data,
    json_response,
)

PRODUCERS_PATH = "/producers"
PRODUCER_ID_KEY = "producerId"
PRODUCER_PATH = "/producer/:" + PRODUCER_ID_KEY
STATUS_PATH = "/_status"

_DAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass
class MsgStakeholder:
    """The public view of a producer, channel or consumer."""

    id: str
    name: str
    token: str
    changed_at: datetime

    def last_updated_http_time(self) -> str:
        moment = self.changed_at
        return (
            f"{_DAYS[moment.weekday()]}, {moment.day:02d} {_MONTHS[moment.month - 1]} "
            f"{moment.year:04d} {moment:%H:%M:%S} GMT"
        )

    def to_dict(self) -> dict[str, Any]:
        return {"ID": self.id, "Name": self.name, "Token": self.token, "ChangedAt": self.changed_at}


def message_stakeholder(stakeholder_id: str, stakeholder: Any) -> MsgStakeholder:
    """Build the public view of a stored stakeholder record."""
    return MsgStakeholder(
        id=stakeholder_id,
        name=stakeholder.name,
        token=stakeholder.token,
        changed_at=stakeholder.updated_at,
    )


@dataclass
class ListResult:
    """A page of resource URLs with links to neighbouring pages."""

    result: list[str]
    pages: dict[str, str]
    links: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"Result": self.result, "Pages": self.pages, "Links": self.links}


@dataclass
class AppData:
    """What the status endpoint reports."""

    seed_data: Any
    app_status: Any

    def to_dict(self) -> dict[str, Any]:
        return {"SeedData": self.seed_data, "AppStatus": self.app_status}


@dataclass
class _NewProducer:
    producer_id: str
    token: str
    name: str
    updated_at: datetime | None = None


def _stakeholder_response(stakeholder: MsgStakeholder) -> Response:
    return json_response(stakeholder, {HEADER_LAST_MODIFIED: stakeholder.last_updated_http_time()})


class ProducerController:
    """GET and PUT for a single producer."""

    path = PRODUCER_PATH

    def __init__(self, producer_repo: Any, producer_factory: Callable[..., Any] = _NewProducer):
        self.producer_repo = producer_repo
        self.producer_factory = producer_factory

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, PRODUCER_PATH, PRODUCER_ID_KEY)

    def get(self, request: Request, params: dict[str, str]) -> Response:
        producer_id = params.get(PRODUCER_ID_KEY, "")
        try:
            producer = self.producer_repo.get(producer_id)
        except Exception as err:
            raise NotFound() from err
        return _stakeholder_response(message_stakeholder(producer_id, producer))

    def put(self, request: Request, params: dict[str, str]) -> Response:
        check_form_content_type(request)
        producer_id = params.get(PRODUCER_ID_KEY, "")
        try:
            existing = self.producer_repo.get(producer_id)
        except Exception:
            existing = None
        if existing is not None:
            check_conditional_update(request, message_stakeholder(producer_id, existing))
        token, name = get_update_data(request, producer_id)
        producer = self.producer_factory(producer_id=producer_id, token=token, name=name)
        try:
            stored = self.producer_repo.store(producer)
        except Exception as err:
            raise HTTPError(str(err)) from err
        return _stakeholder_response(message_stakeholder(producer_id, stored))


class ProducersController:
    """GET for the paginated list of producers."""

    path = PRODUCERS_PATH

    def __init__(self, producer_repo: Any, producer_endpoint: Any):
        self.producer_repo = producer_repo
        self.producer_endpoint = producer_endpoint

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        # The list path has no placeholders, so formatting yields it unchanged.
        return format_url(params, PRODUCERS_PATH)

    def get(self, request: Request, params: dict[str, str]) -> Response:
        try:
            producers, page = self.producer_repo.get_list(get_pagination(request))
        except Exception as err:
            raise HTTPError(str(err)) from err
        urls = [
            self.producer_endpoint.format_as_relative_link({PRODUCER_ID_KEY: producer.producer_id})
            for producer in producers
        ]
        return json_response(ListResult(result=urls, pages=get_pagination_links(request, page)))


class StatusController:
    """GET /_status: the application's seed data and status."""

    path = STATUS_PATH

    def __init__(self, app_repository: Any):
        self.app_repository = app_repository

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        # The status path has no placeholders, so formatting yields it unchanged.
        return format_url(params, STATUS_PATH)

    def get(self, request: Request, params: dict[str, str]) -> Response:
        try:
            app = self.app_repository.get_app()
        except Exception as err:
            raise HTTPError(str(err)) from err
        return json_response(AppData(seed_data=app.seed_data, app_status=app.status))