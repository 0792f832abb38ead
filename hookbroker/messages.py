"""Message, message list and dead-letter-queue endpoints."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .channels import CHANNEL_ID_KEY, CHANNEL_PATH, CONSUMER_ID_KEY, CONSUMER_PATH
from .stakeholders import ListResult
from .web import (
    BadRequest,
    HTTPError,
    NotFound,
    Pagination,
    RecordNotFound,
    Request,
    Response,
    check_form_content_type,
    format_url,
    get_pagination,
    get_pagination_links,
    json_response,
)

MESSAGE_ID_KEY = "messageId"
MESSAGE_PATH = CHANNEL_PATH + "/message/:" + MESSAGE_ID_KEY
MESSAGES_PATH = CHANNEL_PATH + "/messages"
DLQ_PATH = CONSUMER_PATH + "/dlq"
REQUEUE_FIELD = "requeue"
JOB_DEAD = "DEAD"
ERR_BAD_REQUEST_FOR_REQUEUE = "`requeue` form param must match consumer token"


def _status_text(status: Any) -> str:
    if isinstance(status, enum.Enum):
        return str(status.value)
    return str(status)


@dataclass
class DeliveryJobModel:
    """A delivery job of a message to one consumer."""

    listener_endpoint: str
    listener_name: str
    status: str
    status_changed_at: datetime | None

    @classmethod
    def from_job(cls, job: Any) -> "DeliveryJobModel":
        return cls(
            listener_endpoint=job.listener.callback_url,
            listener_name=job.listener.name,
            status=_status_text(job.status),
            status_changed_at=job.status_changed_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ListenerEndpoint": self.listener_endpoint,
            "ListenerName": self.listener_name,
            "Status": self.status,
            "StatusChangedAt": self.status_changed_at,
        }


@dataclass
class DeadDeliveryJobModel(DeliveryJobModel):
    """A dead delivery job with a link to its message."""

    message_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "MessageURL": self.message_url}


@dataclass
class DLQList:
    """A page of dead jobs of a consumer."""

    dead_jobs: list[DeadDeliveryJobModel]
    pages: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {"DeadJobs": self.dead_jobs, "Pages": self.pages}


@dataclass
class MessageModel:
    """A single message with all its delivery jobs."""

    payload: str
    content_type: str
    produced_by: str
    received_at: datetime | None
    dispatched_at: datetime | None
    status: str
    jobs: list[DeliveryJobModel] = field(default_factory=list)

    @classmethod
    def from_message(cls, message: Any, jobs: list[Any]) -> "MessageModel":
        return cls(
            payload=message.payload,
            content_type=message.content_type,
            produced_by=message.produced_by.name,
            received_at=message.received_at,
            dispatched_at=message.outboxed_at,
            status=_status_text(message.status),
            jobs=[DeliveryJobModel.from_job(job) for job in jobs],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "Payload": self.payload,
            "ContentType": self.content_type,
            "ProducedBy": self.produced_by,
            "ReceivedAt": self.received_at,
            "DispatchedAt": self.dispatched_at,
            "Status": self.status,
            "Jobs": self.jobs,
        }


def _message_link(endpoint: Any, channel_id: str, message_id: str) -> str:
    return endpoint.format_as_relative_link({CHANNEL_ID_KEY: channel_id, MESSAGE_ID_KEY: message_id})


class MessageController:
    """GET for a single message broadcast to a channel."""

    path = MESSAGE_PATH

    def __init__(self, message_repo: Any, delivery_job_repo: Any):
        self.message_repo = message_repo
        self.delivery_job_repo = delivery_job_repo

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, MESSAGE_PATH, CHANNEL_ID_KEY, MESSAGE_ID_KEY)

    def _all_jobs(self, message: Any) -> list[Any]:
        page: Pagination | None = Pagination()
        jobs: list[Any] = []
        while page is not None:
            try:
                batch, page = self.delivery_job_repo.get_jobs_for_message(message, page)
            except Exception as err:
                raise HTTPError(str(err)) from err
            if not batch:
                break
            jobs.extend(batch)
            if page is not None:
                page.previous = None
        return jobs

    def get(self, request: Request, params: dict[str, str]) -> Response:
        try:
            message = self.message_repo.get(params.get(CHANNEL_ID_KEY, ""), params.get(MESSAGE_ID_KEY, ""))
        except Exception as err:
            raise NotFound() from err
        return json_response(MessageModel.from_message(message, self._all_jobs(message)))


class MessagesController:
    """GET for the paginated list of messages broadcast to a channel."""

    path = MESSAGES_PATH

    def __init__(self, message_endpoint: Any, message_repo: Any):
        self.message_endpoint = message_endpoint
        self.message_repo = message_repo

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, MESSAGES_PATH, CHANNEL_ID_KEY)

    def get(self, request: Request, params: dict[str, str]) -> Response:
        channel_id = params.get(CHANNEL_ID_KEY, "")
        try:
            messages, page = self.message_repo.get_messages_for_channel(channel_id, get_pagination(request))
        except RecordNotFound as err:
            raise NotFound() from err
        except Exception as err:
            raise HTTPError(str(err)) from err
        urls = [_message_link(self.message_endpoint, channel_id, message.message_id) for message in messages]
        return json_response(ListResult(result=urls, pages=get_pagination_links(request, page)))


class DLQController:
    """GET dead jobs of a consumer and POST to requeue them."""

    path = DLQ_PATH

    def __init__(self, message_endpoint: Any, delivery_job_repo: Any, consumer_repo: Any, dead_status: Any = JOB_DEAD):
        self.message_endpoint = message_endpoint
        self.delivery_job_repo = delivery_job_repo
        self.consumer_repo = consumer_repo
        self.dead_status = dead_status

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, DLQ_PATH, CHANNEL_ID_KEY, CONSUMER_ID_KEY)

    def _consumer(self, params: dict[str, str]) -> Any:
        try:
            return self.consumer_repo.get(params.get(CHANNEL_ID_KEY, ""), params.get(CONSUMER_ID_KEY, ""))
        except RecordNotFound as err:
            raise NotFound() from err
        except Exception as err:
            raise HTTPError(str(err)) from err

    def _dead_job(self, job: Any) -> DeadDeliveryJobModel:
        base = DeliveryJobModel.from_job(job)
        message = job.message
        return DeadDeliveryJobModel(
            listener_endpoint=base.listener_endpoint,
            listener_name=base.listener_name,
            status=base.status,
            status_changed_at=base.status_changed_at,
            message_url=_message_link(self.message_endpoint, message.broadcasted_to.channel_id, message.message_id),
        )

    def get(self, request: Request, params: dict[str, str]) -> Response:
        consumer = self._consumer(params)
        try:
            jobs, page = self.delivery_job_repo.get_jobs_for_consumer(
                consumer, self.dead_status, get_pagination(request)
            )
        except Exception as err:
            raise HTTPError(str(err)) from err
        dead = [self._dead_job(job) for job in jobs]
        return json_response(DLQList(dead_jobs=dead, pages=get_pagination_links(request, page)))

    def post(self, request: Request, params: dict[str, str]) -> Response:
        check_form_content_type(request)
        consumer = self._consumer(params)
        if request.form_value(REQUEUE_FIELD) != consumer.token:
            raise BadRequest(ERR_BAD_REQUEST_FOR_REQUEUE)
        try:
            self.delivery_job_repo.requeue_dead_jobs_for_consumer(consumer)
        except Exception as err:
            raise HTTPError(str(err)) from err
        return Response(202)