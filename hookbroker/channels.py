"""Channel and consumer endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from urllib.parse import urlsplit

from .stakeholders import ListResult, MsgStakeholder, message_stakeholder
from .web import (
    HEADER_LAST_MODIFIED,
    BadRequest,
    HTTPError,
    NotFound,
    RecordNotFound,
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

CHANNELS_PATH = "/channels"
CHANNEL_ID_KEY = "channelId"
CHANNEL_PATH = "/channel/:" + CHANNEL_ID_KEY
CONSUMERS_PATH = CHANNEL_PATH + "/consumers"
CONSUMER_ID_KEY = "consumerId"
CONSUMER_PATH = CHANNEL_PATH + "/consumer/:" + CONSUMER_ID_KEY
CALLBACK_URL_FIELD = "callbackUrl"


@dataclass
class ChannelModel(MsgStakeholder):
    """The public view of a channel with links to its sub-resources."""

    consumers_url: str = ""
    messages_url: str = ""
    broadcast_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "ConsumersURL": self.consumers_url,
            "MessagesURL": self.messages_url,
            "BroadcastURL": self.broadcast_url,
        }


@dataclass
class ConsumerModel(MsgStakeholder):
    """The public view of a consumer of a channel."""

    callback_url: str = ""
    dead_letter_queue_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "CallbackURL": self.callback_url,
            "DeadLetterQueueURL": self.dead_letter_queue_url,
        }


@dataclass
class _NewChannel:
    channel_id: str
    token: str
    name: str
    updated_at: datetime | None = None


@dataclass
class _NewConsumer:
    consuming_from: Any
    consumer_id: str
    token: str
    callback_url: str
    name: str
    updated_at: datetime | None = None


def _with_last_modified(model: MsgStakeholder) -> Response:
    return json_response(model, {HEADER_LAST_MODIFIED: model.last_updated_http_time()})


def _valid_callback_url(value: str) -> bool:
    if not value:
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme)


class ChannelController:
    """GET and PUT for a single channel."""

    path = CHANNEL_PATH

    def __init__(
        self,
        channel_repo: Any,
        consumers_endpoint: Any,
        messages_endpoint: Any,
        broadcast_endpoint: Any,
        channel_factory: Callable[..., Any] = _NewChannel,
    ):
        self.channel_repo = channel_repo
        self.consumers_endpoint = consumers_endpoint
        self.messages_endpoint = messages_endpoint
        self.broadcast_endpoint = broadcast_endpoint
        self.channel_factory = channel_factory

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, CHANNEL_PATH, CHANNEL_ID_KEY)

    def _model(self, channel: Any) -> ChannelModel:
        base = message_stakeholder(channel.channel_id, channel)
        link_params = {CHANNEL_ID_KEY: channel.channel_id}
        return ChannelModel(
            id=base.id,
            name=base.name,
            token=base.token,
            changed_at=base.changed_at,
            consumers_url=self.consumers_endpoint.format_as_relative_link(link_params),
            messages_url=self.messages_endpoint.format_as_relative_link(link_params),
            broadcast_url=self.broadcast_endpoint.format_as_relative_link(link_params),
        )

    def get(self, request: Request, params: dict[str, str]) -> Response:
        channel_id = params.get(CHANNEL_ID_KEY, "")
        try:
            channel = self.channel_repo.get(channel_id)
        except Exception as err:
            raise NotFound() from err
        return _with_last_modified(self._model(channel))

    def put(self, request: Request, params: dict[str, str]) -> Response:
        check_form_content_type(request)
        channel_id = params.get(CHANNEL_ID_KEY, "")
        try:
            existing = self.channel_repo.get(channel_id)
        except Exception:
            existing = None
        if existing is not None:
            check_conditional_update(request, message_stakeholder(channel_id, existing))
        token, name = get_update_data(request, channel_id)
        channel = self.channel_factory(channel_id=channel_id, token=token, name=name)
        try:
            stored = self.channel_repo.store(channel)
        except Exception as err:
            raise HTTPError(str(err)) from err
        return _with_last_modified(self._model(stored))


class ChannelsController:
    """GET for the paginated list of channels."""

    path = CHANNELS_PATH

    def __init__(self, channel_repo: Any, channel_endpoint: Any):
        self.channel_repo = channel_repo
        self.channel_endpoint = channel_endpoint

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        # The list path has no placeholders, so formatting yields it unchanged.
        return format_url(params, CHANNELS_PATH)

    def get(self, request: Request, params: dict[str, str]) -> Response:
        try:
            channels, page = self.channel_repo.get_list(get_pagination(request))
        except Exception as err:
            raise HTTPError(str(err)) from err
        urls = [
            self.channel_endpoint.format_as_relative_link({CHANNEL_ID_KEY: channel.channel_id})
            for channel in channels
        ]
        return json_response(ListResult(result=urls, pages=get_pagination_links(request, page)))


class ConsumerController:
    """GET, PUT and DELETE for a single consumer of a channel."""

    path = CONSUMER_PATH

    def __init__(
        self,
        channel_repo: Any,
        consumer_repo: Any,
        dlq_endpoint: Any,
        consumer_factory: Callable[..., Any] = _NewConsumer,
    ):
        self.channel_repo = channel_repo
        self.consumer_repo = consumer_repo
        self.dlq_endpoint = dlq_endpoint
        self.consumer_factory = consumer_factory

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, CONSUMER_PATH, CHANNEL_ID_KEY, CONSUMER_ID_KEY)

    def _model(self, consumer: Any) -> ConsumerModel:
        base = message_stakeholder(consumer.consumer_id, consumer)
        link_params = {
            CHANNEL_ID_KEY: consumer.consuming_from.channel_id,
            CONSUMER_ID_KEY: consumer.consumer_id,
        }
        return ConsumerModel(
            id=base.id,
            name=base.name,
            token=base.token,
            changed_at=base.changed_at,
            callback_url=consumer.callback_url,
            dead_letter_queue_url=self.dlq_endpoint.format_as_relative_link(link_params),
        )

    def get(self, request: Request, params: dict[str, str]) -> Response:
        try:
            consumer = self.consumer_repo.get(
                params.get(CHANNEL_ID_KEY, ""), params.get(CONSUMER_ID_KEY, "")
            )
        except Exception as err:
            raise NotFound() from err
        return _with_last_modified(self._model(consumer))

    def put(self, request: Request, params: dict[str, str]) -> Response:
        check_form_content_type(request)
        channel_id = params.get(CHANNEL_ID_KEY, "")
        consumer_id = params.get(CONSUMER_ID_KEY, "")
        try:
            channel = self.channel_repo.get(channel_id)
        except Exception as err:
            raise NotFound() from err
        try:
            existing = self.consumer_repo.get(channel_id, consumer_id)
        except Exception:
            existing = None
        if existing is not None:
            check_conditional_update(request, self._model(existing))
        token, name = get_update_data(request, consumer_id)
        callback_url = request.form_value(CALLBACK_URL_FIELD)
        if not _valid_callback_url(callback_url):
            raise BadRequest()
        consumer = self.consumer_factory(
            consuming_from=channel,
            consumer_id=consumer_id,
            token=token,
            callback_url=callback_url,
            name=name,
        )
        try:
            stored = self.consumer_repo.store(consumer)
        except Exception as err:
            raise HTTPError(str(err)) from err
        return _with_last_modified(self._model(stored))

    def delete(self, request: Request, params: dict[str, str]) -> Response:
        try:
            consumer = self.consumer_repo.get(
                params.get(CHANNEL_ID_KEY, ""), params.get(CONSUMER_ID_KEY, "")
            )
        except RecordNotFound as err:
            raise NotFound() from err
        except Exception as err:
            raise HTTPError(str(err)) from err
        check_conditional_update(request, self._model(consumer))
        try:
            self.consumer_repo.delete(consumer)
        except Exception as err:
            raise HTTPError(str(err)) from err
        return Response(204)


class ConsumersController:
    """GET for the paginated list of a channel's consumers."""

    path = CONSUMERS_PATH

    def __init__(self, consumer_endpoint: Any, consumer_repo: Any):
        self.consumer_endpoint = consumer_endpoint
        self.consumer_repo = consumer_repo

    def format_as_relative_link(self, params: dict[str, str] | None = None) -> str:
        return format_url(params, CONSUMERS_PATH, CHANNEL_ID_KEY)

    def get(self, request: Request, params: dict[str, str]) -> Response:
        channel_id = params.get(CHANNEL_ID_KEY, "")
        try:
            consumers, page = self.consumer_repo.get_list(channel_id, get_pagination(request))
        except RecordNotFound as err:
            raise NotFound() from err
        except Exception as err:
            raise HTTPError(str(err)) from err
        urls = [
            self.consumer_endpoint.format_as_relative_link(
                {CHANNEL_ID_KEY: channel_id, CONSUMER_ID_KEY: consumer.consumer_id}
            )
            for consumer in consumers
        ]
        return json_response(ListResult(result=urls, pages=get_pagination_links(request, page)))