from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from hookbroker.channels import (
    ChannelController,
    ChannelModel,
    ChannelsController,
    ConsumerController,
    ConsumerModel,
    ConsumersController,
)
from hookbroker.messages import DLQController, MessageController, MessagesController
from hookbroker.web import (
    FORM_CONTENT_TYPE,
    HEADER_CONTENT_TYPE,
    HEADER_LAST_MODIFIED,
    HEADER_UNMODIFIED_SINCE,
    NEXT_KEY,
    PREVIOUS_KEY,
    Pagination,
    RecordNotFound,
    Request,
    Router,
    setup_api_routes,
)

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
CHANNEL_PREFIX = "controller-get-list-"
CONSUMER_PREFIX = "consumer-get-list-"
CONSUMER_CHANNEL = "consumer-channel-some-id"
CALLBACK = "https://hooks.example.com/"
DELETE_OK = "delete-consumer-id"
DELETE_FAILED = "delete-consumer-failed-id"
OLD_HTTP_TIME = "Sun, 31 Dec 2023 14:00:00 GMT"
FORM = {HEADER_CONTENT_TYPE: FORM_CONTENT_TYPE}


@dataclass
class ChannelRecord:
    channel_id: str
    token: str
    name: str
    updated_at: datetime | None = None


@dataclass
class ConsumerRecord:
    consuming_from: ChannelRecord
    consumer_id: str
    token: str
    callback_url: str
    name: str
    updated_at: datetime | None = None


def paginate(items, pagination, size=25):
    if pagination.previous is not None:
        end = int(pagination.previous)
        start = max(0, end - size)
    elif pagination.next is not None:
        start = int(pagination.next)
        end = start + size
    else:
        start, end = 0, size
    end = min(end, len(items))
    start = min(start, end)
    return items[start:end], Pagination(previous=str(start), next=str(end))


class Clock:
    def __init__(self):
        self.tick = 0

    def now(self):
        self.tick += 1
        return BASE + timedelta(seconds=self.tick)


class FakeChannelRepo:
    def __init__(self, clock):
        self.clock = clock
        self.channels = {}

    def get(self, channel_id):
        try:
            return self.channels[channel_id]
        except KeyError:
            raise RecordNotFound(channel_id) from None

    def store(self, channel):
        channel.updated_at = self.clock.now()
        self.channels[channel.channel_id] = channel
        return channel

    def get_list(self, pagination):
        ordered = sorted(self.channels.values(), key=lambda c: c.channel_id)
        return paginate(ordered, pagination)


class FakeConsumerRepo:
    def __init__(self, clock, channel_repo):
        self.clock = clock
        self.channel_repo = channel_repo
        self.consumers = {}

    def get(self, channel_id, consumer_id):
        try:
            return self.consumers[(channel_id, consumer_id)]
        except KeyError:
            raise RecordNotFound(consumer_id) from None

    def store(self, consumer):
        consumer.updated_at = self.clock.now()
        self.consumers[(consumer.consuming_from.channel_id, consumer.consumer_id)] = consumer
        return consumer

    def delete(self, consumer):
        del self.consumers[(consumer.consuming_from.channel_id, consumer.consumer_id)]

    def get_list(self, channel_id, pagination):
        self.channel_repo.get(channel_id)
        ordered = sorted(
            (c for (cid, _), c in self.consumers.items() if cid == channel_id),
            key=lambda c: c.consumer_id,
        )
        return paginate(ordered, pagination)


class BrokenRepo:
    def __init__(self, message):
        self.message = message

    def get(self, *args):
        raise RuntimeError(self.message)

    def store(self, record):
        raise RuntimeError(self.message)

    def get_list(self, *args):
        raise RuntimeError(self.message)


class _BroadcastEndpoint:
    def format_as_relative_link(self, params=None):
        return "/channel/" + params["channelId"] + "/broadcast"


@pytest.fixture
def world():
    clock = Clock()
    channel_repo = FakeChannelRepo(clock)
    for index in range(49, -1, -1):
        channel_id = f"{CHANNEL_PREFIX}{index}"
        channel_repo.store(ChannelRecord(channel_id, "token", channel_id))
    consumer_channel = channel_repo.store(ChannelRecord(CONSUMER_CHANNEL, "token", CONSUMER_CHANNEL))
    consumer_repo = FakeConsumerRepo(clock, channel_repo)
    for index in range(49, -1, -1):
        consumer_id = f"{CONSUMER_PREFIX}{index}"
        consumer_repo.store(ConsumerRecord(consumer_channel, consumer_id, "token", CALLBACK, consumer_id))
    for consumer_id in (DELETE_OK, DELETE_FAILED):
        consumer_repo.store(ConsumerRecord(consumer_channel, consumer_id, "token", CALLBACK, consumer_id))
    return SimpleNamespace(channel_repo=channel_repo, consumer_repo=consumer_repo, channel=consumer_channel)


def dlq_controller():
    return DLQController(MessageController(None, None), None, None)


def consumer_controller(channel_repo, consumer_repo):
    return ConsumerController(channel_repo, consumer_repo, dlq_controller())


def channel_controller(channel_repo, consumer_repo=None):
    consumers = ConsumersController(consumer_controller(channel_repo, consumer_repo), consumer_repo)
    messages = MessagesController(MessageController(None, None), None)
    return ChannelController(channel_repo, consumers, messages, _BroadcastEndpoint())


def serve(request, *controllers):
    return setup_api_routes(Router(), *controllers)(request)


def parse_time(text):
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


def walk_list(controller, first_url):
    response = serve(Request("GET", first_url), controller)
    assert response.status == 200
    body = response.json()
    assert len(body["Result"]) == 25
    next_url = body["Pages"][NEXT_KEY]
    previous_url = body["Pages"][PREVIOUS_KEY]

    response = serve(Request("GET", previous_url), controller)
    assert response.status == 200
    assert response.json()["Result"] == []

    response = serve(Request("GET", next_url), controller)
    assert response.status == 200
    body = response.json()
    assert len(body["Result"]) == 25
    next_url = body["Pages"][NEXT_KEY]
    previous_url = body["Pages"][PREVIOUS_KEY]

    response = serve(Request("GET", previous_url), controller)
    assert response.status == 200
    assert len(response.json()["Result"]) == 25

    pages = 0
    while True:
        response = serve(Request("GET", next_url), controller)
        assert response.status == 200
        body = response.json()
        pages += 1
        if not body["Result"]:
            break
        next_url = body["Pages"][NEXT_KEY]
        assert pages < 10
    return pages


def test_channels_list_pagination(world):
    controller = ChannelsController(world.channel_repo, channel_controller(world.channel_repo))
    assert walk_list(controller, "/channels") >= 1


def test_channels_list_error():
    broken = BrokenRepo("GetList error")
    controller = ChannelsController(broken, channel_controller(broken))
    response = serve(Request("GET", "/channels"), controller)
    assert response.status == 500
    assert response.text == "GetList error"


def test_channels_format_as_relative_link(world):
    controller = ChannelsController(world.channel_repo, channel_controller(world.channel_repo))
    assert controller.format_as_relative_link() == "/channels"


def test_channel_format_as_relative_link_without_params(world):
    assert channel_controller(world.channel_repo).format_as_relative_link() == "/channel/:channelId"


def test_channel_get_success(world):
    response = serve(Request("GET", "/channel/" + CHANNEL_PREFIX + "0"), channel_controller(world.channel_repo))
    assert response.status == 200
    body = response.json()
    assert body["ID"] == CHANNEL_PREFIX + "0"
    assert CHANNEL_PREFIX in body["Name"]
    assert body["Token"] == "token"
    assert body["ConsumersURL"] == "/channel/" + CHANNEL_PREFIX + "0/consumers"
    assert body["MessagesURL"] == "/channel/" + CHANNEL_PREFIX + "0/messages"
    assert body["BroadcastURL"] == "/channel/" + CHANNEL_PREFIX + "0/broadcast"
    assert parse_time(body["ChangedAt"]) == BASE + timedelta(seconds=50)
    assert response.headers[HEADER_LAST_MODIFIED] == "Mon, 01 Jan 2024 00:00:50 GMT"


def test_channel_get_not_found(world):
    response = serve(Request("GET", "/channel/no-such-channel"), channel_controller(world.channel_repo))
    assert response.status == 404


def test_channel_put_create_with_name_and_token(world):
    request = Request("PUT", "/channel/put-channel-id", FORM, form={"token": "token", "name": "CREATE NAME"})
    response = serve(request, channel_controller(world.channel_repo))
    assert response.status == 200
    body = response.json()
    assert body["ID"] == "put-channel-id"
    assert body["Name"] == "CREATE NAME"
    assert body["Token"] == "token"
    assert world.channel_repo.get("put-channel-id").name == "CREATE NAME"


def test_channel_put_create_without_name_and_token(world):
    request = Request("PUT", "/channel/put-channel-id-without-data", FORM)
    response = serve(request, channel_controller(world.channel_repo))
    assert response.status == 200
    body = response.json()
    assert body["ID"] == "put-channel-id-without-data"
    assert body["Name"] == "put-channel-id-without-data"
    assert len(body["Token"]) == 12


def test_channel_put_update(world):
    controller = channel_controller(world.channel_repo)
    url = "/channel/" + CHANNEL_PREFIX + "0"
    got = serve(Request("GET", url), controller)
    assert got.status == 200
    headers = dict(FORM)
    headers[HEADER_UNMODIFIED_SINCE] = got.headers[HEADER_LAST_MODIFIED]
    response = serve(Request("PUT", url, headers, form={"token": "secret"}), controller)
    assert response.status == 200
    updated = response.json()
    assert updated["Token"] == "secret"
    assert parse_time(got.json()["ChangedAt"]) < parse_time(updated["ChangedAt"])


def test_channel_put_unsupported_media_type(world):
    response = serve(Request("PUT", "/channel/" + CHANNEL_PREFIX + "0"), channel_controller(world.channel_repo))
    assert response.status == 415


def test_channel_put_missing_unmodified_since(world):
    response = serve(Request("PUT", "/channel/" + CHANNEL_PREFIX + "0", FORM), channel_controller(world.channel_repo))
    assert response.status == 400


def test_channel_put_precondition_failed(world):
    headers = {**FORM, HEADER_UNMODIFIED_SINCE: OLD_HTTP_TIME}
    response = serve(Request("PUT", "/channel/" + CHANNEL_PREFIX + "0", headers), channel_controller(world.channel_repo))
    assert response.status == 412


def test_channel_put_store_error():
    broken = BrokenRepo("error")
    response = serve(Request("PUT", "/channel/" + CHANNEL_PREFIX + "0", FORM), channel_controller(broken))
    assert response.status == 500
    assert response.text == "error"


def test_channel_model_to_dict_flattens_stakeholder():
    model = ChannelModel(id="a", name="b", token="token", changed_at=BASE, consumers_url="c", messages_url="m", broadcast_url="x")
    assert model.to_dict() == {
        "ID": "a", "Name": "b", "Token": "token", "ChangedAt": BASE,
        "ConsumersURL": "c", "MessagesURL": "m", "BroadcastURL": "x",
    }


def test_consumer_model_to_dict_flattens_stakeholder():
    model = ConsumerModel(id="a", name="b", token="token", changed_at=BASE, callback_url=CALLBACK, dead_letter_queue_url="d")
    assert model.to_dict()["CallbackURL"] == CALLBACK
    assert model.to_dict()["DeadLetterQueueURL"] == "d"
    assert model.to_dict()["ID"] == "a"


def test_consumer_format_as_relative_link():
    controller = consumer_controller(None, None)
    assert controller.path == "/channel/:channelId/consumer/:consumerId"
    link = controller.format_as_relative_link({"channelId": "someChannelId", "consumerId": "someConsumerId"})
    assert link == "/channel/someChannelId/consumer/someConsumerId"


def test_consumers_format_as_relative_link():
    controller = ConsumersController(consumer_controller(None, None), None)
    assert controller.path == "/channel/:channelId/consumers"
    assert controller.format_as_relative_link({"channelId": "someChannelId"}) == "/channel/someChannelId/consumers"


def test_consumers_list_pagination(world):
    controller = ConsumersController(consumer_controller(world.channel_repo, world.consumer_repo), world.consumer_repo)
    url = controller.format_as_relative_link({"channelId": CONSUMER_CHANNEL})
    assert walk_list(controller, url) >= 1


def test_consumers_list_generic_error(world):
    broken = BrokenRepo("GetList error")
    controller = ConsumersController(consumer_controller(world.channel_repo, broken), broken)
    response = serve(Request("GET", "/channel/" + CONSUMER_CHANNEL + "/consumers"), controller)
    assert response.status == 500
    assert response.text == "GetList error"


def test_consumers_list_no_channel(world):
    controller = ConsumersController(consumer_controller(world.channel_repo, world.consumer_repo), world.consumer_repo)
    response = serve(Request("GET", "/channel/no-such-channel-for-get-consumers/consumers"), controller)
    assert response.status == 404


def consumer_url(consumer_id):
    return "/channel/" + CONSUMER_CHANNEL + "/consumer/" + consumer_id


def test_consumer_get_success(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    url = consumer_url(CONSUMER_PREFIX + "0")
    response = serve(Request("GET", url), controller)
    assert response.status == 200
    body = response.json()
    assert body["ID"] == CONSUMER_PREFIX + "0"
    assert CONSUMER_PREFIX in body["Name"]
    assert body["Token"] == "token"
    assert body["CallbackURL"] == CALLBACK
    assert body["DeadLetterQueueURL"] == url + "/dlq"
    stored = world.consumer_repo.get(CONSUMER_CHANNEL, CONSUMER_PREFIX + "0")
    assert parse_time(body["ChangedAt"]) == stored.updated_at
    assert response.headers[HEADER_LAST_MODIFIED].endswith(" GMT")


def test_consumer_get_not_found(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    assert serve(Request("GET", consumer_url("missing")), controller).status == 404


def last_modified(world, consumer_id):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    return serve(Request("GET", consumer_url(consumer_id)), controller).headers[HEADER_LAST_MODIFIED]


def test_consumer_delete_success(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    headers = {HEADER_UNMODIFIED_SINCE: last_modified(world, DELETE_OK)}
    response = serve(Request("DELETE", consumer_url(DELETE_OK), headers), controller)
    assert response.status == 204
    assert response.body == b""
    with pytest.raises(RecordNotFound):
        world.consumer_repo.get(CONSUMER_CHANNEL, DELETE_OK)


def test_consumer_delete_without_last_modified(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    assert serve(Request("DELETE", consumer_url(DELETE_FAILED)), controller).status == 400


def test_consumer_delete_with_incorrect_last_modified(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    headers = {HEADER_UNMODIFIED_SINCE: OLD_HTTP_TIME}
    assert serve(Request("DELETE", consumer_url(DELETE_FAILED), headers), controller).status == 412


def test_consumer_delete_not_found(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    assert serve(Request("DELETE", consumer_url("missing")), controller).status == 404


def test_consumer_delete_get_error(world):
    controller = consumer_controller(world.channel_repo, BrokenRepo("test error"))
    response = serve(Request("DELETE", consumer_url("anything")), controller)
    assert response.status == 500
    assert response.text == "test error"


class FailingDeleteRepo(FakeConsumerRepo):
    def delete(self, consumer):
        raise RuntimeError("test error")


def test_consumer_delete_error(world):
    repo = FailingDeleteRepo(Clock(), world.channel_repo)
    repo.store(ConsumerRecord(world.channel, DELETE_FAILED, "token", CALLBACK, DELETE_FAILED))
    controller = consumer_controller(world.channel_repo, repo)
    model_time = serve(Request("GET", consumer_url(DELETE_FAILED)), controller).headers[HEADER_LAST_MODIFIED]
    response = serve(Request("DELETE", consumer_url(DELETE_FAILED), {HEADER_UNMODIFIED_SINCE: model_time}), controller)
    assert response.status == 500
    assert response.text == "test error"


def test_consumer_put_create_with_name_and_token(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    form = {"token": "token", "name": "CREATE NAME", "callbackUrl": CALLBACK + "test1"}
    response = serve(Request("PUT", consumer_url("put-consumer-id"), FORM, form=form), controller)
    assert response.status == 200
    body = response.json()
    assert body["ID"] == "put-consumer-id"
    assert body["Name"] == "CREATE NAME"
    assert body["CallbackURL"] == CALLBACK + "test1"
    assert body["Token"] == "token"


def test_consumer_put_create_without_name_and_token(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    form = {"callbackUrl": CALLBACK + "test1"}
    response = serve(Request("PUT", consumer_url("put-consumer-id-without-data"), FORM, form=form), controller)
    assert response.status == 200
    body = response.json()
    assert body["ID"] == "put-consumer-id-without-data"
    assert body["Name"] == "put-consumer-id-without-data"
    assert body["CallbackURL"] == CALLBACK + "test1"
    assert len(body["Token"]) == 12


def test_consumer_put_update(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    url = consumer_url(CONSUMER_PREFIX + "0")
    got = serve(Request("GET", url), controller)
    assert got.status == 200
    headers = {**FORM, HEADER_UNMODIFIED_SINCE: got.headers[HEADER_LAST_MODIFIED]}
    form = {"token": "secret", "callbackUrl": CALLBACK + "u-test1"}
    response = serve(Request("PUT", url, headers, form=form), controller)
    assert response.status == 200
    updated = response.json()
    assert updated["CallbackURL"] == CALLBACK + "u-test1"
    assert updated["Token"] == "secret"
    assert parse_time(got.json()["ChangedAt"]) < parse_time(updated["ChangedAt"])


def test_consumer_put_channel_not_found(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    url = "/channel/channel-does-exist/consumer/" + CONSUMER_PREFIX
    assert serve(Request("PUT", url, FORM, form={}), controller).status == 404


def test_consumer_put_unsupported_media_type(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    headers = {HEADER_UNMODIFIED_SINCE: last_modified(world, DELETE_FAILED)}
    assert serve(Request("PUT", consumer_url(DELETE_FAILED), headers, form={}), controller).status == 415


@pytest.mark.parametrize("callback", [None, "this is not a URL", "./relative"])
def test_consumer_put_bad_callback(world, callback):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    headers = {**FORM, HEADER_UNMODIFIED_SINCE: last_modified(world, DELETE_FAILED)}
    form = {} if callback is None else {"callbackUrl": callback}
    assert serve(Request("PUT", consumer_url(DELETE_FAILED), headers, form=form), controller).status == 400


def test_consumer_put_missing_unmodified_since(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    assert serve(Request("PUT", consumer_url(DELETE_FAILED), FORM), controller).status == 400


def test_consumer_put_precondition_failed(world):
    controller = consumer_controller(world.channel_repo, world.consumer_repo)
    headers = {**FORM, HEADER_UNMODIFIED_SINCE: OLD_HTTP_TIME}
    assert serve(Request("PUT", consumer_url(DELETE_FAILED), headers), controller).status == 412


class FailingStoreRepo(FakeConsumerRepo):
    def store(self, consumer):
        raise RuntimeError("error")


def test_consumer_put_store_error(world):
    repo = FailingStoreRepo(Clock(), world.channel_repo)
    existing = world.consumer_repo.get(CONSUMER_CHANNEL, DELETE_FAILED)
    repo.consumers[(CONSUMER_CHANNEL, DELETE_FAILED)] = existing
    controller = consumer_controller(world.channel_repo, repo)
    headers = {**FORM, HEADER_UNMODIFIED_SINCE: last_modified(world, DELETE_FAILED)}
    response = serve(Request("PUT", consumer_url(DELETE_FAILED), headers, form={"callbackUrl": CALLBACK}), controller)
    assert response.status == 500
    assert response.text == "error"