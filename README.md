# hookbroker

The HTTP API layer of a webhook message broker. Producers publish messages
to channels. Consumers subscribe to channels with a callback URL. Messages
that cannot be delivered end up in a dead-letter queue for each consumer.
They can be requeued from there.

The package uses only the standard library.

## Modules

- `hookbroker.web` holds the request and response types (`Request`,
  `Response`), a path-template `Router`, and `setup_api_routes`. It also has
  the helpers the controllers share: `json_response`, `error_response`,
  `format_url`, `random_token`, `get_pagination`, `get_pagination_links`,
  `check_form_content_type`, `check_conditional_update`, `get_update_data`
  and `request_id`. It defines the errors `HTTPError`, `NotFound`,
  `BadRequest`, `UnsupportedMediaType` and `PreconditionFailed`, and the
  repository error `RecordNotFound`.
- `hookbroker.stakeholders` holds `ProducerController`,
  `ProducersController` and `StatusController`, together with the models
  `MsgStakeholder`, `ListResult` and `AppData`.
- `hookbroker.channels` holds `ChannelController`, `ChannelsController`,
  `ConsumerController` and `ConsumersController`, together with
  `ChannelModel` and `ConsumerModel`.
- `hookbroker.messages` holds `MessageController`, `MessagesController`
  and `DLQController`, together with `MessageModel`, `DeliveryJobModel`,
  `DeadDeliveryJobModel` and `DLQList`.
- `hookbroker.server` holds `Controllers`, `new_router`, `configure_api`,
  `ApiServer` and `ServerLifecycleListener`.

## Endpoints

| Path | Methods | Controller |
| --- | --- | --- |
| `/_status` | GET | `StatusController` |
| `/producers` | GET | `ProducersController` |
| `/producer/:producerId` | GET, PUT | `ProducerController` |
| `/channels` | GET | `ChannelsController` |
| `/channel/:channelId` | GET, PUT | `ChannelController` |
| `/channel/:channelId/consumers` | GET | `ConsumersController` |
| `/channel/:channelId/consumer/:consumerId` | GET, PUT, DELETE | `ConsumerController` |
| `/channel/:channelId/messages` | GET | `MessagesController` |
| `/channel/:channelId/message/:messageId` | GET | `MessageController` |
| `/channel/:channelId/consumer/:consumerId/dlq` | GET, POST | `DLQController` |

## Protocol

- A PUT, or a POST to a DLQ, must send
  `Content-Type: application/x-www-form-urlencoded`. Any other content type
  gets `415`.
- To update an existing producer or channel, or to update or delete an
  existing consumer, send `If-Unmodified-Since` set to the resource's
  `Last-Modified` value. If the header is missing, the answer is `400`. If it
  does not match, the answer is `412`.
- If the form has no `token` field, a random 12-character alphanumeric token
  is generated. If it has no `name` field, the resource id is used as the
  name.
- A consumer's `callbackUrl` must be an absolute URL, which means it must
  have a scheme. Otherwise the answer is `400`.
- Deleting a consumer answers `204`.
- To requeue dead jobs, POST a `requeue` form field equal to the consumer's
  token. The answer is `202`. A missing or wrong value gets `400`.
- In list responses, `Pages` holds `previous` and `next` links. Each link
  carries the cursor that the repository returned, in the query string. The
  repositories decide the page size.
- A path with no matching route gets `404`. A known path called with an
  unsupported method gets `405`.
- When a request goes through `Router.__call__`, the response carries an
  `X-Request-ID` header. The request's own `X-Request-ID` is reused when it
  has one; otherwise a new id is generated. Each request is logged on the
  `hookbroker.access` logger.

## Repositories

Each controller is given repository objects, duck-typed, that it calls:

- app repository: `get_app()` returns an object with `seed_data` and
  `status`
- producer repository: `get(producer_id)`, `store(producer)` and
  `get_list(pagination)`
- channel repository: `get(channel_id)`, `store(channel)` and
  `get_list(pagination)`
- consumer repository: `get(channel_id, consumer_id)`, `store(consumer)`,
  `delete(consumer)` and `get_list(channel_id, pagination)`
- message repository: `get(channel_id, message_id)` and
  `get_messages_for_channel(channel_id, pagination)`
- delivery job repository: `get_jobs_for_message(message, pagination)`,
  `get_jobs_for_consumer(consumer, status, pagination)` and
  `requeue_dead_jobs_for_consumer(consumer)`

The list methods return a pair `(items, pagination)`. Here `pagination` is
a `hookbroker.web.Pagination` or `None`. To get a `404` rather than a `500`
when deleting a consumer, listing consumers or messages, or reading a DLQ,
raise `RecordNotFound` for a record that does not exist.

## Usage

```python
from hookbroker.web import Router, Request, setup_api_routes
from hookbroker.stakeholders import StatusController

router = Router()
setup_api_routes(router, StatusController(app_repository))
response = router(Request("GET", "/_status"))
print(response.status, response.json())
```

To run the API over HTTP:

1. Collect the controllers in `hookbroker.server.Controllers`. Fields that
   are left as `None` are skipped.
2. Build the router with `new_router(controllers)`.
3. Call `configure_api("host:port", listener, router)`. Port `0` picks a
   free port.

`configure_api` starts a threaded server in the background and returns an
`ApiServer`. Its `address` gives the bound host and port. Call `shutdown()`
to stop the server. When the call is made from the main thread, SIGINT and
SIGTERM also stop it. The default `ServerLifecycleListener` records each
step: `started` and `stopped` are `threading.Event`s, and `errors` lists
the errors that were reported. You can subclass it to react in other ways.

## What this package does not do

- It stores nothing. The repositories described above must come from your
  application.
- It has no broadcast endpoint and does not deliver messages to consumers.
  `ChannelController` needs a broadcast endpoint object only so that it can
  build `BroadcastURL` through `format_as_relative_link`.
- It has no configuration loading and no command-line program.

## Tests

```
pip install -e ".[test]"
pytest
```