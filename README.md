# mbmd

Server-side building blocks for a ModBus meter daemon. They take the
measurements that were read from energy meters, keep them in memory and pass
them on to HTTP, WebSocket, MQTT, Homie and InfluxDB consumers.

## Messages

- `QuerySnip` (`mbmd.snips`) holds one measurement of one device, such as
  `POWER_L1`, with its value and timestamp. `to_json()` writes the timestamp
  in Unix milliseconds.
- `ControlSnip` (`mbmd.snips`) holds the run-time state of a device as a
  `RuntimeInfo` (`mbmd.runtimeinfo`): whether it is online, and how many
  requests and errors it has seen. `RuntimeInfo.is_queryable()` lets an
  offline device be queried again once one second has passed since it failed.
- `snip_runner` and `control_runner` wrap a consumer so that it accepts only
  snips of the right kind. Any other object raises `TypeError`.

## Consumers

| Module | Class | Purpose |
| --- | --- | --- |
| `mbmd.broadcast` | `Broadcaster` | Copies every item of a source to each attached consumer, each in its own thread. |
| `mbmd.cache` | `Cache` | Keeps the latest readings of each device and averages them over the last minute. |
| `mbmd.status` | `Status` | Tracks uptime, memory, thread count, and the online state and request and error rates of each device. |
| `mbmd.mqtt` | `MqttRunner` | Publishes readings to plain MQTT topics such as `<topic>/<device>/Power/L1`. |
| `mbmd.homie` | `HomieRunner` | Publishes every device and its readings by the Homie 4.0 convention, with one MQTT client per device. |
| `mbmd.influx` | `Influx` | Writes readings as line protocol points to an InfluxDB `/api/v2/write` endpoint. |
| `mbmd.socket_hub` | `SocketHub` | Streams readings, and the status once a second, to WebSocket clients. |
| `mbmd.http` | `Httpd` | Serves the web UI, the JSON API and the WebSocket feed through aiohttp. |

## Example

```python
from datetime import datetime, timezone

from mbmd.cache import Cache
from mbmd.runtimeinfo import RuntimeInfo
from mbmd.snips import POWER_L1, ControlSnip, QuerySnip
from mbmd.status import Status


class Devices:
    def device_descriptor_by_id(self, device_id):
        return None


status = Status(Devices())
status.consume([ControlSnip("SDM1.1", RuntimeInfo(online=True))])

cache = Cache(None, status)
cache.run([QuerySnip("SDM1.1", POWER_L1, 230.5, datetime.now(timezone.utc))])
cache.current("SDM1.1").values[POWER_L1]  # 230.5
```

In a running daemon, a `Broadcaster` feeds the consumers from one stream of
snips:

```python
from mbmd.broadcast import Broadcaster
from mbmd.snips import snip_runner

hub = Broadcaster(snips)
hub.attach_runner(snip_runner(cache.run))
hub.run()  # blocks until `snips` ends and every runner has finished
```

## HTTP API

`Httpd(device_info, cache, assets=None).make_app(hub, status)` builds an
aiohttp application. `Httpd.run(hub, status, "host:port")` serves it. The
application has these routes:

- `GET /`: `index.html` from the assets directory (default `assets`). The
  fields `{{ .SoftwareVersion }}` and `{{ .RuntimeVersion }}` are filled in.
  Any other field raises `ValueError` when the application is built.
- `/css` and `/js`: static files, served when those folders exist under the
  assets directory.
- `GET /api/last` and `GET /api/last/{id}`: the latest readings.
- `GET /api/avg` and `GET /api/avg/{id}`: readings averaged over the last minute.
- `GET /api/status`: daemon and device status.
- `GET /ws`: a WebSocket stream of snips and status.

API responses carry a JSON content type and `Access-Control-Allow-Origin: *`.
Readings come out as objects with their keys in a fixed order: `Timestamp`
(RFC 3339), `Unix`, then the measurements sorted by name. A single unknown or
offline device gets a `400` response with the reason. If no device is online,
the list routes answer `400` with `all meters are inactive`.

## Helpers

```python
from mbmd.apidata import encode_pairs
from mbmd.influx import line_protocol
from mbmd.mqtt import mqtt_device_topic, topic_from_measurement

mqtt_device_topic("SDM1.1")          # "sdm1-1"
topic_from_measurement("PowerL1")    # "Power/L1"
topic_from_measurement("Frequency")  # "Frequency"
encode_pairs([("Unix", 1), ("PowerL1", 230.5)])
# {"Unix":1,"PowerL1":230.500000}
```

`line_protocol(measurement, tags, fields, timestamp)` encodes one InfluxDB
point. Its tags and fields are sorted by key and its timestamp is in
nanoseconds.

## Errors

- `Cache.current` and `Cache.average` raise `DeviceNotFoundError` for an id
  the cache has never seen, and `DeviceUnavailableError` for a known device
  that is offline. `Cache.purge` raises `DeviceNotFoundError` for an unknown
  id. Both errors are subclasses of `LookupError`.
- `MqttClient` raises `ValueError` when no broker is configured and
  `ConnectionError` when it cannot connect.
- `Influx` raises `ValueError` when the database or the measurement is
  missing. Failed writes are logged, and `write_point` returns `False`.

## What this package does not do

It does not talk to meters. Nothing in it opens a ModBus connection or
queries devices. It has no query engine that produces `QuerySnip` and
`ControlSnip` messages, and no command-line program. Snips must come from
your own code. A `device_info` object only has to offer
`device_descriptor_by_id(device_id)`, which returns an object with
`manufacturer` and `model` attributes, or `None`.