import threading
from types import SimpleNamespace

from mbmd.homie import HomieMeter, HomieRunner
from mbmd.mqtt import MqttClient, MqttOptions, mqtt_device_topic
from mbmd.snips import Measurement, QuerySnip

DEVICE = "SDM1.1"
BASE = f"homie/{mqtt_device_topic(DEVICE)}"
VOLTAGE = Measurement("VoltageL1", "Voltage L1", "V")
CURRENT = Measurement("CurrentL1", "Current L1", "A")


class FakeInfo:
    rc = 0

    def wait_for_publish(self, timeout=None):
        return None

    def is_published(self):
        return True


class FakePaho:
    def __init__(self, retained=None):
        self.lock = threading.Lock()
        self.published = []
        self.retained = dict(retained or {})
        self.callbacks = {}
        self.will = None
        self.disconnected = False

    def username_pw_set(self, username, password=None):
        pass

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self.will = (topic, payload, qos, retain)

    def tls_set(self):
        pass

    def connect(self, host, port):
        return 0

    def loop_start(self):
        pass

    def loop_stop(self):
        pass

    def disconnect(self):
        self.disconnected = True

    def publish(self, topic, payload=None, qos=0, retain=False):
        with self.lock:
            self.published.append((topic, payload, retain))
            if retain:
                if not payload:
                    self.retained.pop(topic, None)
                else:
                    self.retained[topic] = payload
        return FakeInfo()

    def message_callback_add(self, sub, callback):
        self.callbacks[sub] = callback

    def message_callback_remove(self, sub):
        self.callbacks.pop(sub, None)

    def subscribe(self, topic, qos=0):
        prefix = topic[:-1]
        callback = self.callbacks[topic]
        with self.lock:
            matching = [(t, p) for t, p in self.retained.items() if t.startswith(prefix)]
        for t, p in matching:
            payload = p if isinstance(p, bytes) else p.encode()
            callback(self, None, SimpleNamespace(topic=t, payload=payload))
        return (0, 1)

    def unsubscribe(self, topic):
        return (0, 2)


def make_meter(retained=None):
    paho = FakePaho(retained)
    options = MqttOptions(brokers=["tcp://localhost:1883"], client_id="mbmd")
    client = MqttClient(options, 0, False, client=paho)
    return HomieMeter(client, "homie", DEVICE, timeout=0), paho


def test_publish_meter_attributes():
    meter, paho = make_meter()
    meter.publish_meter(SimpleNamespace(manufacturer="Eastron", model="SDM"))
    assert paho.retained[f"{BASE}/$homie"] == "4.0"
    assert paho.retained[f"{BASE}/$name"] == DEVICE
    assert paho.retained[f"{BASE}/$state"] == "init"
    assert paho.retained[f"{BASE}/$nodes"] == "meter"
    assert paho.retained[f"{BASE}/meter/$name"] == "Eastron"
    assert paho.retained[f"{BASE}/meter/$type"] == "SDM"
    assert (f"{BASE}/$implementation", "MBMD", True) in paho.published


def test_publish_meter_clears_stale_topics():
    meter, paho = make_meter({f"{BASE}/$stale": b"x", f"{BASE}/meter/old": b"1"})
    meter.publish_meter(SimpleNamespace(manufacturer="Eastron", model="SDM"))
    assert f"{BASE}/$stale" not in paho.retained
    assert (f"{BASE}/$stale", b"", True) in paho.published
    # the node subtree is an exception at device level
    assert paho.retained[f"{BASE}/meter/old"] == b"1"


def test_publish_message_announces_property():
    meter, paho = make_meter()
    meter.publish_message(QuerySnip(DEVICE, VOLTAGE, 230.0))
    assert (f"{BASE}/meter/voltagel1", "230.000", False) in paho.published
    assert paho.retained[f"{BASE}/meter/$properties"] == "voltagel1"
    assert paho.retained[f"{BASE}/meter/voltagel1/$name"] == "Voltage L1"
    assert paho.retained[f"{BASE}/meter/voltagel1/$unit"] == "V"
    assert paho.retained[f"{BASE}/meter/voltagel1/$datatype"] == "float"


def test_properties_sorted_and_published_once():
    meter, paho = make_meter()
    meter.publish_message(QuerySnip(DEVICE, VOLTAGE, 230.0))
    meter.publish_message(QuerySnip(DEVICE, CURRENT, 1.5))
    assert paho.retained[f"{BASE}/meter/$properties"] == "currentl1,voltagel1"
    count = sum(1 for t, _, _ in paho.published if t == f"{BASE}/meter/$properties")
    meter.publish_message(QuerySnip(DEVICE, VOLTAGE, 231.0))
    again = sum(1 for t, _, _ in paho.published if t == f"{BASE}/meter/$properties")
    assert again == count
    assert meter.observed == {VOLTAGE, CURRENT}


def test_stale_property_is_cleared():
    meter, paho = make_meter({f"{BASE}/meter/gone/$name": b"old"})
    meter.publish_message(QuerySnip(DEVICE, VOLTAGE, 230.0))
    assert f"{BASE}/meter/gone/$name" not in paho.retained
    assert f"{BASE}/meter/voltagel1/$unit" in paho.retained


def test_status_changes_only():
    meter, paho = make_meter()
    meter.status(False)
    assert f"{BASE}/$state" not in paho.retained
    meter.status(True)
    assert paho.retained[f"{BASE}/$state"] == "ready"
    before = len(paho.published)
    meter.status(True)
    assert len(paho.published) == before
    meter.status(False)
    assert paho.retained[f"{BASE}/$state"] == "alert"
    assert meter.online is False


def test_unregister():
    meter, paho = make_meter()
    meter.unregister()
    assert paho.retained[f"{BASE}/$state"] == "disconnected"
    assert paho.disconnected is True


def test_runner_creates_meter_per_device():
    created = []

    def factory(options, qos, verbose):
        paho = FakePaho()
        created.append((options, paho))
        return MqttClient(options, qos, verbose, client=paho)

    info = SimpleNamespace(
        device_descriptor_by_id=lambda _id: SimpleNamespace(manufacturer="Eastron", model="SDM")
    )
    options = MqttOptions(brokers=["tcp://localhost:1883"], client_id="mbmd")
    runner = HomieRunner(info, None, options, 1, "homie", client_factory=factory, timeout=0)
    runner.run([QuerySnip(DEVICE, VOLTAGE, 230.0), QuerySnip(DEVICE, CURRENT, 2.0)])

    assert len(created) == 1
    opts, paho = created[0]
    assert opts.client_id == f"mbmd-{mqtt_device_topic(DEVICE)}"
    assert paho.will == (f"{BASE}/$state", "lost", 1, True)
    assert paho.retained[f"{BASE}/meter/$name"] == "Eastron"
    assert paho.retained[f"{BASE}/$state"] == "disconnected"
    assert paho.disconnected is True
    assert options.client_id == "mbmd"
    assert list(runner.meters) == [DEVICE]