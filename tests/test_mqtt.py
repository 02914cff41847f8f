import pytest

from mbmd.mqtt import (
    MqttClient,
    MqttOptions,
    MqttRunner,
    mqtt_device_topic,
    topic_from_measurement,
)
from mbmd.snips import FREQUENCY, VOLTAGE_L1, QuerySnip


class FakeInfo:
    def __init__(self, published=True, error=None, rc=0):
        self.published = published
        self.error = error
        self.rc = rc

    def wait_for_publish(self, timeout=None):
        if self.error is not None:
            raise self.error

    def is_published(self):
        return self.published


class FakeClient:
    def __init__(self, rc=0, connect_error=None):
        self.rc = rc
        self.connect_error = connect_error
        self.credentials = None
        self.will = None
        self.connected = None
        self.looping = False
        self.published = []

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self.will = (topic, payload, qos, retain)

    def tls_set(self):
        pass

    def connect(self, host, port):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = (host, port)
        return self.rc

    def loop_start(self):
        self.looping = True

    def loop_stop(self):
        self.looping = False

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return FakeInfo()


def options(**kwargs):
    return MqttOptions(brokers=["tcp://localhost:1884"], client_id="mbmd", **kwargs)


def test_device_topic():
    assert mqtt_device_topic("SDM1.1") == "sdm1-1"


@pytest.mark.parametrize("device_id", ["A.B.C", "x#Y.1", "SDM#2.3.4"])
def test_device_topic_invariants(device_id):
    topic = mqtt_device_topic(device_id)
    assert "." not in topic and "#" not in topic
    assert topic == topic.lower()
    assert topic.replace("-", "") == device_id.lower().replace("#", "").replace(".", "")


def test_topic_from_measurement():
    assert topic_from_measurement("VoltageL1") == "Voltage/L1"
    assert topic_from_measurement(VOLTAGE_L1) == topic_from_measurement("VoltageL1")
    assert topic_from_measurement(FREQUENCY) == "Frequency"


def test_clone_drops_will_and_copies_brokers():
    original = options(username="user", will=("t", "gone", 1, True))
    copy = original.clone()
    assert copy.will is None
    assert copy.username == original.username
    assert copy.client_id == original.client_id
    copy.brokers.append("tcp://other:1")
    assert original.brokers == ["tcp://localhost:1884"]


def test_client_connects_with_credentials():
    password = "password"
    fake = FakeClient()
    MqttClient(options(username="user", password=password), client=fake)
    assert fake.connected == ("localhost", 1884)
    assert fake.credentials == ("user", password)
    assert fake.looping is True


def test_client_requires_broker():
    with pytest.raises(ValueError):
        MqttClient(MqttOptions(), client=FakeClient())


def test_connect_failures_raise():
    with pytest.raises(ConnectionError):
        MqttClient(options(), client=FakeClient(rc=5))
    with pytest.raises(ConnectionError):
        MqttClient(options(), client=FakeClient(connect_error=OSError("refused")))


def test_publish_uses_qos_and_retain():
    fake = FakeClient()
    client = MqttClient(options(), qos=1, client=fake)
    client.publish("a/b", True, "hello")
    assert fake.published == [("a/b", "hello", 1, True)]


def test_wait_for_publish_results():
    client = MqttClient(options(), client=FakeClient())
    assert client.wait_for_publish(FakeInfo()) is True
    assert client.wait_for_publish(FakeInfo(published=False)) is False
    assert client.wait_for_publish(FakeInfo(error=RuntimeError("lost"))) is False
    assert client.wait_for_publish(FakeInfo(rc=4)) is False


def test_runner_sets_will_and_publishes():
    fake = FakeClient()
    runner = MqttRunner(options(), 1, "mbmd", client=fake)
    assert fake.will == ("mbmd/status", "disconnected", 1, True)

    runner.run([QuerySnip("SDM1.1", VOLTAGE_L1, 230.0)])
    assert fake.published[0] == ("mbmd/status", "connected", 1, True)
    topic, payload, qos, retained = fake.published[1]
    expected_topic = (
        f"mbmd/{mqtt_device_topic('SDM1.1')}/{topic_from_measurement(VOLTAGE_L1)}"
    )
    assert topic == expected_topic
    assert float(payload) == 230.0
    assert len(payload.split(".")[1]) == 3
    assert retained is False
    assert len(fake.published) == 2