import queue
import socket
import time
from datetime import datetime, timedelta, timezone

import pytest

from metricgateway.carbon import new_carbon_datapoint
from metricgateway.carbon_forwarder import CarbonForwarder
from metricgateway.carbon_listener import CarbonListener
from metricgateway.filtering import FilterObj
from metricgateway.protocol import Datapoint

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class QueueSink:
    def __init__(self):
        self.points = queue.Queue()

    def add_datapoints(self, points):
        for point in points:
            self.points.put(point)

    def next(self, timeout=5.0):
        return self.points.get(timeout=timeout)


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


def stat_value(dps, name):
    found = [dp for dp in dps if dp.metric == name]
    assert len(found) == 1
    return found[0].value


@pytest.mark.parametrize("protocol", ["tcp", "udp"])
def test_bad_listen_address_raises(protocol):
    with pytest.raises(OSError):
        CarbonListener(QueueSink(), listen_addr="127.0.0.1:90090999r", protocol=protocol)


def test_unknown_protocol_raises():
    with pytest.raises(ValueError, match="not recognized"):
        CarbonListener(QueueSink(), listen_addr="127.0.0.1:90090999r", protocol="jack")


def test_protocol_name_is_case_insensitive():
    with CarbonListener(QueueSink(), listen_addr="127.0.0.1:0", protocol="TCP") as listener:
        assert listener.protocol == "tcp"
        assert listener.address()[1] > 0


def test_tcp_idle_connection_times_out():
    with CarbonListener(
        QueueSink(),
        listen_addr="127.0.0.1:0",
        connection_timeout=0.01,
        server_accept_deadline=0.01,
    ) as listener:
        client = socket.create_connection(listener.address())
        try:
            assert wait_for(lambda: listener.stats.idle_timeouts > 0)
        finally:
            client.close()
        assert stat_value(listener.datapoints(), "idle_timeouts") == 1
        assert wait_for(lambda: listener.stats.retried_listen_errors > 0)
        assert stat_value(listener.datapoints(), "retry_listen_errors") > 0


def test_tcp_invalid_line_is_counted():
    with CarbonListener(QueueSink(), listen_addr="127.0.0.1:0") as listener:
        assert stat_value(listener.datapoints(), "invalid_datapoints") == 0
        with socket.create_connection(listener.address()) as client:
            client.sendall(b"hello world bob\n")
        assert wait_for(lambda: listener.stats.invalid_datapoints > 0)
        assert stat_value(listener.datapoints(), "invalid_datapoints") == 1


def test_tcp_receives_from_forwarder():
    sink = QueueSink()
    with CarbonListener(sink, listen_addr="127.0.0.1:0") as listener:
        port = listener.address()[1]
        forwarder = CarbonForwarder("127.0.0.1", port, filters=FilterObj(deny=["blarg"]))
        try:
            assert stat_value(forwarder.datapoints(), "returned_connections") == 1

            forwarder.add_datapoints([Datapoint("blarg", {}, 1)])
            assert forwarder.filtered_datapoints == 1

            stamp = datetime(2020, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
            forwarder.add_datapoints([Datapoint("dice.roll", {}, 3, timestamp=stamp)])
            received = sink.next()
            assert received.metric == "dice.roll"
            assert received.value == 3
            assert received.timestamp == stamp
            assert received.dimensions == {}

            dps = forwarder.datapoints()
            assert stat_value(dps, "reused_connections") == 2
            assert stat_value(dps, "returned_connections") == 3
        finally:
            forwarder.close()


def test_tcp_forwards_native_carbon_line():
    sink = QueueSink()
    with CarbonListener(sink, listen_addr="127.0.0.1:0") as listener:
        forwarder = CarbonForwarder("127.0.0.1", listener.address()[1])
        try:
            dp = new_carbon_datapoint("dice.roll 3 3", listener.deconstructor)
            forwarder.add_datapoints([dp])
            received = sink.next()
            assert received.metric == "dice.roll"
            assert received.value == 3
            assert received.timestamp == EPOCH + timedelta(seconds=3)
        finally:
            forwarder.close()


def test_udp_invalid_line_is_counted():
    with CarbonListener(QueueSink(), listen_addr="127.0.0.1:0", protocol="udp") as listener:
        assert stat_value(listener.datapoints(), "invalid_datapoints") == 0
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(b"hello world bob\n", listener.address())
        assert wait_for(lambda: listener.stats.invalid_datapoints > 0)
        assert stat_value(listener.datapoints(), "invalid_datapoints") == 1


def test_udp_idle_times_out():
    with CarbonListener(
        QueueSink(),
        listen_addr="127.0.0.1:0",
        protocol="udp",
        connection_timeout=0.01,
        server_accept_deadline=0.01,
    ) as listener:
        assert wait_for(lambda: listener.stats.idle_timeouts > 0)
        assert stat_value(listener.datapoints(), "idle_timeouts") > 0


@pytest.mark.parametrize("payload", [b"dice.roll 3 3\n", b"dice.roll 3 3"])
def test_udp_valid_datapoint(payload):
    sink = QueueSink()
    with CarbonListener(sink, listen_addr="127.0.0.1:0", protocol="udp") as listener:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            sent = client.sendto(payload, listener.address())
        assert sent == len(payload)
        received = sink.next()
        assert received.metric == "dice.roll"
        assert received.value == 3


def test_udp_float_timestamp():
    sink = QueueSink()
    with CarbonListener(sink, listen_addr="127.0.0.1:0", protocol="udp") as listener:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(b"dice.roll 3 1519398226.544148", listener.address())
        received = sink.next()
        assert received.metric == "dice.roll"
        assert received.value == 3
        assert (received.timestamp - EPOCH) // timedelta(milliseconds=1) == 1519398226544


def test_udp_port_in_use_raises():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as taken:
        taken.bind(("127.0.0.1", 0))
        port = taken.getsockname()[1]
        with pytest.raises(OSError, match="cannot listen to addr"):
            CarbonListener(QueueSink(), listen_addr=f"127.0.0.1:{port}", protocol="udp")