"""Tests for the relay and sensor drivers."""

import json

import httpx
import pytest

from autohidro.drivers.actuator_http import HttpRelayBoard
from autohidro.drivers.actuators_sim import SimulatedRelayBank
from autohidro.drivers.sensors_sim import PatternConfig, SimulatedClimateSensor


class RelayBoardStub:
    """Serves the board's /relay/{n} JSON API from a dict."""

    def __init__(self):
        self.states = {1: "off", 2: "on"}
        self.requests: list[httpx.Request] = []
        self.down = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("board unreachable", request=request)
        relay = int(request.url.path.rsplit("/", 1)[-1])
        if relay not in self.states:
            return httpx.Response(404, json={"error": "no such relay"})
        if request.method == "POST":
            self.states[relay] = json.loads(request.content)["state"]
        return httpx.Response(200, json={"state": self.states[relay]})


@pytest.fixture
def board():
    return RelayBoardStub()


@pytest.fixture
def relay(board):
    return HttpRelayBoard(base_url="http://relay.local/", transport=httpx.MockTransport(board))


class TestHttpRelayBoard:
    async def test_set_output_posts_state(self, relay, board):
        assert await relay.set_output(1, True) is True

        req = board.requests[-1]
        assert req.method == "POST"
        assert str(req.url) == "http://relay.local/relay/1"
        assert json.loads(req.content) == {"state": "on"}
        assert board.states[1] == "on"

    async def test_get_output_reads_state(self, relay):
        assert await relay.get_output(2) is True
        assert await relay.get_output(1) is False

    async def test_http_error_reports_failure(self, relay):
        assert await relay.set_output(9, True) is False

    async def test_unreachable_board(self, relay, board):
        await relay.set_output(1, True)
        board.down = True

        assert await relay.set_output(1, False) is False
        # last value the board acknowledged
        assert await relay.get_output(1) is True


class TestSimulatedRelayBank:
    async def test_switching(self):
        bank = SimulatedRelayBank(relay_count=2)

        assert await bank.set_output(2, True) is True
        assert await bank.get_output(2) is True
        assert bank.states() == {1: False, 2: True}

    async def test_failing_relay_refuses(self):
        bank = SimulatedRelayBank(relay_count=2)
        bank.fail(1)

        assert await bank.set_output(1, True) is False
        assert bank.states()[1] is False

        bank.fail(1, failing=False)
        assert await bank.set_output(1, True) is True

    async def test_unknown_relay(self):
        bank = SimulatedRelayBank(relay_count=2)

        assert await bank.set_output(3, True) is False
        with pytest.raises(KeyError):
            await bank.get_output(3)


class TestSimulatedClimateSensor:
    async def test_manual_values(self):
        sensor = SimulatedClimateSensor(noise=0.0)
        sensor.set_manual(31.24, 55.0)

        assert await sensor.sample() == {"temperature": 31.2, "humidity": 55.0}

    async def test_disabled_returns_nothing(self):
        sensor = SimulatedClimateSensor()
        sensor.disable()

        assert await sensor.sample() is None
        sensor.enable()
        assert set(await sensor.sample()) == {"temperature", "humidity"}

    async def test_sine_pattern_stays_in_range(self):
        sensor = SimulatedClimateSensor()
        sensor.set_pattern(PatternConfig(type="sine", humidity=95.0, humidity_amplitude=20.0, noise=0.0))

        sample = await sensor.sample()

        assert 0.0 <= sample["humidity"] <= 100.0
        assert sensor.status()["pattern"]["type"] == "sine"

    async def test_enabled_sensor_always_reports(self):
        sensor = SimulatedClimateSensor()

        samples = [await sensor.sample() for _ in range(50)]

        assert all(s is not None for s in samples)
