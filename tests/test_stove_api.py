from unittest import mock

import pytest
import requests

from automation.stove_api import (
    StoveApi,
    StoveApiError,
    StoveState,
    StoveTimeoutError,
    parse_status,
)


def response(status_code=200, payload=None):
    resp = mock.Mock(status_code=status_code)
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload if payload is not None else {}
    return resp


@pytest.fixture
def http_get():
    with mock.patch("automation.stove_api.requests.get") as patched:
        yield patched


@pytest.fixture
def api():
    return StoveApi("KEY", base_url="http://stove.test/json/", timeout=3, retries=2)


@pytest.mark.parametrize("description, state", [
    ("WORK 1", StoveState.RUNNING),
    ("MODULATION", StoveState.RUNNING),
    ("START 2", StoveState.IGNITING),
    ("Accensione", StoveState.IGNITING),
    ("Spento", StoveState.OFF),
    ("OFF", StoveState.OFF),
    ("STANDBY", StoveState.STANDBY),
    ("FINAL CLEANING", StoveState.STANDBY),
    ("ALARM 4", StoveState.ERROR),
    ("Allarme accensione", StoveState.ERROR),
    ("", StoveState.UNKNOWN),
    (None, StoveState.UNKNOWN),
    ("???", StoveState.UNKNOWN),
])
def test_parse_status(description, state):
    assert parse_status(description) is state


def test_only_igniting_and_running_count_as_on():
    assert {s for s in StoveState if s.is_on} == {StoveState.IGNITING, StoveState.RUNNING}


def test_get_status(api, http_get):
    http_get.return_value = response(payload={
        "StatusDescription": "WORK 1", "Error": 0, "ErrorDescription": "",
    })

    status = api.get_status()

    assert status.state is StoveState.RUNNING
    assert status.description == "WORK 1"
    http_get.assert_called_once_with("http://stove.test/json/GetStatus/KEY", timeout=3)


def test_levels_read_result_field(api, http_get):
    http_get.return_value = response(payload={"Result": 4})
    assert api.get_power_level() == 4
    http_get.return_value = response(payload={})
    assert api.get_fan_level() is None


def test_set_power_appends_argument(api, http_get):
    http_get.return_value = response(payload={"Result": 3})
    api.set_power_level(3)
    http_get.assert_called_once_with("http://stove.test/json/SetPower/KEY;3", timeout=3)


def test_out_of_range_levels_never_reach_the_network(api, http_get):
    with pytest.raises(ValueError):
        api.set_power_level(6)
    with pytest.raises(ValueError):
        api.set_fan_level(0)
    with pytest.raises(ValueError):
        api.ignite(9)
    http_get.assert_not_called()


def test_ignite_sends_only_ignit(api, http_get):
    http_get.return_value = response(payload={"Success": True})

    assert api.ignite(4) == {"Success": True}
    http_get.assert_called_once_with("http://stove.test/json/Ignit/KEY", timeout=3)


def test_timeouts_are_retried(api, http_get):
    http_get.side_effect = [requests.Timeout(), requests.Timeout(),
                            response(payload={"StatusDescription": "Spento"})]

    assert api.get_status().state is StoveState.OFF
    assert http_get.call_count == 3


def test_timeout_after_last_retry(api, http_get):
    http_get.side_effect = requests.Timeout()
    with pytest.raises(StoveTimeoutError):
        api.shutdown()
    assert http_get.call_count == 3


def test_connection_error_is_not_retried(api, http_get):
    http_get.side_effect = requests.ConnectionError("refused")
    with pytest.raises(StoveApiError):
        api.get_status()
    assert http_get.call_count == 1


@pytest.mark.parametrize("resp", [
    response(status_code=503),
    response(payload=ValueError("not json")),
])
def test_bad_responses_raise(api, http_get, resp):
    http_get.return_value = resp
    with pytest.raises(StoveApiError):
        api.get_status()
