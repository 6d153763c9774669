from __future__ import annotations

import asyncio
import json

import pytest

from sandboxgateway.errors import CliParseError, SandboxTransportError
from sandboxgateway.gateway.cli_bridge import CliBridge
from sandboxgateway.gateway.devices import DeviceCli, is_valid_request_id


def _devices(fake_sandbox) -> DeviceCli:
    bridge = CliBridge(fake_sandbox, timeout_s=1.0, poll_interval_s=0.01)
    return DeviceCli(bridge, cli_bin="clawdbot", backend_port=18789)


@pytest.mark.basic
def test_list_devices_returns_parsed_payload(fake_sandbox) -> None:
    payload = {"pending": [{"requestId": "r1"}], "paired": [{"deviceId": "d1"}]}
    fake_sandbox.devices_stdout = "[info] connected\n" + json.dumps(payload)

    out = asyncio.run(_devices(fake_sandbox).list_devices())
    assert out == payload
    assert fake_sandbox.commands[-1] == "clawdbot devices list --json --url ws://localhost:18789"


@pytest.mark.basic
def test_list_devices_malformed_output_keeps_raw_text(fake_sandbox) -> None:
    fake_sandbox.devices_stdout = '{"pending": [ not json }'

    out = asyncio.run(_devices(fake_sandbox).list_devices())
    assert out["pending"] == []
    assert out["paired"] == []
    assert out["raw"] == '{"pending": [ not json }'
    assert out["parseError"] == "Failed to parse CLI output"


@pytest.mark.basic
def test_list_devices_truncated_json_is_a_parse_error(fake_sandbox) -> None:
    fake_sandbox.devices_stdout = "log line\n{not valid json"

    out = asyncio.run(_devices(fake_sandbox).list_devices())
    assert out["pending"] == [] and out["paired"] == []
    assert out["raw"] == "log line\n{not valid json"
    assert out["parseError"] == "Failed to parse CLI output"


@pytest.mark.basic
def test_list_devices_without_json_has_no_parse_error(fake_sandbox) -> None:
    fake_sandbox.devices_stdout = "No devices"

    out = asyncio.run(_devices(fake_sandbox).list_devices())
    assert out["raw"] == "No devices"
    assert "parseError" not in out


@pytest.mark.basic
def test_list_pending_ids_raises_on_malformed_output(fake_sandbox) -> None:
    fake_sandbox.devices_stdout = "{broken}"

    with pytest.raises(CliParseError) as excinfo:
        asyncio.run(_devices(fake_sandbox).list_pending_ids())
    assert str(excinfo.value) == "Failed to parse device list"
    assert excinfo.value.raw == "{broken}"


@pytest.mark.basic
def test_approve_uses_keyword_when_exit_code_is_nonzero(fake_sandbox) -> None:
    fake_sandbox.approvals["r1"] = ("Request r1 approved", 1)

    result = asyncio.run(_devices(fake_sandbox).approve("r1"))
    assert result.success is True
    assert result.stdout == "Request r1 approved"
    assert fake_sandbox.commands[-1] == "clawdbot devices approve r1 --url ws://localhost:18789"


@pytest.mark.basic
def test_approve_rejects_unsafe_request_ids(fake_sandbox) -> None:
    assert is_valid_request_id("req_01-ABC")
    assert not is_valid_request_id("")
    assert not is_valid_request_id("r1; rm -rf /")

    with pytest.raises(ValueError):
        asyncio.run(_devices(fake_sandbox).approve("r1 && reboot"))
    assert fake_sandbox.commands == []


@pytest.mark.basic
def test_approve_all_reports_partial_failures(fake_sandbox) -> None:
    fake_sandbox.devices_stdout = json.dumps({"pending": [{"requestId": "a"}, {"requestId": "b"}, {"requestId": "c"}]})
    fake_sandbox.approvals["b"] = SandboxTransportError("sandbox unavailable")

    result = asyncio.run(_devices(fake_sandbox).approve_all())
    assert result.approved == ["a", "c"]
    assert result.message == "Approved 2 of 3 device(s)"

    out = result.to_dict()
    assert out["approved"] == ["a", "c"]
    assert out["failed"] == [{"requestId": "b", "success": False, "error": "sandbox unavailable"}]
    # Approvals already made stay in place.
    assert [c for c in fake_sandbox.commands if " approve " in c][-1].startswith("clawdbot devices approve c ")


@pytest.mark.basic
def test_approve_all_with_nothing_pending(fake_sandbox) -> None:
    result = asyncio.run(_devices(fake_sandbox).approve_all())
    assert result.to_dict() == {"approved": [], "message": "No pending devices to approve"}
