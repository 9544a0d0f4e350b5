"""
Command line entry point.
"""
import asyncio

from core.config import AppConfig
from core.logger import read_events
from tests.fakes import FakeConnector
from uplink.main import main, run_simulation
from uplink.wire import DataType, decode_envelope
from uplink.worker import UplinkOutcome


def test_validate_mode(tmp_path, capsys):
    path = tmp_path / "uplink.yaml"
    path.write_text("server:\n  url: ws://example.test:8090\n")

    assert main(["--mode", "validate", "--config", str(path)]) == 0
    assert "ws://example.test:8090" in capsys.readouterr().out


def test_validate_mode_rejects_bad_config(tmp_path):
    path = tmp_path / "uplink.yaml"
    path.write_text("uplink:\n  max_retries: -5\n")
    assert main(["--mode", "validate", "--config", str(path)]) == 1


def test_missing_config_file_fails(tmp_path):
    assert main(["--mode", "validate", "--config", str(tmp_path / "missing.yaml")]) == 1


def test_analyze_mode_missing_log(tmp_path):
    assert main(["--mode", "analyze", "--log", str(tmp_path / "none.jsonl")]) == 1


def test_simulated_session_streams_until_duration(tmp_path):
    config = AppConfig()
    config.uplink.update_interval_s = 0.02
    config.uplink.connect_poll_s = 0.01
    config.logging.event_log = str(tmp_path / "uplink.jsonl")
    connector = FakeConnector()

    result = asyncio.run(run_simulation(config, duration=0.15, connector=connector))

    assert result.outcome == UplinkOutcome.SUCCESS
    assert result.cycles >= 1

    socket = connector.sockets[0]
    types = [decode_envelope(raw).type_tag for raw in socket.sent]
    assert types[0] == DataType.EXERCISE_DATA
    assert types.count(DataType.WAYPOINTS) == 1
    assert socket.close_reason == "stopped"

    events = read_events(config.logging.event_log)
    assert any(e["event"] == "SEND" for e in events)
    assert any(e["event"] == "CONNECTION" and e["data"]["to"] == "CONNECTED" for e in events)
