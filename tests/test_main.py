import json
import sys

import relayd


def write_config(tmp_path, **extra):
    cfg = {
        "relays": {"1": {"pin": 14}, "2": {"pin": 15}},
        "state_file": "states.json",
        "web": {"host": "127.0.0.1", "port": 3100},
    }
    cfg.update(extra)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(cfg))
    return str(path)


def test_load_config_creates_defaults(tmp_path):
    path = tmp_path / "config.json"
    cfg = relayd.load_config(str(path))
    assert cfg == relayd.DEFAULT_CONFIG
    assert json.loads(path.read_text()) == relayd.DEFAULT_CONFIG


def test_load_config_merges_missing_keys(tmp_path):
    path = write_config(tmp_path)
    cfg = relayd.load_config(path)
    assert list(cfg["relays"]) == ["1", "2"]
    assert cfg["mock_pins"] is False


def test_state_path_is_relative_to_config(tmp_path):
    path = write_config(tmp_path)
    cfg = relayd.load_config(path)
    assert relayd.resolve_state_path(cfg, path) == str(tmp_path / "states.json")


def test_web_restores_state_and_serves(monkeypatch, tmp_path):
    config_path = write_config(tmp_path)
    (tmp_path / "states.json").write_text(json.dumps([
        {"port": 2, "state": "on", "scheduleStart": "09:00", "scheduleEnd": "17:00"},
    ]))
    monkeypatch.setenv("RELAYD_API_KEY", "k")
    monkeypatch.setattr(relayd, "load_dotenv", lambda: None)

    captured = {}

    class DummyApp:
        def run(self, host=None, port=None):
            captured["host"] = host
            captured["port"] = port

    def fake_build_app(registry, sched, api_key):
        captured["states"] = registry.summary()
        captured["jobs"] = sorted(j.id for j in sched.sched.get_jobs())
        captured["key"] = api_key
        return DummyApp()

    monkeypatch.setattr(relayd, "build_app", fake_build_app)
    # keep the real scheduler from spawning its thread
    monkeypatch.setattr(relayd.RelayScheduler, "start", lambda self: self.install_all())
    monkeypatch.setattr(relayd.RelayScheduler, "shutdown", lambda self: None)

    assert relayd.main(["--config", config_path, "web", "--mock"]) == 0
    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 3100
    assert captured["key"] == "k"
    assert captured["states"] == [{"port": 1, "state": "off"}, {"port": 2, "state": "on"}]
    assert captured["jobs"] == ["relay-2-off", "relay-2-on"]
    saved = json.loads((tmp_path / "states.json").read_text())
    assert [r["port"] for r in saved] == [1, 2]


def test_web_refuses_without_key(monkeypatch, tmp_path):
    config_path = write_config(tmp_path)
    monkeypatch.delenv("RELAYD_API_KEY", raising=False)
    monkeypatch.setattr(relayd, "load_dotenv", lambda: None)
    assert relayd.main(["--config", config_path, "web"]) == 2


def test_status_prints_persisted_state(monkeypatch, tmp_path, capsys):
    config_path = write_config(tmp_path)
    (tmp_path / "states.json").write_text(json.dumps([
        {"port": 1, "state": "on", "scheduleStart": "06:00", "scheduleEnd": "07:30"},
    ]))
    monkeypatch.setattr(relayd, "load_dotenv", lambda: None)
    assert relayd.main(["--config", config_path, "status"]) == 0
    out = capsys.readouterr().out
    assert "Port 1: ON   schedule: 06:00-07:30" in out
    assert "Port 2: OFF  schedule: none" in out
