#!/usr/bin/env python3
"""
relayd.py

A small relay daemon for Raspberry Pi style boards.  It drives a fixed
set of relay outputs through gpiozero, exposes a key protected HTTP API
(Flask) to switch them and to give each one a daily on/off window, and
keeps every change in a JSON state file so that a restart brings back
both the output levels and the schedules.

Key behaviour:

  • Each relay may carry one daily window (start/end as HH:MM, local
    time).  APScheduler fires a start job and an end job once a day.
  • The start job switches the relay on unless somebody switched it by
    hand while the window was open.  The end job always switches it off
    and forgets any manual override.
  • Every mutation rewrites the whole state file (temporary file, then
    rename) before the request is acknowledged.

Run ``relayd.py web`` to start the API and scheduler, or
``relayd.py status`` to print the persisted state.
"""
from __future__ import annotations

import argparse
import hmac
import json
import logging
import os
import re
import sys
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from gpiozero import Device, DigitalOutputDevice
from gpiozero.exc import GPIOZeroError
from gpiozero.pins.mock import MockFactory

log = logging.getLogger("relayd")

# Path to the daemon configuration.  It lives next to this script unless
# overridden with --config or RELAYD_CONFIG.
CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.json")

# ---------- Default Config ----------
#
# Logical port numbers map to BCM pins.  The stock six channel board is
# active low: driving the line low energises the coil, so active_high is
# False by default.

DEFAULT_CONFIG = {
    "relays": {
        "1": {"pin": 14, "active_high": False},
        "2": {"pin": 15, "active_high": False},
        "3": {"pin": 18, "active_high": False},
        "4": {"pin": 23, "active_high": False},
        "5": {"pin": 24, "active_high": False},
        "6": {"pin": 25, "active_high": False},
    },
    # Relative paths are resolved against the directory of config.json.
    "state_file": "relay_states.json",
    "web": {"host": "0.0.0.0", "port": 3000},
    # Use gpiozero's mock pin factory (development machines without GPIO).
    "mock_pins": False,
    "log_level": "INFO",
}


# =========================
# Errors
# =========================

class RelayError(Exception):
    """Base class for errors reported back to API callers."""

    status_code = 500

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": str(self)}


class Unauthorized(RelayError):
    status_code = 403


class InvalidPort(RelayError):
    status_code = 400


class InvalidState(RelayError):
    status_code = 400


class MalformedTime(RelayError):
    status_code = 400


class HardwareWriteFailure(RelayError):
    status_code = 500


class PersistenceFailure(RelayError):
    status_code = 500


# =========================
# Time windows
# =========================

_HHMM = re.compile(r"^([0-9]{1,2}):([0-9]{2})$")
_PORT = re.compile(r"[0-9]{1,4}")


def parse_hhmm(value) -> Tuple[int, int]:
    """Return (hour, minute) for an HH:MM string or raise MalformedTime."""
    m = _HHMM.match(value.strip()) if isinstance(value, str) else None
    if not m:
        raise MalformedTime(f"Bad time format {value!r}, expected HH:MM")
    hour, minute = int(m.group(1)), int(m.group(2))
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise MalformedTime(f"Bad time value {value!r}")
    return hour, minute


class Window:
    """A daily [start, end] interval at minute resolution."""

    def __init__(self, start: str, end: str):
        self.start_hm = parse_hhmm(start)
        self.end_hm = parse_hhmm(end)

    @property
    def start(self) -> str:
        return "%02d:%02d" % self.start_hm

    @property
    def end(self) -> str:
        return "%02d:%02d" % self.end_hm

    @property
    def single_tick(self) -> bool:
        return self.start_hm == self.end_hm

    def contains(self, now: datetime) -> bool:
        """Inclusive on both ends.  An end before the start wraps past midnight."""
        cur = now.hour * 60 + now.minute
        s = self.start_hm[0] * 60 + self.start_hm[1]
        e = self.end_hm[0] * 60 + self.end_hm[1]
        if s <= e:
            return s <= cur <= e
        return cur >= s or cur <= e

    def __eq__(self, other):
        if not isinstance(other, Window):
            return NotImplemented
        return (self.start_hm, self.end_hm) == (other.start_hm, other.end_hm)

    def __repr__(self):
        return f"Window({self.start!r}, {self.end!r})"


# =========================
# Outputs (gpiozero)
# =========================

class RelayOutput:
    """One physical output line.  Writes block until the level is set."""

    def __init__(self, port: int, device):
        self.port = port
        self.device = device

    def set_level(self, on: bool) -> None:
        try:
            if on:
                self.device.on()
            else:
                self.device.off()
        except (GPIOZeroError, OSError) as e:
            raise HardwareWriteFailure(f"Writing port {self.port} failed: {e}") from e

    def read_level(self) -> bool:
        return bool(self.device.value)

    def close(self) -> None:
        self.device.close()


def configured_ports(cfg: dict) -> List[int]:
    return sorted(int(p) for p in cfg.get("relays", {}))


def build_outputs(cfg: dict) -> Dict[int, RelayOutput]:
    """Create a switched-off output for every configured relay."""
    outputs = {}
    for port_str, meta in cfg.get("relays", {}).items():
        port = int(port_str)
        dev = DigitalOutputDevice(
            meta["pin"],
            active_high=bool(meta.get("active_high", False)),
            initial_value=False,
        )
        outputs[port] = RelayOutput(port, dev)
    return outputs


# =========================
# Per-relay state
# =========================

class OverrideState:
    """Tracks manual switching between two window resets."""

    def __init__(self):
        self.manual_override = False
        self.manual_during_window = False

    def record_manual(self, window: Optional[Window], now: datetime) -> None:
        self.manual_override = True
        if window is not None and window.contains(now):
            self.manual_during_window = True

    def reset(self) -> None:
        self.manual_override = False
        self.manual_during_window = False


class RelayRecord:
    def __init__(self, output: RelayOutput):
        self.port = output.port
        self.output = output
        self.override = OverrideState()
        self.window: Optional[Window] = None
        self.job_ids: List[str] = []
        # Guards the read flags -> write level -> write flags -> persist
        # sequence for this relay.
        self.lock = threading.RLock()

    @property
    def state(self) -> str:
        return "on" if self.output.read_level() else "off"

    def to_record(self) -> dict:
        return {
            "port": self.port,
            "state": self.state,
            "scheduleStart": self.window.start if self.window else None,
            "scheduleEnd": self.window.end if self.window else None,
        }


class RelayRegistry:
    """Sole owner of every relay's output, override flags and window."""

    def __init__(self, outputs: Dict[int, RelayOutput]):
        self._records = {port: RelayRecord(outputs[port]) for port in sorted(outputs)}

    def ports(self) -> List[int]:
        return list(self._records)

    def get(self, port) -> RelayRecord:
        if isinstance(port, int) and not isinstance(port, bool):
            key = port
        elif isinstance(port, str) and _PORT.fullmatch(port):
            key = int(port)
        else:
            raise InvalidPort(f"Invalid port number {port!r}")
        record = self._records.get(key)
        if record is None:
            raise InvalidPort(f"Invalid port number {key}")
        return record

    def __iter__(self):
        return iter(self._records.values())

    def restore(self, records: List[dict]) -> None:
        """Apply records from StateStore.load() to the outputs and windows."""
        for entry in records:
            record = self.get(entry["port"])
            with record.lock:
                record.output.set_level(entry["state"] == "on")
                if entry.get("scheduleStart") and entry.get("scheduleEnd"):
                    record.window = Window(entry["scheduleStart"], entry["scheduleEnd"])
                else:
                    record.window = None
                record.override.reset()
            log.info("Restored port %s: %s, schedule %s", record.port, entry["state"], record.window)

    def snapshot(self) -> List[dict]:
        return [r.to_record() for r in self]

    def summary(self) -> List[dict]:
        return [{"port": r.port, "state": r.state} for r in self]

    def close(self) -> None:
        for r in self:
            r.output.close()


# =========================
# Persistence
# =========================

class StateStore:
    """Whole-document JSON persistence of relay states and schedules."""

    def __init__(self, path: str, ports: List[int]):
        self.path = path
        self.ports = sorted(ports)
        self._lock = threading.Lock()

    @staticmethod
    def default_record(port: int) -> dict:
        return {"port": port, "state": "off", "scheduleStart": None, "scheduleEnd": None}

    def defaults(self) -> List[dict]:
        return [self.default_record(p) for p in self.ports]

    def load(self) -> List[dict]:
        """Read the state file.

        A missing file yields the default record for every configured
        port.  Relays absent from the file get the default record too;
        entries for unknown ports are skipped.  A schedule needs both
        scheduleStart and scheduleEnd, otherwise the relay has none.
        """
        if not os.path.exists(self.path):
            log.info("No state file at %s, starting with all relays off", self.path)
            return self.defaults()
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceFailure(f"Could not read {self.path}: {e}") from e
        if not isinstance(data, list):
            raise PersistenceFailure(f"{self.path} does not hold a list of relays")

        found: Dict[int, dict] = {}
        for entry in data:
            try:
                port = int(entry["port"])
            except (KeyError, TypeError, ValueError):
                log.warning("Skipping malformed relay record %r", entry)
                continue
            if port not in self.ports:
                log.warning("Skipping record for unconfigured port %s", port)
                continue
            found[port] = self._normalise(port, entry)
        return [found.get(p) or self.default_record(p) for p in self.ports]

    @staticmethod
    def _normalise(port: int, entry: dict) -> dict:
        start, end = entry.get("scheduleStart"), entry.get("scheduleEnd")
        if start and end:
            try:
                window = Window(start, end)
                start, end = window.start, window.end
            except MalformedTime as e:
                log.warning("Dropping schedule for port %s: %s", port, e)
                start = end = None
        elif start or end:
            log.warning("Dropping partial schedule for port %s", port)
            start = end = None
        return {
            "port": port,
            "state": "on" if entry.get("state") == "on" else "off",
            "scheduleStart": start,
            "scheduleEnd": end,
        }

    def save(self, registry: RelayRegistry) -> None:
        """Snapshot every relay and atomically replace the state file."""
        with self._lock:
            records = registry.snapshot()
            tmp = self.path + ".tmp"
            try:
                with open(tmp, "w") as f:
                    json.dump(records, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except OSError as e:
                raise PersistenceFailure(f"Could not write {self.path}: {e}") from e


# =========================
# Scheduling (APScheduler)
# =========================

class RelayScheduler:
    """Daily on/off windows per relay, reconciled with manual switching.

    Every operation that changes a relay runs under that relay's lock and
    finishes by saving the full state, so the state file always matches
    the output levels callers have been told about.
    """

    def __init__(self, registry: RelayRegistry, store: StateStore, sched=None,
                 clock: Callable[[], datetime] = datetime.now):
        self.registry = registry
        self.store = store
        self.clock = clock
        self.sched = sched if sched is not None else BackgroundScheduler(daemon=True)

    def start(self):
        self.install_all()
        self.sched.start()

    def shutdown(self):
        self.sched.shutdown(wait=False)

    def install_all(self) -> None:
        for record in self.registry:
            with record.lock:
                if record.window is not None:
                    self._install(record)

    def _add_job(self, port: int, edge: str, func, hm: Tuple[int, int]) -> str:
        job_id = f"relay-{port}-{edge}"
        hour, minute = hm
        self.sched.add_job(
            func,
            args=[port],
            trigger=CronTrigger(hour=hour, minute=minute),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=300,
        )
        return job_id

    def _install(self, record: RelayRecord) -> None:
        self._cancel(record)
        w = record.window
        if w.single_tick:
            # Both edges share a minute; one job runs them in order.
            record.job_ids = [self._add_job(record.port, "cycle", self.window_cycle, w.start_hm)]
        else:
            record.job_ids = [
                self._add_job(record.port, "on", self.window_start, w.start_hm),
                self._add_job(record.port, "off", self.window_end, w.end_hm),
            ]

    def _cancel(self, record: RelayRecord) -> None:
        for job_id in record.job_ids:
            try:
                self.sched.remove_job(job_id)
            except JobLookupError:
                log.debug("Job %s already gone", job_id)
        record.job_ids = []

    # ----- operations -----

    def manual_set(self, port, state: str) -> dict:
        record = self.registry.get(port)
        if state not in ("on", "off"):
            raise InvalidState(f"Unknown state {state!r}, expected 'on' or 'off'")
        with record.lock:
            now = self.clock()
            record.output.set_level(state == "on")
            record.override.record_manual(record.window, now)
            self.store.save(self.registry)
        log.info("Port %s turned %s manually (during window: %s)",
                 record.port, state, record.override.manual_during_window)
        return {
            "port": record.port,
            "state": state,
            "message": f"Relay on port {record.port} turned {state} manually",
        }

    def set_schedule(self, port, start: str, end: str) -> dict:
        record = self.registry.get(port)
        window = Window(start, end)
        with record.lock:
            self._cancel(record)
            record.window = window
            self._install(record)
            self.store.save(self.registry)
        log.info("Port %s scheduled daily %s-%s", record.port, window.start, window.end)
        return {
            "port": record.port,
            "from": window.start,
            "to": window.end,
            "message": f"Scheduled relay on port {record.port} from {window.start} to {window.end} every day.",
        }

    def clear_schedule(self, port) -> dict:
        record = self.registry.get(port)
        with record.lock:
            if record.window is None:
                return {
                    "port": record.port,
                    "from": None,
                    "to": None,
                    "message": f"No active schedule found for port {record.port}.",
                }
            self._cancel(record)
            record.window = None
            self.store.save(self.registry)
        log.info("Port %s schedule stopped", record.port)
        return {
            "port": record.port,
            "from": None,
            "to": None,
            "message": f"Schedule for relay on port {record.port} has been stopped.",
        }

    # ----- scheduled jobs -----

    def window_start(self, port: int) -> None:
        """Start-of-window job: switch on unless overridden during the window."""
        record = self.registry.get(port)
        with record.lock:
            try:
                if record.override.manual_during_window:
                    log.info("Manual override during window for port %s, skipping turn on", port)
                else:
                    record.output.set_level(True)
                    log.info("Scheduled turn on for port %s", port)
                self.store.save(self.registry)
            except RelayError as e:
                log.error("Scheduled turn on for port %s failed: %s", port, e)

    def window_end(self, port: int) -> None:
        """End-of-window job: always switch off and clear the override flags."""
        record = self.registry.get(port)
        with record.lock:
            try:
                record.output.set_level(False)
                record.override.reset()
                self.store.save(self.registry)
                log.info("Scheduled turn off for port %s", port)
            except RelayError as e:
                log.error("Scheduled turn off for port %s failed: %s", port, e)

    def window_cycle(self, port: int) -> None:
        """Job for start == end: start logic, then end logic, in one tick."""
        record = self.registry.get(port)
        with record.lock:
            self.window_start(port)
            self.window_end(port)


# =========================
# Web (Flask)
# =========================

def build_app(registry: RelayRegistry, sched: RelayScheduler, api_key: Optional[str]) -> Flask:
    """Construct the Flask application for the relay API.

    Every route requires the X-API-Key header; the check runs before any
    view so a rejected request never touches relay state.
    """
    app = Flask(__name__)
    app.registry = registry
    app.sched = sched

    @app.before_request
    def require_key():
        provided = request.headers.get("X-API-Key", "")
        if not api_key or not hmac.compare_digest(provided.encode(), api_key.encode()):
            raise Unauthorized("Invalid key")

    @app.errorhandler(RelayError)
    def handle_relay_error(e: RelayError):
        return jsonify(e.to_dict()), e.status_code

    @app.get("/led/<port>/<state>")
    def api_led(port: str, state: str):
        return jsonify(sched.manual_set(port, state))

    @app.get("/schedule/<port>/<start>/<end>")
    def api_schedule(port: str, start: str, end: str):
        """Set a daily window, or clear it when both times are 'null'."""
        if start == "null" and end == "null":
            return jsonify(sched.clear_schedule(port))
        return jsonify(sched.set_schedule(port, start, end))

    @app.get("/relays")
    def api_relays():
        return jsonify(registry.summary())

    return app


# =========================
# Config and CLI
# =========================

def load_config(path: str = None) -> dict:
    """Load the JSON config from disk, creating it with defaults if needed."""
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        with open(path, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        return json.loads(json.dumps(DEFAULT_CONFIG))
    with open(path, "r") as f:
        cfg = json.load(f)
    # Merge missing top level keys
    for k, v in DEFAULT_CONFIG.items():
        if k not in cfg:
            cfg[k] = json.loads(json.dumps(v))
    return cfg


def resolve_state_path(cfg: dict, config_path: str) -> str:
    state_file = cfg.get("state_file", DEFAULT_CONFIG["state_file"])
    if os.path.isabs(state_file):
        return state_file
    return os.path.join(os.path.dirname(os.path.abspath(config_path)), state_file)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def print_status(records: List[dict]) -> None:
    for r in records:
        if r["scheduleStart"]:
            window = f"{r['scheduleStart']}-{r['scheduleEnd']}"
        else:
            window = "none"
        print(f"Port {r['port']}: {r['state'].upper():3}  schedule: {window}")


def main(argv: List[str] = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Relay switch and schedule daemon")
    parser.add_argument("--config", default=os.environ.get("RELAYD_CONFIG") or CONFIG_PATH)
    parser.add_argument("--log-level", default=os.environ.get("RELAYD_LOG_LEVEL"))
    sub = parser.add_subparsers(dest="cmd")

    p_web = sub.add_parser("web", help="Run the HTTP API and scheduler")
    p_web.add_argument("--host", default=None)
    p_web.add_argument("--port", type=int, default=None)
    p_web.add_argument("--mock", action="store_true", help="Use mock GPIO pins")

    sub.add_parser("status", help="Show persisted relay states and schedules")

    args = parser.parse_args(argv)
    cfg = load_config(args.config)
    setup_logging(args.log_level or cfg.get("log_level", "INFO"))
    state_path = resolve_state_path(cfg, args.config)

    if args.cmd == "status":
        print_status(StateStore(state_path, configured_ports(cfg)).load())
        return 0

    if args.cmd == "web":
        api_key = os.environ.get("RELAYD_API_KEY")
        if not api_key:
            log.error("RELAYD_API_KEY is not set; refusing to start")
            return 2
        if args.mock or cfg.get("mock_pins", False):
            Device.pin_factory = MockFactory()
        registry = RelayRegistry(build_outputs(cfg))
        store = StateStore(state_path, registry.ports())
        registry.restore(store.load())
        store.save(registry)
        scheduler = RelayScheduler(registry, store)
        scheduler.start()
        app = build_app(registry, scheduler, api_key)
        host = args.host or cfg["web"].get("host", "0.0.0.0")
        port = args.port or int(cfg["web"].get("port", 3000))
        log.info("Serving relay API on %s:%s", host, port)
        try:
            app.run(host=host, port=port)
        finally:
            scheduler.shutdown()
            registry.close()
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
