"""Stand-ins shared by the scheduler and API tests."""
from apscheduler.jobstores.base import JobLookupError

import relayd

RELAYS = {
    "1": {"pin": 14, "active_high": False},
    "2": {"pin": 15, "active_high": False},
    "3": {"pin": 18, "active_high": False},
}


class FakeScheduler:
    """Records jobs instead of running them."""

    def __init__(self):
        self.jobs = {}
        self.started = False

    def start(self):
        self.started = True

    def shutdown(self, wait=False):
        self.started = False

    def get_jobs(self):
        return list(self.jobs.values())

    def add_job(self, func, args=None, trigger=None, id=None, replace_existing=False, misfire_grace_time=None):
        self.jobs[id] = {"func": func, "args": args, "trigger": trigger, "id": id}

    def remove_job(self, job_id):
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]


class FailingDevice:
    """Output device whose writes always fail."""

    value = 0

    def on(self):
        raise OSError("line busy")

    def off(self):
        raise OSError("line busy")

    def close(self):
        pass


def trigger_fields(trigger):
    return {f.name: str(f) for f in trigger.fields}


def build(tmp_path, now=None, outputs=None):
    """Return (registry, store, scheduler, fake_sched) backed by tmp_path."""
    if outputs is None:
        outputs = relayd.build_outputs({"relays": RELAYS})
    registry = relayd.RelayRegistry(outputs)
    store = relayd.StateStore(str(tmp_path / "relay_states.json"), registry.ports())
    fake = FakeScheduler()
    clock = (lambda: now) if now is not None else None
    kwargs = {"clock": clock} if clock else {}
    sched = relayd.RelayScheduler(registry, store, sched=fake, **kwargs)
    return registry, store, sched, fake
