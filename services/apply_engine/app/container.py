from __future__ import annotations

import threading
from dataclasses import dataclass

from .build_manager import BuildManager
from .events import EventNotifier
from .formatter import make_formatter
from .fs_adapter import FSAdapter
from .locks import PathLockManager
from .path_policy import PathPolicy
from .plan_service import PlanService
from .session_log import append_session
from .settings import Settings
from .store import make_plan_store
from .txn import TransactionEngine
from .validator import PlanValidator


class Janitor:
    """Background sweep of old transactions and expired plans."""

    def __init__(self, services: "Services", interval_s: float) -> None:
        self.services = services
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self) -> dict[str, int]:
        txns = self.services.engine.cleanup_old_transactions()
        plans = self.services.plans.purge_expired()
        if txns or plans:
            append_session(self.services.settings, {"type": "janitor.sweep", "transactions": txns, "plans": plans})
        return {"transactions": txns, "plans": plans}

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.sweep()
            except Exception as e:
                append_session(self.services.settings, {"type": "janitor.failed", "error": f"{type(e).__name__}: {e}"})

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="apply_janitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        t = self._thread
        self._thread = None
        if t is not None:
            t.join(timeout=2.0)


@dataclass
class Services:
    settings: Settings
    policy: PathPolicy
    locks: PathLockManager
    fs: FSAdapter
    validator: PlanValidator
    notifier: EventNotifier
    engine: TransactionEngine
    plans: PlanService
    builds: BuildManager
    janitor: Janitor | None = None

    def start(self) -> None:
        if self.janitor is None:
            self.janitor = Janitor(self, self.settings.janitor_interval_s)
        self.janitor.start()

    def stop(self) -> None:
        if self.janitor is not None:
            self.janitor.stop()
        self.builds.shutdown()


def build_services(settings: Settings) -> Services:
    policy = PathPolicy(settings.allowlist)
    locks = PathLockManager()
    fs = FSAdapter(settings, policy, locks)
    validator = PlanValidator(fs)
    notifier = EventNotifier(settings)
    engine = TransactionEngine(settings, fs, validator, notifier, locks=locks, formatter=make_formatter(settings))
    plans = PlanService(settings, make_plan_store(settings), validator, engine, notifier)
    builds = BuildManager(settings, notifier)
    return Services(
        settings=settings,
        policy=policy,
        locks=locks,
        fs=fs,
        validator=validator,
        notifier=notifier,
        engine=engine,
        plans=plans,
        builds=builds,
    )
