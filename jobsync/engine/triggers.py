from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
import logging

from opentelemetry import trace

from jobsync.engine.freshness import now_ms
from jobsync.engine.models import PassReport, TriggerEvent, TriggerKind
from jobsync.engine.registry import DomainSyncRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FULL_PASS_SCOPE = "all"
SLOW_EFFECTIVE_TYPES = {"2g", "slow-2g"}


class InteractionKind(str, Enum):
    POINTER_MOVE = "pointer-move"
    CLICK = "click"
    KEY_PRESS = "key-press"
    TOUCH = "touch"


@dataclass(frozen=True, slots=True)
class DeviceProfile:
    coarse_pointer: bool = False
    save_data: bool = False
    effective_type: str | None = None
    downlink_mbps: float | None = None

    @property
    def slow_connection(self) -> bool:
        if self.save_data:
            return True
        if self.effective_type and self.effective_type.lower() in SLOW_EFFECTIVE_TYPES:
            return True
        return self.downlink_mbps is not None and self.downlink_mbps < 1.0

    @property
    def degraded(self) -> bool:
        return self.coarse_pointer or self.slow_connection


class TriggerCoordinator:
    """Decides when registered domains run; never what they fetch.

    Full passes (every registered domain) share one debounce scope: a pass
    requested within the debounce window of the previous one is dropped.
    Timer passes are debounced per interval group.
    """

    def __init__(
        self,
        *,
        debounce_ms: int = 2000,
        degraded_debounce_multiplier: float = 2.0,
        idle_defer_seconds: float = 2.0,
        device: DeviceProfile | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.debounce_ms = debounce_ms
        self.degraded_debounce_multiplier = degraded_debounce_multiplier
        self.idle_defer_seconds = idle_defer_seconds
        self.device = device or DeviceProfile()
        self._clock = clock
        self._registry: DomainSyncRegistry | None = None
        self._targets: dict[str, str] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._last_started: dict[str, int] = {}
        self._interaction_armed = False
        self._visible = True
        self._last_pass: PassReport | None = None
        self._before_full_pass: Callable[[], object] | None = None

    @property
    def effective_debounce_ms(self) -> int:
        if self.device.degraded:
            return int(self.debounce_ms * self.degraded_debounce_multiplier)
        return self.debounce_ms

    @property
    def running(self) -> bool:
        return self._registry is not None

    @property
    def last_pass(self) -> PassReport | None:
        return self._last_pass

    @property
    def interaction_armed(self) -> bool:
        return self._interaction_armed

    def start(
        self,
        registry: DomainSyncRegistry,
        targets: Mapping[str, str],
        *,
        initial_pass: bool = True,
        before_full_pass: Callable[[], object] | None = None,
    ) -> None:
        self._registry = registry
        self._targets = dict(targets)
        self._last_started.clear()
        self._interaction_armed = True
        self._visible = True
        self._before_full_pass = before_full_pass

        for interval_ms, names in self.timer_groups().items():
            self._spawn(self._timer_loop(interval_ms, names))
        if initial_pass:
            self._spawn(self._initial_pass())

    async def stop(self) -> None:
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._registry = None
        self._targets = {}
        self._interaction_armed = False
        self._before_full_pass = None

    def timer_groups(self) -> dict[int, tuple[str, ...]]:
        if self._registry is None:
            return {}
        groups: dict[int, list[str]] = {}
        for name in self._targets:
            interval = self._registry.domain(name).refresh_interval_ms
            if interval:
                groups.setdefault(interval, []).append(name)
        return {interval: tuple(names) for interval, names in sorted(groups.items())}

    async def on_login_complete(self) -> PassReport | None:
        return await self.full_pass(TriggerEvent(kind=TriggerKind.LOGIN), force=True)

    async def on_user_interaction(self, kind: InteractionKind | str) -> PassReport | None:
        interaction = InteractionKind(kind)
        if not self._interaction_armed:
            return None
        self._interaction_armed = False
        logger.debug("first interaction observed kind=%s", interaction.value)
        return await self.full_pass(TriggerEvent(kind=TriggerKind.FIRST_INTERACTION), force=False)

    async def on_visibility_change(self, visible: bool) -> PassReport | None:
        regained = visible and not self._visible
        self._visible = visible
        if not regained:
            return None
        return await self.full_pass(TriggerEvent(kind=TriggerKind.VISIBILITY_REGAIN), force=True)

    async def full_pass(self, event: TriggerEvent, *, force: bool) -> PassReport | None:
        if self._before_full_pass is not None and self.running:
            self._before_full_pass()
        return await self._execute(FULL_PASS_SCOPE, event, self._targets, force=force)

    async def _execute(
        self,
        scope: str,
        event: TriggerEvent,
        targets: Mapping[str, str],
        *,
        force: bool,
    ) -> PassReport | None:
        registry = self._registry
        if registry is None or not targets:
            logger.debug("sync pass skipped; coordinator not running kind=%s", event.kind.value)
            return None

        started_at = self._clock()
        last = self._last_started.get(scope)
        if last is not None and started_at - last < self.effective_debounce_ms:
            logger.debug("sync pass debounced kind=%s scope=%s since_last_ms=%s", event.kind.value, scope, started_at - last)
            return None
        self._last_started[scope] = started_at

        with tracer.start_as_current_span("sync.pass") as span:
            span.set_attribute("sync.trigger", event.kind.value)
            span.set_attribute("sync.forced", force)
            span.set_attribute("sync.domain_count", len(targets))
            results = await registry.run_many(targets, force=force)

        report = PassReport(
            event=event,
            forced=force,
            started_at=started_at,
            finished_at=self._clock(),
            results=results,
        )
        self._last_pass = report
        logger.info(
            "sync pass complete kind=%s forced=%s domains=%s failed=%s",
            event.kind.value,
            force,
            len(results),
            report.failed_domains,
        )
        return report

    async def _initial_pass(self) -> None:
        if self.device.degraded:
            # Keep first paint interactive on touch devices and slow links.
            await asyncio.sleep(self.idle_defer_seconds)
        await self.full_pass(TriggerEvent(kind=TriggerKind.MOUNT), force=False)

    async def _timer_loop(self, interval_ms: int, names: tuple[str, ...]) -> None:
        scope = f"timer:{interval_ms}"
        while True:
            await asyncio.sleep(interval_ms / 1000.0)
            targets = {name: self._targets[name] for name in names if name in self._targets}
            try:
                await self._execute(scope, TriggerEvent(kind=TriggerKind.TIMER), targets, force=True)
            except Exception:
                logger.exception("periodic sync pass failed interval_ms=%s", interval_ms)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
