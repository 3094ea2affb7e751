"""
Hydration: drive a virtualized host page until its history stops growing.

States: idle -> pulsing -> (growing | settled). Each pulse scrolls toward the
unloaded (top) edge in sub-steps, waits for a page change or a timeout, then
re-scans and compares four growth signals. Any growth resets the no-growth
counter. The loop ends once the counter reaches the provider threshold while
at the top edge, on the wall-clock deadline, or when the host context is gone.

The page itself is abstract (`HostPage`); the raw scroll and change-notification
primitives belong to the host.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol
from rcep.config import settings
from rcep.models.capture import Provider
from rcep.logging import logger

HEIGHT_GROWTH_PX = 50
EDGE_TOLERANCE_PX = 2
MIN_PULSE_STEP_PX = 220
PULSE_STEP_RATIO = 0.6
EDGE_WHEEL_DELTA = -400
MIN_SCAN_STEP_PX = 200
STABLE_ITERATIONS = 3


@dataclass
class ScrollMetrics:
    top: float
    height: float
    viewport: float


class HostPage(Protocol):
    async def scroll_metrics(self) -> ScrollMetrics: ...

    async def scroll_to(self, y: float) -> None: ...

    async def dispatch_wheel(self, delta_y: float) -> None: ...

    async def wait_for_change(self, timeout: float) -> bool:
        """Resolve on the first structural change, or False after `timeout` seconds."""
        ...

    async def count_nodes(self) -> int: ...


class HydrationState(str, Enum):
    IDLE = "idle"
    PULSING = "pulsing"
    GROWING = "growing"
    SETTLED = "settled"


@dataclass
class HydrationConfig:
    max_ms: int
    wait_ms: int
    max_no_growth: int
    pulses: int
    pulse_pause_ms: int = 0
    jitter: bool = False
    network_settle_ms: int = 0

    @classmethod
    def for_provider(cls, provider: str) -> "HydrationConfig":
        if provider == Provider.CHATGPT.value:
            # Slower pulses trigger chunk loading more reliably than jumping to the top
            return cls(
                max_ms=settings.HYDRATE_MAX_MS_CHATGPT,
                wait_ms=settings.HYDRATE_WAIT_MS_CHATGPT,
                max_no_growth=settings.HYDRATE_MAX_NO_GROWTH_CHATGPT,
                pulses=settings.HYDRATE_PULSES_CHATGPT,
                pulse_pause_ms=90,
                jitter=True,
                network_settle_ms=650,
            )
        return cls(
            max_ms=settings.HYDRATE_MAX_MS,
            wait_ms=settings.HYDRATE_WAIT_MS,
            max_no_growth=settings.HYDRATE_MAX_NO_GROWTH,
            pulses=settings.HYDRATE_PULSES,
        )


@dataclass
class GrowthSignals:
    height: float
    page_nodes: int
    stored: int
    network: int

    def grew_since(self, prev: "GrowthSignals") -> bool:
        return (
            self.stored > prev.stored
            or self.network > prev.network
            or self.height > prev.height + HEIGHT_GROWTH_PX
            or self.page_nodes > prev.page_nodes
        )


@dataclass
class HydrationResult:
    state: HydrationState
    stop_reason: str  # "settled", "deadline" or "cancelled"
    pulses: int
    growth_events: int
    elapsed_ms: int


ScanFn = Callable[[str], Awaitable[int]]


def _alive(is_alive: Optional[Callable[[], bool]]) -> bool:
    return is_alive is None or is_alive()


class Hydrator:
    """
    `scan(reason)` append-scans the page and returns the canonical message
    count; `network_count()` returns the size of the network message cache.
    `on_tick(signals, grew)` is called after every pulse, for progress.
    """

    def __init__(
        self,
        page: HostPage,
        provider: str,
        scan: ScanFn,
        network_count: Callable[[], int],
        is_alive: Optional[Callable[[], bool]] = None,
        on_tick: Optional[Callable[[GrowthSignals, bool], Awaitable[None]]] = None,
        config: Optional[HydrationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.page = page
        self.provider = provider
        self.scan = scan
        self.network_count = network_count
        self.is_alive = is_alive
        self.on_tick = on_tick
        self.config = config or HydrationConfig.for_provider(provider)
        self.clock = clock
        self.state = HydrationState.IDLE

    async def _sleep_ms(self, ms: int):
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    async def _pulse(self):
        metrics = await self.page.scroll_metrics()
        step = max(MIN_PULSE_STEP_PX, int(metrics.viewport * PULSE_STEP_RATIO))
        y = metrics.top
        for _ in range(self.config.pulses):
            y = max(0, y - step)
            await self.page.scroll_to(y)
            await self.page.dispatch_wheel(-step)
            await self._sleep_ms(self.config.pulse_pause_ms)
        # Touch the top boundary
        await self.page.scroll_to(0)
        await self.page.dispatch_wheel(EDGE_WHEEL_DELTA)

    async def _jitter(self, metrics: ScrollMetrics):
        await self.page.scroll_to(min(180, metrics.height))
        await self._sleep_ms(180)
        await self.page.scroll_to(0)
        await self._sleep_ms(220)

    async def _signals(self, stored: int) -> GrowthSignals:
        metrics = await self.page.scroll_metrics()
        return GrowthSignals(
            height=metrics.height,
            page_nodes=await self.page.count_nodes(),
            stored=stored,
            network=self.network_count(),
        )

    async def run(self, reason: str = "hydrate", stored: int = 0) -> HydrationResult:
        cfg = self.config
        start = self.clock()
        elapsed_ms = lambda: int((self.clock() - start) * 1000)  # noqa: E731

        prev = await self._signals(stored)
        logger.info(
            f"Hydration start ({reason}, {self.provider}): height={prev.height} nodes={prev.page_nodes} "
            f"stored={prev.stored} network={prev.network}"
        )
        no_growth = 0
        pulses = 0
        growth_events = 0
        stop_reason = "deadline"

        while elapsed_ms() < cfg.max_ms and no_growth < cfg.max_no_growth:
            if not _alive(self.is_alive):
                stop_reason = "cancelled"
                break
            self.state = HydrationState.PULSING
            await self._pulse()
            pulses += 1

            network_before = self.network_count()
            await self.page.wait_for_change(cfg.wait_ms / 1000)
            if cfg.network_settle_ms and self.network_count() > network_before:
                await self._sleep_ms(cfg.network_settle_ms)

            if not _alive(self.is_alive):
                stop_reason = "cancelled"
                break
            stored_now = await self.scan(f"{reason}-top")
            nxt = await self._signals(stored_now)
            grew = nxt.grew_since(prev)
            if grew:
                self.state = HydrationState.GROWING
                growth_events += 1
                logger.debug(f"Hydration chunk loaded: stored {prev.stored}->{nxt.stored}, height {prev.height}->{nxt.height}")
                prev = nxt
                no_growth = 0
            else:
                no_growth += 1
            if self.on_tick is not None:
                await self.on_tick(nxt, grew)

            metrics = await self.page.scroll_metrics()
            at_edge = metrics.top <= EDGE_TOLERANCE_PX
            if at_edge and no_growth >= cfg.max_no_growth:
                stop_reason = "settled"
                break
            if cfg.jitter and at_edge and no_growth > 0 and no_growth % 3 == 0:
                await self._jitter(metrics)
        else:
            if no_growth >= cfg.max_no_growth:
                stop_reason = "settled"

        if stop_reason != "cancelled" and _alive(self.is_alive):
            # Some UIs virtualize the bottom too
            metrics = await self.page.scroll_metrics()
            await self.page.scroll_to(metrics.height)
            await self._sleep_ms(500)
            await self.scan(f"{reason}-bottom")

        self.state = HydrationState.SETTLED
        result = HydrationResult(
            state=self.state,
            stop_reason=stop_reason,
            pulses=pulses,
            growth_events=growth_events,
            elapsed_ms=elapsed_ms(),
        )
        logger.info(f"Hydration done ({reason}): {stop_reason} after {pulses} pulses, {growth_events} growth events")
        return result


@dataclass
class DeepScanResult:
    iterations: int
    added: int
    stop_reason: str  # "stable", "deadline" or "cancelled"


async def deep_scan(
    page: HostPage,
    scan: ScanFn,
    provider: str,
    is_alive: Optional[Callable[[], bool]] = None,
    max_ms: Optional[int] = None,
    step_ratio: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> DeepScanResult:
    """
    Top-to-bottom pass appending whatever each scroll position renders. Stops
    after 3 stable iterations or the deadline, then restores the start position.
    """
    if max_ms is None:
        max_ms = settings.DEEP_CAPTURE_MAX_MS_CHATGPT if provider == Provider.CHATGPT.value else settings.DEEP_CAPTURE_MAX_MS
    step_ratio = settings.DEEP_CAPTURE_STEP_RATIO if step_ratio is None else step_ratio
    start = clock()

    start_metrics = await page.scroll_metrics()
    start_y = start_metrics.top
    await page.scroll_to(0)
    await asyncio.sleep(0.35)
    first = await scan("deep-top")

    count = first
    total_added = 0
    last_added = -1
    stable = 0
    iterations = 0
    stop_reason = "deadline"

    while (clock() - start) * 1000 < max_ms:
        if not _alive(is_alive):
            stop_reason = "cancelled"
            break
        iterations += 1
        metrics = await page.scroll_metrics()
        max_y = max(0, metrics.height - metrics.viewport)
        y = metrics.top
        if y >= max_y - EDGE_TOLERANCE_PX:
            stable += 1

        nxt = await scan("deep-scan")
        added = max(0, nxt - count)
        count = nxt
        total_added += added

        if added == 0 and last_added == 0:
            stable += 1
        else:
            stable = 0
        last_added = added
        if stable >= STABLE_ITERATIONS:
            stop_reason = "stable"
            break

        next_y = min(max_y, y + max(MIN_SCAN_STEP_PX, int(metrics.viewport * step_ratio)))
        if next_y == y:
            await asyncio.sleep(0.25)
            continue
        await page.scroll_to(next_y)
        await asyncio.sleep(0.3)

    if stop_reason != "cancelled":
        await page.scroll_to(start_y)
    logger.info(f"Deep scan {stop_reason} after {iterations} iterations, {total_added} new messages")
    return DeepScanResult(iterations=iterations, added=total_added, stop_reason=stop_reason)
