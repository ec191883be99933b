"""Parallel section refresh with per-section timeouts, ETA and preserve-merge.

Every section is launched concurrently and raced against its own timeout.
A timeout only abandons the wait: the underlying fetch keeps running so it
can still warm the caches, but its result is discarded. Each launch is
tagged with a generation token and a settlement is applied only while the
section still carries that token.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..upstream.exceptions import SectionTimeoutError


logger = logging.getLogger(__name__)

DEFAULT_SECTION_TIMEOUT_S = 55.0
DEFAULT_SECTION_DURATION_S = 15.0
MIN_SECTION_DURATION_S = 1.0

SectionLoader = Callable[[dict[str, Any]], Awaitable[Any]]
CompletionCallback = Callable[[dict[str, Any]], Awaitable[None]]


class SectionStatus(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    DONE = "done"
    ERROR = "error"


class RefreshMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


@dataclass(frozen=True)
class Section:
    """One independently fetchable analytical query.

    Attributes:
        key: Section name in the composite
        load: Coroutine function taking the refresh params
        timeout_s: Wait budget for this section
        deferred: Launched without blocking a foreground refresh
    """

    key: str
    load: SectionLoader
    timeout_s: float = DEFAULT_SECTION_TIMEOUT_S
    deferred: bool = False


@dataclass
class SectionState:
    key: str
    status: SectionStatus = SectionStatus.PENDING
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    error: Optional[str] = None
    token: int = 0

    @property
    def settled(self) -> bool:
        return self.status in (SectionStatus.DONE, SectionStatus.ERROR)

    def duration(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return max(MIN_SECTION_DURATION_S, self.ended_at - self.started_at)

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
        }


def average_done_duration(states: Iterable[SectionState]) -> Optional[float]:
    durations = [
        d for d in (s.duration() for s in states if s.status == SectionStatus.DONE)
        if d is not None
    ]
    if not durations:
        return None
    return sum(durations) / len(durations)


def compute_eta_seconds(
    states: Iterable[SectionState],
    default_duration_s: float = DEFAULT_SECTION_DURATION_S,
) -> int:
    """Average completed duration times the number of unsettled sections."""
    states = list(states)
    remaining = sum(1 for s in states if not s.settled)
    avg = average_done_duration(states) or default_duration_s
    return round(remaining * avg)


def compute_percent(states: Iterable[SectionState]) -> int:
    states = list(states)
    if not states:
        return 0
    settled = sum(1 for s in states if s.settled)
    return round(settled / len(states) * 100)


def merge_preserve(existing: Optional[dict[str, Any]], fresh: dict[str, Any]) -> dict[str, Any]:
    """Overlay fresh section values onto the last-known-good composite.

    A section whose fresh value is None (failed or skipped) keeps its
    previous value.
    """
    existing = existing or {}
    merged: dict[str, Any] = {}
    for key in {*existing.keys(), *fresh.keys()}:
        value = fresh.get(key)
        merged[key] = value if value is not None else existing.get(key)
    return merged


class RefreshScheduler:
    """Runs a fixed set of sections and tracks their progress.

    Attributes:
        results: Last-known-good value per section
        generation: Number of refreshes started
    """

    def __init__(
        self,
        sections: Iterable[Section],
        clock: Callable[[], float] = time.monotonic,
        default_duration_s: float = DEFAULT_SECTION_DURATION_S,
    ) -> None:
        self.sections = {section.key: section for section in sections}
        self.states = {key: SectionState(key) for key in self.sections}
        self.results: dict[str, Any] = {}
        self.generation = 0
        self._clock = clock
        self._default_duration_s = default_duration_s
        self._seed_duration_s = default_duration_s
        self._tokens = 0
        self._deferred: dict[str, tuple[dict[str, Any], asyncio.Task]] = {}
        self._detached: set[asyncio.Future] = set()
        self.initial_eta_s = 0

    # ------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.generation > 0 and any(not state.settled for state in self.states.values())

    @property
    def percent(self) -> int:
        return compute_percent(self.states.values())

    @property
    def eta_seconds(self) -> int:
        return compute_eta_seconds(self.states.values(), self._seed_duration_s)

    def status(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "running": self.running,
            "percent": self.percent,
            "eta_seconds": self.eta_seconds,
            "sections": [state.as_dict() for state in self.states.values()],
        }

    def seed(self, results: Optional[dict[str, Any]]) -> None:
        """Replace the last-known-good composite (e.g. from a snapshot)."""
        self.results = dict(results or {})

    # ------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------

    async def run(
        self,
        params: Optional[dict[str, Any]] = None,
        mode: RefreshMode = RefreshMode.FOREGROUND,
        on_complete: Optional[CompletionCallback] = None,
    ) -> dict[str, Any]:
        """Start a refresh of every section.

        Foreground mode returns once the non-deferred sections settle;
        deferred sections keep running and ``on_complete`` fires after they
        do. Background mode waits for every section, then fires
        ``on_complete``. Section errors never propagate.

        Returns:
            The merged composite at the time the call returns
        """
        params = dict(params or {})
        mode = RefreshMode(mode)
        self.generation += 1
        generation = self.generation
        self._seed_duration_s = (
            average_done_duration(self.states.values()) or self._default_duration_s
        )

        core: list[asyncio.Task] = []
        deferred: list[asyncio.Task] = []
        for section in self.sections.values():
            inflight = self._deferred.get(section.key)
            if section.deferred and inflight is not None and not inflight[1].done():
                if inflight[0] == params:
                    logger.info("Section %s already running, not relaunching", section.key)
                    deferred.append(inflight[1])
                    continue
                logger.info("Section %s params changed, superseding running load", section.key)
            token = self._reset(section.key)
            task = asyncio.create_task(self._run_section(section, params, token))
            if section.deferred:
                self._deferred[section.key] = (params, task)
                deferred.append(task)
            else:
                core.append(task)

        self.initial_eta_s = self.eta_seconds
        logger.info(
            "Refresh #%d started (%s): %d sections, eta %ds",
            self.generation,
            mode.value,
            len(core) + len(deferred),
            self.initial_eta_s,
        )

        if mode == RefreshMode.BACKGROUND:
            await asyncio.gather(*core, *deferred)
            await self._notify(on_complete, generation)
        else:
            await asyncio.gather(*core)
            if deferred:
                self._detach(self._finish_deferred(deferred, on_complete, generation))
            else:
                await self._notify(on_complete, generation)
        return dict(self.results)

    async def wait_idle(self) -> None:
        """Wait for detached work (deferred sections, abandoned fetches)."""
        while self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)

    def _reset(self, key: str) -> int:
        self._tokens += 1
        self.states[key] = SectionState(key, token=self._tokens)
        return self._tokens

    async def _run_section(self, section: Section, params: dict[str, Any], token: int) -> None:
        state = self.states[section.key]
        if state.token != token:
            return
        state.status = SectionStatus.LOADING
        state.started_at = self._clock()

        inner = self._detach(section.load(params))
        try:
            value = await asyncio.wait_for(asyncio.shield(inner), timeout=section.timeout_s)
        except asyncio.TimeoutError:
            self._settle(section.key, token, error=SectionTimeoutError(section.key, section.timeout_s))
        except Exception as exc:
            self._settle(section.key, token, error=exc)
        else:
            self._settle(section.key, token, value=value)

    def _settle(
        self,
        key: str,
        token: int,
        value: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        state = self.states[key]
        if state.token != token:
            logger.info("Discarding superseded result for section %s", key)
            return

        state.ended_at = self._clock()
        if error is not None:
            state.status = SectionStatus.ERROR
            state.error = str(error) or type(error).__name__
            logger.warning("Section %s failed: %s", key, state.error)
        else:
            state.status = SectionStatus.DONE
            self.results = merge_preserve(self.results, {key: value})
        logger.debug(
            "Section %s settled (%s), %d%% done, eta %ds",
            key,
            state.status.value,
            self.percent,
            self.eta_seconds,
        )

    async def _finish_deferred(
        self,
        tasks: list[asyncio.Task],
        on_complete: Optional[CompletionCallback],
        generation: int,
    ) -> None:
        await asyncio.gather(*tasks)
        await self._notify(on_complete, generation)

    async def _notify(self, on_complete: Optional[CompletionCallback], generation: int) -> None:
        if on_complete is None:
            return
        if generation != self.generation:
            logger.info("Refresh #%d superseded by #%d, skipping completion", generation, self.generation)
            return
        try:
            await on_complete(dict(self.results))
        except Exception:
            logger.exception("Refresh completion callback failed")

    def _detach(self, coro: Awaitable[Any]) -> asyncio.Future:
        future = asyncio.ensure_future(coro)
        self._detached.add(future)
        future.add_done_callback(self._reap)
        return future

    def _reap(self, future: asyncio.Future) -> None:
        self._detached.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Detached task ended with %r", future.exception())
