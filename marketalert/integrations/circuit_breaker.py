# marketalert/integrations/circuit_breaker.py
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..models import BreakerState, CircuitBreakerRecord

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.CB_FAILURE_THRESHOLD,
            open_seconds=settings.CB_OPEN_SECONDS,
            half_open_trials=settings.CB_HALF_OPEN_TRIALS,
        )


def breaker_key(institution_id: str, channel: str) -> str:
    return f"{institution_id}:{channel}"


class CircuitBreaker:
    """
    closed -> open after failure_threshold consecutive failures
    open -> half_open once open_seconds have elapsed; half_open_trials probes may pass
    half_open -> closed on success, -> open on failure

    State lives in the circuit_breakers table so every process dispatching for the
    same institution sees one breaker. Transitions are conditional UPDATEs; when two
    callers race for the last half-open probe slot only one wins.
    """

    def __init__(
        self,
        key: str,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self.key = key
        self._sf = session_factory
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source or datetime.utcnow

    async def _load(self, session: AsyncSession) -> CircuitBreakerRecord:
        rec = await session.get(CircuitBreakerRecord, self.key)
        if rec is not None:
            return rec
        rec = CircuitBreakerRecord(
            key=self.key, state=BreakerState.closed, failures=0, half_open_trials=0, updated_at=self._time()
        )
        session.add(rec)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            rec = await session.get(CircuitBreakerRecord, self.key)
            if rec is None:
                raise RuntimeError(f"circuit breaker {self.key} lost its row after a concurrent insert")
        return rec

    async def state(self) -> BreakerState:
        async with self._sf() as session:
            return (await self._load(session)).state

    async def allow(self) -> bool:
        """Ask before each call. False means short-circuit without touching the endpoint."""
        now = self._time()
        cooldown = timedelta(seconds=self._config.open_seconds)
        async with self._sf() as session:
            rec = await self._load(session)

            if rec.state == BreakerState.closed:
                return True

            if rec.state == BreakerState.open:
                if rec.opened_at is not None and now - rec.opened_at < cooldown:
                    return False
                same_opening = (
                    CircuitBreakerRecord.opened_at.is_(None)
                    if rec.opened_at is None
                    else CircuitBreakerRecord.opened_at == rec.opened_at
                )
                res = await session.execute(
                    update(CircuitBreakerRecord)
                    .where(CircuitBreakerRecord.key == self.key)
                    .where(CircuitBreakerRecord.state == BreakerState.open)
                    .where(same_opening)
                    .values(state=BreakerState.half_open, half_open_trials=1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if res.rowcount == 1:
                    log.warning("circuit_breaker_transition key=%s from=open to=half_open", self.key)
                    return True
                return False

            # half_open: a probe whose outcome never came back frees its slot after another cooldown
            trials_seen = rec.half_open_trials
            if rec.updated_at is not None and now - rec.updated_at >= cooldown:
                new_trials = 1
            elif trials_seen >= self._config.half_open_trials:
                return False
            else:
                new_trials = trials_seen + 1
            res = await session.execute(
                update(CircuitBreakerRecord)
                .where(CircuitBreakerRecord.key == self.key)
                .where(CircuitBreakerRecord.state == BreakerState.half_open)
                .where(CircuitBreakerRecord.half_open_trials == trials_seen)
                .values(half_open_trials=new_trials, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return res.rowcount == 1

    async def record_success(self) -> None:
        now = self._time()
        async with self._sf() as session:
            rec = await self._load(session)
            if rec.state != BreakerState.closed:
                log.warning("circuit_breaker_transition key=%s from=%s to=closed", self.key, rec.state.value)
            await session.execute(
                update(CircuitBreakerRecord)
                .where(CircuitBreakerRecord.key == self.key)
                .values(state=BreakerState.closed, failures=0, opened_at=None, half_open_trials=0, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def record_failure(self) -> BreakerState:
        now = self._time()
        async with self._sf() as session:
            await self._load(session)
            await session.execute(
                update(CircuitBreakerRecord)
                .where(CircuitBreakerRecord.key == self.key)
                .values(failures=CircuitBreakerRecord.failures + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            rec = await session.get(CircuitBreakerRecord, self.key, populate_existing=True)
            if rec is None:
                raise RuntimeError(f"circuit breaker {self.key} was deleted while recording a failure")

            trip = rec.state == BreakerState.half_open or (
                rec.state == BreakerState.closed and rec.failures >= self._config.failure_threshold
            )
            if trip:
                log.warning(
                    "circuit_breaker_transition key=%s from=%s to=open failures=%s",
                    self.key,
                    rec.state.value,
                    rec.failures,
                )
                rec.state = BreakerState.open
                rec.opened_at = now
                rec.half_open_trials = 0
            await session.commit()
            return rec.state


class CircuitBreakerRegistry:
    """Hands out breakers keyed by institution+channel, all sharing one config and clock."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._sf = session_factory
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source

    def for_channel(self, institution_id: str, channel: str) -> CircuitBreaker:
        return CircuitBreaker(
            breaker_key(institution_id, channel),
            self._sf,
            config=self._config,
            time_source=self._time,
        )
