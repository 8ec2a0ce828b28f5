from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from ..errors import AllProvidersExhausted, ProviderError, ProviderPermanentError, ProviderTransientError
from ..memory.models import utcnow

logger = logging.getLogger("context_engine")


class ChatClient(Protocol):
    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        ...


class ProviderStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class ProviderPolicy:
    degraded_after: int = 2
    unavailable_after: int = 4
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    timeout_seconds: float = 30.0

    def backoff(self, consecutive_failures: int) -> float:
        exponent = max(0, int(consecutive_failures) - int(self.unavailable_after))
        # Cap the exponent before computing so huge failure counts cannot overflow.
        delay = float(self.backoff_base_seconds) * (2 ** min(exponent, 32))
        return max(0.0, min(float(self.backoff_max_seconds), delay))


@dataclass(slots=True)
class ProviderState:
    provider_id: str
    status: ProviderStatus = ProviderStatus.HEALTHY
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    # Monotonic clock reading; None unless Unavailable.
    cooldown_until: Optional[float] = None


@dataclass(slots=True)
class _StateEntry:
    state: ProviderState
    policy: ProviderPolicy
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    probe_in_flight: bool = False


class ProviderStateTable:
    """Process-wide health table, one lock per provider entry."""

    def __init__(
        self,
        provider_ids: Sequence[str],
        policies: Mapping[str, ProviderPolicy] | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        policies = policies or {}
        self.clock = clock
        self._order: Tuple[str, ...] = tuple(dict.fromkeys(provider_ids))
        self._entries: Dict[str, _StateEntry] = {
            provider_id: _StateEntry(
                state=ProviderState(provider_id=provider_id),
                policy=policies.get(provider_id) or ProviderPolicy(),
            )
            for provider_id in self._order
        }

    @property
    def provider_ids(self) -> Tuple[str, ...]:
        return self._order

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._entries

    def policy(self, provider_id: str) -> ProviderPolicy:
        return self._entries[provider_id].policy

    def state(self, provider_id: str) -> ProviderState:
        return replace(self._entries[provider_id].state)

    def snapshot(self) -> Dict[str, ProviderState]:
        return {provider_id: replace(entry.state) for provider_id, entry in self._entries.items()}

    def is_eligible(self, provider_id: str) -> bool:
        entry = self._entries[provider_id]
        state = entry.state
        if state.status is not ProviderStatus.UNAVAILABLE:
            return True
        if entry.probe_in_flight:
            return False
        return state.cooldown_until is None or self.clock() >= state.cooldown_until

    async def try_acquire(self, provider_id: str) -> bool:
        """Claim a call slot; an Unavailable provider past cooldown gets a single probe."""
        entry = self._entries[provider_id]
        async with entry.lock:
            if not self.is_eligible(provider_id):
                return False
            if entry.state.status is ProviderStatus.UNAVAILABLE:
                entry.probe_in_flight = True
            return True

    async def release(self, provider_id: str) -> None:
        entry = self._entries[provider_id]
        async with entry.lock:
            entry.probe_in_flight = False

    async def record_success(self, provider_id: str) -> ProviderState:
        entry = self._entries[provider_id]
        async with entry.lock:
            previous = entry.state.status
            entry.state.status = ProviderStatus.HEALTHY
            entry.state.consecutive_failures = 0
            entry.state.cooldown_until = None
            entry.state.last_success_at = utcnow()
            entry.probe_in_flight = False
            if previous is not ProviderStatus.HEALTHY:
                logger.info("[router] provider=%s recovered (%s -> healthy)", provider_id, previous.value)
            return replace(entry.state)

    async def record_failure(self, provider_id: str) -> ProviderState:
        entry = self._entries[provider_id]
        async with entry.lock:
            state = entry.state
            policy = entry.policy
            previous = state.status
            state.consecutive_failures += 1
            entry.probe_in_flight = False
            if state.status is ProviderStatus.UNAVAILABLE or state.consecutive_failures >= policy.unavailable_after:
                state.status = ProviderStatus.UNAVAILABLE
                state.cooldown_until = self.clock() + policy.backoff(state.consecutive_failures)
            elif state.consecutive_failures >= policy.degraded_after:
                state.status = ProviderStatus.DEGRADED
            if state.status is not previous:
                logger.warning(
                    "[router] provider=%s %s -> %s after %s consecutive failures",
                    provider_id,
                    previous.value,
                    state.status.value,
                    state.consecutive_failures,
                )
            return replace(state)


@dataclass(slots=True)
class ProviderResponse:
    provider_id: str
    text: str
    attempted: Tuple[str, ...] = ()
    skipped: Tuple[str, ...] = ()


class ProviderRouter:
    def __init__(
        self,
        clients: Mapping[str, ChatClient],
        states: ProviderStateTable,
        *,
        default_order: Sequence[str] | None = None,
    ) -> None:
        self.clients = dict(clients)
        self.states = states
        order = default_order if default_order is not None else states.provider_ids
        self.default_order: Tuple[str, ...] = tuple(pid for pid in dict.fromkeys(order) if pid in self.clients)

    def _resolve_order(self, preferred_order: Sequence[str] | None) -> List[str]:
        if preferred_order is None:
            return list(self.default_order)
        resolved: List[str] = []
        for provider_id in dict.fromkeys(preferred_order):
            if provider_id not in self.clients or provider_id not in self.states:
                logger.warning("[router] ignoring unknown provider=%s in preferred order", provider_id)
                continue
            resolved.append(provider_id)
        return resolved

    def plan(self, preferred_order: Sequence[str] | None = None) -> List[str]:
        """Providers a send would try right now, in order."""
        return [pid for pid in self._resolve_order(preferred_order) if self.states.is_eligible(pid)]

    async def _call(
        self,
        provider_id: str,
        messages: List[Dict[str, str]],
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> str:
        timeout = self.states.policy(provider_id).timeout_seconds
        try:
            return await asyncio.wait_for(
                self.clients[provider_id].chat(
                    messages,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTransientError(provider_id, f"timed out after {timeout:.1f}s") from exc

    async def send(
        self,
        context: Sequence[Mapping[str, str]],
        preferred_order: Sequence[str] | None = None,
        *,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> ProviderResponse:
        messages = [dict(message) for message in context]
        errors: Dict[str, Exception] = {}
        attempted: List[str] = []
        skipped: List[str] = []

        for provider_id in self._resolve_order(preferred_order):
            if not await self.states.try_acquire(provider_id):
                skipped.append(provider_id)
                continue
            attempted.append(provider_id)
            try:
                text = await self._call(provider_id, messages, temperature, max_output_tokens)
            except asyncio.CancelledError:
                await asyncio.shield(self.states.release(provider_id))
                raise
            except ProviderError as exc:
                error: Exception = exc
            except Exception as exc:
                error = ProviderPermanentError(provider_id, f"unexpected client failure: {exc}")
                error.__cause__ = exc
            else:
                await self.states.record_success(provider_id)
                logger.info("[router] provider=%s answered (attempted=%s)", provider_id, ",".join(attempted))
                return ProviderResponse(
                    provider_id=provider_id,
                    text=text,
                    attempted=tuple(attempted),
                    skipped=tuple(skipped),
                )

            errors[provider_id] = error
            state = await self.states.record_failure(provider_id)
            logger.warning(
                "[router] provider=%s failed (%s, failures=%s): %s",
                provider_id,
                type(error).__name__,
                state.consecutive_failures,
                error,
            )

        raise AllProvidersExhausted(errors, tuple(skipped))
