"""
Reconciler: applies one rule to the first gateway that accepts it.

For each candidate local address, in order:

1. discover a gateway reachable from that address,
2. remove any existing mapping for ``(port, protocol)`` (a missing mapping is fine),
3. add the mapping pointing at the candidate address.

The first candidate that completes all three steps wins. Removing first makes
re-application idempotent even when the port is currently mapped to another
host; such a mapping is overwritten.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from asyncio_throttle import Throttler

from upnp_daemon.errors import AllCandidatesExhausted, NoGatewayFound, UPnPDaemonError, reason_of
from upnp_daemon.gateway import GatewayClient, GatewayHandle, RemoveResult
from upnp_daemon.interfaces import InterfaceEnumerator
from upnp_daemon.rules import CandidateAttempt, PortMappingRule, ReconciliationOutcome


T = TypeVar("T")
R = TypeVar("R")

# Failures confined to a single candidate
CANDIDATE_ERRORS: Tuple[Type[BaseException], ...] = (UPnPDaemonError, asyncio.TimeoutError, OSError)


@dataclass
class FallbackResult(Generic[T, R]):
    """Result of :func:`first_success`: the winning item and value, plus every failure before it."""
    item: Optional[T] = None
    value: Optional[R] = None
    failures: List[Tuple[T, BaseException]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.item is not None

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.failures[-1][1] if self.failures else None


async def first_success(
    items: Sequence[T],
    attempt: Callable[[T], Awaitable[R]],
    catch: Tuple[Type[BaseException], ...] = CANDIDATE_ERRORS
) -> FallbackResult[T, R]:
    """
    Try ``attempt`` on each item in order and stop at the first one that returns.

    Args:
        items: Candidates, tried sequentially
        attempt: Coroutine function raising on failure
        catch: Exception types treated as a failed attempt; anything else propagates

    Returns:
        FallbackResult with the winning item (if any) and the failure trail
    """
    result: FallbackResult[T, R] = FallbackResult()
    for item in items:
        try:
            value = await attempt(item)
        except catch as e:
            result.failures.append((item, e))
            continue
        result.item = item
        result.value = value
        return result
    return result


class Reconciler:
    """Resolves a usable gateway for a rule and applies it."""

    def __init__(
        self,
        gateway_client: GatewayClient,
        interface_enumerator: InterfaceEnumerator,
        throttler: Optional[Throttler] = None
    ):
        """
        Initialize reconciler.

        Args:
            gateway_client: Gateway discovery and control capability
            interface_enumerator: Source of candidate addresses for address-agnostic rules
            throttler: Optional rate limit applied to discovery broadcasts
        """
        self.gateway_client = gateway_client
        self.interface_enumerator = interface_enumerator
        self.throttler = throttler
        self.logger = structlog.get_logger()

    def candidates_for(self, rule: PortMappingRule) -> List[str]:
        """
        Candidate local addresses for a rule.

        A rule with an address has exactly that candidate and never consults
        the interface enumerator.
        """
        if rule.address is not None:
            return [rule.address]
        return list(self.interface_enumerator.list_local_addresses())

    async def _discover(self, local_address: str) -> GatewayHandle:
        if self.throttler is not None:
            async with self.throttler:
                gateway = await self.gateway_client.discover(local_address)
        else:
            gateway = await self.gateway_client.discover(local_address)

        if gateway is None:
            raise NoGatewayFound(f"No gateway found from {local_address}", local_address=local_address)
        return gateway

    async def _apply_via(self, rule: PortMappingRule, local_address: str) -> GatewayHandle:
        gateway = await self._discover(local_address)

        removed = await self.gateway_client.remove_mapping(gateway, rule.external_port, rule.protocol)
        self.logger.debug(
            "mapping_removed" if removed is RemoveResult.REMOVED else "mapping_absent",
            rule=rule.describe(),
            gateway=gateway.identifier,
        )

        await self.gateway_client.add_mapping(
            gateway,
            local_address,
            rule.external_port,
            rule.protocol,
            rule.lease_seconds,
            rule.comment,
        )
        return gateway

    async def apply(self, rule: PortMappingRule) -> ReconciliationOutcome:
        """
        Apply a rule through the first candidate whose gateway accepts it.

        Args:
            rule: Rule to apply

        Returns:
            Applied outcome naming the gateway, or Failed with the last reason
            and the full attempt trail
        """
        candidates = self.candidates_for(rule)
        if not candidates:
            error = AllCandidatesExhausted("No local interface addresses to try")
            return ReconciliationOutcome.failed(rule, type(error).__name__, str(error))

        fallback = await first_success(candidates, lambda address: self._apply_via(rule, address))

        attempts = [
            CandidateAttempt(
                local_address=address,
                succeeded=False,
                gateway=getattr(error, "gateway", None),
                error_type=type(error).__name__,
                reason=reason_of(error),
            )
            for address, error in fallback.failures
        ]
        for attempt in attempts:
            self.logger.debug(
                "candidate_failed",
                rule=rule.describe(),
                local_address=attempt.local_address,
                reason=attempt.reason,
            )

        if fallback.succeeded:
            gateway = fallback.value
            attempts.append(CandidateAttempt(
                local_address=fallback.item,
                succeeded=True,
                gateway=gateway.identifier,
            ))
            return ReconciliationOutcome.applied_via(rule, gateway.identifier, attempts)

        last_error = fallback.last_error
        return ReconciliationOutcome.failed(
            rule,
            error_type=type(last_error).__name__,
            reason=reason_of(last_error),
            attempts=attempts,
        )
