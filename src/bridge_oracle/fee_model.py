#!/usr/bin/env python3
"""EIP-1559 style base-fee window for pricing cross-chain calls.

Gas consumed by priced operations accumulates in the current time window.
Once the window has elapsed, the base fee moves toward the gas target: up
when the window used more than the target, down when it used less, and
geometrically down for every further window that saw no usage at all.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable

from borsh_construct import I64, U64, CStruct

from .utils.borsh_encoder import DISCRIMINATOR, parse

logger = logging.getLogger(__name__)

DEFAULT_GAS_TARGET_PER_WINDOW = 5_000_000
DEFAULT_ADJUSTMENT_DENOMINATOR = 2
DEFAULT_WINDOW_DURATION_SECONDS = 1
MINIMUM_BASE_FEE = 1
INITIAL_BASE_FEE = 1

GAS_COST_SCALER = 1_000_000
GAS_COST_SCALER_DP = 10**6

# Fixed-point unit for the empty-window decay factor
SCALE = 1_000_000

RELAY_CALL_GAS_BUFFER = 40_000
RELAY_CALL_OVERHEAD_GAS = 40_000

FEE_WINDOW_ACCOUNT = CStruct(
    "discriminator" / DISCRIMINATOR,
    "target" / U64,
    "denominator" / U64,
    "window_duration_seconds" / U64,
    "current_base_fee" / U64,
    "current_window_gas_used" / U64,
    "window_start_time" / I64,
)


def fixed_pow(base: int, exponent: int) -> int:
    """Raise a SCALE fixed-point number to an integer power."""
    result = SCALE
    while exponent:
        if exponent & 1:
            result = result * base // SCALE
        base = base * base // SCALE
        exponent >>= 1
    return result


def min_gas_limit(data_len: int) -> int:
    """Smallest gas limit accepted for a call carrying ``data_len`` bytes."""
    return data_len * 40 + 21_000 + RELAY_CALL_GAS_BUFFER + RELAY_CALL_OVERHEAD_GAS


@dataclass(slots=True)
class FeeWindowState:
    """Fee controller state.

    Attributes:
        target: Gas target per window
        denominator: Adjustment denominator, larger values move the fee slower
        window_duration_seconds: Length of a window
        current_base_fee: Base fee applied to operations in the current window
        current_window_gas_used: Gas recorded in the current window
        window_start_time: Unix timestamp the current window started at
        minimum_base_fee: Floor the base fee never drops below
    """

    target: int = DEFAULT_GAS_TARGET_PER_WINDOW
    denominator: int = DEFAULT_ADJUSTMENT_DENOMINATOR
    window_duration_seconds: int = DEFAULT_WINDOW_DURATION_SECONDS
    current_base_fee: int = INITIAL_BASE_FEE
    current_window_gas_used: int = 0
    window_start_time: int = 0
    minimum_base_fee: int = MINIMUM_BASE_FEE

    def __post_init__(self) -> None:
        """Validate fee window parameters."""
        if self.target <= 0:
            raise ValueError(f"Gas target must be positive, got {self.target}")
        if self.denominator <= 0:
            raise ValueError(f"Adjustment denominator must be positive, got {self.denominator}")
        if self.window_duration_seconds <= 0:
            raise ValueError(
                f"Window duration must be positive, got {self.window_duration_seconds}"
            )
        if self.minimum_base_fee < 0:
            raise ValueError(f"Minimum base fee must be non-negative, got {self.minimum_base_fee}")
        self.current_base_fee = max(self.current_base_fee, self.minimum_base_fee)

    @classmethod
    def from_account_data(
        cls,
        data: bytes,
        minimum_base_fee: int = MINIMUM_BASE_FEE
    ) -> "FeeWindowState":
        """Decode the on-chain fee state stored after the account discriminator."""
        account = parse(FEE_WINDOW_ACCOUNT, data, allow_trailing=True)
        return cls(
            target=account.target,
            denominator=account.denominator,
            window_duration_seconds=account.window_duration_seconds,
            current_base_fee=account.current_base_fee,
            current_window_gas_used=account.current_window_gas_used,
            window_start_time=account.window_start_time,
            minimum_base_fee=minimum_base_fee,
        )

    def expired_windows(self, now: int) -> int:
        """Number of whole windows elapsed since the current one started."""
        if now <= self.window_start_time:
            return 0
        return (now - self.window_start_time) // self.window_duration_seconds

    def next_base_fee(self, gas_used: int) -> int:
        """Base fee for the window following one that used ``gas_used``."""
        if gas_used == self.target:
            return self.current_base_fee

        if gas_used > self.target:
            delta = (gas_used - self.target) * self.current_base_fee // self.target // self.denominator
            return self.current_base_fee + max(1, delta)

        delta = (self.target - gas_used) * self.current_base_fee // self.target // self.denominator
        return max(0, self.current_base_fee - delta)


@dataclass(frozen=True, slots=True)
class FeeQuote:
    """Price of one operation."""

    gas_limit: int
    base_fee: int
    gas_cost: int


class FeeWindow:
    """
    Thread-safe owner of a FeeWindowState.

    Rolling the window and recording usage happen under one lock, so two
    operations racing across a window boundary roll it exactly once and both
    of their gas amounts are accounted for.
    """

    def __init__(
        self,
        state: FeeWindowState | None = None,
        clock: Callable[[], float] = time.time
    ) -> None:
        self._clock = clock
        self.state = state or FeeWindowState(window_start_time=int(clock()))
        self._lock = threading.Lock()

    def _now(self, now: int | None) -> int:
        return int(self._clock()) if now is None else now

    def refresh_base_fee(self, now: int | None = None) -> int:
        """Roll any elapsed windows and return the base fee in effect at ``now``."""
        with self._lock:
            return self._refresh(self.state, self._now(now))

    def charge(self, gas_limit: int, now: int | None = None) -> FeeQuote:
        """
        Price an operation and record its gas in the current window.

        Args:
            gas_limit: Gas the operation reserves on the destination chain
            now: Unix timestamp, defaults to the clock

        Returns:
            Quote with the base fee applied and the scaled cost
        """
        if gas_limit < 0:
            raise ValueError(f"Gas limit must be non-negative, got {gas_limit}")
        with self._lock:
            base_fee = self._refresh(self.state, self._now(now))
            self.state.current_window_gas_used += gas_limit
        quote = self._quote(gas_limit, base_fee)
        logger.debug(
            f"Charged gas_limit={gas_limit} base_fee={base_fee} cost={quote.gas_cost} "
            f"window_gas_used={self.state.current_window_gas_used}"
        )
        return quote

    def quote(self, gas_limit: int, now: int | None = None) -> FeeQuote:
        """Price an operation without recording it."""
        with self._lock:
            preview = replace(self.state)
            base_fee = self._refresh(preview, self._now(now))
        return self._quote(gas_limit, base_fee)

    def snapshot(self) -> FeeWindowState:
        with self._lock:
            return replace(self.state)

    @staticmethod
    def _quote(gas_limit: int, base_fee: int) -> FeeQuote:
        return FeeQuote(
            gas_limit=gas_limit,
            base_fee=base_fee,
            gas_cost=gas_limit * base_fee * GAS_COST_SCALER // GAS_COST_SCALER_DP,
        )

    @staticmethod
    def _refresh(state: FeeWindowState, now: int) -> int:
        expired = state.expired_windows(now)
        if expired == 0:
            return state.current_base_fee

        base_fee = state.next_base_fee(state.current_window_gas_used)

        # Each further window was empty: fee_n = fee_0 * ((d - 1) / d) ** n
        if (empty_windows := expired - 1) > 0:
            ratio = (state.denominator * SCALE - SCALE) // state.denominator
            base_fee = base_fee * fixed_pow(ratio, empty_windows) // SCALE

        base_fee = max(base_fee, state.minimum_base_fee)
        logger.debug(
            f"Fee window rolled: windows={expired} gas_used={state.current_window_gas_used} "
            f"base_fee {state.current_base_fee} -> {base_fee}"
        )

        state.current_base_fee = base_fee
        state.current_window_gas_used = 0
        state.window_start_time = now
        return base_fee
