"""
Risk Parameter Store
Holds per-pair configuration (groups, fee schedules, feeds, depth, accrual
rates) and the global TP/SL / open-impact bounds, and validates trade
parameters against them.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from config import RiskBoundsConfig
from core.access_control import AccessPolicy, Action
from core.errors import ValidationError
from core.events import EventBus, PairUpdated, SlTpParamsUpdated
from core.fixed_point import PRECISION, fmt_price


class FeedCalculation(Enum):
    DEFAULT = 0   # feed1
    INVERT = 1    # 1 / feed1
    COMBINE = 2   # feed1 / feed2


@dataclass(frozen=True)
class FeedDescriptor:
    """Reference feeds a delivered price is checked against."""
    feed1: Optional[str]
    feed2: Optional[str] = None
    calculation: FeedCalculation = FeedCalculation.DEFAULT
    max_deviation_p: int = 0


@dataclass(frozen=True)
class Group:
    name: str
    min_leverage: int
    max_leverage: int
    max_collateral_p: int   # % of vault a group may draw (informational)


@dataclass(frozen=True)
class FeeSchedule:
    """All fee percents are PRECISION-scaled; fees apply to notional."""
    name: str
    open_fee_p: int
    close_fee_p: int
    oracle_fee_p: int
    bot_fee_p: int
    referral_fee_p: int
    min_lev_pos: int         # minimum collateral * leverage


@dataclass(frozen=True)
class Pair:
    base: str
    quote: str
    feed: FeedDescriptor
    spread_p: int
    group_index: int
    fee_index: int

    @property
    def symbol(self) -> str:
        return f"{self.base}/{self.quote}"


@dataclass(frozen=True)
class PairParams:
    """Depth (collateral units, notional) and per-second accrual rates."""
    one_percent_depth_above: int = 0
    one_percent_depth_below: int = 0
    rollover_fee_per_second_p: int = 0
    funding_fee_per_second_p: int = 0


class RiskParameterStore:
    """
    Per-instrument configuration and trade-parameter validation.

    Enforces:
    - Leverage bounds per group
    - Minimum notional per fee schedule
    - TP / SL distance from the open price (max gain / max loss)
    - Open-interest cap per pair side
    """

    def __init__(
            self,
            policy: AccessPolicy,
            bounds: Optional[RiskBoundsConfig] = None,
            bus: Optional[EventBus] = None,
    ):
        bounds = bounds or RiskBoundsConfig()
        self.policy = policy
        self.bus = bus or EventBus()

        self.max_gain_p = bounds.max_gain_p
        self.max_sl_p = bounds.max_sl_p
        self.max_negative_pnl_on_open_p = bounds.max_negative_pnl_on_open_p

        self._groups: List[Group] = []
        self._fees: List[FeeSchedule] = []
        self._pairs: List[Pair] = []
        self._pair_params: Dict[int, PairParams] = {}
        self._max_open_interest: Dict[int, int] = {}

        # PairInfos hooks in here to settle accruals before a rate changes.
        self.before_params_change: Optional[Callable[[int], None]] = None

        logger.info(
            f"Initialized Risk Parameter Store: "
            f"max_gain={self.max_gain_p}% max_sl={self.max_sl_p}%"
        )

    # ── Governance ───────────────────────────────────────────────────────

    def add_group(self, caller: str, group: Group) -> int:
        self.policy.require(caller, Action.ADD_GROUP)
        if not 0 < group.min_leverage <= group.max_leverage:
            raise ValidationError("WRONG_PARAMS", f"leverage bounds {group}")
        self._groups.append(group)
        logger.info(f"Group #{len(self._groups) - 1} added: {group.name} "
                    f"{group.min_leverage}x-{group.max_leverage}x")
        return len(self._groups) - 1

    def add_fee(self, caller: str, fee: FeeSchedule) -> int:
        self.policy.require(caller, Action.ADD_FEE)
        if min(fee.open_fee_p, fee.close_fee_p, fee.oracle_fee_p,
               fee.bot_fee_p, fee.referral_fee_p, fee.min_lev_pos) < 0:
            raise ValidationError("WRONG_PARAMS", f"negative fee in {fee.name}")
        self._fees.append(fee)
        logger.info(f"Fee schedule #{len(self._fees) - 1} added: {fee.name}")
        return len(self._fees) - 1

    def _check_pair(self, pair: Pair) -> None:
        if not 0 <= pair.group_index < len(self._groups):
            raise ValidationError("WRONG_PARAMS", f"unknown group {pair.group_index}")
        if not 0 <= pair.fee_index < len(self._fees):
            raise ValidationError("WRONG_PARAMS", f"unknown fee {pair.fee_index}")
        if pair.spread_p < 0 or pair.feed.max_deviation_p < 0:
            raise ValidationError("WRONG_PARAMS", "negative spread or deviation")
        if pair.feed.calculation is FeedCalculation.COMBINE and not pair.feed.feed2:
            raise ValidationError("WRONG_PARAMS", "COMBINE needs feed2")

    def add_pair(self, caller: str, pair: Pair) -> int:
        self.policy.require(caller, Action.ADD_PAIR)
        self._check_pair(pair)
        if any(p.base == pair.base and p.quote == pair.quote for p in self._pairs):
            raise ValidationError("WRONG_PARAMS", f"{pair.symbol} already listed")
        self._pairs.append(pair)
        index = len(self._pairs) - 1
        self._pair_params.setdefault(index, PairParams())
        self.bus.publish(PairUpdated(pair_index=index, added=True))
        logger.info(f"Pair #{index} listed: {pair.symbol}")
        return index

    def update_pair(self, caller: str, pair_index: int, pair: Pair) -> None:
        self.policy.require(caller, Action.UPDATE_PAIR)
        self.pair(pair_index)
        self._check_pair(pair)
        self._pairs[pair_index] = pair
        self.bus.publish(PairUpdated(pair_index=pair_index, added=False))
        logger.info(f"Pair #{pair_index} updated: {pair.symbol}")

    def set_pair_params(self, caller: str, pair_index: int, params: PairParams) -> None:
        self.policy.require(caller, Action.SET_PAIR_PARAMS)
        self.pair(pair_index)
        if min(params.one_percent_depth_above, params.one_percent_depth_below,
               params.rollover_fee_per_second_p, params.funding_fee_per_second_p) < 0:
            raise ValidationError("WRONG_PARAMS", "negative pair params")
        if self.before_params_change:
            self.before_params_change(pair_index)
        self._pair_params[pair_index] = params
        logger.info(f"Pair #{pair_index} params: {params}")

    def set_max_open_interest(self, caller: str, pair_index: int, amount: int) -> None:
        self.policy.require(caller, Action.SET_MAX_OPEN_INTEREST)
        self.pair(pair_index)
        if amount < 0:
            raise ValidationError("WRONG_PARAMS", "negative open interest cap")
        self._max_open_interest[pair_index] = amount
        logger.info(f"Pair #{pair_index} max open interest per side: {amount}")

    def set_sl_tp(self, caller: str, max_sl_p: int, max_gain_p: int) -> None:
        self.policy.require(caller, Action.SET_SL_TP)
        if not 0 < max_sl_p <= 100 or max_gain_p <= 0:
            raise ValidationError("WRONG_PARAMS", f"sl={max_sl_p} gain={max_gain_p}")
        self.max_sl_p = max_sl_p
        self.max_gain_p = max_gain_p
        self.bus.publish(SlTpParamsUpdated(max_sl_p=max_sl_p, max_gain_p=max_gain_p))

    def set_max_negative_pnl_on_open_p(self, caller: str, value: int) -> None:
        self.policy.require(caller, Action.SET_MAX_NEGATIVE_PNL)
        if value <= 0:
            raise ValidationError("WRONG_PARAMS", "max negative pnl on open must be > 0")
        self.max_negative_pnl_on_open_p = value

    # ── Lookups ──────────────────────────────────────────────────────────

    @property
    def pairs_count(self) -> int:
        return len(self._pairs)

    def is_listed(self, pair_index: int) -> bool:
        return 0 <= pair_index < len(self._pairs)

    def pair(self, pair_index: int) -> Pair:
        if not self.is_listed(pair_index):
            raise ValidationError("PAIR_NOT_LISTED", f"pair #{pair_index}")
        return self._pairs[pair_index]

    def group(self, pair_index: int) -> Group:
        return self._groups[self.pair(pair_index).group_index]

    def fees(self, pair_index: int) -> FeeSchedule:
        return self._fees[self.pair(pair_index).fee_index]

    def pair_params(self, pair_index: int) -> PairParams:
        self.pair(pair_index)
        return self._pair_params.get(pair_index, PairParams())

    def max_open_interest(self, pair_index: int) -> int:
        return self._max_open_interest.get(pair_index, 0)

    # ── Fees (notional * feeP) ───────────────────────────────────────────

    def _fee(self, collateral: int, leverage: int, fee_p: int) -> int:
        return collateral * leverage * fee_p // PRECISION // 100

    def open_fee(self, pair_index: int, collateral: int, leverage: int) -> int:
        return self._fee(collateral, leverage, self.fees(pair_index).open_fee_p)

    def close_fee(self, pair_index: int, collateral: int, leverage: int) -> int:
        return self._fee(collateral, leverage, self.fees(pair_index).close_fee_p)

    def bot_fee(self, pair_index: int, collateral: int, leverage: int) -> int:
        return self._fee(collateral, leverage, self.fees(pair_index).bot_fee_p)

    def referral_fee(self, pair_index: int, collateral: int, leverage: int) -> int:
        return self._fee(collateral, leverage, self.fees(pair_index).referral_fee_p)

    # ── Validation ───────────────────────────────────────────────────────

    def check_leverage(self, pair_index: int, leverage: int) -> Tuple[bool, Optional[str]]:
        group = self.group(pair_index)
        if not group.min_leverage <= leverage <= group.max_leverage:
            return False, "LEVERAGE_INCORRECT"
        return True, None

    def check_notional(self, pair_index: int, collateral: int,
                       leverage: int) -> Tuple[bool, Optional[str]]:
        if collateral * leverage < self.fees(pair_index).min_lev_pos:
            return False, "BELOW_MIN_POS"
        return True, None

    def check_tp(self, open_price: int, tp: int, buy: bool,
                 leverage: int) -> Tuple[bool, Optional[str]]:
        """TP must sit on the profit side, within max_gain_p of leveraged gain."""
        if tp == 0:
            return True, None
        if (buy and tp <= open_price) or (not buy and tp >= open_price):
            return False, "WRONG_TP"
        if abs(tp - open_price) * 100 * leverage > open_price * self.max_gain_p:
            return False, "TP_TOO_BIG"
        return True, None

    def check_sl(self, open_price: int, sl: int, buy: bool,
                 leverage: int) -> Tuple[bool, Optional[str]]:
        """SL must sit on the loss side, within max_sl_p of leveraged loss."""
        if sl == 0:
            return True, None
        if (buy and sl >= open_price) or (not buy and sl <= open_price):
            return False, "WRONG_SL"
        if abs(open_price - sl) * 100 * leverage > open_price * self.max_sl_p:
            return False, "SL_TOO_BIG"
        return True, None

    def validate_trade_params(self, pair_index: int, collateral: int, price: int,
                              buy: bool, leverage: int, tp: int, sl: int) -> None:
        """Raise ValidationError with the first failing reason."""
        self.pair(pair_index)
        if leverage <= 0 or collateral <= 0 or price <= 0:
            raise ValidationError("WRONG_PARAMS", "collateral, price and leverage must be > 0")
        for ok, reason in (
                self.check_leverage(pair_index, leverage),
                self.check_notional(pair_index, collateral, leverage),
                self.check_tp(price, tp, buy, leverage),
                self.check_sl(price, sl, buy, leverage),
        ):
            if not ok:
                raise ValidationError(reason, f"pair #{pair_index} @ {fmt_price(price)}")

    def get_risk_summary(self) -> Dict[str, Any]:
        return {
            "pairs": [p.symbol for p in self._pairs],
            "groups": len(self._groups),
            "fee_schedules": len(self._fees),
            "max_gain_p": self.max_gain_p,
            "max_sl_p": self.max_sl_p,
            "max_negative_pnl_on_open_p": self.max_negative_pnl_on_open_p,
            "max_open_interest": dict(self._max_open_interest),
        }
