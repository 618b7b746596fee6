"""
Price Oracle Gateway
Dispatches price requests to independent nodes, aggregates their answers and
settles each request exactly once.

Protocol:
  1. request_price / request_prices  -> request_id, request delivered to every node
  2. submit_answer(request_id, node_id, prices) from nodes
  3. once min_answers distinct nodes answered: median per pair, deviation check
     against the pair's reference feed, callback fired once
  4. late, duplicate or canceled answers -> False, nothing changes
  5. cancel(request_id) on timeout; the owner refunds whatever it escrowed
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from config import OracleConfig
from core.access_control import AccessPolicy, Action
from core.errors import AuthorizationError, ValidationError
from core.events import (
    BatchPriceReceived, BatchPriceRequested, EventBus,
    PriceReceived, PriceRequestCanceled, PriceRequested,
)
from core.fixed_point import PRECISION, fmt_price, median
from execution.risk_engine import FeedCalculation, Pair, RiskParameterStore
from interfaces import IPriceNode, IReferenceFeed


class RequestStatus(Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    CANCELED = "canceled"


@dataclass(frozen=True)
class PriceRequest:
    """Message delivered to every node."""
    request_id: int
    pair_indices: Tuple[int, ...]
    pairs: Tuple[Pair, ...]
    batch: bool
    created_at: int


@dataclass(frozen=True)
class PriceFulfillment:
    """Result handed to the requester's callback.  Price 0 means failure."""
    request_id: int
    pair_indices: Tuple[int, ...]
    prices: Tuple[int, ...]
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(p > 0 for p in self.prices)

    @property
    def price(self) -> int:
        return self.prices[0]

    def price_of(self, pair_index: int) -> int:
        return self.prices[self.pair_indices.index(pair_index)]


Callback = Callable[[PriceFulfillment], Any]


@dataclass
class _Round:
    request: PriceRequest
    callback: Callback
    status: RequestStatus = RequestStatus.PENDING
    answers: Dict[str, Tuple[int, ...]] = field(default_factory=dict)


class PriceOracleGateway:
    """
    Correlates requests and node answers by a monotonically increasing id.

    The gateway never blocks: callers get an id back immediately and are called
    back once enough nodes have answered.
    """

    def __init__(
            self,
            params: RiskParameterStore,
            policy: AccessPolicy,
            clock: Callable[[], int],
            bus: Optional[EventBus] = None,
            cfg: Optional[OracleConfig] = None,
            reference_feed: Optional[IReferenceFeed] = None,
    ):
        cfg = cfg or OracleConfig()
        if cfg.min_answers < 1:
            raise ValidationError("WRONG_PARAMS", "min_answers must be >= 1")
        self.params = params
        self.policy = policy
        self.clock = clock
        self.bus = bus or EventBus()
        self.min_answers = cfg.min_answers
        self.request_timeout = cfg.request_timeout_sec
        self.reference_feed = reference_feed

        self._nodes: Dict[str, IPriceNode] = {}
        self._rounds: Dict[int, _Round] = {}           # pending only
        self._settled: OrderedDict[int, _Round] = OrderedDict()
        self.settled_rounds_kept = cfg.settled_rounds_kept
        self._last_id = 0

        self._late_answers = 0
        self._fulfilled = 0
        self._canceled = 0

        logger.info(f"Initialized Price Oracle Gateway: min_answers={self.min_answers}")

    # ── Node registry ────────────────────────────────────────────────────

    def register_node(self, caller: str, node: IPriceNode) -> None:
        self.policy.require(caller, Action.REGISTER_ORACLE_NODE)
        self._nodes[node.node_id] = node
        logger.info(f"Oracle node registered: {node.node_id} ({len(self._nodes)} total)")

    def remove_node(self, caller: str, node_id: str) -> None:
        self.policy.require(caller, Action.REGISTER_ORACLE_NODE)
        self._nodes.pop(node_id, None)
        logger.info(f"Oracle node removed: {node_id}")

    @property
    def node_ids(self) -> List[str]:
        return list(self._nodes)

    # ── Requests ─────────────────────────────────────────────────────────

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def _open_round(self, pair_indices: Tuple[int, ...], batch: bool,
                    callback: Callback) -> int:
        if not pair_indices:
            raise ValidationError("WRONG_PARAMS", "no pairs requested")
        pairs = tuple(self.params.pair(i) for i in pair_indices)
        request = PriceRequest(
            request_id=self._next_id(), pair_indices=pair_indices, pairs=pairs,
            batch=batch, created_at=self.clock(),
        )
        self._rounds[request.request_id] = _Round(request=request, callback=callback)

        if batch:
            self.bus.publish(BatchPriceRequested(request.request_id, pair_indices))
        else:
            self.bus.publish(PriceRequested(request.request_id, pair_indices[0]))

        for node in list(self._nodes.values()):
            node.deliver(request)

        logger.debug(f"Price request #{request.request_id} for pairs {list(pair_indices)} "
                     f"sent to {len(self._nodes)} nodes")
        return request.request_id

    def request_price(self, pair_index: int, callback: Callback) -> int:
        return self._open_round((pair_index,), False, callback)

    def request_prices(self, pair_indices: Sequence[int], callback: Callback) -> int:
        """One round covering several pairs (ADL)."""
        unique = tuple(dict.fromkeys(pair_indices))
        if len(unique) != len(pair_indices):
            raise ValidationError("WRONG_PARAMS", "duplicate pair in batch request")
        return self._open_round(unique, True, callback)

    # ── Answers ──────────────────────────────────────────────────────────

    def submit_answer(self, request_id: int, node_id: str,
                      prices: Union[int, Sequence[int]]) -> bool:
        """
        Record one node's answer.

        Returns:
            True if the answer was counted, False if it was late, duplicate
            or for an unknown request.
        """
        if node_id not in self._nodes:
            raise AuthorizationError("UNKNOWN_NODE", node_id)

        answer = (prices,) if isinstance(prices, int) else tuple(prices)
        rnd = self._rounds.get(request_id)
        if rnd is None or rnd.status is not RequestStatus.PENDING:
            self._late_answers += 1
            logger.debug(f"Ignoring answer from {node_id} for settled/unknown request #{request_id}")
            return False
        if node_id in rnd.answers:
            logger.warning(f"Duplicate answer from {node_id} for request #{request_id}")
            return False
        if len(answer) != len(rnd.request.pair_indices) or any(p <= 0 for p in answer):
            raise ValidationError("WRONG_PARAMS",
                                  f"node {node_id} answered {answer} for #{request_id}")

        rnd.answers[node_id] = answer
        if len(rnd.answers) >= self.min_answers:
            self._fulfill(rnd)
        return True

    def _reference_price(self, pair: Pair) -> Optional[int]:
        feed = pair.feed
        if self.reference_feed is None or not feed.feed1 or feed.max_deviation_p == 0:
            return None
        feed1 = self.reference_feed.latest_answer(feed.feed1)
        if not feed1:
            logger.warning(f"Reference feed {feed.feed1} unavailable for {pair.symbol}")
            return None
        if feed.calculation is FeedCalculation.INVERT:
            return PRECISION * PRECISION // feed1
        if feed.calculation is FeedCalculation.COMBINE:
            feed2 = self.reference_feed.latest_answer(feed.feed2)
            if not feed2:
                logger.warning(f"Reference feed {feed.feed2} unavailable for {pair.symbol}")
                return None
            return feed1 * PRECISION // feed2
        return feed1

    def _checked_price(self, pair: Pair, price: int) -> Tuple[int, Optional[str]]:
        ref = self._reference_price(pair)
        if ref is None:
            return price, None
        if abs(price - ref) * 100 * PRECISION > ref * pair.feed.max_deviation_p:
            logger.warning(
                f"{pair.symbol}: median ${fmt_price(price)} deviates from reference "
                f"${fmt_price(ref)} beyond {fmt_price(pair.feed.max_deviation_p)}%"
            )
            return 0, "PRICE_DEVIATION"
        return price, None

    def _fulfill(self, rnd: _Round) -> None:
        request = rnd.request
        columns = list(zip(*rnd.answers.values()))
        prices: List[int] = []
        error: Optional[str] = None
        for pair, column in zip(request.pairs, columns):
            price, err = self._checked_price(pair, median(list(column)))
            prices.append(price)
            error = error or err

        rnd.status = RequestStatus.FULFILLED
        self._fulfilled += 1
        self._retire(rnd)
        result = PriceFulfillment(request.request_id, request.pair_indices, tuple(prices), error)

        if request.batch:
            self.bus.publish(BatchPriceReceived(request.request_id, result.prices,
                                                len(rnd.answers), error))
        else:
            self.bus.publish(PriceReceived(request.request_id, request.pair_indices[0],
                                           result.price, len(rnd.answers), error))
        logger.info(f"Request #{request.request_id} fulfilled by {len(rnd.answers)} nodes: "
                    f"{[str(fmt_price(p)) for p in prices]}{' ' + error if error else ''}")

        try:
            rnd.callback(result)
        except Exception as e:
            logger.error(f"Settlement callback for request #{request.request_id} failed: {e}")
            raise

    # ── Timeouts ─────────────────────────────────────────────────────────

    def cancel(self, request_id: int) -> bool:
        rnd = self._rounds.get(request_id)
        if rnd is None or rnd.status is not RequestStatus.PENDING:
            return False
        rnd.status = RequestStatus.CANCELED
        self._canceled += 1
        self._retire(rnd)
        self.bus.publish(PriceRequestCanceled(request_id))
        logger.warning(f"Price request #{request_id} canceled with "
                       f"{len(rnd.answers)}/{self.min_answers} answers")
        return True

    def _retire(self, rnd: _Round) -> None:
        """Move a settled round out of the pending map; keep a bounded tail for lookups."""
        request_id = rnd.request.request_id
        self._rounds.pop(request_id, None)
        self._settled[request_id] = rnd
        while len(self._settled) > self.settled_rounds_kept:
            self._settled.popitem(last=False)

    def _lookup(self, request_id: int) -> Optional[_Round]:
        return self._rounds.get(request_id) or self._settled.get(request_id)

    def expired(self, now: Optional[int] = None) -> List[int]:
        now = self.clock() if now is None else now
        return [
            rid for rid, rnd in self._rounds.items()
            if now - rnd.request.created_at >= self.request_timeout
        ]

    def status(self, request_id: int) -> Optional[RequestStatus]:
        rnd = self._lookup(request_id)
        return rnd.status if rnd else None

    def answers(self, request_id: int) -> Dict[str, Tuple[int, ...]]:
        rnd = self._lookup(request_id)
        return dict(rnd.answers) if rnd else {}

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "nodes": len(self._nodes),
            "min_answers": self.min_answers,
            "last_request_id": self._last_id,
            "pending": len(self._rounds),
            "settled_kept": len(self._settled),
            "fulfilled": self._fulfilled,
            "canceled": self._canceled,
            "late_answers": self._late_answers,
        }
