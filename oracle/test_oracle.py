"""Tests for the price gateway, async price nodes and price sources."""
import asyncio

import httpx
import pytest

from config import OracleConfig
from conftest import ALICE, FakeNode, GOV
from core.access_control import AccessPolicy
from core.errors import AuthorizationError, ValidationError
from core.events import EventBus
from core.fixed_point import to_amount, to_percent, to_price
from execution.risk_engine import (
    FeeSchedule, FeedCalculation, FeedDescriptor, Group, Pair, RiskParameterStore,
)
from oracle.price_gateway import PriceOracleGateway, RequestStatus
from oracle.price_node import PriceNode
from oracle.reference_feeds import StaticReferenceFeed
from oracle.sources import HttpPriceSource, StaticPriceSource

ETH, BTC, EUR = 0, 1, 2


@pytest.fixture
def feeds():
    return StaticReferenceFeed({"ETH/USD": to_price(2000), "EUR/USD": to_price("1.25")})


@pytest.fixture
def gateway(clock, feeds):
    policy = AccessPolicy(GOV)
    params = RiskParameterStore(policy)
    params.add_group(GOV, Group("crypto", 2, 100, 100))
    params.add_fee(GOV, FeeSchedule("crypto", 0, 0, 0, 0, 0, 0))
    params.add_pair(GOV, Pair("ETH", "USD", FeedDescriptor("ETH/USD", max_deviation_p=to_percent(5)),
                              0, 0, 0))
    params.add_pair(GOV, Pair("BTC", "USD", FeedDescriptor(None), 0, 0, 0))
    params.add_pair(GOV, Pair("USD", "EUR", FeedDescriptor("EUR/USD", None, FeedCalculation.INVERT,
                                                           to_percent(1)), 0, 0, 0))
    gw = PriceOracleGateway(params, policy, clock, EventBus(), OracleConfig(min_answers=3), feeds)
    for i in range(4):
        gw.register_node(GOV, FakeNode(f"node-{i}", gw))
    return gw


class Recorder:
    def __init__(self):
        self.results = []

    def __call__(self, result):
        self.results.append(result)


# ── Aggregation ──────────────────────────────────────────────────────────────

def test_median_of_first_quorum(gateway):
    callback = Recorder()
    request_id = gateway.request_price(ETH, callback)
    assert gateway.submit_answer(request_id, "node-0", to_price(2010))
    assert gateway.submit_answer(request_id, "node-1", to_price(1990))
    assert callback.results == []
    assert gateway.submit_answer(request_id, "node-2", to_price(2000))

    assert len(callback.results) == 1
    result = callback.results[0]
    assert result.ok and result.price == to_price(2000)
    assert gateway.status(request_id) is RequestStatus.FULFILLED
    assert gateway.submit_answer(request_id, "node-3", to_price(2500)) is False
    assert len(callback.results) == 1
    assert gateway.get_statistics()["late_answers"] == 1


def test_duplicate_and_invalid_answers(gateway):
    request_id = gateway.request_price(ETH, Recorder())
    assert gateway.submit_answer(request_id, "node-0", to_price(2000))
    assert gateway.submit_answer(request_id, "node-0", to_price(2001)) is False
    assert gateway.answers(request_id) == {"node-0": (to_price(2000),)}
    with pytest.raises(AuthorizationError) as exc:
        gateway.submit_answer(request_id, "rogue", to_price(2000))
    assert exc.value.reason == "UNKNOWN_NODE"
    with pytest.raises(ValidationError):
        gateway.submit_answer(request_id, "node-1", 0)


def test_only_gov_registers_nodes(gateway):
    with pytest.raises(AuthorizationError):
        gateway.register_node(ALICE, FakeNode("node-x", gateway))
    gateway.remove_node(GOV, "node-3")
    assert gateway.node_ids == ["node-0", "node-1", "node-2"]


def test_requests_are_delivered_to_every_node(gateway):
    request_id = gateway.request_price(BTC, Recorder())
    for node_id in gateway.node_ids:
        assert gateway._nodes[node_id].requests[-1].request_id == request_id


# ── Deviation check ──────────────────────────────────────────────────────────

def _fill(gateway, request_id, *answer):
    for node_id in ("node-0", "node-1", "node-2"):
        gateway.submit_answer(request_id, node_id, list(answer))


def test_deviation_beyond_bound_fails(gateway):
    callback = Recorder()
    _fill(gateway, gateway.request_price(ETH, callback), to_price(2200))
    result = callback.results[0]
    assert not result.ok
    assert result.error == "PRICE_DEVIATION"
    assert result.prices == (0,)


def test_deviation_within_bound_passes(gateway):
    callback = Recorder()
    _fill(gateway, gateway.request_price(ETH, callback), to_price(2090))
    assert callback.results[0].price == to_price(2090)


def test_inverted_reference_feed(gateway):
    callback = Recorder()
    _fill(gateway, gateway.request_price(EUR, callback), to_price("0.8"))
    assert callback.results[0].ok
    callback = Recorder()
    _fill(gateway, gateway.request_price(EUR, callback), to_price("0.9"))
    assert callback.results[0].error == "PRICE_DEVIATION"


def test_missing_reference_skips_check(gateway, feeds):
    callback = Recorder()
    _fill(gateway, gateway.request_price(BTC, callback), to_price(60_000))
    assert callback.results[0].price == to_price(60_000)


def test_engine_cancels_open_on_deviation(make_world):
    world = make_world()
    world.gateway.reference_feed = StaticReferenceFeed({"ETH/USD": to_price(1000)})
    world.params.update_pair(GOV, 0, Pair("ETH", "USD", FeedDescriptor("ETH/USD",
                                                                       max_deviation_p=to_percent(5)),
                                          0, 0, 0))
    world.open_market()
    world.answer(to_price(2000))
    assert world.bus.last("MarketOpenCanceled").reason == "PRICE_DEVIATION"
    assert world.token.balance_of(ALICE) == to_amount(10_000)


# ── Batch / cancel ───────────────────────────────────────────────────────────

def test_batch_request_prices_each_pair(gateway):
    callback = Recorder()
    request_id = gateway.request_prices([ETH, BTC], callback)
    gateway.submit_answer(request_id, "node-0", [to_price(2000), to_price(60_000)])
    gateway.submit_answer(request_id, "node-1", [to_price(2010), to_price(61_000)])
    gateway.submit_answer(request_id, "node-2", [to_price(1990), to_price(59_000)])
    result = callback.results[0]
    assert result.price_of(ETH) == to_price(2000)
    assert result.price_of(BTC) == to_price(60_000)
    with pytest.raises(ValidationError):
        gateway.submit_answer(gateway.request_prices([ETH, BTC], Recorder()), "node-0",
                              [to_price(2000)])
    with pytest.raises(ValidationError):
        gateway.request_prices([ETH, ETH], Recorder())


def test_cancel_and_expiry(gateway, clock):
    request_id = gateway.request_price(ETH, Recorder())
    clock.advance(59)
    assert gateway.expired() == []
    clock.advance(1)
    assert gateway.expired() == [request_id]
    assert gateway.cancel(request_id)
    assert not gateway.cancel(request_id)
    assert gateway.submit_answer(request_id, "node-0", to_price(2000)) is False
    assert gateway.status(request_id) is RequestStatus.CANCELED
    assert gateway.expired(clock() + 3600) == []


def test_settled_rounds_leave_pending_map(world):
    gw = PriceOracleGateway(world.params, world.policy, world.clock, world.bus,
                            OracleConfig(min_answers=1, settled_rounds_kept=2))
    node = FakeNode("solo", gw)
    gw.register_node(GOV, node)
    ids = [gw.request_price(ETH, Recorder()) for _ in range(4)]
    for request_id in ids[:3]:
        node.answer(to_price(2000), request_id=request_id)
    gw.cancel(ids[3])

    stats = gw.get_statistics()
    assert stats["pending"] == 0 and stats["settled_kept"] == 2
    assert gw.status(ids[0]) is None
    assert gw.status(ids[2]) is RequestStatus.FULFILLED
    assert gw.status(ids[3]) is RequestStatus.CANCELED
    assert node.answer(to_price(2000), request_id=ids[0]) is False


# ── Async price node ─────────────────────────────────────────────────────────

def test_price_node_answers_from_source(make_world):
    world = make_world()
    source = StaticPriceSource({"ETH/USD": to_price(2000)})
    node = PriceNode("async-node", world.gateway, source)
    world.gateway.remove_node(GOV, "node-0")
    world.gateway.register_node(GOV, node)

    world.open_market()
    assert node.inbox.qsize() == 1
    assert asyncio.run(node.drain()) == 1
    assert world.ledger.trade(ALICE, 0, 0).open_price == to_price(2000)
    assert node.get_statistics() == {"queued": 0, "answered": 1, "skipped": 0}


def test_price_node_leaves_unknown_pair_unanswered(make_world):
    world = make_world()
    node = PriceNode("async-node", world.gateway, StaticPriceSource())
    world.gateway.remove_node(GOV, "node-0")
    world.gateway.register_node(GOV, node)
    order_id = world.open_market()
    assert asyncio.run(node.drain()) == 0
    assert world.gateway.status(order_id) is RequestStatus.PENDING
    assert node.get_statistics()["skipped"] == 1


def test_price_node_stops_while_idle():
    async def scenario():
        node = PriceNode("idle-node", None, StaticPriceSource())
        worker = asyncio.create_task(node.run())
        await asyncio.sleep(0)
        node.stop()
        await asyncio.wait_for(worker, timeout=1)
        return node

    node = asyncio.run(scenario())
    assert node.get_statistics()["queued"] == 0


# ── HTTP source ──────────────────────────────────────────────────────────────

def _http_source(handler):
    client = httpx.AsyncClient(base_url="https://prices.test", transport=httpx.MockTransport(handler))
    return HttpPriceSource(OracleConfig(), client=client)


def test_http_source_parses_price():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json={"USD": 1800.5})

    source = _http_source(handler)
    pair = Pair("ETH", "USD", FeedDescriptor(None), 0, 0, 0)
    assert asyncio.run(source.get_price(pair)) == to_price("1800.5")
    assert seen == {"fsym": "ETH", "tsyms": "USD"}


def test_http_source_errors_return_none():
    source = _http_source(lambda request: httpx.Response(500))
    pair = Pair("ETH", "USD", FeedDescriptor(None), 0, 0, 0)
    assert asyncio.run(source.get_price(pair)) is None

    source = _http_source(lambda request: httpx.Response(200, json={"EUR": 1}))
    assert asyncio.run(source.get_price(pair)) is None
