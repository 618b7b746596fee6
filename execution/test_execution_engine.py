"""End-to-end tests for OrderExecutionEngine on the shared SettlementWorld."""
import pytest

from conftest import ALICE, BOB, BOT, ETH, GOV
from core.errors import (
    AdmissionError, AuthorizationError, TokenError, TradingHaltedError, ValidationError,
)
from core.fixed_point import to_amount, to_percent, to_price
from core.token_ledger import TRADING_STORAGE
from execution.models import BotOrderKind, OrderType, PendingKind, TradeRequest
from oracle.price_gateway import PriceFulfillment, RequestStatus

SEED = to_amount(100_000)


# ── Market opens ─────────────────────────────────────────────────────────────

def test_market_open_charges_open_fee(world):
    order_id = world.open_market()
    assert world.token.balance_of(ALICE) == to_amount(9_000)
    assert world.ledger.get_pending(order_id)[0] is PendingKind.MARKET_OPEN

    world.answer(to_price(2000))

    trade = world.ledger.trade(ALICE, ETH, 0)
    assert trade.collateral == to_amount(992)
    assert trade.open_price == to_price(2000)
    assert world.engine.platform_fee == to_amount(8)
    assert world.engine.open_interest(ETH, True) == to_amount(9_920)
    executed = world.bus.last("MarketExecuted")
    assert executed.open and executed.fee == to_amount(8)
    assert world.ledger.get_pending(order_id) is None


def test_open_rejected_outside_slippage_refunds(world):
    world.open_market(price=to_price(2000), slippage_p=to_percent(1))
    world.answer(to_price(2030))
    assert world.ledger.open_trades() == []
    assert world.bus.last("MarketOpenCanceled").reason == "SLIPPAGE"
    assert world.token.balance_of(ALICE) == to_amount(10_000)


def test_open_canceled_when_tp_already_reached(world):
    world.open_market(tp=to_price(2010))
    world.answer(to_price(2015))
    assert world.bus.last("MarketOpenCanceled").reason == "TP_REACHED"
    assert world.token.balance_of(ALICE) == to_amount(10_000)


def test_intake_checks(world):
    order = TradeRequest(ALICE, ETH, to_amount(1000), to_price(2000), True, 10)
    with pytest.raises(AuthorizationError) as exc:
        world.engine.open_trade(BOB, order, OrderType.MARKET, to_percent(1))
    assert exc.value.reason == "NOT_OWNER"

    broke = TradeRequest("carol", ETH, to_amount(1000), to_price(2000), True, 10)
    with pytest.raises(TokenError) as exc:
        world.engine.open_trade("carol", broke, OrderType.MARKET, to_percent(1))
    assert exc.value.reason == "INSUFFICIENT_BALANCE"

    with pytest.raises(ValidationError) as exc:
        world.open_market(leverage=1)
    assert exc.value.reason == "LEVERAGE_INCORRECT"
    assert world.ledger.pending_orders() == []
    assert world.gateway.get_statistics()["last_request_id"] == 0


def test_max_trades_per_pair_counts_pending(world):
    for _ in range(3):
        world.open_market()
    with pytest.raises(ValidationError) as exc:
        world.open_market()
    assert exc.value.reason == "MAX_TRADES_PER_PAIR"


def test_paused_blocks_opens_not_closes(world):
    world.open_filled()
    with pytest.raises(AuthorizationError):
        world.engine.set_paused(ALICE, True)
    world.engine.set_paused(GOV, True)
    with pytest.raises(TradingHaltedError) as exc:
        world.open_market()
    assert exc.value.reason == "PAUSED"
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(2000))
    assert world.ledger.open_trades() == []


def test_done_blocks_everything(world):
    world.open_filled()
    world.engine.set_done(GOV, True)
    with pytest.raises(TradingHaltedError) as exc:
        world.engine.close_trade_market(ALICE, ETH, 0)
    assert exc.value.reason == "DONE"


# ── Exposure ─────────────────────────────────────────────────────────────────

def test_pair_open_interest_cap(world):
    world.params.set_max_open_interest(GOV, ETH, to_amount(15_000))
    world.open_filled()
    with pytest.raises(AdmissionError) as exc:
        world.open_market(trader=BOB)
    assert exc.value.reason == "OUT_EXPOSURELIMITS"


def test_exposure_rechecked_at_settlement(world):
    world.params.set_max_open_interest(GOV, ETH, to_amount(15_000))
    first = world.open_market()
    second = world.open_market(trader=BOB)
    world.answer(to_price(2000), request_id=first)
    world.answer(to_price(2000), request_id=second)
    assert len(world.ledger.open_trades()) == 1
    assert world.bus.last("MarketOpenCanceled").reason == "OUT_EXPOSURELIMITS"
    assert world.token.balance_of(BOB) == to_amount(10_000)


def test_vault_capacity_caps_exposure(make_world):
    small = make_world(vault_seed=to_amount(500))
    with pytest.raises(AdmissionError) as exc:
        small.open_market()
    assert exc.value.reason == "OUT_EXPOSURELIMITS"


# ── Market closes ────────────────────────────────────────────────────────────

def test_flat_close_pays_collateral_minus_close_fee(world):
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(2000))

    executed = world.bus.last("MarketExecuted")
    assert not executed.open
    assert executed.sent_to_trader == 984_064_000
    assert executed.fee == 7_936_000
    assert executed.vault_flow == 0
    assert world.token.balance_of(ALICE) == to_amount(9_000) + 984_064_000
    assert world.vault.total_assets == SEED
    assert world.engine.open_interest(ETH, True) == 0


def test_profit_close_is_paid_by_vault(world):
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(2100))

    executed = world.bus.last("MarketExecuted")
    assert executed.percent_profit == to_percent(50)
    assert executed.sent_to_trader == 1_480_064_000
    assert executed.vault_flow == -to_amount(496)
    assert world.vault.total_assets == SEED - to_amount(496)
    # escrow account keeps exactly the accrued platform fee
    assert world.token.balance_of(TRADING_STORAGE) == world.engine.platform_fee


def test_loss_close_feeds_vault(world):
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(1900))
    executed = world.bus.last("MarketExecuted")
    assert executed.sent_to_trader == 488_064_000
    assert executed.vault_flow == to_amount(496)
    assert world.vault.total_assets == SEED + to_amount(496)


def test_deep_loss_liquidates_without_fee(world):
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(1800))
    executed = world.bus.last("MarketExecuted")
    assert executed.sent_to_trader == 0
    assert executed.fee == 0
    assert executed.vault_flow == to_amount(992)


def test_liquidation_boundary_is_inclusive(world):
    # -9 % at 10x leaves exactly 10 % of collateral
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(1820))
    executed = world.bus.last("MarketExecuted")
    assert executed.percent_profit == -to_percent(90)
    assert executed.sent_to_trader == 0 and executed.fee == 0
    assert executed.vault_flow == to_amount(992)


def test_just_above_liquidation_boundary_pays_out(world):
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(1821))
    executed = world.bus.last("MarketExecuted")
    assert executed.percent_profit == -to_percent("89.5")
    assert executed.fee == 7_936_000
    assert executed.sent_to_trader == 96_224_000
    assert executed.vault_flow == 887_840_000


def test_close_twice_rejected(world):
    world.open_filled()
    world.engine.close_trade_market(ALICE, ETH, 0)
    with pytest.raises(ValidationError) as exc:
        world.engine.close_trade_market(ALICE, ETH, 0)
    assert exc.value.reason == "ALREADY_BEING_CLOSED"
    with pytest.raises(ValidationError) as exc:
        world.engine.close_trade_market(BOB, ETH, 0)
    assert exc.value.reason == "NO_TRADE"


def test_settlement_replay_is_noop(world):
    order_id = world.open_market()
    world.answer(to_price(2000))
    assert world.nodes[0].answer(to_price(2000), request_id=order_id) is False
    replay = PriceFulfillment(order_id, (ETH,), (to_price(2000),))
    assert world.engine._on_price(replay) is None
    assert len(world.ledger.open_trades()) == 1
    assert world.engine.platform_fee == to_amount(8)


# ── Timeouts ─────────────────────────────────────────────────────────────────

def test_open_timeout_refunds(world):
    order_id = world.open_market()
    world.clock.advance(59)
    with pytest.raises(ValidationError) as exc:
        world.engine.open_trade_market_timeout(ALICE, order_id)
    assert exc.value.reason == "WAIT_TIMEOUT"
    with pytest.raises(AuthorizationError):
        world.engine.open_trade_market_timeout(BOB, order_id)

    world.clock.advance(1)
    assert world.engine.open_trade_market_timeout(ALICE, order_id) == to_amount(1000)
    assert world.token.balance_of(ALICE) == to_amount(10_000)
    assert world.gateway.status(order_id) is RequestStatus.CANCELED
    assert world.nodes[0].answer(to_price(2000), request_id=order_id) is False
    assert world.ledger.open_trades() == []


def test_close_timeout_releases_trade(world):
    world.open_filled()
    order_id = world.engine.close_trade_market(ALICE, ETH, 0)
    world.clock.advance(60)
    world.engine.close_trade_market_timeout(ALICE, order_id)
    assert world.bus.last("MarketCloseTimeoutExecuted").order_id == order_id
    assert not world.ledger.is_being_closed((ALICE, ETH, 0))
    world.engine.close_trade_market(ALICE, ETH, 0)


def test_sweep_expires_bot_orders(world):
    world.open_filled(sl=to_price(1900))
    world.clock.advance(30)
    order_id = world.engine.execute_bot_order(BOT, BotOrderKind.SL, ALICE, ETH, 0)
    world.clock.advance(60)
    assert world.engine.sweep_expired() == [order_id]
    assert world.bus.last("BotOrderCanceled").reason == "TIMEOUT"
    assert not world.ledger.is_being_closed((ALICE, ETH, 0))


# ── TP / SL ──────────────────────────────────────────────────────────────────

def test_update_tp(world):
    world.open_filled()
    world.engine.update_tp(ALICE, ETH, 0, to_price(2100))
    assert world.ledger.trade(ALICE, ETH, 0).tp == to_price(2100)
    with pytest.raises(ValidationError) as exc:
        world.engine.update_tp(ALICE, ETH, 0, to_price(1900))
    assert exc.value.reason == "WRONG_TP"


def test_update_sl_applies_after_price_round(world):
    world.open_filled()
    order_id = world.engine.update_sl(ALICE, ETH, 0, to_price(1900))
    assert world.ledger.trade(ALICE, ETH, 0).sl == 0
    world.answer(to_price(1950))
    assert world.ledger.trade(ALICE, ETH, 0).sl == to_price(1900)
    assert world.bus.last("SlUpdated").order_id == order_id


def test_update_sl_canceled_when_already_crossed(world):
    world.open_filled()
    world.engine.update_sl(ALICE, ETH, 0, to_price(1900))
    world.answer(to_price(1890))
    assert world.bus.last("SlCanceled").reason == "SL_REACHED"
    assert world.ledger.trade(ALICE, ETH, 0).sl == 0


def test_remove_sl_is_synchronous(world):
    world.open_filled(sl=to_price(1900))
    assert world.engine.update_sl(ALICE, ETH, 0, 0) is None
    assert world.ledger.trade(ALICE, ETH, 0).sl == 0


def test_pending_sl_update_does_not_land_on_reopened_slot(world):
    world.open_filled()
    sl_order = world.engine.update_sl(ALICE, ETH, 0, to_price(1900))

    close_order = world.engine.close_trade_market(ALICE, ETH, 0)
    world.answer(to_price(2000), request_id=close_order)
    short_order = world.open_market(buy=False)
    world.answer(to_price(2000), request_id=short_order)
    short = world.ledger.trade(ALICE, ETH, 0)
    assert not short.buy

    world.answer(to_price(1850), request_id=sl_order)
    assert world.bus.last("SlCanceled").reason == "NO_TRADE"
    assert world.ledger.trade(ALICE, ETH, 0).sl == 0


def test_pending_sl_update_revalidated_at_settlement(world):
    world.open_filled()
    world.engine.update_sl(ALICE, ETH, 0, to_price(1900))
    world.params.set_sl_tp(GOV, 40, 900)
    world.answer(to_price(1950))
    assert world.bus.last("SlCanceled").reason == "SL_TOO_BIG"
    assert world.ledger.trade(ALICE, ETH, 0).sl == 0


def test_pending_bot_sl_blocks_close_and_reopen(world):
    world.open_filled(sl=to_price(1900))
    world.clock.advance(30)
    world.engine.execute_bot_order(BOT, BotOrderKind.SL, ALICE, ETH, 0)
    with pytest.raises(ValidationError) as exc:
        world.engine.close_trade_market(ALICE, ETH, 0)
    assert exc.value.reason == "ALREADY_BEING_CLOSED"

    world.answer(to_price(1890))
    executed = world.bus.last("LimitExecuted")
    assert executed.price == to_price(1900)
    assert world.ledger.open_trades() == []


# ── Bot orders ───────────────────────────────────────────────────────────────

def test_bot_tp_closes_at_tp_and_pays_bot(world):
    world.open_filled(tp=to_price(2100))
    with pytest.raises(ValidationError) as exc:
        world.engine.execute_bot_order(BOT, BotOrderKind.TP, ALICE, ETH, 0)
    assert exc.value.reason == "LIMIT_TIMELOCK"
    with pytest.raises(AuthorizationError) as exc:
        world.engine.execute_bot_order(ALICE, BotOrderKind.TP, ALICE, ETH, 0)
    assert exc.value.reason == "NOT_BOT"

    world.clock.advance(30)
    world.engine.execute_bot_order(BOT, BotOrderKind.TP, ALICE, ETH, 0)
    world.answer(to_price(2150))

    executed = world.bus.last("LimitExecuted")
    assert executed.price == to_price(2100)
    assert executed.bot_fee == 992_000
    assert executed.sent_to_trader == 1_479_072_000
    assert executed.vault_flow == -to_amount(496)
    assert world.ledger.bot_rewards(BOT) == 992_000
    assert world.ledger.claim_bot_rewards(BOT) == 992_000
    assert world.token.balance_of(BOT) == 992_000


def test_bot_order_price_not_hit(world):
    world.open_filled(tp=to_price(2100))
    world.clock.advance(30)
    world.engine.execute_bot_order(BOT, BotOrderKind.TP, ALICE, ETH, 0)
    with pytest.raises(ValidationError) as exc:
        world.engine.execute_bot_order(BOT, BotOrderKind.TP, ALICE, ETH, 0)
    assert exc.value.reason == "ALREADY_TRIGGERED"
    world.answer(to_price(2050))
    assert world.bus.last("BotOrderCanceled").reason == "PRICE_NOT_HIT"
    assert not world.ledger.is_being_closed((ALICE, ETH, 0))


def test_bot_liquidation(world):
    world.open_filled()
    world.engine.execute_bot_order(BOT, BotOrderKind.LIQ, ALICE, ETH, 0)
    world.answer(to_price(1820))
    executed = world.bus.last("LimitExecuted")
    assert executed.sent_to_trader == 0
    assert executed.fee == 0 and executed.bot_fee == 0
    assert executed.vault_flow == to_amount(992)
    assert world.ledger.open_trades() == []


def test_no_tp_rejected(world):
    world.open_filled()
    world.clock.advance(30)
    with pytest.raises(ValidationError) as exc:
        world.engine.execute_bot_order(BOT, BotOrderKind.TP, ALICE, ETH, 0)
    assert exc.value.reason == "NO_TP"


# ── Limit orders ─────────────────────────────────────────────────────────────

def _place_limit(world, price=to_price(1900)):
    order = TradeRequest(ALICE, ETH, to_amount(1000), price, True, 10)
    return world.engine.open_trade(ALICE, order, OrderType.LIMIT, to_percent(1))


def test_limit_order_triggers_within_slippage(world):
    assert _place_limit(world) == 0
    assert world.token.balance_of(ALICE) == to_amount(9_000)
    with pytest.raises(ValidationError) as exc:
        world.engine.execute_bot_order(BOT, BotOrderKind.LIMIT_OPEN, ALICE, ETH, 0)
    assert exc.value.reason == "LIMIT_TIMELOCK"

    world.clock.advance(30)
    world.engine.execute_bot_order(BOT, BotOrderKind.LIMIT_OPEN, ALICE, ETH, 0)
    world.answer(to_price(1950))
    assert world.bus.last("BotOrderCanceled").reason == "PRICE_NOT_HIT"
    assert world.ledger.limit_order(ALICE, ETH, 0) is not None

    world.engine.execute_bot_order(BOT, BotOrderKind.LIMIT_OPEN, ALICE, ETH, 0)
    world.answer(to_price(1910))
    trade = world.ledger.trade(ALICE, ETH, 0)
    assert trade.open_price == to_price(1900)
    assert trade.collateral == to_amount(991)
    assert world.ledger.limit_order(ALICE, ETH, 0) is None
    assert world.ledger.bot_rewards(BOT) == to_amount(1)
    assert world.bus.last("LimitExecuted").fee == to_amount(8)


def test_cancel_limit_after_timelock(world):
    _place_limit(world)
    with pytest.raises(ValidationError) as exc:
        world.engine.cancel_open_limit_order(ALICE, ETH, 0)
    assert exc.value.reason == "LIMIT_TIMELOCK"
    world.clock.advance(30)
    assert world.engine.cancel_open_limit_order(ALICE, ETH, 0) == to_amount(1000)
    assert world.token.balance_of(ALICE) == to_amount(10_000)


def test_update_limit_resets_timelock(world):
    _place_limit(world)
    world.clock.advance(30)
    world.engine.update_open_limit_order(ALICE, ETH, 0, to_price(1850), 0, to_price(1800))
    order = world.ledger.limit_order(ALICE, ETH, 0)
    assert (order.wanted_price, order.sl) == (to_price(1850), to_price(1800))
    with pytest.raises(ValidationError) as exc:
        world.engine.execute_bot_order(BOT, BotOrderKind.LIMIT_OPEN, ALICE, ETH, 0)
    assert exc.value.reason == "LIMIT_TIMELOCK"


# ── Referral, fees, read paths ───────────────────────────────────────────────

def test_referral_takes_share_of_open_fee(world):
    order = TradeRequest(ALICE, ETH, to_amount(1000), to_price(2000), True, 10)
    world.engine.open_trade(ALICE, order, OrderType.MARKET, to_percent(1), referral="friend")
    world.answer(to_price(2000))
    assert world.token.balance_of(world.referrals.account) == to_amount(2)
    assert world.referrals.credited[ALICE] == to_amount(2)
    assert world.engine.platform_fee == to_amount(6)


def test_escrow_balance_matches_ledger_obligations(world):
    def owed():
        return (world.ledger.escrowed_total() + world.engine.platform_fee
                + world.ledger.bot_rewards(BOT))

    world.open_filled()
    world.open_market()
    _place_limit(world)
    assert world.token.balance_of(TRADING_STORAGE) == owed()

    world.answer(to_price(2000))
    world.clock.advance(30)
    world.engine.execute_bot_order(BOT, BotOrderKind.LIMIT_OPEN, ALICE, ETH, 0)
    world.answer(to_price(1900))
    assert len(world.ledger.open_trades(ALICE)) == 3
    assert world.token.balance_of(TRADING_STORAGE) == owed()


def test_claim_platform_fee(world):
    world.open_filled()
    with pytest.raises(AuthorizationError):
        world.ledger.claim_platform_fee(ALICE, ALICE)
    assert world.ledger.claim_platform_fee(GOV, "treasury") == to_amount(8)
    assert world.token.balance_of("treasury") == to_amount(8)
    assert world.engine.platform_fee == 0


def test_unrealized_pnl_matches_close_formula(world):
    world.open_filled()
    assert world.engine.unrealized_pnl({ETH: to_price(2100)}) == to_amount(496)
    assert world.engine.unrealized_pnl({ETH: to_price(2000)}) == 0
    stats = world.engine.get_statistics()
    assert stats["ledger"]["open_trades"] == 1
    assert not stats["paused"]
