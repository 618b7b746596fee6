"""
Execution layer — order intake, price settlement, positions and risk parameters.

SRP split:
  models.py              — orders, trades, pending records, close outcomes
  risk_engine.py         — RiskParameterStore: pairs, groups, fees, bounds
  pair_infos.py          — rollover/funding accrual, spread + price impact
  trade_math.py          — percent profit, trade value, trigger predicates
  position_ledger.py     — trades, limits, pending orders, OI, escrow
  order_manager.py       — intake mixin (opens, closes, TP/SL, bot triggers)
  position_lifecycle.py  — settlement mixin (price round -> mutations)
  execution_engine.py    — OrderExecutionEngine facade
  adl_engine.py          — batch auto-deleverage executor
  adl_ranking.py         — pluggable ADL ordering strategies
"""
