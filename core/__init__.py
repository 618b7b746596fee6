"""
Core primitives shared by every settlement component.

SRP split:
  fixed_point.py     — scaled-integer arithmetic helpers (PRECISION = 1e10)
  errors.py          — reason-coded error taxonomy
  events.py          — completion events + in-process EventBus
  access_control.py  — role policy, Authorize(caller, action) -> bool
  token_ledger.py    — collateral token balances / allowances
  control_switch.py  — pause / done flags (local or Redis-backed)
  log_setup.py       — loguru sink configuration
"""
