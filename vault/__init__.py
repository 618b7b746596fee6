"""
Liquidity vault — pooled counterparty capital and its share token.

  liquidity_vault.py — NAV/share accounting, apply/run queues, time locks
  upnl_verifier.py   — proof check for externally fed unrealized PnL
"""
