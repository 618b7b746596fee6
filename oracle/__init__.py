"""
Oracle layer — two-phase price protocol between the engine and price nodes.

SRP split:
  price_gateway.py    — request ids, answer aggregation, single-fire callbacks
  price_node.py       — async node worker (request inbox -> answer)
  sources.py          — where a node gets prices (static table, HTTP API)
  reference_feeds.py  — reference prices for the deviation check
"""
