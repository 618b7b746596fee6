"""Reference feeds consulted by the gateway's deviation check."""
from __future__ import annotations

from typing import Dict, Optional

from loguru import logger


class StaticReferenceFeed:
    """Latest answer per feed name, pushed by whoever tracks the feed."""

    def __init__(self, answers: Optional[Dict[str, int]] = None):
        self._answers: Dict[str, int] = dict(answers or {})

    def set_answer(self, feed: str, price: int) -> None:
        if price <= 0:
            logger.warning(f"Ignoring non-positive answer {price} for feed {feed}")
            return
        self._answers[feed] = price

    def latest_answer(self, feed: str) -> Optional[int]:
        return self._answers.get(feed)
