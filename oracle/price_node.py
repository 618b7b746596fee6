"""
Price Node
Async worker that receives price requests through an inbox queue, reads
prices from its source and answers the gateway.  Requests it cannot price are
left unanswered; the requester's timeout path takes over.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from loguru import logger

from core.errors import SettlementError
from interfaces import IPriceSource

# Queued by stop() to wake an idle run() loop.
_STOP = object()


class PriceNode:
    """One independent price node (message passing in, submit_answer out)."""

    def __init__(self, node_id: str, gateway: Any, source: IPriceSource):
        self.node_id = node_id
        self.gateway = gateway
        self.source = source
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._running = False
        self._answered = 0
        self._skipped = 0

    def deliver(self, request: Any) -> None:
        self.inbox.put_nowait(request)

    async def handle(self, request: Any) -> bool:
        prices: List[int] = []
        for pair in request.pairs:
            price = await self.source.get_price(pair)
            if not price:
                self._skipped += 1
                logger.warning(f"[{self.node_id}] no price for {pair.symbol}, "
                               f"leaving request #{request.request_id} unanswered")
                return False
            prices.append(price)
        try:
            counted = self.gateway.submit_answer(request.request_id, self.node_id, prices)
        except SettlementError as e:
            logger.error(f"[{self.node_id}] answer for #{request.request_id} rejected: {e}")
            return False
        if counted:
            self._answered += 1
        return counted

    async def drain(self) -> int:
        """Answer everything currently queued.  Returns how many were counted."""
        counted = 0
        while not self.inbox.empty():
            request = self.inbox.get_nowait()
            try:
                if request is not _STOP:
                    counted += await self.handle(request)
            finally:
                self.inbox.task_done()
        return counted

    async def run(self) -> None:
        self._running = True
        logger.info(f"Price node {self.node_id} started")
        while self._running:
            request = await self.inbox.get()
            try:
                if request is _STOP:
                    break
                await self.handle(request)
            finally:
                self.inbox.task_done()
        self._running = False
        logger.info(f"Price node {self.node_id} stopped")

    def stop(self) -> None:
        self._running = False
        self.inbox.put_nowait(_STOP)
        logger.info(f"Price node {self.node_id} stopping")

    def get_statistics(self) -> Dict[str, Optional[int]]:
        return {
            "queued": self.inbox.qsize(),
            "answered": self._answered,
            "skipped": self._skipped,
        }
