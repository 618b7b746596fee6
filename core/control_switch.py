"""
Trading control switch — pause / done flags.

paused  → no new positions (intake and open settlement), closes still allowed
done    → every trader-facing operation rejected

Two backends:
  LocalControlSwitch  — in-process flags (tests, single node)
  RedisControlSwitch  — flags shared through Redis so an operator can halt
                        every engine replica without a restart
"""
from __future__ import annotations

from typing import Optional

import redis
from loguru import logger

from config import RedisConfig


class LocalControlSwitch:
    """In-process pause/done flags."""

    def __init__(self, paused: bool = False, done: bool = False):
        self._paused = paused
        self._done = done

    def is_paused(self) -> bool:
        return self._paused

    def is_done(self) -> bool:
        return self._done

    def set_paused(self, paused: bool) -> None:
        self._paused = paused
        logger.warning(f"Trading {'PAUSED' if paused else 'RESUMED'}")

    def set_done(self, done: bool) -> None:
        self._done = done
        logger.warning(f"Trading {'DONE' if done else 're-enabled'}")


def get_redis_client(cfg: Optional[RedisConfig] = None) -> Optional[redis.Redis]:
    """Connected Redis client, or None if the server is unreachable."""
    cfg = cfg or RedisConfig()
    try:
        client = redis.Redis(
            host=cfg.host,
            port=cfg.port,
            db=cfg.db,
            decode_responses=True,
            socket_connect_timeout=5,
        )
        client.ping()
        return client
    except redis.RedisError as e:
        logger.error(f"Redis connection failed ({cfg.host}:{cfg.port}): {e}")
        return None


class RedisControlSwitch:
    """
    Pause/done flags stored under ``<prefix>:paused`` and ``<prefix>:done``.

    A read that fails keeps the last value seen, so a Redis outage never
    silently un-pauses trading.
    """

    def __init__(self, client: redis.Redis, prefix: str = "perp_settlement"):
        self.client = client
        self.prefix = prefix
        self._last = {"paused": False, "done": False}

    def key(self, flag: str) -> str:
        return f"{self.prefix}:{flag}"

    def _read(self, flag: str) -> bool:
        try:
            value = self.client.get(self.key(flag))
        except redis.RedisError as e:
            logger.error(f"Reading {self.key(flag)} failed, keeping {self._last[flag]}: {e}")
            return self._last[flag]
        self._last[flag] = value == "1"
        return self._last[flag]

    def _write(self, flag: str, value: bool) -> None:
        self.client.set(self.key(flag), "1" if value else "0")
        self._last[flag] = value
        logger.warning(f"{self.key(flag)} set to {value}")

    def is_paused(self) -> bool:
        return self._read("paused")

    def is_done(self) -> bool:
        return self._read("done")

    def set_paused(self, paused: bool) -> None:
        self._write("paused", paused)

    def set_done(self, done: bool) -> None:
        self._write("done", done)
