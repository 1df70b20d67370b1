"""
Redis-backed concurrency guard for workflow functions.

Each function with a ``concurrency`` limit owns a counter key; an invocation
takes a slot before running and gives it back afterwards. The counter's TTL
is set when the first slot is taken and is never extended while slots stay
busy, so slots leaked by a crashed worker expire.
"""

import logging

logger = logging.getLogger(__name__)

SLOT_PREFIX = "workflow:slots:"
SLOT_TTL = 900  # seconds, from the first acquire of a busy period


def acquire_slot(redis_client, name: str, limit: int) -> bool:
    """
    Try to take one of ``limit`` slots for ``name``.
    Returns True if a slot was taken, False if at capacity.
    """
    key = f"{SLOT_PREFIX}{name}"
    active = redis_client.incr(key)
    if active == 1 or redis_client.ttl(key) < 0:
        redis_client.expire(key, SLOT_TTL)
    if active > limit:
        redis_client.decr(key)
        logger.debug(f"Concurrency limit reached for {name} ({limit})")
        return False
    return True


def release_slot(redis_client, name: str):
    """Give a slot back. Never drops the counter below zero."""
    key = f"{SLOT_PREFIX}{name}"
    if redis_client.decr(key) < 0:
        redis_client.set(key, 0, ex=SLOT_TTL)


def get_active(redis_client, name: str) -> int:
    return int(redis_client.get(f"{SLOT_PREFIX}{name}") or 0)
