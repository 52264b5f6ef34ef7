from __future__ import annotations

import asyncio
from collections.abc import Awaitable
import logging
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_soft_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    *,
    label: str,
    default: T | None = None,
) -> T | None:
    """Await a non-essential value, giving up with `default` instead of stalling the caller."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("side fetch timed out label=%s timeout_s=%.2f; continuing without it", label, timeout_seconds)
    except Exception as exc:
        logger.warning("side fetch failed label=%s: %s; continuing without it", label, exc)
    return default
