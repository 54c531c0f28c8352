"""Fire-and-forget side effects."""

import inspect
from typing import Any, Callable

from .log import get_logger

logger = get_logger(__name__)


async def best_effort(description: str, action: Callable[[], Any], **context) -> Any:
    """Run ``action`` and return its result, or log and return None if it fails.

    Used for writes that are an optimisation or a nice-to-have (cache entries,
    usage counters, music picks, real-time fan-out). They never abort the
    request that triggered them.
    """
    try:
        result = action()
        if inspect.isawaitable(result):
            result = await result
        return result
    except Exception as e:
        logger.warning(f"{description} failed", error=str(e), **context)
        return None
