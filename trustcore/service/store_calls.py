from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from trustcore.logging import get_logger, sanitize_error_message
from trustcore.service.errors import TransientStoreError
from trustcore.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store method in a worker thread under a deadline.

    Timeouts and connectivity failures surface as ``TransientStoreError`` so
    callers can tell "retry later" apart from business outcomes. Any other
    exception propagates unchanged.
    """
    operation = getattr(fn, "__name__", "store_call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(fn, *args, **kwargs)), timeout
        )
    except asyncio.TimeoutError as exc:
        logger.warning("store_call_timeout", operation=operation, timeout=timeout)
        raise TransientStoreError(
            "store operation timed out", detail={"operation": operation}
        ) from exc
    except StoreUnavailable as exc:
        logger.warning(
            "store_unavailable",
            operation=operation,
            error=sanitize_error_message(str(exc)),
        )
        raise TransientStoreError(
            "store unavailable", detail={"operation": operation}
        ) from exc
