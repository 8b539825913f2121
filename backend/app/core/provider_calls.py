# backend/app/core/provider_calls.py
import asyncio
import functools
import logging
from typing import Any, Callable, Optional, Tuple, Type

from app.core.config import settings
from app.core.exceptions import UpstreamFailure

logger = logging.getLogger(__name__)


async def call_provider(
    provider: str,
    func: Callable[..., Any],
    *args,
    provider_errors: Tuple[Type[BaseException], ...] = (Exception,),
    timeout: Optional[float] = None,
    **kwargs
) -> Any:
    """Run a blocking provider SDK call off the event loop with a bounded timeout.

    Timeouts and provider errors become UpstreamFailure so webhook callers
    answer non-2xx and the provider retries.
    """
    timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.error(f"⏱️ {provider} call timed out after {timeout}s")
        raise UpstreamFailure(f"{provider} request timed out")
    except provider_errors as e:
        logger.error(f"❌ {provider} call failed: {e}")
        raise UpstreamFailure(f"{provider} request failed")
