import asyncio
import functools
from typing import Callable, Optional, TypeVar

from relay.errors import ChatError, DirectoryUnavailable
from logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def run_in_thread(func: Callable[..., T], *args, timeout: Optional[float] = None, **kwargs) -> T:
    """Run a blocking directory call in the default executor with a deadline.

    ChatErrors raised by the call propagate unchanged; a timeout or any other
    failure becomes DirectoryUnavailable so it stays scoped to the caller.
    """
    loop = asyncio.get_running_loop()
    call = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, call), timeout=timeout)
    except ChatError:
        raise
    except asyncio.TimeoutError:
        name = getattr(func, "__name__", repr(func))
        logger.warning(f"Directory call {name} timed out after {timeout}s")
        raise DirectoryUnavailable(f"Directory call timed out after {timeout}s")
    except Exception as e:
        name = getattr(func, "__name__", repr(func))
        logger.error(f"Directory call {name} failed: {e}", exc_info=True)
        raise DirectoryUnavailable(str(e))
