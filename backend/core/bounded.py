import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import httpx

from core.errors import ImageSourcingError

T = TypeVar("T")


class BoundedCallError(ImageSourcingError):
    """An external call timed out or failed at the transport level."""

    def __init__(self, label: str, reason: str):
        super().__init__(f"{label}: {reason}")
        self.label = label
        self.reason = reason

    @property
    def timed_out(self) -> bool:
        return self.reason == "timeout"


async def bounded_call(awaitable: Awaitable[T], *, timeout: float | None, label: str) -> T:
    """Await an external call under a deadline.

    Timeouts and transport errors come back as BoundedCallError so callers
    handle one exception type regardless of which client made the call.
    A timeout of None means no deadline beyond the client's own limits.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError:
        raise BoundedCallError(label, "timeout") from None
    except httpx.TimeoutException:
        raise BoundedCallError(label, "timeout") from None
    except httpx.HTTPError as e:
        raise BoundedCallError(label, str(e) or type(e).__name__) from e
