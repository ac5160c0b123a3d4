"""
Resilience Wrapper
Retry with exponential backoff around every transform call.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from rich.console import Console

from config import TRANSFORM_RETRIES, RETRY_INITIAL_DELAY
from .transform import TransformError
from .usage import get_tracker


console = Console()

T = TypeVar("T")


async def execute(
    operation: Callable[[], Awaitable[T]],
    retries: int = TRANSFORM_RETRIES,
    initial_delay: float = RETRY_INITIAL_DELAY,
    label: str = "transform",
    stage: Optional[str] = None,
) -> T:
    """
    Await `operation()`, retrying transient TransformErrors.

    The delay starts at `initial_delay` seconds and doubles after every
    retry. Non-transient errors propagate immediately; once retries are
    exhausted the last error is re-raised unchanged.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        retries: Number of retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        label: Name used in retry warnings
        stage: Usage-tracker stage the retries count against (defaults to `label`)

    Returns:
        Whatever the operation returns
    """
    delay = initial_delay
    attempt = 0

    while True:
        try:
            return await operation()
        except TransformError as e:
            if not e.is_transient or attempt >= retries:
                raise
            attempt += 1
            get_tracker().add_retry(stage or label)
            console.print(
                f"    [yellow]⚠ {label}: {e.kind.value}, retrying in {delay:.1f}s ({attempt}/{retries})...[/]"
            )
            await asyncio.sleep(delay)
            delay *= 2
