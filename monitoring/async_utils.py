import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple, Type

from strategy.errors import NON_RETRYABLE


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))

    @classmethod
    def from_settings(cls, retry) -> 'RetryPolicy':
        return cls(
            attempts=max(1, int(retry.attempts)),
            base_delay_s=float(retry.base_delay_s),
            max_delay_s=float(retry.max_delay_s),
        )


DEFAULT_POLICY = RetryPolicy()


async def with_backoff(
    fn: Callable[[], Awaitable[Any]],
    name: str,
    policy: Optional[RetryPolicy] = None,
    give_up_on: Tuple[Type[BaseException], ...] = NON_RETRYABLE,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[str, int, BaseException], None]] = None,
) -> Any:
    """Await ``fn()`` with exponential backoff; the last failure is re-raised."""
    policy = policy or DEFAULT_POLICY
    attempt = 1
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except give_up_on:
            raise
        except Exception as exc:
            if attempt >= policy.attempts:
                logger.error("%s failed after %s attempts: %s", name, attempt, exc)
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (%s/%s): %s; retrying in %.2fs",
                name,
                attempt,
                policy.attempts,
                exc,
                delay,
            )
            if on_retry is not None:
                on_retry(name, attempt, exc)
            attempt += 1
            await sleep(delay)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
