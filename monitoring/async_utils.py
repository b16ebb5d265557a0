import asyncio
import inspect
import logging
from typing import Any, Callable, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]]) -> None:
    """Cancel the given tasks and wait until every one has finished."""
    pending: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in pending:
        if not t.done():
            t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def gather_isolated(
    calls: Iterable[Tuple[str, Callable[[], Any]]],
) -> List[Tuple[str, Any, Optional[BaseException]]]:
    """Run named callables concurrently; one failure never affects the others.

    Returns ``(name, result, error)`` per call in input order. Callables may be
    plain functions or coroutine functions.
    """
    async def _run(name: str, fn: Callable[[], Any]):
        try:
            return name, await maybe_await(fn()), None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return name, None, exc

    named = list(calls)
    if not named:
        return []
    return list(await asyncio.gather(*(_run(name, fn) for name, fn in named)))


async def run_periodic(
    name: str,
    interval_s: float,
    fn: Callable[[], Any],
    is_running: Callable[[], bool],
    run_immediately: bool = False,
) -> None:
    """Call ``fn`` every ``interval_s`` seconds while ``is_running()`` holds.

    Failures are logged and the loop keeps going.
    """
    first = run_immediately
    while is_running():
        try:
            if not first:
                await asyncio.sleep(interval_s)
                if not is_running():
                    break
            first = False
            await maybe_await(fn())
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Periodic task %s failed", name)
