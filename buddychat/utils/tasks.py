import asyncio


async def run_to_completion(coro):
    """Run ``coro`` in its own task that cancelling the caller cannot stop.

    If the caller is cancelled, it still waits for the task to finish
    before re-raising ``CancelledError``, so any lock the caller holds is
    released only after the work is done.

    Args:
        coro: Coroutine to run

    Returns:
        The coroutine's result, when the caller was not cancelled
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        while not task.done():
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                continue
        if not task.cancelled():
            task.exception()  # mark retrieved; the caller only sees the cancellation
        raise
