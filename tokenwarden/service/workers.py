from __future__ import annotations

import asyncio
import concurrent.futures
import functools
from typing import Any, Callable, TypeVar

from tokenwarden.logging import get_logger

T = TypeVar("T")


class CryptoWorkerPool:
    """Bounded thread pool for CPU or memory heavy crypto work.

    scrypt at the legacy parameters needs about 32 MiB per derivation, so the
    pool size is the cap on concurrent derivations.
    """

    MAX_WORKERS = 16

    def __init__(self, name: str, workers: int) -> None:
        self.name = name
        self.workers = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix=f"tokenwarden-{name}"
        )
        self._shutdown = False
        self.logger = get_logger(__name__)

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self._shutdown:
            raise RuntimeError(f"worker pool {self.name} is shut down")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    def shutdown(self, wait: bool = True) -> None:
        """Shut the executor down; pending jobs are cancelled when ``wait`` is False."""
        if self._shutdown:
            return
        self._shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.info("worker_pool_shutdown", pool=self.name, wait=wait)


__all__ = ["CryptoWorkerPool"]
