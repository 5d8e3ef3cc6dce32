from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import warp as wp

from mpm_ngf.engine.materials import local_rheology


@dataclass(frozen=True)
class ThreadTask:
    id: int
    offset: int
    blocksize: int


def partition(n: int, n_threads: int):
    """
    Split [0, n) into at most `n_threads` contiguous blocks. The first `n % n_threads` blocks take one extra item.
    There is always at least one task, possibly empty.
    """
    n_threads = max(1, min(n_threads, n))
    base, extra = divmod(n, n_threads)

    tasks = []
    offset = 0
    for tid in range(n_threads):
        blocksize = base + (1 if tid < extra else 0)
        tasks.append(ThreadTask(id=tid, offset=offset, blocksize=blocksize))
        offset += blocksize
    return tasks


class ThreadDispatcher:
    """
    Runs the particle-local stage on disjoint blocks in parallel, waits for every block, then runs the nonlocal stage
    once on the first worker.
    """

    def __init__(self, n_threads: int = 1, device=None):
        self.n_threads = n_threads
        self.device = wp.get_device(device)

        # Build the kernels up front so worker threads never compile concurrently
        wp.load_module(local_rheology, device=self.device)

    def run(self, n: int, local_fn, nonlocal_fn=None):
        tasks = partition(n, self.n_threads)
        with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
            futures = [pool.submit(local_fn, task) for task in tasks]
            for future in futures:
                future.result()
            wp.synchronize_device(self.device)

            if nonlocal_fn is None:
                return None
            return pool.submit(nonlocal_fn, tasks[0]).result()
