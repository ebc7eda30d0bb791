#!/usr/bin/env python
# coding: utf-8


"""
Bounded-memory parallel map.

A single parallel map returns all of its results at once, so its aggregated
output must fit in memory. :func:`bounded_map` instead splits the items into
contiguous chunks whose combined results stay under ``max_bytes``, maps each
chunk in parallel with joblib, spills the chunk's results to disk and frees
them before starting the next chunk. The spilled chunks are reloaded in order
once every chunk has finished.

Features
--------
- Contiguous, near-equal, covering partitions (``partition_integer_subsequence``)
- Per-invocation spill directory removed on exit, even on failure
- At most one spill file per chunk, deleted as soon as it is reloaded
- Per-item failure isolation: a failing item becomes an :class:`ItemFailure`,
  its siblings complete, and a :class:`~funnorm.errors.BoundedMapError` listing
  every failure is raised after all chunks finish
- ``bounded_map_to_store()`` hands each chunk to a writer callback instead of
  spilling it (used to stream results into an HDF5 matrix)
"""


import gc
import math
import os
import shutil
import tempfile
import traceback
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

import joblib

from funnorm.errors import BoundedMapError, ConfigurationError
from funnorm.utils.logger import logger

try:
    import psutil
except Exception:
    psutil = None
    logger.warning("psutil module not installed, memory budget checks are unavailable.")

DEFAULT_MAX_BYTES = 2**30 - 1


@dataclass(frozen=True)
class ItemFailure:
    """Failure of one item: its position in the input and the raised exception."""

    index: int
    error: BaseException
    traceback: str = ""


def _guarded_call(fn: Callable[[Any], Any], index: int, item: Any) -> Any:
    try:
        return fn(item)
    except Exception as e:
        return ItemFailure(index=index, error=e, traceback=traceback.format_exc())


def partition_integer_subsequence(
    start: int, end: int, n: int
) -> List[Tuple[int, int]]:
    """
    Split the half-open range ``[start, end)`` into ``n`` contiguous chunks.

    Chunk sizes differ by at most one.

    Parameters
    ----------
    start, end : int
        Range bounds, ``start <= end``.
    n : int
        Number of chunks, ``1 <= n <= end - start``.

    Returns
    -------
    list of (int, int)
        Half-open ``(chunk_start, chunk_end)`` bounds in order.
    """
    if start > end:
        raise ValueError(f"start ({start}) must not exceed end ({end})")
    length = end - start
    if n < 1 or n > length:
        raise ValueError(f"Cannot split {length} items into {n} chunks")
    bounds = [start + (i * length) // n for i in range(n + 1)]
    return list(zip(bounds[:-1], bounds[1:]))


def plan_chunks(
    n_items: int, ret_bytes: int, max_bytes: int = DEFAULT_MAX_BYTES
) -> List[Tuple[int, int]]:
    """
    Chunk bounds for ``n_items`` results of ``ret_bytes`` each under ``max_bytes``.

    Raises
    ------
    ConfigurationError
        If ``ret_bytes`` is not positive or exceeds ``max_bytes``.
    """
    if max_bytes < 1:
        raise ConfigurationError(f"max_bytes must be positive, got {max_bytes}")
    if ret_bytes is None or ret_bytes <= 0:
        raise ConfigurationError(f"ret_bytes must be positive, got {ret_bytes}")
    if ret_bytes > max_bytes:
        raise ConfigurationError(
            f"Each result needs {ret_bytes} bytes but max_bytes is {max_bytes}; "
            "increase max_bytes"
        )
    if n_items == 0:
        return []
    items_per_chunk = max_bytes // ret_bytes
    n_chunks = math.ceil(n_items / items_per_chunk)
    return partition_integer_subsequence(0, n_items, n_chunks)


def check_memory_budget(max_bytes: int) -> Optional[float]:
    """
    Warn when ``max_bytes`` exceeds 85% of currently available memory.

    Returns the available memory in bytes, or ``None`` without psutil.
    """
    if psutil is None:
        logger.debug("psutil not available - skipping memory budget check")
        return None
    available = psutil.virtual_memory().available
    if max_bytes > available * 0.85:
        logger.warning(
            f"Memory budget {max_bytes / 1024**3:.2f} GB exceeds 85% of "
            f"available RAM ({available / 1024**3:.2f} GB)"
        )
    return float(available)


def _map_chunk(
    items: Sequence[Any],
    fn: Callable[[Any], Any],
    start: int,
    end: int,
    n_jobs: int,
    backend: Optional[str],
) -> List[Any]:
    with joblib.Parallel(n_jobs=n_jobs, backend=backend) as par:
        return par(
            joblib.delayed(_guarded_call)(fn, i, items[i]) for i in range(start, end)
        )


def bounded_map(
    items: Sequence[Any],
    fn: Callable[[Any], Any],
    ret_bytes: int,
    max_bytes: int = DEFAULT_MAX_BYTES,
    n_jobs: int = 1,
    tempdir: Optional[str] = None,
    backend: Optional[str] = None,
) -> List[Any]:
    """
    Apply ``fn`` to every item in parallel while bounding aggregated memory.

    Parameters
    ----------
    items : sequence
        Inputs; results are returned in the same order.
    fn : callable
        Function applied to each item. Must be picklable when ``n_jobs != 1``
        with a process backend.
    ret_bytes : int
        Upper estimate of the size in bytes of one result.
    max_bytes : int, default 2**30 - 1
        Largest aggregated result size held in memory for one chunk.
    n_jobs : int, default 1
        joblib workers per chunk (-1 for all cores).
    tempdir : str, optional
        Parent directory for the spill directory (system default if omitted).
    backend : str, optional
        joblib backend (``"loky"``, ``"threading"`` ...).

    Returns
    -------
    list
        ``[fn(items[0]), fn(items[1]), ...]``.

    Raises
    ------
    ConfigurationError
        If ``ret_bytes`` is not positive or exceeds ``max_bytes``.
    BoundedMapError
        If any item raised. All other items are still computed; the error
        carries every :class:`ItemFailure` and the full result list with
        failures in place.
    """
    items = list(items)
    chunks = plan_chunks(len(items), ret_bytes, max_bytes)
    if not chunks:
        return []
    check_memory_budget(max_bytes)

    logger.info(
        f"Mapping {len(items)} items in {len(chunks)} chunk(s) "
        f"(n_jobs={n_jobs}, max_bytes={max_bytes})"
    )

    spill_dir = tempfile.mkdtemp(prefix="funnorm_map_", dir=tempdir)
    failures: List[ItemFailure] = []
    results: List[Any] = []
    try:
        filenames = []
        for k, (start, end) in enumerate(chunks):
            ret = _map_chunk(items, fn, start, end, n_jobs, backend)
            failures.extend(r for r in ret if isinstance(r, ItemFailure))
            filename = os.path.join(spill_dir, f"chunk_{k:06d}.joblib")
            joblib.dump(ret, filename)
            filenames.append(filename)
            del ret
            gc.collect()
            logger.debug(f"Spilled chunk {k + 1}/{len(chunks)} [{start}, {end})")

        for k, filename in enumerate(filenames):
            results.extend(joblib.load(filename))
            os.remove(filename)
            logger.debug(f"Loaded chunk {k + 1}/{len(filenames)}")
    finally:
        shutil.rmtree(spill_dir, ignore_errors=True)

    if failures:
        for failure in failures:
            logger.warning(f"Item {failure.index} failed: {failure.error!r}")
        raise BoundedMapError(failures, results)
    return results


def bounded_map_to_store(
    items: Sequence[Any],
    fn: Callable[[Any], Any],
    ret_bytes: int,
    write_block: Callable[[int, List[Any]], None],
    max_bytes: int = DEFAULT_MAX_BYTES,
    n_jobs: int = 1,
    backend: Optional[str] = None,
) -> int:
    """
    Apply ``fn`` chunk by chunk and hand each chunk's results to ``write_block``.

    ``write_block(start, results)`` receives the index of the chunk's first item
    and the chunk's ordered results; failed items appear as
    :class:`ItemFailure` records. Nothing is retained between chunks.

    Returns
    -------
    int
        Number of items written.

    Raises
    ------
    ConfigurationError
        If ``ret_bytes`` is not positive or exceeds ``max_bytes``.
    BoundedMapError
        If any item raised, after every chunk has been written. ``results``
        holds ``None`` for written items and the failure record otherwise.
    """
    items = list(items)
    chunks = plan_chunks(len(items), ret_bytes, max_bytes)
    check_memory_budget(max_bytes)
    status: List[Any] = [None] * len(items)
    failures: List[ItemFailure] = []

    for k, (start, end) in enumerate(chunks):
        ret = _map_chunk(items, fn, start, end, n_jobs, backend)
        for r in ret:
            if isinstance(r, ItemFailure):
                failures.append(r)
                status[r.index] = r
        write_block(start, ret)
        del ret
        gc.collect()
        logger.debug(f"Wrote chunk {k + 1}/{len(chunks)} [{start}, {end})")

    if failures:
        for failure in failures:
            logger.warning(f"Item {failure.index} failed: {failure.error!r}")
        raise BoundedMapError(failures, status)
    return len(items)
