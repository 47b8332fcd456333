"""
ROI extraction over a tile catalog.

Pipeline:
1. Validate the ROI arrays (no I/O on invalid input)
2. Resolve every ROI to the tiles its envelope touches
3. Group ROIs sharing the same tile set into batches
4. Run each batch: read its tiles once, clip every ROI, release the tiles
5. Reassemble results in input order

Batches run one at a time in the calling thread (workers <= 1) or on a
pool created for this call only. A batch whose tiles cannot be read fails
alone: its ROIs get None, every other batch keeps its result.

Usage:
    from roi_catalog import Catalog, roi_query

    catalog = Catalog.from_directory("/path/to/tiles")
    results = roi_query(catalog, x=[30, 76], y=[30, 50], r=[10, 25], workers=4)
    for name, points in results:
        ...
"""

import gc
import sys
from concurrent.futures import (
    BrokenExecutor,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    as_completed,
)
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

import laspy

from .catalog import Catalog
from .errors import TileReadFailure, WorkerCrash
from .parameters import QueryConfig
from .pointcloud import LasTileReader, PointCloud, ReaderOptions, ShapeClipper
from .progress import NullProgress, make_progress
from .roi import QueryBatch, Roi, build_rois, group_queries


# =============================================================================
# Data Classes
# =============================================================================


class RoiResult(NamedTuple):
    """One output slot: the ROI name and its points, None if its batch failed."""

    name: str
    points: Optional[PointCloud]


@dataclass(frozen=True)
class BatchJob:
    """Everything a worker needs to process one batch."""

    batch: QueryBatch
    reader: Any
    options: ReaderOptions
    clipper: Any


@dataclass
class BatchOutcome:
    """Result of one batch: one subset per ROI, or the error that failed it."""

    names: Tuple[str, ...]
    subsets: Optional[List[PointCloud]] = None
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.subsets is None


# =============================================================================
# Extractor
# =============================================================================


def run_batch(job: BatchJob, progress=None) -> BatchOutcome:
    """
    Load the batch tiles once and clip every ROI of the batch.

    Readers report unreadable tiles with TileReadFailure, OSError or
    laspy.LaspyException; those fail this batch only. Anything else is a
    bug and propagates.

    Args:
        job: Batch, reader, reader options and clipper
        progress: Optional sink ticked once per ROI

    Returns:
        BatchOutcome (failed if the tiles could not be read)
    """
    progress = progress or NullProgress()
    rois = job.batch.rois
    names = tuple(roi.name for roi in rois)

    # ROIs outside the catalog: nothing to read
    if not job.batch.tiles:
        subsets = []
        for roi in rois:
            subsets.append(PointCloud.empty())
            progress.tick(roi.name)
        return BatchOutcome(names, subsets)

    try:
        cloud = job.reader.read(job.batch.paths, job.options)
    except TileReadFailure as e:
        error = e
    except (OSError, laspy.LaspyException) as e:
        error = TileReadFailure(getattr(e, "filename", None) or ", ".join(job.batch.paths), e)
    else:
        error = None

    if error is not None:
        for roi in rois:
            progress.tick(roi.name)
        return BatchOutcome(names, None, error)

    prepared = job.clipper.prepare(cloud)
    subsets = []
    for roi in rois:
        subsets.append(prepared.clip(roi))
        progress.tick(roi.name)

    # Release the merged tiles before the next batch is loaded
    del prepared, cloud
    gc.collect()

    return BatchOutcome(names, subsets)


def _run_batch_wrapper(job: BatchJob) -> BatchOutcome:
    """Module-level entry point so that jobs can be pickled to worker processes."""
    return run_batch(job)


# =============================================================================
# Dispatcher
# =============================================================================


def dispatch(jobs: Sequence[BatchJob], workers: int = 1, pool: str = "process",
             progress=None) -> List[BatchOutcome]:
    """
    Run batch jobs sequentially or on a worker pool.

    Args:
        jobs: Batch jobs
        workers: Pool size, <= 1 runs every job in the calling thread
        pool: 'process' or 'thread'
        progress: Sink ticked once per ROI

    Returns:
        BatchOutcome list (completion order in parallel mode)

    Raises:
        WorkerCrash: the pool broke; ``partial`` holds the outcomes of the
            batches that completed before the crash
    """
    progress = progress or NullProgress()

    if workers <= 1:
        return [run_batch(job, progress) for job in jobs]

    executor_cls = ThreadPoolExecutor if pool == "thread" else ProcessPoolExecutor
    executor = executor_cls(max_workers=workers)
    futures = []
    outcomes = []
    try:
        futures = [executor.submit(_run_batch_wrapper, job) for job in jobs]
        for future in as_completed(futures):
            outcome = future.result()
            outcomes.append(outcome)
            for name in outcome.names:
                progress.tick(name)
    except BrokenExecutor as e:
        executor.shutdown(wait=True, cancel_futures=True)
        completed = [
            f.result() for f in futures
            if f.done() and not f.cancelled() and f.exception() is None
        ]
        raise WorkerCrash(f"Worker pool crashed: {e}", partial=completed) from e
    finally:
        executor.shutdown(wait=True)

    return outcomes


# =============================================================================
# Reassembler
# =============================================================================


def reassemble(rois: Sequence[Roi], outcomes: Sequence[BatchOutcome]) -> List[RoiResult]:
    """Restore input order; ROIs without a result get None."""
    by_name = {}
    for outcome in outcomes:
        if not outcome.failed:
            by_name.update(zip(outcome.names, outcome.subsets))
    return [RoiResult(roi.name, by_name.get(roi.name)) for roi in rois]


# =============================================================================
# Public entry point
# =============================================================================


def _reader_options(config: QueryConfig, reader_options: dict) -> ReaderOptions:
    select = reader_options.pop("select", config.select) or ()
    if isinstance(select, str):
        select = [s.strip() for s in select.split(",") if s.strip()]
    chunk_size = int(reader_options.pop("chunk_size", config.chunk_size))
    if reader_options:
        raise TypeError(f"Unknown reader options: {', '.join(sorted(reader_options))}")
    return ReaderOptions(select=tuple(select), chunk_size=chunk_size)


def roi_query(
    catalog: Catalog,
    x,
    y,
    r,
    r2=None,
    roinames: Optional[Sequence[str]] = None,
    workers: Optional[int] = None,
    reader=None,
    clipper=None,
    progress=None,
    config: Optional[QueryConfig] = None,
    **reader_options,
) -> List[RoiResult]:
    """
    Extract circular or rectangular ROIs from a tile catalog.

    Args:
        catalog: Catalog of LAS/LAZ tiles
        x, y: ROI centers, in the catalog reference system
        r: Radius, or half width when r2 is given; scalar or one per ROI
        r2: Half height; its presence selects rectangles for every ROI
        roinames: Unique ROI names (default "ROI1", "ROI2", ...)
        workers: Worker count, defaults to config.workers
        reader: Tile reader (default LasTileReader)
        clipper: Shape clipper (default ShapeClipper)
        progress: Progress sink (default tqdm bar when config.progress)
        config: QueryConfig (defaults when None)
        **reader_options: select, chunk_size

    Returns:
        One RoiResult per ROI, in input order. points is None for ROIs of
        batches whose tiles could not be read.

    Raises:
        InvalidGeometry, DuplicateROIName: before any tile is read
        WorkerCrash: the worker pool broke; partial results are attached
    """
    config = config or QueryConfig()
    rois = build_rois(x, y, r, r2=r2, roinames=roinames)
    options = _reader_options(config, dict(reader_options))
    if not rois:
        return []

    workers = config.workers if workers is None else int(workers)
    reader = reader if reader is not None else LasTileReader()
    clipper = clipper if clipper is not None else ShapeClipper()

    if workers > 1 and not getattr(reader, "parallel_safe", False):
        print(f"  ⚠ Warning: {type(reader).__name__} is not parallel safe; running sequentially",
              file=sys.stderr)
        workers = 1

    if not catalog.crs_consistent:
        print("  ⚠ Warning: catalog tiles do not share one reference system", file=sys.stderr)

    batches = group_queries(catalog, rois)
    outside = [roi.name for batch in batches if not batch.tiles for roi in batch.rois]
    if outside:
        shown = ", ".join(outside[:5]) + (", ..." if len(outside) > 5 else "")
        print(f"  ⚠ Warning: {len(outside)} ROI(s) outside the catalog extent: {shown}",
              file=sys.stderr)

    if config.verbose:
        mode = "sequential" if workers <= 1 else f"{workers} {config.pool} workers"
        print("=" * 60)
        print("ROI Query")
        print("=" * 60)
        print(f"  Catalog: {len(catalog)} tiles, {catalog.crs}")
        print(f"  ROIs: {len(rois)} in {len(batches)} batches ({mode})")

    jobs = [BatchJob(batch, reader, options, clipper) for batch in batches]

    own_progress = progress is None
    if own_progress:
        progress = make_progress(len(rois), enabled=config.progress)

    try:
        outcomes = dispatch(jobs, workers=workers, pool=config.pool, progress=progress)
    except WorkerCrash as e:
        raise WorkerCrash(str(e), partial=reassemble(rois, e.partial or [])) from e.__cause__
    finally:
        if own_progress:
            progress.close()

    results = reassemble(rois, outcomes)

    if config.verbose:
        failed = [o for o in outcomes if o.failed]
        for outcome in failed:
            print(f"  ✗ Batch of {len(outcome.names)} ROI(s) failed: {outcome.error}")
        n_failed = sum(len(o.names) for o in failed)
        print(f"  ✓ Extracted {len(rois) - n_failed}/{len(rois)} ROIs")

    return results
