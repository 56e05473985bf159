"""
Concurrent extraction over many PDF sources.

Sources are processed by a bounded thread pool; results come back in input
order and every slot is filled, whatever happened to the other sources.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, Sequence, Union

from .config import BATCH_MAX_WORKERS, FETCH_TIMEOUT_SECONDS, logger
from .extractor import extract
from .schemas import BatchSummary, ExtractionResult


def _describe(source: Union[str, bytes]) -> str:
    if isinstance(source, bytes):
        return f"<{len(source)} bytes>"
    return source


def batch_extract(
    sources: Sequence[Union[str, bytes]],
    max_workers: int = BATCH_MAX_WORKERS,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    cancel_event: Optional[threading.Event] = None,
) -> list[ExtractionResult]:
    """
    Extract amounts from many PDFs concurrently.

    Args:
        sources: URLs and/or raw PDF bytes
        max_workers: Upper bound on concurrent fetch+parse jobs
        timeout: Per-fetch timeout in seconds
        cancel_event: When set, sources that have not started yet are
            reported as cancelled instead of being fetched

    Returns:
        One ExtractionResult per source, index-aligned with the input
    """
    total = len(sources)
    if total == 0:
        return []

    logger.info(f"Processing {total} PDFs with up to {max_workers} workers")

    def run(index: int, source: Union[str, bytes]) -> ExtractionResult:
        label = _describe(source)
        if cancel_event is not None and cancel_event.is_set():
            return ExtractionResult.failure("Cancelled", source=label)
        logger.info(f"[{index + 1}/{total}] Processing: {label}")
        return extract(source, timeout=timeout)

    results: list[Optional[ExtractionResult]] = [None] * total

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(run, i, source): i for i, source in enumerate(sources)}
        for future in as_completed(futures):
            index = futures[future]
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"[{index + 1}/{total}] Unexpected extraction error: {e}")
                result = ExtractionResult.failure(str(e) or type(e).__name__, source=_describe(sources[index]))
            status = "OK" if result.success else "FAILED"
            logger.info(f"[{index + 1}/{total}] {status} amount: {result.amount:.2f}")
            results[index] = result

    successful = sum(1 for r in results if r is not None and r.success)
    logger.info(f"Batch processing complete: {successful}/{total} successful")

    return [r for r in results if r is not None]


def summarize_batch(results: list[ExtractionResult]) -> BatchSummary:
    """Wrap batch results with success counts."""
    return BatchSummary(
        total=len(results),
        successful=sum(1 for r in results if r.success),
        results=results,
    )
