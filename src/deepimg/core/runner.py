"""Classification runs: fan out one request per pending file and join."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from deepimg.errors import ConfigurationError, DeepImgError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from deepimg.core.classifier import ZeroShotClassifier
    from deepimg.core.files import FileStore, ManagedFile
    from deepimg.core.inference import ClassificationPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunSummary:
    requested: int = 0
    classified: int = 0
    failed: int = 0
    dropped: int = 0


async def classify_pending(
    store: FileStore,
    classifier: ZeroShotClassifier,
    pool: ClassificationPool,
    model_id: str,
    labels: Sequence[str],
) -> RunSummary:
    """Classify every pending file and wait for all of them.

    Only one run may be in flight per store. Results are written by file id
    as they arrive. Per-file failures mark the file ``failed``. A
    configuration error leaves its file pending and is raised once every
    request has finished. Any other exception also marks its file ``failed``
    and is re-raised after the join.

    Raises:
        RunInProgressError: Another run on this store has not finished.
        ConfigurationError: The token or model id was rejected.
    """
    store.begin_run()
    try:
        targets = store.pending()
        if not targets:
            return RunSummary()

        labels = list(labels)
        counts = {"classified": 0, "failed": 0, "dropped": 0}
        config_errors: list[ConfigurationError] = []

        def _mark_failed(managed: ManagedFile, exc: BaseException) -> None:
            if store.set_error(managed.id, str(exc) or type(exc).__name__):
                counts["failed"] += 1
            else:
                counts["dropped"] += 1

        async def _one(managed: ManagedFile) -> None:
            try:
                result = await pool.run(classifier.classify, managed.data, model_id, labels)
            except ConfigurationError as exc:
                config_errors.append(exc)
                return
            except (DeepImgError, TimeoutError) as exc:
                logger.warning("Classification of %s failed: %s", managed.name, exc)
                _mark_failed(managed, exc)
                return
            except Exception as exc:
                logger.exception("Unexpected error classifying %s", managed.name)
                _mark_failed(managed, exc)
                raise
            if store.set_result(managed.id, result):
                counts["classified"] += 1
            else:
                counts["dropped"] += 1

        logger.info("Classifying %d file(s) with %s", len(targets), model_id)
        outcomes = await asyncio.gather(*(_one(managed) for managed in targets), return_exceptions=True)
    finally:
        store.end_run()

    summary = RunSummary(requested=len(targets), **counts)
    logger.info(
        "Run finished: %d classified, %d failed, %d dropped",
        summary.classified,
        summary.failed,
        summary.dropped,
    )
    if config_errors:
        raise config_errors[0]
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return summary
