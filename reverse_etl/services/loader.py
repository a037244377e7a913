"""Batch loader that delivers a run's pending records to its destination."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from reverse_etl.core.config import get_settings
from reverse_etl.handlers import HandlerRegistry, handler_registry
from reverse_etl.integrations import BaseDestination, ConnectorRegistry
from reverse_etl.models import (
    ControlMessage,
    HeartbeatResponse,
    Record,
    RecordStatus,
    Run,
    RunStatus,
    SyncConfig,
    TrackingReport,
)
from reverse_etl.services.lookup_cache import RunLookupCache
from reverse_etl.services.transformation_service import RecordTransformer
from reverse_etl.utils.logging import run_log_context

logger = logging.getLogger(__name__)

StatusUpdate = Tuple[Record, RecordStatus, Optional[Dict[str, Any]]]


class LoaderError(Exception):
    """Base loader error."""
    pass


class NonRetryableWriteError(LoaderError):
    """The destination reported a structural failure; the run must not be retried."""
    pass


class CancelRequested(LoaderError):
    """The hosting workflow asked the run to stop."""
    pass


class Activity(ABC):
    """Hosting workflow activity the loader reports liveness to."""

    @abstractmethod
    async def heartbeat(self) -> HeartbeatResponse:
        pass


class BatchLoader:
    """
    Orchestrates one run.

    Records are transformed and written either one at a time or a page at a
    time, depending on whether the stream supports batch writes. Work runs
    on a bounded pool of asyncio tasks; a fatal error or cancellation stops
    new work from being dispatched and is re-raised once in-flight work
    finishes.
    """

    def __init__(
        self,
        connector: Optional[BaseDestination] = None,
        handler_registry: HandlerRegistry = handler_registry,
        transformer_factory: Callable[..., RecordTransformer] = RecordTransformer,
    ):
        self.connector = connector
        self.handler_registry = handler_registry
        self.transformer_factory = transformer_factory
        self.settings = get_settings()

    async def write(self, run: Run, activity: Activity) -> Optional[RunStatus]:
        """Deliver the run's pending records and roll up its status."""
        if not run.may_progress():
            logger.error(
                f"Run cannot progress from its current state: {run.status.value}",
                extra={"sync_run_id": run.id, "sync_id": run.sync_id},
            )
            return None

        with run_log_context(sync_id=run.sync_id, sync_run_id=run.id):
            return await self._write(run, activity)

    async def _write(self, run: Run, activity: Activity) -> RunStatus:
        run.progress()
        sync = run.sync
        sync.sync_run_id = str(run.id)
        lookup_cache = RunLookupCache(run.id)

        connector = self.connector
        owns_connector = connector is None
        if connector is None:
            connector_class = ConnectorRegistry.get(sync.destination.connector_name)
            if connector_class is None:
                run.fail(f"No connector registered for {sync.destination.connector_name}")
                raise LoaderError(f"Unknown destination connector: {sync.destination.connector_name}")
            connector = connector_class()

        try:
            if sync.stream.batch_support and not run.test:
                preload_indexes = await self.build_preload_indexes(sync)
                await self._process_batch_records(run, sync, connector, activity, lookup_cache, preload_indexes)
            else:
                await self._process_individual_records(run, sync, connector, activity, lookup_cache)
        finally:
            if owns_connector:
                await connector.aclose()

        status = run.rollup()
        logger.info(
            f"Run {run.id} finished with status {status.value}",
            extra=run.summary(),
        )
        return status

    def concurrency(self, sync: SyncConfig) -> int:
        return max(1, sync.stream.request_rate_concurrency or self.settings.sync_loader_thread_pool_size)

    async def build_preload_indexes(self, sync: SyncConfig) -> Dict[Any, Any]:
        """Indexes shared by every page of a batch run. Errors degrade to no indexes."""
        handler = self.handler_registry.handler_for(sync.destination.connector_name)
        try:
            return await handler.build_custom_mapping_indexes(sync) or {}
        except Exception as e:
            logger.error(
                f"Failed to build preload indexes: {e}",
                exc_info=True,
                extra={"context": "build_preload_indexes", "sync_id": sync.sync_id},
            )
            return {}

    async def _process_individual_records(
        self,
        run: Run,
        sync: SyncConfig,
        connector: BaseDestination,
        activity: Activity,
        lookup_cache: RunLookupCache,
    ) -> None:
        transformer = self.transformer_factory(handler_registry=self.handler_registry)

        async def process_record(record: Record) -> None:
            try:
                payload = await transformer.transform(sync, record)
                logger.debug(f"Writing record {record.id}", extra={"record": payload})
                result = await connector.write(sync, [payload], record.action.value, lookup_cache=lookup_cache)
                report = self.handle_response(result, run)
                status = RecordStatus.FAILED if report.success == 0 else RecordStatus.SUCCESS
                record.mark(status, report.log_for(0))
            except NonRetryableWriteError:
                raise
            except Exception as e:
                logger.error(f"Failed to deliver record {record.id}: {e}", exc_info=True)
                if record.status == RecordStatus.PENDING:
                    record.mark(RecordStatus.FAILED, {"error": str(e)})

        for page in run.iter_pending_pages(self.settings.loader_page_size):
            await self._run_pool(page, process_record, self.concurrency(sync), run, activity)

    async def _process_batch_records(
        self,
        run: Run,
        sync: SyncConfig,
        connector: BaseDestination,
        activity: Activity,
        lookup_cache: RunLookupCache,
        preload_indexes: Dict[Any, Any],
    ) -> None:
        transformer = self.transformer_factory(
            handler_registry=self.handler_registry,
            preload_indexes=preload_indexes,
        )
        pages = list(run.iter_pending_pages(sync.stream.batch_size))
        logger.info(
            f"Batch processing started: mode={sync.destination_sync_mode.value} "
            f"batch_size={sync.stream.batch_size} pages={len(pages)}"
        )

        updates: List[StatusUpdate] = []

        async def process_page(page: List[Record]) -> None:
            try:
                payloads = [await transformer.transform(sync, record) for record in page]
                result = await connector.write(sync, payloads, lookup_cache=lookup_cache)
                report = self.handle_response(result, run)
            except NonRetryableWriteError:
                raise
            except Exception as e:
                logger.error(f"Error in batch page: {e}", exc_info=True)
                updates.extend((record, RecordStatus.FAILED, {"error": str(e)}) for record in page)
                return

            status = RecordStatus.FAILED if report.success == 0 else RecordStatus.SUCCESS
            updates.extend((record, status, report.log_for(index)) for index, record in enumerate(page))

        try:
            await self._run_pool(pages, process_page, self.concurrency(sync), run, activity)
        finally:
            self._apply_status_updates(updates)

    def handle_response(self, result: Any, run: Run) -> TrackingReport:
        """Return the tracking report, or fail the run on anything else."""
        if isinstance(result, TrackingReport):
            return result

        if isinstance(result, ControlMessage):
            message = f"Full refresh failed type:{result.type} status:{result.status}"
        else:
            message = f"Unexpected connector result: {type(result).__name__}"
        run.fail(message)
        logger.error(message)
        raise NonRetryableWriteError("Full refresh failed (non-retryable)")

    async def heartbeat(self, activity: Activity, run: Run) -> None:
        response = await activity.heartbeat()
        if not response.cancel_requested:
            return

        run.fail("Cancel activity request received")
        logger.error("Cancel activity request received")
        raise CancelRequested("Cancel activity request received")

    async def _run_pool(
        self,
        items: List[Any],
        worker: Callable[[Any], Awaitable[None]],
        concurrency: int,
        run: Run,
        activity: Activity,
    ) -> None:
        """Run ``worker`` over ``items`` with at most ``concurrency`` in flight."""
        semaphore = asyncio.Semaphore(concurrency)
        aborts: List[BaseException] = []

        async def guarded(item: Any) -> None:
            async with semaphore:
                if aborts:
                    return
                try:
                    await worker(item)
                    await self.heartbeat(activity, run)
                except Exception as e:
                    aborts.append(e)

        await asyncio.gather(*(guarded(item) for item in items))
        if aborts:
            raise aborts[0]

    @staticmethod
    def _apply_status_updates(updates: List[StatusUpdate]) -> None:
        for record, status, logs in updates:
            if record.status == RecordStatus.PENDING:
                record.mark(status, logs)
