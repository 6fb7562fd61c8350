import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from typing import Any

import structlog

from core.errors import FatalBatchError
from models.types import PipelineResult, ProgressEvent, ProgressEventType, SaveType

logger = structlog.get_logger()

ProgressSink = Callable[[ProgressEvent], Awaitable[None]]

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _event(event_type: ProgressEventType, **payload: Any) -> ProgressEvent:
    return ProgressEvent(type=event_type, payload=payload)


def start(message: str = "Starting menu processing...") -> ProgressEvent:
    return _event(ProgressEventType.START, message=message)


def analyzing(message: str = "Analyzing menu with AI...") -> ProgressEvent:
    return _event(ProgressEventType.ANALYZING, message=message)


def extracted(count: int) -> ProgressEvent:
    return _event(ProgressEventType.EXTRACTED, count=count)


def searching_image(product_name: str, current: int, total: int) -> ProgressEvent:
    return _event(ProgressEventType.SEARCHING_IMAGE, productName=product_name, current=current, total=total)


def image_found(product_name: str) -> ProgressEvent:
    return _event(ProgressEventType.IMAGE_FOUND, productName=product_name)


def image_not_found(product_name: str, source: str) -> ProgressEvent:
    return _event(ProgressEventType.IMAGE_NOT_FOUND, productName=product_name, source=source)


def generating_image(product_name: str, current: int, total: int) -> ProgressEvent:
    return _event(ProgressEventType.GENERATING_IMAGE, productName=product_name, current=current, total=total)


def image_generated(product_name: str) -> ProgressEvent:
    return _event(ProgressEventType.IMAGE_GENERATED, productName=product_name)


def product_saved(product_name: str, current: int, total: int, save_type: SaveType) -> ProgressEvent:
    return _event(
        ProgressEventType.PRODUCT_SAVED,
        productName=product_name,
        current=current,
        total=total,
        type=save_type,
    )


def variants_created(product_name: str, variant_count: int) -> ProgressEvent:
    return _event(ProgressEventType.VARIANTS_CREATED, productName=product_name, variantCount=variant_count)


def complete(result: PipelineResult) -> ProgressEvent:
    return _event(ProgressEventType.COMPLETE, result=result.to_wire())


def error(message: str, details: str | None = None) -> ProgressEvent:
    if details is None:
        return _event(ProgressEventType.ERROR, message=message)
    return _event(ProgressEventType.ERROR, message=message, details=details)


def encode_sse(event: ProgressEvent) -> str:
    """One SSE frame: `data: <json>` followed by a blank line."""
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n"


async def stream_progress(run: Callable[[ProgressSink], Awaitable[Any]]) -> AsyncIterator[ProgressEvent]:
    """Run a pipeline in a task and yield its events as they are emitted.

    Guarantees `start` first and exactly one terminal event. Closing the
    iterator early (client disconnect) cancels the task and whatever
    external call it is awaiting.
    """
    queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()

    async def sink(event: ProgressEvent) -> None:
        await queue.put(event)

    async def produce() -> None:
        try:
            await run(sink)
        except FatalBatchError:
            pass
        except Exception as e:
            logger.exception("Pipeline crashed")
            await queue.put(error("Failed to process the menu", details=str(e)))
        finally:
            await queue.put(None)

    task = asyncio.create_task(produce())
    started = False
    terminal_seen = False
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            if terminal_seen:
                continue
            if not started and event.type != ProgressEventType.START:
                yield start()
            started = True
            terminal_seen = event.is_terminal
            yield event
        if not started:
            yield start()
        if not terminal_seen:
            yield error("Failed to process the menu", details="Pipeline ended without a result")
    finally:
        if not task.done():
            logger.info("Progress stream closed before completion, cancelling pipeline")
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
