from collections.abc import AsyncIterator, Callable
from typing import Any

import structlog
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from api.deps import get_current_user, get_optional_user
from core.config import settings
from core.errors import FatalBatchError
from db.supabase_client import get_service_role_client
from models.types import PipelineOptions, UploadedImage
from providers.image_generation import get_image_generation_provider
from providers.image_search import get_fallback_image_search_provider, get_image_search_provider
from providers.storage import get_storage_sink
from providers.vision import get_vision_provider
from services.catalog_resolver import CatalogResolver
from services.catalog_service import CatalogService
from services.image_sourcing import ImageSourcingChain
from services.menu_extraction import MenuExtractor
from services.menu_pipeline import MenuPipeline
from services.product_writer import ProductWriter
from services.progress import SSE_HEADERS, ProgressSink, encode_sse, stream_progress

logger = structlog.get_logger()

router = APIRouter(prefix="/menu-digital", tags=["menu-digital"])

PipelineFactory = Callable[[str | None, PipelineOptions, ProgressSink | None], MenuPipeline]


def build_pipeline(
    owner_id: str | None,
    options: PipelineOptions,
    sink: ProgressSink | None = None,
) -> MenuPipeline:
    """Wire one request-scoped pipeline from the configured providers."""
    catalog = CatalogService(db=get_service_role_client())

    images = None
    if options.wants_images:
        images = ImageSourcingChain(
            storage=get_storage_sink(),
            search=get_image_search_provider() if options.search_web_images else None,
            fallback_search=get_fallback_image_search_provider() if options.search_web_images else None,
            generator=get_image_generation_provider() if options.generate_ai_images else None,
            download_timeout=settings.image_download_timeout,
            max_bytes=settings.max_image_bytes,
        )

    return MenuPipeline(
        owner_id=owner_id,
        extractor=MenuExtractor(get_vision_provider()),
        resolver=CatalogResolver(catalog, owner_id or ""),
        writer=ProductWriter(catalog, currency=settings.default_currency),
        images=images,
        options=options,
        sink=sink,
    )


def get_pipeline_factory() -> PipelineFactory:
    return build_pipeline


def _parse_options(generate_ai_images: str | None, search_web_images: str | None) -> PipelineOptions:
    return PipelineOptions(
        generate_ai_images=generate_ai_images == "true",
        search_web_images=search_web_images == "true",
    )


async def _read_uploads(files: list[UploadFile] | None) -> list[UploadedImage]:
    """Read every upload into memory; the request body is gone once streaming starts."""
    images: list[UploadedImage] = []
    for upload in files or []:
        content = await upload.read()
        if not content:
            continue
        images.append(
            UploadedImage(
                content=content,
                content_type=upload.content_type,
                filename=upload.filename,
            )
        )
    return images


@router.post("/process-stream")
async def process_menu_stream(
    files: list[UploadFile] | None = File(default=None),  # noqa: B008
    generate_ai_images: str | None = Form(default=None, alias="generateAIImages"),  # noqa: B008
    search_web_images: str | None = Form(default=None, alias="searchWebImages"),  # noqa: B008
    user: dict[str, Any] | None = Depends(get_optional_user),  # noqa: B008
    factory: PipelineFactory = Depends(get_pipeline_factory),  # noqa: B008
) -> StreamingResponse:
    """Digitize menu photos, reporting progress as server-sent events."""
    images = await _read_uploads(files)
    options = _parse_options(generate_ai_images, search_web_images)
    owner_id = user["id"] if user else None
    logger.info(
        "Menu stream requested",
        owner_id=owner_id,
        images=len(images),
        search_web_images=options.search_web_images,
        generate_ai_images=options.generate_ai_images,
    )

    async def run(sink: ProgressSink) -> None:
        pipeline = factory(owner_id, options, sink)
        try:
            await pipeline.run(images)
        finally:
            await pipeline.close()

    async def frames() -> AsyncIterator[str]:
        async for event in stream_progress(run):
            yield encode_sse(event)

    return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/process")
async def process_menu(
    files: list[UploadFile] | None = File(default=None),  # noqa: B008
    generate_ai_images: str | None = Form(default=None, alias="generateAIImages"),  # noqa: B008
    search_web_images: str | None = Form(default=None, alias="searchWebImages"),  # noqa: B008
    user: dict[str, Any] = Depends(get_current_user),  # noqa: B008
    factory: PipelineFactory = Depends(get_pipeline_factory),  # noqa: B008
) -> dict[str, Any]:
    """Digitize menu photos and return the batch result. Auth required."""
    images = await _read_uploads(files)
    pipeline = factory(user["id"], _parse_options(generate_ai_images, search_web_images), None)
    try:
        result = await pipeline.run(images)
    except FatalBatchError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail={"error": e.message, "details": e.details},
        ) from None
    finally:
        await pipeline.close()
    return result.to_wire()
