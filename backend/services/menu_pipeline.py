from enum import StrEnum

import sentry_sdk
import structlog

from core.errors import CategoryResolutionError, FatalBatchError, PersistenceError
from models.types import PipelineOptions, PipelineResult, ProductDraft, ProgressEvent, UploadedImage
from services import progress
from services.catalog_resolver import CatalogResolver
from services.image_sourcing import ImageSourcingChain
from services.menu_extraction import MenuExtractor
from services.product_writer import ProductWriter
from services.progress import ProgressSink

logger = structlog.get_logger()


class PipelineState(StrEnum):
    IDLE = "idle"
    RECEIVING = "receiving"
    EXTRACTING = "extracting"
    RECONCILING = "reconciling"
    SOURCING = "sourcing"
    PERSISTING = "persisting"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


class MenuPipeline:
    """Digitizes one batch of menu photos for one owner.

    Images are extracted one after another, then drafts are reconciled and
    persisted one after another. A single draft's failure lands in the result's
    error list; only whole-batch conditions raise FatalBatchError. When a sink
    is attached every step is reported through it as it happens.
    """

    def __init__(
        self,
        owner_id: str | None,
        extractor: MenuExtractor,
        resolver: CatalogResolver,
        writer: ProductWriter,
        images: ImageSourcingChain | None = None,
        options: PipelineOptions | None = None,
        sink: ProgressSink | None = None,
    ):
        self._owner_id = owner_id
        self._extractor = extractor
        self._resolver = resolver
        self._writer = writer
        self._images = images
        self._options = options or PipelineOptions()
        self._sink = sink
        self.state = PipelineState.IDLE

    async def run(self, files: list[UploadedImage]) -> PipelineResult:
        self._transition(PipelineState.RECEIVING)
        await self._emit(progress.start())
        try:
            return await self._run(files)
        except FatalBatchError as e:
            await self._fail(e)
            raise
        except Exception as e:
            logger.exception("Menu processing failed", owner_id=self._owner_id)
            sentry_sdk.capture_exception(e)
            fatal = FatalBatchError("Failed to process the menu", details=str(e))
            await self._fail(fatal)
            raise fatal from e

    async def _run(self, files: list[UploadedImage]) -> PipelineResult:
        owner_id = self._owner_id
        if owner_id is None:
            raise FatalBatchError("Not authenticated", status_code=401)
        if not files:
            raise FatalBatchError("No images were provided", status_code=400)

        self._transition(PipelineState.EXTRACTING)
        await self._emit(progress.analyzing())
        drafts: list[ProductDraft] = []
        for image in files:
            drafts.extend(await self._extractor.extract(image))
        await self._emit(progress.extracted(len(drafts)))
        logger.info("Menu extraction finished", images=len(files), products=len(drafts))

        if not drafts:
            raise FatalBatchError("Could not extract any products from the images", status_code=400)

        self._transition(PipelineState.RECONCILING)
        try:
            await self._resolver.load()
        except Exception as e:
            raise FatalBatchError("Failed to load the catalog", details=str(e)) from e

        result = PipelineResult(total_extracted=len(drafts))
        for position, draft in enumerate(drafts, start=1):
            try:
                await self._process_draft(owner_id, draft, position, len(drafts), result)
            except CategoryResolutionError as e:
                logger.warning("Draft skipped", product=draft.name, error=str(e))
                result.errors.append(str(e))
            except Exception as e:
                logger.exception("Draft failed", product=draft.name)
                result.errors.append(f"Failed to save product: {e}")

        self._transition(PipelineState.REPORTING)
        await self._emit(progress.complete(result))
        self._transition(PipelineState.DONE)
        logger.info(
            "Menu processing complete",
            owner_id=self._owner_id,
            added=result.products_added,
            updated=result.products_updated,
            errors=len(result.errors),
        )
        return result

    async def _process_draft(
        self,
        owner_id: str,
        draft: ProductDraft,
        position: int,
        total: int,
        result: PipelineResult,
    ) -> None:
        self._transition(PipelineState.RECONCILING)
        category_id = await self._resolver.resolve_category(draft.category, draft.name)
        existing = self._resolver.find_existing_product(draft.name)

        if existing is not None:
            self._transition(PipelineState.PERSISTING)
            try:
                await self._writer.update_existing(existing, draft, category_id)
            except PersistenceError as e:
                result.errors.append(f"Failed to update {draft.name}: {e}")
                return
            result.products_updated += 1
            await self._emit(progress.product_saved(draft.name, position, total, "updated"))
            return

        image_url = None
        if self._images is not None and self._options.wants_images:
            self._transition(PipelineState.SOURCING)
            image_url = await self._source_image(self._images, draft, position, total)

        self._transition(PipelineState.PERSISTING)
        try:
            product = await self._writer.create_product(owner_id, draft, category_id, image_url)
        except PersistenceError as e:
            result.errors.append(f"Failed to create {draft.name}: {e}")
            return
        self._resolver.remember_product(product)
        result.products_added += 1

        if draft.variants:
            created = await self._writer.create_variants(owner_id, product.id, draft.variants)
            if created < len(draft.variants):
                logger.warning(
                    "Some variants were not created",
                    product=draft.name,
                    created=created,
                    requested=len(draft.variants),
                )
            await self._emit(progress.variants_created(draft.name, len(draft.variants)))
        await self._emit(progress.product_saved(draft.name, position, total, "created"))

    async def _source_image(
        self,
        images: ImageSourcingChain,
        draft: ProductDraft,
        position: int,
        total: int,
    ) -> str | None:
        """Web search first, AI generation only when the web produced nothing."""
        image_url: str | None = None

        if self._options.search_web_images:
            await self._emit(progress.searching_image(draft.name, position, total))
            candidate = await images.find_web_image(draft.name, draft.category)
            if candidate is not None:
                await self._emit(progress.image_found(draft.name))
                # An external URL is still better than no image when our upload fails.
                image_url = await images.store(candidate, draft.name) or candidate.url
            if not image_url:
                await self._emit(progress.image_not_found(draft.name, "web"))

        if self._options.generate_ai_images and not image_url:
            await self._emit(progress.generating_image(draft.name, position, total))
            candidate = await images.generate_image(draft.name, draft.description)
            if candidate is not None:
                await self._emit(progress.image_generated(draft.name))
                image_url = await images.store(candidate, draft.name)
            else:
                await self._emit(progress.image_not_found(draft.name, "ai"))

        return image_url

    async def _fail(self, error: FatalBatchError) -> None:
        self._transition(PipelineState.FAILED)
        logger.warning("Menu processing aborted", reason=error.message, details=error.details)
        await self._emit(progress.error(error.message, error.details))

    async def _emit(self, event: ProgressEvent) -> None:
        if self._sink is not None:
            await self._sink(event)

    def _transition(self, state: PipelineState) -> None:
        if state != self.state:
            logger.debug("Pipeline state", previous=self.state.value, state=state.value)
            self.state = state

    async def close(self) -> None:
        if self._images is not None:
            await self._images.close()
        await self._extractor.close()
