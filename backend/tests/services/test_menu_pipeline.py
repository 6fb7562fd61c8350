from unittest.mock import AsyncMock

import httpx
import pytest
from openai import AsyncOpenAI

from core.errors import FatalBatchError, ItemExtractionError, PersistenceError
from models.types import (
    Category,
    ImageCandidate,
    ImageSource,
    PipelineOptions,
    Product,
    ProductDraft,
    ProgressEventType,
    UploadedImage,
    VariantType,
)
from providers.image_search.pexels_adapter import PexelsImageSearchAdapter
from providers.vision.openrouter_adapter import OpenRouterVisionAdapter
from services.catalog_resolver import CatalogResolver
from services.catalog_service import CatalogService
from services.image_sourcing import ImageSourcingChain
from services.menu_extraction import MenuExtractor
from services.menu_pipeline import MenuPipeline, PipelineState
from services.product_writer import ProductWriter
from tests.factories import (
    make_category,
    make_product,
    make_product_draft,
    make_variant_draft,
    make_variant_type,
    make_vision_answer,
)

OWNER = "owner-7f3a9c"
PHOTO = UploadedImage(content=b"\xff\xd8\xff", filename="menu.jpg")
WEB_URL = "https://images.pexels.com/photos/1/pexels-photo-1.jpeg"
STORED_URL = "https://xyz.supabase.co/storage/v1/object/public/product-images/products/p.jpg"


def _drafts(*raw: dict) -> list[ProductDraft]:
    return [ProductDraft.model_validate(r) for r in raw]


def _catalog(categories=None, products=None):
    """Catalog double that hands out sequential ids for inserted rows."""
    catalog = AsyncMock()
    catalog.get_categories = AsyncMock(return_value=[Category(**c) for c in categories or []])
    catalog.get_products = AsyncMock(return_value=[Product(**p) for p in products or []])
    catalog.create_category = AsyncMock(
        side_effect=lambda owner_id, name: Category(
            **make_category(id=f"cat-{name.lower()}", name=name, user_id=owner_id)
        )
    )
    inserted: list[dict] = []

    async def insert_product(row):
        inserted.append(row)
        return Product(**make_product(id=f"prod-new-{len(inserted)}", name=row["name"], price=row["price"]))

    catalog.insert_product = AsyncMock(side_effect=insert_product)
    catalog.get_or_create_variant_type = AsyncMock(
        side_effect=lambda name, owner_id: VariantType(**make_variant_type(id=f"vt-{name.lower()}", name=name))
    )
    return catalog


def _extractor(*per_image: list[ProductDraft]):
    extractor = AsyncMock()
    extractor.extract = AsyncMock(side_effect=list(per_image))
    return extractor


def _pipeline(catalog, extractor, owner_id=OWNER, images=None, options=None, sink=None) -> MenuPipeline:
    return MenuPipeline(
        owner_id=owner_id,
        extractor=extractor,
        resolver=CatalogResolver(catalog, owner_id or ""),
        writer=ProductWriter(catalog),
        images=images,
        options=options,
        sink=sink,
    )


def _chat_completion(content: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "id": "gen-1",
            "object": "chat.completion",
            "created": 1700000000,
            "model": "anthropic/claude-3.5-sonnet",
            "choices": [
                {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}}
            ],
        },
    )


def _pexels_rate_limited_page(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text="<html>rate limited</html>")


def _pexels_connection_reset(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadError("connection reset", request=request)


def _types(sink) -> list[ProgressEventType]:
    return [e.type for e in sink.events]


class TestEventOrdering:
    async def test_start_first_complete_last(self, recorded_events):
        catalog = _catalog()
        extractor = _extractor(_drafts(make_product_draft(name="Molletes"), make_product_draft(name="Enfrijoladas")))
        pipeline = _pipeline(catalog, extractor, sink=recorded_events)

        result = await pipeline.run([PHOTO])

        types = _types(recorded_events)
        assert types[0] == ProgressEventType.START
        assert types[1] == ProgressEventType.ANALYZING
        assert types[-1] == ProgressEventType.COMPLETE
        assert types.index(ProgressEventType.EXTRACTED) < types.index(ProgressEventType.PRODUCT_SAVED)
        assert types.count(ProgressEventType.PRODUCT_SAVED) == 2
        assert result.products_added == 2
        assert pipeline.state == PipelineState.DONE

    async def test_complete_carries_result(self, recorded_events):
        pipeline = _pipeline(_catalog(), _extractor(_drafts(make_product_draft())), sink=recorded_events)
        await pipeline.run([PHOTO])

        complete = recorded_events.events[-1]
        assert complete.payload["result"] == {
            "success": True,
            "productsAdded": 1,
            "productsUpdated": 0,
            "totalExtracted": 1,
        }

    async def test_product_saved_positions(self, recorded_events):
        extractor = _extractor(_drafts(make_product_draft(name="Molletes"), make_product_draft(name="Enfrijoladas")))
        await _pipeline(_catalog(), extractor, sink=recorded_events).run([PHOTO])

        saved = [e.payload for e in recorded_events.events if e.type == ProgressEventType.PRODUCT_SAVED]
        assert [(s["productName"], s["current"], s["total"], s["type"]) for s in saved] == [
            ("Molletes", 1, 2, "created"),
            ("Enfrijoladas", 2, 2, "created"),
        ]

    async def test_runs_without_sink(self):
        result = await _pipeline(_catalog(), _extractor(_drafts(make_product_draft()))).run([PHOTO])
        assert result.products_added == 1


class TestCategoryReuse:
    async def test_same_category_created_once(self):
        catalog = _catalog()
        extractor = _extractor(
            _drafts(
                make_product_draft(name="Flan Napolitano", category="Postres"),
                make_product_draft(name="Pastel de Tres Leches", category="Postres"),
            )
        )
        await _pipeline(catalog, extractor).run([PHOTO])

        catalog.create_category.assert_awaited_once_with(OWNER, "Postres")
        rows = [c.args[0] for c in catalog.insert_product.await_args_list]
        assert {r["category_id"] for r in rows} == {"cat-postres"}

    async def test_existing_category_reused(self):
        catalog = _catalog(categories=[make_category(id="cat-1", name="Postres")])
        await _pipeline(catalog, _extractor(_drafts(make_product_draft(category="postres")))).run([PHOTO])

        catalog.create_category.assert_not_awaited()
        assert catalog.insert_product.await_args.args[0]["category_id"] == "cat-1"

    async def test_unassignable_category_is_recorded_and_batch_continues(self, recorded_events):
        catalog = _catalog()
        catalog.create_category = AsyncMock(side_effect=PersistenceError("permission denied"))
        extractor = _extractor(_drafts(make_product_draft(name="Flan"), make_product_draft(name="Churros")))

        result = await _pipeline(catalog, extractor, sink=recorded_events).run([PHOTO])

        assert result.products_added == 0
        assert result.errors == [
            "No category assignable for Flan",
            "No category assignable for Churros",
        ]
        assert recorded_events.events[-1].type == ProgressEventType.COMPLETE


class TestDeduplication:
    async def test_exact_match_merges(self, recorded_events):
        catalog = _catalog(
            categories=[make_category(id="cat-1", name="Bebidas")],
            products=[make_product(id="prod-1", name="café americano ", price=40)],
        )
        extractor = _extractor(_drafts(make_product_draft(name="Café Americano", price=45, category="Bebidas")))

        result = await _pipeline(catalog, extractor, sink=recorded_events).run([PHOTO])

        assert (result.products_added, result.products_updated) == (0, 1)
        catalog.update_product.assert_awaited_once()
        assert catalog.update_product.await_args.args[0] == "prod-1"
        catalog.insert_product.assert_not_awaited()
        saved = next(e for e in recorded_events.events if e.type == ProgressEventType.PRODUCT_SAVED)
        assert saved.payload["type"] == "updated"

    async def test_long_substring_merges(self):
        catalog = _catalog(products=[make_product(id="prod-1", name="Empanada de Queso")])
        result = await _pipeline(catalog, _extractor(_drafts(make_product_draft(name="Empanada")))).run([PHOTO])

        assert result.products_updated == 1
        assert result.products_added == 0

    async def test_short_name_does_not_merge(self):
        catalog = _catalog(products=[make_product(id="prod-1", name="Té Helado")])
        result = await _pipeline(catalog, _extractor(_drafts(make_product_draft(name="Té")))).run([PHOTO])

        assert result.products_added == 1
        assert result.products_updated == 0
        catalog.update_product.assert_not_awaited()

    async def test_duplicate_within_batch_merges_into_first(self):
        catalog = _catalog()
        extractor = _extractor(
            _drafts(make_product_draft(name="Horchata")),
            _drafts(make_product_draft(name="horchata")),
        )
        result = await _pipeline(catalog, extractor).run([PHOTO, PHOTO])

        assert (result.products_added, result.products_updated) == (1, 1)
        assert catalog.update_product.await_args.args[0] == "prod-new-1"

    async def test_update_failure_is_recorded(self):
        catalog = _catalog(products=[make_product(id="prod-1", name="Café Americano")])
        catalog.update_product = AsyncMock(side_effect=PersistenceError("timeout"))

        result = await _pipeline(catalog, _extractor(_drafts(make_product_draft(name="Café Americano")))).run([PHOTO])

        assert result.errors == ["Failed to update Café Americano: timeout"]
        assert result.products_updated == 0


class TestPartialBatch:
    async def test_failed_image_does_not_abort_batch(self, recorded_events):
        vision = AsyncMock()
        vision.complete_vision = AsyncMock(
            side_effect=[
                make_vision_answer(make_product_draft(name="Molletes")),
                ItemExtractionError("Vision provider returned 500"),
                make_vision_answer(make_product_draft(name="Tamal Oaxaqueño")),
            ]
        )
        pipeline = _pipeline(_catalog(), MenuExtractor(vision), sink=recorded_events)

        result = await pipeline.run([PHOTO, PHOTO, PHOTO])

        extracted = next(e for e in recorded_events.events if e.type == ProgressEventType.EXTRACTED)
        assert extracted.payload["count"] == 2
        assert recorded_events.events[-1].type == ProgressEventType.COMPLETE
        assert result.total_extracted == 2
        assert result.products_added == 2

    async def test_malformed_provider_body_skips_only_that_image(self, recorded_events):
        answers = iter([
            _chat_completion(make_vision_answer(make_product_draft(name="Molletes"))),
            httpx.Response(200, headers={"content-type": "application/json"}, content=b"{not json"),
            _chat_completion(make_vision_answer(make_product_draft(name="Tamal Oaxaqueño"))),
        ])
        vision = OpenRouterVisionAdapter(api_key="test-key", model="anthropic/claude-3.5-sonnet")
        vision._client = AsyncOpenAI(
            api_key="test-key",
            base_url="https://openrouter.ai/api/v1",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: next(answers))),
            max_retries=0,
        )
        pipeline = _pipeline(_catalog(), MenuExtractor(vision), sink=recorded_events)

        result = await pipeline.run([PHOTO, PHOTO, PHOTO])

        assert result.total_extracted == 2
        assert result.products_added == 2
        assert recorded_events.events[-1].type == ProgressEventType.COMPLETE
        await pipeline.close()

    async def test_create_failure_is_recorded(self):
        catalog = _catalog()
        catalog.insert_product = AsyncMock(side_effect=PersistenceError("duplicate key value"))

        result = await _pipeline(catalog, _extractor(_drafts(make_product_draft(name="Molletes")))).run([PHOTO])

        assert result.errors == ["Failed to create Molletes: duplicate key value"]
        assert result.success is True

    async def test_unexpected_draft_error_is_recorded(self):
        catalog = _catalog()
        catalog.insert_product = AsyncMock(side_effect=RuntimeError("socket closed"))

        result = await _pipeline(catalog, _extractor(_drafts(make_product_draft(name="Molletes")))).run([PHOTO])

        assert result.errors == ["Failed to save product: socket closed"]


class TestVariants:
    async def test_variants_created_before_product_saved(self, recorded_events):
        catalog = _catalog()
        draft = make_product_draft(
            name="Smoothie de Plátano",
            variants=[make_variant_draft(name="1/2 litro"), make_variant_draft(name="1 litro")],
        )
        await _pipeline(catalog, _extractor(_drafts(draft)), sink=recorded_events).run([PHOTO])

        types = _types(recorded_events)
        assert types.index(ProgressEventType.VARIANTS_CREATED) < types.index(ProgressEventType.PRODUCT_SAVED)
        variants_event = next(e for e in recorded_events.events if e.type == ProgressEventType.VARIANTS_CREATED)
        assert variants_event.payload == {"productName": "Smoothie de Plátano", "variantCount": 2}
        assert catalog.insert_variant.await_count == 2

    async def test_variant_failures_stay_out_of_errors(self):
        catalog = _catalog()
        catalog.insert_variant = AsyncMock(side_effect=PersistenceError("foreign key violation"))
        draft = make_product_draft(variants=[make_variant_draft()])

        result = await _pipeline(catalog, _extractor(_drafts(draft))).run([PHOTO])

        assert result.products_added == 1
        assert result.errors == []

    async def test_variant_transport_failure_keeps_product_counted_once(self, recorded_events, mock_supabase):
        mock_supabase.execute.side_effect = httpx.ReadError("connection reset")
        catalog = _catalog()
        catalog.insert_variant = CatalogService(mock_supabase).insert_variant
        draft = make_product_draft(variants=[make_variant_draft()])

        result = await _pipeline(catalog, _extractor(_drafts(draft)), sink=recorded_events).run([PHOTO])

        assert result.products_added == 1
        assert result.errors == []
        saved = [e for e in recorded_events.events if e.type == ProgressEventType.PRODUCT_SAVED]
        assert len(saved) == 1


class TestImageSourcing:
    async def test_web_hit_skips_generation(self, recorded_events, mock_image_chain):
        mock_image_chain.find_web_image.return_value = ImageCandidate(url=WEB_URL, source=ImageSource.WEB)
        mock_image_chain.store.return_value = STORED_URL
        catalog = _catalog()
        options = PipelineOptions(search_web_images=True, generate_ai_images=True)

        await _pipeline(
            catalog, _extractor(_drafts(make_product_draft())), images=mock_image_chain, options=options, sink=recorded_events
        ).run([PHOTO])

        mock_image_chain.generate_image.assert_not_awaited()
        assert catalog.insert_product.await_args.args[0]["image_url"] == STORED_URL
        types = _types(recorded_events)
        assert ProgressEventType.IMAGE_FOUND in types
        assert ProgressEventType.GENERATING_IMAGE not in types

    async def test_generation_when_web_finds_nothing(self, recorded_events, mock_image_chain):
        generated = ImageCandidate(data=b"png", content_type="image/png", source=ImageSource.AI)
        mock_image_chain.generate_image.return_value = generated
        mock_image_chain.store.return_value = STORED_URL
        options = PipelineOptions(search_web_images=True, generate_ai_images=True)

        await _pipeline(
            _catalog(), _extractor(_drafts(make_product_draft())), images=mock_image_chain, options=options, sink=recorded_events
        ).run([PHOTO])

        types = _types(recorded_events)
        assert types[types.index(ProgressEventType.SEARCHING_IMAGE) :][:5] == [
            ProgressEventType.SEARCHING_IMAGE,
            ProgressEventType.IMAGE_NOT_FOUND,
            ProgressEventType.GENERATING_IMAGE,
            ProgressEventType.IMAGE_GENERATED,
            ProgressEventType.PRODUCT_SAVED,
        ]
        mock_image_chain.store.assert_awaited_once_with(generated, "Chilaquiles Verdes")

    async def test_upload_failure_keeps_external_url(self, mock_image_chain):
        mock_image_chain.find_web_image.return_value = ImageCandidate(url=WEB_URL, source=ImageSource.WEB)
        mock_image_chain.store.return_value = None
        catalog = _catalog()

        await _pipeline(
            catalog,
            _extractor(_drafts(make_product_draft())),
            images=mock_image_chain,
            options=PipelineOptions(search_web_images=True),
        ).run([PHOTO])

        assert catalog.insert_product.await_args.args[0]["image_url"] == WEB_URL

    async def test_nothing_found_creates_product_without_image(self, recorded_events, mock_image_chain):
        catalog = _catalog()
        await _pipeline(
            catalog,
            _extractor(_drafts(make_product_draft())),
            images=mock_image_chain,
            options=PipelineOptions(generate_ai_images=True),
            sink=recorded_events,
        ).run([PHOTO])

        not_found = next(e for e in recorded_events.events if e.type == ProgressEventType.IMAGE_NOT_FOUND)
        assert not_found.payload["source"] == "ai"
        assert catalog.insert_product.await_args.args[0]["image_url"] is None
        mock_image_chain.find_web_image.assert_not_awaited()

    async def test_no_sourcing_without_options(self, mock_image_chain):
        await _pipeline(
            _catalog(), _extractor(_drafts(make_product_draft())), images=mock_image_chain
        ).run([PHOTO])

        mock_image_chain.find_web_image.assert_not_awaited()
        mock_image_chain.generate_image.assert_not_awaited()

    @pytest.mark.parametrize(
        "pexels",
        [_pexels_rate_limited_page, _pexels_connection_reset],
        ids=["non_json_body", "read_error"],
    )
    async def test_search_provider_failure_still_saves_product(self, recorded_events, pexels):
        search = PexelsImageSearchAdapter(api_key="test-key")
        search._client = httpx.AsyncClient(transport=httpx.MockTransport(pexels))
        images = ImageSourcingChain(AsyncMock(), search=search)
        catalog = _catalog()

        result = await _pipeline(
            catalog,
            _extractor(_drafts(make_product_draft())),
            images=images,
            options=PipelineOptions(search_web_images=True),
            sink=recorded_events,
        ).run([PHOTO])

        assert result.products_added == 1
        assert result.errors == []
        assert catalog.insert_product.await_args.args[0]["image_url"] is None
        not_found = next(e for e in recorded_events.events if e.type == ProgressEventType.IMAGE_NOT_FOUND)
        assert not_found.payload["source"] == "web"

    async def test_merged_product_is_not_sourced(self, mock_image_chain):
        catalog = _catalog(products=[make_product(name="Chilaquiles Verdes")])
        await _pipeline(
            catalog,
            _extractor(_drafts(make_product_draft())),
            images=mock_image_chain,
            options=PipelineOptions(search_web_images=True, generate_ai_images=True),
        ).run([PHOTO])

        mock_image_chain.find_web_image.assert_not_awaited()


class TestFatalPaths:
    async def test_no_files(self, recorded_events):
        pipeline = _pipeline(_catalog(), _extractor(), sink=recorded_events)

        with pytest.raises(FatalBatchError) as exc_info:
            await pipeline.run([])

        assert exc_info.value.status_code == 400
        types = _types(recorded_events)
        assert types.count(ProgressEventType.ERROR) == 1
        assert ProgressEventType.COMPLETE not in types
        assert pipeline.state == PipelineState.FAILED

    async def test_unauthenticated(self, recorded_events):
        pipeline = _pipeline(_catalog(), _extractor(), owner_id=None, sink=recorded_events)

        with pytest.raises(FatalBatchError) as exc_info:
            await pipeline.run([PHOTO])

        assert exc_info.value.status_code == 401
        assert _types(recorded_events) == [ProgressEventType.START, ProgressEventType.ERROR]

    async def test_zero_drafts(self, recorded_events):
        pipeline = _pipeline(_catalog(), _extractor([], []), sink=recorded_events)

        with pytest.raises(FatalBatchError) as exc_info:
            await pipeline.run([PHOTO, PHOTO])

        assert exc_info.value.status_code == 400
        assert _types(recorded_events)[-2:] == [ProgressEventType.EXTRACTED, ProgressEventType.ERROR]

    async def test_catalog_load_failure(self, recorded_events):
        catalog = _catalog()
        catalog.get_products = AsyncMock(side_effect=RuntimeError("connection reset"))
        pipeline = _pipeline(catalog, _extractor(_drafts(make_product_draft())), sink=recorded_events)

        with pytest.raises(FatalBatchError) as exc_info:
            await pipeline.run([PHOTO])

        assert exc_info.value.status_code == 500
        assert recorded_events.events[-1].payload == {
            "message": "Failed to load the catalog",
            "details": "connection reset",
        }


class TestClose:
    async def test_closes_extractor_and_images(self, mock_image_chain):
        extractor = _extractor()
        await _pipeline(_catalog(), extractor, images=mock_image_chain).close()

        extractor.close.assert_awaited_once()
        mock_image_chain.close.assert_awaited_once()
