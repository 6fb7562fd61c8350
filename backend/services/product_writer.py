import secrets
import string
import time
from typing import Any

import structlog

from core.errors import PersistenceError, VariantPersistenceError
from models.types import ProductDraft, Product, VariantDraft, VariantType
from services.catalog_service import CatalogService

logger = structlog.get_logger()

_BASE36 = string.ascii_lowercase + string.digits


def generate_sku() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"MENU-{int(time.time() * 1000)}-{suffix}"


class ProductWriter:
    """Writes reconciled drafts to the catalog.

    Variant types are memoized per (owner, type name) for the lifetime of the
    writer, which is one pipeline run.
    """

    def __init__(self, catalog: CatalogService, currency: str = "MXN"):
        self._catalog = catalog
        self._currency = currency
        self._variant_types: dict[tuple[str, str], VariantType] = {}

    async def update_existing(self, product: Product, draft: ProductDraft, category_id: str) -> None:
        """Merge a draft into a matched product. Zero price / empty description keep the old value."""
        fields: dict[str, Any] = {
            "available_in_digital_menu": True,
            "price": draft.price if draft.price else product.price,
            "description": draft.description or product.description,
            "category_id": category_id,
            "active": True,
        }
        await self._catalog.update_product(product.id, fields)
        logger.info("Product updated", product_id=product.id, name=product.name)

    def build_new_row(
        self,
        owner_id: str,
        draft: ProductDraft,
        category_id: str,
        image_url: str | None,
    ) -> dict[str, Any]:
        return {
            "sku": generate_sku(),
            "name": draft.name,
            "description": draft.description,
            "category_id": category_id,
            "price": draft.price,
            "cost": 0,
            "stock": 100,
            "min_stock": 10,
            "max_stock": 1000,
            "image_url": image_url,
            "active": True,
            "barcode": None,
            "product_type": "simple",
            "currency": self._currency,
            "user_id": owner_id,
            "available_in_pos": False,
            "available_in_digital_menu": True,
            "track_inventory": False,
            "has_variants": bool(draft.variants),
        }

    async def create_product(
        self,
        owner_id: str,
        draft: ProductDraft,
        category_id: str,
        image_url: str | None = None,
    ) -> Product:
        product = await self._catalog.insert_product(
            self.build_new_row(owner_id, draft, category_id, image_url)
        )
        logger.info("Product created", product_id=product.id, name=product.name, has_image=bool(image_url))
        return product

    async def create_variants(self, owner_id: str, product_id: str, variants: list[VariantDraft]) -> int:
        """Insert one row per variant. Failures are logged and skipped; returns how many landed."""
        created = 0
        for position, variant in enumerate(variants):
            try:
                variant_type = await self._variant_type(owner_id, variant.type)
                await self._catalog.insert_variant({
                    "product_id": product_id,
                    "variant_type_id": variant_type.id,
                    "name": variant.name,
                    "price_modifier": variant.price_modifier,
                    "is_absolute_price": variant.is_absolute_price,
                    "is_default": variant.is_default,
                    "active": True,
                    "sort_order": position,
                })
            except PersistenceError as e:
                logger.error(
                    "Variant not created",
                    product_id=product_id,
                    variant=variant.name,
                    variant_type=variant.type,
                    error=str(e),
                )
                continue
            created += 1
        return created

    async def _variant_type(self, owner_id: str, type_name: str) -> VariantType:
        key = (owner_id, type_name.strip().lower())
        cached = self._variant_types.get(key)
        if cached is not None:
            return cached
        try:
            variant_type = await self._catalog.get_or_create_variant_type(type_name, owner_id)
        except PersistenceError as e:
            raise VariantPersistenceError(f"Variant type {type_name}: {e}") from e
        self._variant_types[key] = variant_type
        return variant_type
