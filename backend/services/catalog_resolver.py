import structlog

from core.errors import CategoryResolutionError, PersistenceError
from models.types import UNCATEGORIZED, Category, Product
from services.catalog_service import CatalogService

logger = structlog.get_logger()

# Substring matching only kicks in when the shorter name has at least this many
# characters, so short names like "Té" cannot swallow "Té Helado".
MIN_SUBSTRING_MATCH_LENGTH = 5


def normalize_name(name: str) -> str:
    return name.lower().strip()


def names_match(existing_name: str, candidate_name: str) -> bool:
    """Exact match after lowercase+trim, or containment when both names are long enough.

    Not an edit-distance similarity.
    """
    existing = normalize_name(existing_name)
    candidate = normalize_name(candidate_name)
    if existing == candidate:
        return True
    if min(len(existing), len(candidate)) >= MIN_SUBSTRING_MATCH_LENGTH:
        return existing in candidate or candidate in existing
    return False


class CatalogResolver:
    """Request-scoped view of one owner's catalog used to place extracted drafts.

    Holds a snapshot of categories and products taken once per run plus a
    name -> category id cache, so repeated category names within a batch
    never create duplicate categories.
    """

    def __init__(self, catalog: CatalogService, owner_id: str):
        self._catalog = catalog
        self._owner_id = owner_id
        self._categories: list[Category] = []
        self._products: list[Product] = []
        self._category_ids: dict[str, str] = {}

    async def load(self) -> None:
        self._categories = await self._catalog.get_categories(self._owner_id)
        self._products = await self._catalog.get_products(self._owner_id)
        logger.info(
            "Catalog snapshot loaded",
            owner_id=self._owner_id,
            categories=len(self._categories),
            products=len(self._products),
        )

    @property
    def categories(self) -> list[Category]:
        return list(self._categories)

    async def resolve_category(self, category_name: str, product_name: str) -> str:
        name = category_name or UNCATEGORIZED

        cached = self._category_ids.get(name)
        if cached is not None:
            return cached

        wanted = name.lower()
        for category in self._categories:
            if category.name.lower() == wanted:
                self._category_ids[name] = category.id
                return category.id

        try:
            created = await self._catalog.create_category(self._owner_id, name)
        except PersistenceError as e:
            logger.warning("Category creation failed", category=name, error=str(e))
        else:
            logger.info("Category created", category=name, category_id=created.id)
            self._categories.append(created)
            self._category_ids[name] = created.id
            return created.id

        if self._categories:
            fallback = self._categories[0]
            logger.warning("Falling back to first category", category=name, fallback=fallback.name)
            self._category_ids[name] = fallback.id
            return fallback.id

        raise CategoryResolutionError(product_name)

    def find_existing_product(self, product_name: str) -> Product | None:
        for product in self._products:
            if names_match(product.name, product_name):
                logger.debug("Existing product matched", draft=product_name, existing=product.name)
                return product
        return None

    def remember_product(self, product: Product) -> None:
        """Make a product created in this run visible to later drafts of the same batch."""
        self._products.append(product)
