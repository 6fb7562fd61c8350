from typing import Any, cast

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from core.errors import PersistenceError
from models.types import Category, Product, VariantType


# PostgREST reports query failures as APIError and transport failures as raw httpx errors.
_DB_ERRORS = (APIError, httpx.HTTPError)


def _reason(e: Exception) -> str:
    return getattr(e, "message", None) or str(e) or type(e).__name__


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CatalogService:
    """Owner-scoped reads and writes against the catalog tables."""

    def __init__(self, db: Client):
        self._db = db

    async def get_categories(self, owner_id: str) -> list[Category]:
        response = self._db.table("categories").select("*").eq("user_id", owner_id).execute()
        rows = cast("list[dict[str, Any]]", response.data)
        return [Category(**row) for row in rows]

    async def create_category(self, owner_id: str, name: str) -> Category:
        """New categories show on the digital menu but stay hidden from the POS."""
        try:
            response = (
                self._db.table("categories")
                .insert({
                    "name": name,
                    "active": True,
                    "user_id": owner_id,
                    "available_in_pos": False,
                    "available_in_digital_menu": True,
                })
                .execute()
            )
        except _DB_ERRORS as e:
            raise PersistenceError(_reason(e)) from e
        rows = cast("list[dict[str, Any]]", response.data)
        if not rows:
            raise PersistenceError(f"Category insert returned no row for {name}")
        return Category(**rows[0])

    async def get_products(self, owner_id: str) -> list[Product]:
        response = self._db.table("products").select("*").eq("user_id", owner_id).execute()
        rows = cast("list[dict[str, Any]]", response.data)
        return [Product(**row) for row in rows]

    async def insert_product(self, row: dict[str, Any]) -> Product:
        try:
            response = self._db.table("products").insert(row).execute()
        except _DB_ERRORS as e:
            raise PersistenceError(_reason(e)) from e
        rows = cast("list[dict[str, Any]]", response.data)
        if not rows:
            raise PersistenceError("Product insert returned no row")
        return Product(**rows[0])

    async def update_product(self, product_id: str, fields: dict[str, Any]) -> None:
        try:
            self._db.table("products").update(fields).eq("id", product_id).execute()
        except _DB_ERRORS as e:
            raise PersistenceError(_reason(e)) from e

    async def get_or_create_variant_type(self, name: str, owner_id: str) -> VariantType:
        """Case-insensitive lookup by owner, inserting the type when it is missing."""
        try:
            response = (
                self._db.table("variant_types")
                .select("*")
                .eq("user_id", owner_id)
                .ilike("name", _escape_like(name))
                .limit(1)
                .execute()
            )
            rows = cast("list[dict[str, Any]]", response.data)
            if rows:
                return VariantType(**rows[0])

            response = (
                self._db.table("variant_types")
                .insert({"name": name, "user_id": owner_id})
                .execute()
            )
        except _DB_ERRORS as e:
            raise PersistenceError(_reason(e)) from e
        rows = cast("list[dict[str, Any]]", response.data)
        if not rows:
            raise PersistenceError(f"Variant type insert returned no row for {name}")
        return VariantType(**rows[0])

    async def insert_variant(self, row: dict[str, Any]) -> None:
        try:
            self._db.table("product_variants").insert(row).execute()
        except _DB_ERRORS as e:
            raise PersistenceError(_reason(e)) from e
