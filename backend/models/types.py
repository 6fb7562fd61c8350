import re
from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

UNCATEGORIZED = "Uncategorized"
DEFAULT_VARIANT_TYPE = "Size"

_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")


def coerce_price(value: Any) -> float:
    """Best-effort numeric price. Model output like "$45.50" or "1,200" is common."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        match = _NUMBER_PATTERN.search(value.replace(",", ""))
        if match:
            return float(match.group())
    return 0.0


# --- Catalog rows (owned by the catalog collaborator) ---


class Category(BaseModel):
    id: str
    name: str
    active: bool = True
    user_id: str | None = None
    available_in_pos: bool = False
    available_in_digital_menu: bool = True


class Product(BaseModel):
    id: str
    name: str
    sku: str | None = None
    description: str | None = None
    category_id: str | None = None
    price: float = 0.0
    image_url: str | None = None
    active: bool = True
    user_id: str | None = None
    has_variants: bool = False


class VariantType(BaseModel):
    id: str
    name: str
    user_id: str | None = None


# --- Pipeline input ---


class UploadedImage(BaseModel):
    content: bytes
    content_type: str = "image/jpeg"
    filename: str | None = None

    @field_validator("content_type", mode="before")
    @classmethod
    def default_content_type(cls, v: str | None) -> str:
        return v or "image/jpeg"


class PipelineOptions(BaseModel):
    search_web_images: bool = False
    generate_ai_images: bool = False

    @property
    def wants_images(self) -> bool:
        return self.search_web_images or self.generate_ai_images


# --- Extraction drafts (validated for shape only) ---


class VariantDraft(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = DEFAULT_VARIANT_TYPE
    name: str
    price_modifier: float = Field(
        default=0.0, validation_alias=AliasChoices("price_modifier", "priceModifier")
    )
    is_absolute_price: bool = Field(
        default=False, validation_alias=AliasChoices("is_absolute_price", "isAbsolutePrice")
    )
    is_default: bool = Field(
        default=False, validation_alias=AliasChoices("is_default", "isDefault")
    )

    @field_validator("type", mode="before")
    @classmethod
    def default_type(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            return DEFAULT_VARIANT_TYPE
        return v.strip()

    @field_validator("name", mode="before")
    @classmethod
    def require_name(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Variant name is required")
        return v.strip()

    @field_validator("price_modifier", mode="before")
    @classmethod
    def parse_modifier(cls, v: Any) -> float:
        return coerce_price(v)

    @field_validator("is_absolute_price", "is_default", mode="before")
    @classmethod
    def parse_flag(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)


class ProductDraft(BaseModel):
    name: str
    description: str = ""
    price: float = 0.0
    category: str = UNCATEGORIZED
    variants: list[VariantDraft] = []

    @field_validator("name", mode="before")
    @classmethod
    def require_name(cls, v: Any) -> str:
        if isinstance(v, int | float) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Product name is required")
        return v.strip()

    @field_validator("description", mode="before")
    @classmethod
    def blank_description(cls, v: Any) -> str:
        return v.strip() if isinstance(v, str) else ""

    @field_validator("price", mode="before")
    @classmethod
    def parse_price(cls, v: Any) -> float:
        return coerce_price(v)

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            return UNCATEGORIZED
        return v.strip()

    @field_validator("variants", mode="before")
    @classmethod
    def drop_malformed_variants(cls, v: Any) -> list[dict[str, Any]]:
        if not isinstance(v, list):
            return []
        return [
            item
            for item in v
            if isinstance(item, dict) and isinstance(item.get("name"), str) and item["name"].strip()
        ]


# --- Image sourcing ---


class ImageSource(StrEnum):
    WEB = "web"
    AI = "ai"


class ImageCandidate(BaseModel):
    url: str | None = None
    data: bytes | None = None
    content_type: str = "image/jpeg"
    source: ImageSource

    @model_validator(mode="after")
    def exactly_one_payload(self) -> "ImageCandidate":
        if (self.url is None) == (self.data is None):
            raise ValueError("ImageCandidate needs exactly one of url or data")
        return self

    @property
    def is_inline(self) -> bool:
        return self.data is not None


# --- Progress protocol ---


class ProgressEventType(StrEnum):
    START = "start"
    ANALYZING = "analyzing"
    EXTRACTED = "extracted"
    SEARCHING_IMAGE = "searching_image"
    IMAGE_FOUND = "image_found"
    IMAGE_NOT_FOUND = "image_not_found"
    GENERATING_IMAGE = "generating_image"
    IMAGE_GENERATED = "image_generated"
    PRODUCT_SAVED = "product_saved"
    VARIANTS_CREATED = "variants_created"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({ProgressEventType.COMPLETE, ProgressEventType.ERROR})

SaveType = Literal["created", "updated"]


class ProgressEvent(BaseModel):
    type: ProgressEventType
    payload: dict[str, Any] = {}

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.payload}


class PipelineResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    products_added: int = 0
    products_updated: int = 0
    total_extracted: int = 0
    errors: list[str] = []

    def to_wire(self) -> dict[str, Any]:
        """camelCase JSON shape; `errors` is omitted when nothing failed."""
        data = self.model_dump(by_alias=True)
        if not self.errors:
            data.pop("errors")
        return data
