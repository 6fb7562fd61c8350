import json
import re
from typing import Any

import structlog
from pydantic import ValidationError

from core.errors import ItemExtractionError
from models.types import ProductDraft, UploadedImage
from providers.vision.interface import VisionProvider

logger = structlog.get_logger()

EXTRACTION_PROMPT = """\
Analyze this restaurant menu image and extract EVERY product you can see, \
including its variants (sizes, extras, toppings).

For each product return the following fields:
- name: product name (string)
- description: short description (string, may be empty)
- price: BASE price (number; the lowest price when there are variants; 0 if no price is visible)
- category: menu section such as "Starters", "Main Dishes", "Drinks", "Desserts" (string)
- variants: array of variants (may be empty)

Each variant has:
- type: variant type ("Size", "Topping", "Extra", "Portion", ...)
- name: variant name ("1 liter", "1/2 liter", "Granola", "Walnut", ...)
- price_modifier: price difference from the base price (number, may be 0)
- is_absolute_price: true if the price is the full price, false if it is an add-on

VARIANT EXAMPLES:
1. "Banana smoothie: 1/2 liter $60, 1 liter $100" ->
   price: 60, variants: [
     {"type": "Size", "name": "1/2 liter", "price_modifier": 0, "is_absolute_price": false},
     {"type": "Size", "name": "1 liter", "price_modifier": 40, "is_absolute_price": false}
   ]
2. "Margherita pizza $150. Extras: Cheese +$20, Pepperoni +$25" ->
   price: 150, variants: [
     {"type": "Extra", "name": "Cheese", "price_modifier": 20, "is_absolute_price": false},
     {"type": "Extra", "name": "Pepperoni", "price_modifier": 25, "is_absolute_price": false}
   ]
3. "Americano: Small $35, Medium $45, Large $55" ->
   price: 35, variants: [
     {"type": "Size", "name": "Small", "price_modifier": 0, "is_absolute_price": false},
     {"type": "Size", "name": "Medium", "price_modifier": 10, "is_absolute_price": false},
     {"type": "Size", "name": "Large", "price_modifier": 20, "is_absolute_price": false}
   ]

IMPORTANT:
- Extract ALL products in the image
- Detect variants such as sizes, extras, toppings and portions
- Use prices exactly as they appear; use 0 when no price is visible
- Use an empty array [] when a product has no variants
- Keep product names in the menu's original language

Answer ONLY with a valid JSON array. No markdown, no explanations."""

_CODE_FENCE = re.compile(r"```(?:json)?[ \t]*\n?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).strip()


def first_balanced_array(text: str) -> str | None:
    """Return the first `[...]` span whose brackets balance, ignoring brackets in strings."""
    start = text.find("[")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "[":
                depth += 1
            elif char == "]":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("[", start + 1)
    return None


def _load_json_array(text: str) -> list[Any]:
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        span = first_balanced_array(cleaned)
        if span is None:
            raise ItemExtractionError("No JSON array found in vision response") from None
        try:
            parsed = json.loads(span)
        except json.JSONDecodeError as e:
            raise ItemExtractionError(f"Unparseable JSON in vision response: {e}") from None

    if not isinstance(parsed, list):
        raise ItemExtractionError(f"Vision response is a {type(parsed).__name__}, not an array")
    return parsed


def parse_drafts(text: str) -> list[ProductDraft]:
    drafts: list[ProductDraft] = []
    for raw in _load_json_array(text):
        if not isinstance(raw, dict):
            continue
        try:
            drafts.append(ProductDraft.model_validate(raw))
        except ValidationError as e:
            logger.warning("Dropping malformed product", product=raw.get("name"), errors=e.error_count())
    return drafts


class MenuExtractor:
    def __init__(self, vision: VisionProvider, prompt: str = EXTRACTION_PROMPT):
        self._vision = vision
        self._prompt = prompt

    async def extract(self, image: UploadedImage) -> list[ProductDraft]:
        """Extract drafts from one image. A failed image yields an empty list, never an error."""
        try:
            text = await self._vision.complete_vision(self._prompt, [image])
            drafts = parse_drafts(text)
        except ItemExtractionError as e:
            logger.warning("Menu image skipped", filename=image.filename, error=str(e))
            return []

        logger.info("Menu image analyzed", filename=image.filename, products=len(drafts))
        return drafts

    async def close(self) -> None:
        await self._vision.close()
