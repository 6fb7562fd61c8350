class FatalBatchError(Exception):
    """Aborts the whole pipeline run. Surfaces as the terminal `error` event."""

    def __init__(self, message: str, details: str | None = None, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.details = details
        self.status_code = status_code


class ItemExtractionError(Exception):
    """One image's vision call or JSON parse failed."""


class CategoryResolutionError(Exception):
    def __init__(self, product_name: str):
        super().__init__(f"No category assignable for {product_name}")
        self.product_name = product_name


class ImageSourcingError(Exception):
    """An image could not be found, generated, downloaded or stored. Never fatal."""


class StorageError(ImageSourcingError):
    pass


class PersistenceError(Exception):
    pass


class VariantPersistenceError(PersistenceError):
    """Logged only; never reaches the terminal error list."""
