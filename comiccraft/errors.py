class ComicCraftError(Exception):
    """Base class for upstream dependency failures."""


class ImageGenerationError(ComicCraftError):
    pass


class EmailDeliveryError(ComicCraftError):
    pass
