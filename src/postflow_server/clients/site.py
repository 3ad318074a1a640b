import importlib
import logging
from typing import Any

from .base import SiteClient

logger = logging.getLogger(__name__)


def load_site_client(reference: str, **kwargs: Any) -> SiteClient:
    """Build the site automation client from a "package.module:factory" reference."""
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Site plugin must look like 'package.module:factory', got {reference!r}")

    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from e

    client = factory(**kwargs)
    logger.info(f"Loaded site client {type(client).__name__} from {reference}")
    return client
