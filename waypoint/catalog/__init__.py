"""Role and step catalog loading and queries."""

from .loader import CatalogDocument, load_catalog, load_default_catalog, parse_catalog
from .service import CatalogStatistics, StepCatalog, StepDetails, StepFilter

__all__ = [
    "CatalogDocument",
    "CatalogStatistics",
    "StepCatalog",
    "StepDetails",
    "StepFilter",
    "load_catalog",
    "load_default_catalog",
    "parse_catalog",
]
