"""API category registry for the commerce agent tools."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional

from .config import Settings


logger = logging.getLogger(__name__)

SPEC_ROOT = "https://elasticpath.dev/assets/openapispecs"


@dataclass(frozen=True)
class ApiCategory:
    name: str
    spec_url: Optional[str]
    description: str
    instructions: str = ""

    @property
    def tool_name(self) -> str:
        return f"{self.name.replace('-', '_')}_api_tool"


DEFAULT_CATEGORIES: List[ApiCategory] = [
    ApiCategory(
        name="carts",
        spec_url=f"{SPEC_ROOT}/carts/OpenAPISpec.yaml",
        description=(
            "Manage shopping cart operations including viewing the cart, adding products, "
            "updating quantities, removing items, and checkout"
        ),
        instructions=(
            "This tool manages the shopping cart.\n"
            "Examples:\n"
            '* query: "add product ABC123 to cart"\n'
            '* query: "update quantity of product XYZ789 in cart to 3"\n'
            '* query: "view my cart"\n'
            '* query: "remove product DEF456 from cart"\n'
            '* query: "checkout my cart"'
        ),
    ),
    ApiCategory(
        name="catalog",
        spec_url=f"{SPEC_ROOT}/catalog/catalog_view.yaml",
        description="Search the catalog for a product, a category/hierarchy/node, or a brand",
        instructions=(
            "This tool searches the published catalog for products with specific attributes "
            "or filters, hierarchies and nodes, and products associated with a node. "
            "Express filters with the filter query parameter, e.g. "
            "/catalog/products?filter=eq(name,shoes)."
        ),
    ),
    ApiCategory(
        name="catalog-admin",
        spec_url=None,
        description=(
            "Create and publish catalogs, retrieve catalogs and releases, and manage catalog rules"
        ),
    ),
    ApiCategory(
        name="pim",
        spec_url=f"{SPEC_ROOT}/pim/pim.yaml",
        description=(
            "Manage the products, variations, bundles, hierarchies and nodes in "
            "Product Experience Manager (PXM)"
        ),
        instructions=(
            "You are a merchandiser. Products have a name, description, ID and SKU and one of "
            "the types standard, parent, child or bundle. Hierarchies and nodes organise products."
        ),
    ),
    ApiCategory(
        name="files",
        spec_url=f"{SPEC_ROOT}/files/files.yaml",
        description="Upload, list, download and delete files",
    ),
    ApiCategory(
        name="pricebooks",
        spec_url=None,
        description=(
            "Create, update, retrieve and delete pricebooks. Pricebooks contain prices for the "
            "products in your catalog"
        ),
    ),
    ApiCategory(
        name="promotions-builder",
        spec_url=None,
        description=(
            "Create, update, retrieve and delete promotions used to apply discounts to products"
        ),
    ),
    ApiCategory(
        name="accounts",
        spec_url=None,
        description="Create, update, retrieve and delete accounts used to manage customers",
    ),
]


class ToolRegistry:
    def __init__(
        self,
        settings: Settings,
        categories: Optional[Iterable[ApiCategory]] = None,
    ) -> None:
        self.settings = settings
        overrides = settings.spec_urls
        self._categories: Dict[str, ApiCategory] = {}
        for category in categories or DEFAULT_CATEGORIES:
            if overrides.get(category.name):
                category = replace(category, spec_url=overrides[category.name])
            self._categories[category.name] = category

    def categories(self) -> List[ApiCategory]:
        allowlist = self.settings.category_allowlist()
        categories = []
        for category in self._categories.values():
            if not category.spec_url:
                logger.info("Skipping category without an OpenAPI source: %s", category.name)
                continue
            categories.append(category)
        if allowlist:
            categories = [c for c in categories if c.name in allowlist or c.tool_name in allowlist]
            logger.info("Category allowlist active: %s", sorted(allowlist))
        return categories

    def get(self, name: str) -> ApiCategory:
        try:
            return self._categories[name]
        except KeyError:
            raise KeyError(f"Unknown API category: {name}") from None

    def spec_urls(self) -> Dict[str, str]:
        return {
            name: category.spec_url
            for name, category in self._categories.items()
            if category.spec_url
        }
