"""
Business collaborators the job handlers call into.

The engine treats classification, fee calculation, optimization and
scenario analysis as opaque. Handlers reach them through the protocols
below, bundled in ``JobServices`` and injected at startup.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from dutyjobs.v1.core.exceptions import JobHandlerError

Product = dict[str, Any]


class ProductCatalog(Protocol):
    """Workspace-scoped product storage."""

    async def get_products(self, workspace_id: str, product_ids: list[str]) -> list[Product]:
        """Fetch the given products; ids that do not exist are simply absent."""
        ...

    async def list_products(
        self, workspace_id: str, product_ids: list[str] | None = None
    ) -> list[Product]:
        ...

    async def create_product(self, workspace_id: str, data: dict[str, Any]) -> str:
        ...

    async def update_product(
        self, workspace_id: str, product_id: str, fields: dict[str, Any]
    ) -> None:
        ...


class Classifier(Protocol):
    async def classify(self, product: Product) -> dict[str, Any]:
        """Return ``{"hs6", "hs8", "confidence_score"}`` for a product."""
        ...


class FeeCalculator(Protocol):
    async def calculate_fee(self, product: Product) -> float:
        """Return the fulfilment fee estimate in USD."""
        ...


class Optimizer(Protocol):
    async def recommend(self, workspace_id: str, product: Product) -> list[dict[str, Any]]:
        """Return duty saving recommendations, each with a ``potential_saving``."""
        ...


class ScenarioAnalyzer(Protocol):
    async def compare(self, workspace_id: str, scenario: dict[str, Any]) -> dict[str, Any]:
        """
        Compare two classifications for one destination.

        Returns ``base_duty_amount``, ``alternative_duty_amount`` and
        ``potential_saving``.
        """
        ...


class UnconfiguredService:
    """Placeholder for a collaborator the host application did not provide."""

    def __init__(self, name: str):
        self.name = name

    def _unavailable(self, *args: Any, **kwargs: Any) -> Any:
        raise JobHandlerError(
            f"No {self.name} is configured",
            code="SERVICE_UNAVAILABLE",
            details={"service": self.name},
        )

    async def classify(self, product: Product) -> dict[str, Any]:
        return self._unavailable()

    async def calculate_fee(self, product: Product) -> float:
        return self._unavailable()

    async def recommend(self, workspace_id: str, product: Product) -> list[dict[str, Any]]:
        return self._unavailable()

    async def compare(self, workspace_id: str, scenario: dict[str, Any]) -> dict[str, Any]:
        return self._unavailable()


class InMemoryProductCatalog:
    """Product catalog kept in process memory, keyed by workspace."""

    def __init__(self, products: dict[str, list[Product]] | None = None):
        self._products: dict[str, dict[str, Product]] = {}
        for workspace_id, rows in (products or {}).items():
            for row in rows:
                product = dict(row)
                product.setdefault("id", str(uuid.uuid4()))
                self._products.setdefault(workspace_id, {})[product["id"]] = product

    async def get_products(self, workspace_id: str, product_ids: list[str]) -> list[Product]:
        products = self._products.get(workspace_id, {})
        return [dict(products[pid]) for pid in product_ids if pid in products]

    async def list_products(
        self, workspace_id: str, product_ids: list[str] | None = None
    ) -> list[Product]:
        products = self._products.get(workspace_id, {})
        if product_ids is None:
            return [dict(product) for product in products.values()]
        return await self.get_products(workspace_id, product_ids)

    async def create_product(self, workspace_id: str, data: dict[str, Any]) -> str:
        product_id = str(data.get("id") or uuid.uuid4())
        self._products.setdefault(workspace_id, {})[product_id] = {**data, "id": product_id}
        return product_id

    async def update_product(
        self, workspace_id: str, product_id: str, fields: dict[str, Any]
    ) -> None:
        products = self._products.get(workspace_id, {})
        if product_id not in products:
            raise JobHandlerError(
                f"Product {product_id} not found",
                code="PRODUCT_NOT_FOUND",
                details={"product_id": product_id},
            )
        products[product_id].update(fields)


@dataclass
class JobServices:
    """Collaborators handed to the job handlers."""

    catalog: ProductCatalog = field(default_factory=InMemoryProductCatalog)
    classifier: Classifier = field(
        default_factory=lambda: UnconfiguredService("classifier")
    )
    fee_calculator: FeeCalculator = field(
        default_factory=lambda: UnconfiguredService("fee calculator")
    )
    optimizer: Optimizer = field(
        default_factory=lambda: UnconfiguredService("optimizer")
    )
    scenario_analyzer: ScenarioAnalyzer = field(
        default_factory=lambda: UnconfiguredService("scenario analyzer")
    )
