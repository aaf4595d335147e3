"""
Job handlers for the duty and catalog background jobs.

Each handler implements the JobHandler protocol and is registered with the
engine by ``register_job_handlers``.
"""

import csv
import io
import json
import logging
from typing import Any

from dutyjobs.config.settings import Settings
from dutyjobs.v1.core.exceptions import JobHandlerError
from dutyjobs.v1.jobs.collaborators import JobServices, Product
from dutyjobs.v1.jobs.executor import JobContext
from dutyjobs.v1.jobs.payloads import (
    BulkClassificationPayload,
    BulkFeeCalculationPayload,
    DataExportPayload,
    DataImportPayload,
    OptimizationPayload,
    ProductBatchPayload,
    ScenarioAnalysisPayload,
)

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id",
    "title",
    "asin",
    "price_usd",
    "fba_fee_estimate_usd",
    "hs6",
    "hs8",
    "confidence_score",
]
EXPORT_PREVIEW_CHARS = 1000
IMPORT_FIELDS = ("title", "asin", "price_usd", "description", "category")


class ProductBatchHandler:
    """
    Base for handlers that apply one operation to each product of a job.

    Products are fetched ``job_batch_size`` at a time. A product that is
    missing or whose operation fails is counted as a failed unit and the
    job carries on; the job itself fails only when no product succeeded.
    """

    payload_schema: type[ProductBatchPayload] = ProductBatchPayload
    timeout_s: float | None = None
    supports_pause = True

    def __init__(self, settings: Settings, services: JobServices):
        self.settings = settings
        self.services = services

    async def process_product(
        self, ctx: JobContext, product: Product, payload: ProductBatchPayload
    ) -> dict[str, Any]:
        raise NotImplementedError

    def summarize(self, results: dict[str, dict[str, Any]]) -> dict[str, Any]:
        return {}

    async def handle(
        self, ctx: JobContext, payload: ProductBatchPayload
    ) -> dict[str, Any] | None:
        product_ids = payload.product_ids
        total = len(product_ids)
        batch_size = self.settings.job_batch_size
        completed = 0
        failed = 0
        results: dict[str, dict[str, Any]] = {}
        failures: dict[str, str] = {}

        await ctx.report_progress(0, 0, total=total)

        for start in range(0, total, batch_size):
            await ctx.checkpoint()
            batch = product_ids[start : start + batch_size]

            try:
                products = await self.services.catalog.get_products(
                    ctx.workspace_id, batch
                )
            except JobHandlerError as e:
                logger.warning(
                    "Failed to fetch product batch",
                    extra={"job_id": ctx.job_id, "batch_size": len(batch), "error": e.message},
                )
                failed += len(batch)
                failures.update({product_id: e.message for product_id in batch})
                await ctx.report_progress(completed, failed)
                continue

            by_id = {str(product["id"]): product for product in products}

            for product_id in batch:
                await ctx.checkpoint()

                product = by_id.get(product_id)
                if product is None:
                    failed += 1
                    failures[product_id] = "Product not found"
                else:
                    try:
                        results[product_id] = await self.process_product(
                            ctx, product, payload
                        )
                        completed += 1
                    except JobHandlerError as e:
                        logger.warning(
                            "Failed to process product",
                            extra={
                                "job_id": ctx.job_id,
                                "product_id": product_id,
                                "error": e.message,
                            },
                        )
                        failed += 1
                        failures[product_id] = e.message

                await ctx.report_progress(completed, failed, current=product_id)

        if completed == 0:
            raise JobHandlerError(
                "All items failed",
                code="ALL_ITEMS_FAILED",
                details={"failures": failures},
            )

        return {
            "processed": completed,
            "failed": failed,
            "failures": failures,
            "results": results,
            **self.summarize(results),
        }


class BulkClassificationHandler(ProductBatchHandler):
    """Classify each product and store its tariff codes on the product."""

    payload_schema = BulkClassificationPayload

    async def process_product(
        self, ctx: JobContext, product: Product, payload: ProductBatchPayload
    ) -> dict[str, Any]:
        classification = await self.services.classifier.classify(product)

        hs8 = classification.get("hs8")
        fields = {
            "hs6": classification.get("hs6") or (hs8[:6] if hs8 else None),
            "hs8": hs8,
            "confidence_score": classification.get("confidence_score"),
            "classification_method": "bulk",
        }
        await self.services.catalog.update_product(
            ctx.workspace_id, str(product["id"]), fields
        )
        return fields


class BulkFeeCalculationHandler(ProductBatchHandler):
    """Estimate the fulfilment fee of each product."""

    payload_schema = BulkFeeCalculationPayload

    async def process_product(
        self, ctx: JobContext, product: Product, payload: ProductBatchPayload
    ) -> dict[str, Any]:
        fee = await self.services.fee_calculator.calculate_fee(product)
        await self.services.catalog.update_product(
            ctx.workspace_id, str(product["id"]), {"fba_fee_estimate_usd": fee}
        )
        return {"fba_fee_estimate_usd": fee}


class OptimizationHandler(ProductBatchHandler):
    """Collect duty saving recommendations per product."""

    payload_schema = OptimizationPayload

    async def process_product(
        self, ctx: JobContext, product: Product, payload: ProductBatchPayload
    ) -> dict[str, Any]:
        recommendations = await self.services.optimizer.recommend(
            ctx.workspace_id, product
        )
        return {
            "recommendations": recommendations,
            "potential_saving": sum(
                float(rec.get("potential_saving") or 0) for rec in recommendations
            ),
        }

    def summarize(self, results: dict[str, dict[str, Any]]) -> dict[str, Any]:
        return {
            "total_potential_saving": round(
                sum(result["potential_saving"] for result in results.values()), 2
            )
        }


class DataExportHandler:
    """
    Render workspace products as CSV or JSON.

    The rendered document is not stored; the result keeps its size, the
    record count and a preview of the first characters.
    """

    payload_schema = DataExportPayload
    timeout_s: float | None = None
    supports_pause = False

    def __init__(self, settings: Settings, services: JobServices):
        self.settings = settings
        self.services = services

    async def handle(self, ctx: JobContext, payload: DataExportPayload) -> dict[str, Any]:
        products = await self.services.catalog.list_products(
            ctx.workspace_id, payload.product_ids
        )
        await ctx.report_progress(0, total=len(products), current="rendering")
        ctx.raise_if_cancelled()

        if payload.export_format == "csv":
            document = render_csv(products)
        else:
            document = json.dumps(products, indent=2, default=str)

        await ctx.report_progress(len(products), total=len(products))

        return {
            "export_format": payload.export_format,
            "record_count": len(products),
            "export_size": len(document),
            "preview": document[:EXPORT_PREVIEW_CHARS],
        }


def render_csv(products: list[Product]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore", lineterminator="\n"
    )
    writer.writeheader()
    for product in products:
        writer.writerow(
            {
                column: "" if product.get(column) is None else product[column]
                for column in EXPORT_COLUMNS
            }
        )
    return buffer.getvalue()


class DataImportHandler:
    """Insert imported rows into the catalog one at a time."""

    payload_schema = DataImportPayload
    timeout_s: float | None = None
    supports_pause = True

    def __init__(self, settings: Settings, services: JobServices):
        self.settings = settings
        self.services = services

    async def handle(self, ctx: JobContext, payload: DataImportPayload) -> dict[str, Any]:
        total = len(payload.rows)
        imported: list[str] = []
        # keyed by row index as text so the result reads the same after a reload
        errors: dict[str, str] = {}

        await ctx.report_progress(0, 0, total=total)

        for index, row in enumerate(payload.rows):
            await ctx.checkpoint()

            data = {key: row[key] for key in IMPORT_FIELDS if key in row}
            try:
                product_id = await self.services.catalog.create_product(
                    ctx.workspace_id, data
                )
                imported.append(product_id)
            except JobHandlerError as e:
                logger.warning(
                    "Failed to import row",
                    extra={"job_id": ctx.job_id, "row": index, "error": e.message},
                )
                errors[str(index)] = e.message

            await ctx.report_progress(
                len(imported), len(errors), current=str(row.get("title"))
            )

        return {
            "total_records": total,
            "successful_imports": len(imported),
            "failed_imports": len(errors),
            "product_ids": imported,
            "errors": errors,
        }


class ScenarioAnalysisHandler:
    """Compare the duty owed under two classifications."""

    payload_schema = ScenarioAnalysisPayload
    timeout_s: float | None = None
    supports_pause = False

    def __init__(self, settings: Settings, services: JobServices):
        self.settings = settings
        self.services = services

    async def handle(
        self, ctx: JobContext, payload: ScenarioAnalysisPayload
    ) -> dict[str, Any]:
        await ctx.report_progress(0, total=1, current="comparing")

        scenario = payload.model_dump(exclude={"parameters"})
        analysis = await self.services.scenario_analyzer.compare(
            ctx.workspace_id, scenario
        )

        await ctx.report_progress(1, total=1)
        return {"scenario": scenario, "analysis": analysis}
