"""
Per-type job payload schemas.

Job metadata is a tagged union keyed by the job type: each type owns a
pydantic model and admission validates the caller's metadata against it.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from dutyjobs.v1.core.exceptions import ValidationError
from dutyjobs.v1.jobs.models import JobType

# Keys the engine stores alongside the payload rather than inside it
RESERVED_KEYS = frozenset({"workspace_id"})


class BasePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    parameters: dict[str, Any] = Field(
        default_factory=dict, description="Free-form caller parameters"
    )


class ProductBatchPayload(BasePayload):
    product_ids: list[str] = Field(..., min_length=1)

    @field_validator("product_ids")
    @classmethod
    def dedupe_product_ids(cls, value: list[str]) -> list[str]:
        cleaned = [pid.strip() for pid in value]
        if any(not pid for pid in cleaned):
            raise ValueError("product_ids must not contain blank ids")
        # dict.fromkeys keeps first-seen order
        return list(dict.fromkeys(cleaned))


class BulkClassificationPayload(ProductBatchPayload):
    pass


class BulkFeeCalculationPayload(ProductBatchPayload):
    pass


class OptimizationPayload(ProductBatchPayload):
    pass


class DataExportPayload(BasePayload):
    export_format: Literal["csv", "json"] = "csv"
    product_ids: list[str] | None = None


class DataImportPayload(BasePayload):
    rows: list[dict[str, Any]] = Field(..., min_length=1)

    @field_validator("rows")
    @classmethod
    def require_title(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for index, row in enumerate(value):
            if not str(row.get("title") or "").strip():
                raise ValueError(f"row {index} is missing a title")
        return value


class ScenarioAnalysisPayload(BasePayload):
    base_classification_id: str = Field(..., min_length=1)
    alternative_classification_id: str = Field(..., min_length=1)
    destination_country: str = Field(..., min_length=2, max_length=2)
    product_value: float = Field(..., gt=0)

    @field_validator("destination_country")
    @classmethod
    def upper_country(cls, value: str) -> str:
        return value.upper()


PAYLOAD_SCHEMAS: dict[JobType, type[BasePayload]] = {
    JobType.BULK_CLASSIFICATION: BulkClassificationPayload,
    JobType.BULK_FEE_CALCULATION: BulkFeeCalculationPayload,
    JobType.DATA_EXPORT: DataExportPayload,
    JobType.DATA_IMPORT: DataImportPayload,
    JobType.OPTIMIZATION: OptimizationPayload,
    JobType.SCENARIO_ANALYSIS: ScenarioAnalysisPayload,
}


def validate_payload(
    job_type: JobType,
    metadata: dict[str, Any],
    schema: type[BaseModel] | None = None,
) -> dict[str, Any]:
    """
    Validate caller metadata for a job type and return the normalized payload.

    Raises:
        ValidationError: if the metadata does not match the type's schema
    """
    schema = schema or PAYLOAD_SCHEMAS[job_type]
    data = {k: v for k, v in metadata.items() if k not in RESERVED_KEYS}

    try:
        model = schema.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid metadata for job type {job_type.value}",
            details={
                "errors": [
                    {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()
                ]
            },
        ) from e

    return model.model_dump(mode="json")
