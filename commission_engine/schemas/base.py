"""
Base Schema Classes for Pydantic Models

RULE: All response schemas built from ORM rows MUST inherit from BaseResponseSchema.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for response schemas that read from ORM models.

    Usage:
        class PayoutRequestResponse(BaseResponseSchema):
            id: UUID
            request_number: str

        PayoutRequestResponse.model_validate(orm_row)
        response.model_dump(mode="json")  # UUIDs/datetimes/Decimals as strings
    """
    model_config = ConfigDict(
        from_attributes=True,
        # Allow population by field name or alias
        populate_by_name=True,
    )
