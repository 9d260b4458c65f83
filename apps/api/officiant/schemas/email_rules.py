"""Pydantic schemas for form submission and email rule endpoints."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from officiant.db.enums import ConditionOperator


class FormSubmitRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


class FormSubmitResponse(BaseModel):
    success: bool = True
    submission_id: str
    lead_id: str | None = None
    booking_id: str | None = None
    message: str = "Submission received"


class ConditionIn(BaseModel):
    """Ad-hoc condition for dry runs."""

    field: str = Field(min_length=1)
    operator: str
    value: Any = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        valid = {op.value for op in ConditionOperator}
        if v not in valid:
            raise ValueError(f"Unknown operator: {v}")
        return v


class RuleTestRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    conditions: list[ConditionIn] | None = None


class ConditionDetailRead(BaseModel):
    field: str
    operator: str
    expectedValue: Any = None
    actualValue: Any = None
    result: bool
    reason: str


class RulePreviewRead(BaseModel):
    rule_id: str
    rule_name: str
    matched: bool
    details: list[ConditionDetailRead] = Field(default_factory=list)
    error: str | None = None
    recipient: str | None = None
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    unresolved_variables: list[str] = Field(default_factory=list)


class RuleTestResponse(BaseModel):
    form_id: str
    matched_count: int
    rules: list[RulePreviewRead] = Field(default_factory=list)
    conditions_match: bool | None = None
    condition_details: list[ConditionDetailRead] = Field(default_factory=list)


class CacheInvalidateResponse(BaseModel):
    success: bool = True
    form_id: str | None = None
