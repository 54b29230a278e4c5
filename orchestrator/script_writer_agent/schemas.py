"""Response schemas for every generative-model call."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class SummaryPayload(BaseModel):
    summary: str = Field(min_length=1)
    policy_flags: List[str] = Field(default_factory=list)

    @field_validator('summary')
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('summary is blank')
        return value.strip()


class DialogueLine(BaseModel):
    speaker: Literal['A', 'B']
    text: str = Field(min_length=1)
    item_ids: List[str] = Field(default_factory=list)


class ScriptPayload(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    long_form: Optional[str] = None
    lines: List[DialogueLine] = Field(min_length=1)


class RewritePayload(BaseModel):
    text: str = Field(min_length=1)
