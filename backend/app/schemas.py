from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class LegAudit(BaseModel):
    id: int
    final_score: str = Field(default="", description="Final score or status note")
    status: Literal["WON", "LOST", "PENDING", "VOID"]

    @field_validator("final_score", mode="before")
    @classmethod
    def _coerce_final_score(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


class TicketAudit(BaseModel):
    summary: str = ""
    legs: list[LegAudit]

    def by_leg_id(self) -> dict[int, LegAudit]:
        return {leg.id: leg for leg in self.legs}


class LegBrief(BaseModel):
    """Leg description sent to the judge during the audit sweep."""

    id: int
    matchup: str
    selection: str
    competition: str | None = None

    model_config = {"from_attributes": True}

