from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional

UsageStatus = Literal["ok", "warning", "critical", "exceeded"]


class PlanInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str
    display_name: str = Field(alias="displayName")
    limit: int  # -1 = unlimited


class UsageSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    store_id: str = Field(alias="storeId")
    plan: PlanInfo
    current_month: str = Field(alias="currentMonth")
    message_count: int = Field(alias="messageCount")
    remaining: int  # -1 = unlimited
    percent_used: float = Field(alias="percentUsed")
    resets_at: str = Field(alias="resetsAt")
    status: UsageStatus

    @property
    def allowed(self) -> bool:
        return self.status != "exceeded"

    def rejection_payload(self) -> dict:
        return {
            "plan": self.plan.display_name,
            "limit": self.plan.limit,
            "used": self.message_count,
            "resetsAt": self.resets_at,
        }


class UsageHistoryItem(BaseModel):
    month: str
    count: int


class UsageResponse(BaseModel):
    usage: UsageSnapshot
    history: List[UsageHistoryItem] = []
