from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class Label(str, Enum):
    POSITIVE = "Cancer"
    NEGATIVE = "Non-cancer"


class PredictionRecord(BaseModel):
    """Predictions collection schema
    Collection name: "predictions"
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., description="UUID assigned when the prediction was made")
    label: Label = Field(..., description="Predicted class label")
    score: float = Field(..., ge=0, le=1, description="Model output rounded to 3 decimals")
    advisory: str = Field(..., description="Fixed advice for the predicted label")
    created_at: str = Field(..., alias="createdAt", description="ISO timestamp when prediction was made")


class HistoryEntry(BaseModel):
    id: str
    history: PredictionRecord


class PredictResponse(BaseModel):
    status: str = "success"
    message: str = "Model is predicted successfully"
    data: PredictionRecord


class HistoriesResponse(BaseModel):
    status: str = "success"
    data: List[HistoryEntry]


class FailResponse(BaseModel):
    status: str = "fail"
    message: str
