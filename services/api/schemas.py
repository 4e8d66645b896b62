from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from services.clustering.entities import Entity


class BatchRiskRequest(BaseModel):
    addresses: List[str]
    include_details: bool = Field(False, alias="includeDetails")

    model_config = {"populate_by_name": True}


class TransferIn(BaseModel):
    source: str
    target: str
    value: float
    timestamp: str
    token: Optional[str] = None
    tx_id: Optional[str] = None


class WalletIn(BaseModel):
    address: str
    balance: float = Field(0.0, ge=0)
    transaction_count: int = Field(0, ge=0)
    first_activity: Optional[str] = None
    last_activity: Optional[str] = None
    labels: List[str] = []
    risk_level: Optional[Literal["low", "medium", "high"]] = None


class GraphPayload(BaseModel):
    wallets: List[WalletIn] = []
    transfers: List[TransferIn] = []


class ClusterThresholds(BaseModel):
    min_cluster_size: Optional[int] = Field(None, ge=1)
    temporal_window_seconds: Optional[float] = Field(None, gt=0)
    temporal_medium_count: Optional[int] = Field(None, ge=1)
    temporal_high_count: Optional[int] = Field(None, ge=1)
    value_threshold: Optional[float] = Field(None, gt=0, lt=1)
    structuring_medium_count: Optional[int] = Field(None, ge=2)
    structuring_high_count: Optional[int] = Field(None, ge=2)
    max_cycle_length: Optional[int] = Field(None, ge=2, le=12)
    max_cycles: Optional[int] = Field(None, ge=1)
    high_value_threshold: Optional[float] = Field(None, ge=0)
    exchange_labels: Optional[List[str]] = None


class ClusterRequest(BaseModel):
    address: Optional[str] = None
    graph: Optional[GraphPayload] = None
    passes: Optional[List[str]] = None
    thresholds: Optional[ClusterThresholds] = None


class EntityIn(BaseModel):
    id: str = Field(..., min_length=1)
    category: str = "other"
    counterparties: List[str] = []
    transaction_count: int = Field(0, ge=0)
    name: Optional[str] = None
    risk_score: Optional[float] = Field(None, ge=0, le=100)

    def to_entity(self) -> Entity:
        return Entity(
            id=self.id,
            category=self.category,
            counterparties=frozenset(self.counterparties),
            transaction_count=self.transaction_count,
            name=self.name,
            risk_score=self.risk_score,
        )


class EntityClusterRequest(BaseModel):
    entities: List[EntityIn]
    min_similarity: Optional[float] = Field(None, ge=0, le=1)
