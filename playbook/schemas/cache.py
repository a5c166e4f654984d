"""Schemas for the cache and session introspection endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class CacheStats(BaseModel):
    count: int = Field(..., description="Documents currently cached.")
    hits: int
    misses: int
    hit_rate: float
    last_refresh: datetime | None = None
    approx_memory_bytes: int = Field(..., description="Estimate at ~2 bytes per character.")
    ready: bool
    enabled: bool


class CheckpointInfo(BaseModel):
    sequence: int
    created_at: datetime
    current_node: str
    completed_nodes: list[str]
