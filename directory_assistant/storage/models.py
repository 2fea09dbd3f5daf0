"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


class UsageSource(Enum):
    """Which path of the pipeline produced an answer."""
    MODEL = "model"
    CACHE = "cache"
    CANNED = "canned"
    CLARIFICATION = "clarification"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one question/answer exchange.

    Once written, only the ``useful`` feedback field may change, and only
    through ``UsageRepository.attach_feedback``.
    """
    usage_id: str
    timestamp: datetime
    session_id: str
    identifier: str
    question: str
    answer: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    latency_ms: int
    source: UsageSource = UsageSource.MODEL
    error: Optional[str] = None
    useful: Optional[bool] = None


@dataclass(frozen=True)
class RateLimitCounter:
    """Request count for one (identifier, window) pair."""
    identifier: str
    window: str
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class UsageStats:
    """Aggregated usage for an admin reporting period."""
    period: str
    total_questions: int
    total_cost_usd: float
    avg_latency_ms: float
    total_input_tokens: int
    total_output_tokens: int
    unique_identifiers: int
    top_questions: List[Tuple[str, int]]


# Marketplace read models. Written by the directory's CRUD paths, only read here.

@dataclass(frozen=True)
class Listing:
    id: str
    name: str
    city: Optional[str]
    is_premium: bool = False
    featured: bool = False
    is_verified: bool = False
    description: Optional[str] = None
    whatsapp: Optional[str] = None


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    slug: str
    display_order: int = 0


@dataclass(frozen=True)
class Review:
    provider_id: str
    rating: int
    created_at: datetime


@dataclass(frozen=True)
class ActivityEvent:
    provider_id: str
    event_type: str
    created_at: datetime


@dataclass(frozen=True)
class ServiceOffering:
    provider_id: str
    category_id: Optional[str]
    service_name: Optional[str]
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    price_range: Optional[str] = None
    description: Optional[str] = None
