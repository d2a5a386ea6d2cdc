import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional


class Tier(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Tier":
        """Header values are free-form; anything unknown is a standard caller."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.STANDARD


# Lowest to highest. Ceilings configured for these must be non-decreasing.
TIER_ORDER: List[Tier] = [Tier.STANDARD, Tier.PREMIUM, Tier.BUSINESS, Tier.ENTERPRISE]


class Quality(str, Enum):
    STANDARD = "standard"
    HIGH = "high"

    @classmethod
    def for_tier(cls, tier: Tier) -> "Quality":
        return cls.STANDARD if tier == Tier.STANDARD else cls.HIGH


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ConversionJob:
    """One inbound conversion, owned by the request that created it."""

    job_id: str
    source_reference: str
    caller_tier: Tier
    normalized_key: str
    requested_quality: Quality
    short_content: bool = False


@dataclass
class ExtractionAttempt:
    persona: str
    started_at: float
    outcome: AttemptOutcome = AttemptOutcome.FAILURE
    captured_stderr: str = ""
    captured_exit_code: Optional[int] = None
    corrective_retry: Optional[str] = None


@dataclass
class AdmissionSlot:
    tier: Tier
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False


@dataclass(frozen=True)
class CacheEntry:
    key: str
    file_path: Path
    created_at: float
    size_bytes: int
