"""
Domain records for the segmentation engine.

Donors are read-only inputs supplied by an external repository. Segments,
clusters, behavioral patterns, memberships, updates and alerts are the
engine's own records. All records are immutable; changes produce copies.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ulid import ULID

NO_DONATION_DAYS = 9999
SECONDS_PER_DAY = 86400


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(ULID())


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def days_between(earlier: datetime, later: datetime) -> float:
    return (ensure_utc(later) - ensure_utc(earlier)).total_seconds() / SECONDS_PER_DAY


# ============================================================================
# Donors (external, read-only)
# ============================================================================


class Channel(Enum):
    """Channels a donor gives or interacts through."""

    EMAIL = "email"
    DIRECT_MAIL = "direct_mail"
    PHONE = "phone"
    SOCIAL_MEDIA = "social_media"
    WEBSITE = "website"
    EVENT = "event"
    REFERRAL = "referral"
    SMS = "sms"


class InteractionKind(Enum):
    """Kinds of recorded donor activity."""

    OPEN = "open"
    CLICK = "click"
    REPLY = "reply"
    CALL = "call"
    EVENT = "event"
    VISIT = "visit"
    SOLICITATION = "solicitation"  # Outbound ask, not donor activity
    RESPONSE = "response"


class Donation(BaseModel):
    """A single gift."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    amount: float = Field(ge=0.0)
    date: datetime
    campaign_id: str | None = None
    method: str = "credit_card"
    recurring: bool = False
    source: Channel = Channel.WEBSITE
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Interaction(BaseModel):
    """A recorded touchpoint between the organisation and a donor."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    date: datetime
    channel: Channel = Channel.EMAIL
    kind: InteractionKind = InteractionKind.OPEN
    campaign_id: str | None = None

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_activity(self) -> bool:
        """Whether the donor, not the organisation, initiated this event."""
        return self.kind != InteractionKind.SOLICITATION


class Donor(BaseModel):
    """
    A donor record as handed over by the donor repository.

    Extra fields are kept so that rules can address repository-specific
    attributes by path.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(default_factory=new_id)
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str | None = None
    age: int | None = None
    address: dict[str, Any] = Field(default_factory=dict)
    date_created: datetime = Field(default_factory=utc_now)
    donations: tuple[Donation, ...] = Field(default_factory=tuple)
    interactions: tuple[Interaction, ...] = Field(default_factory=tuple)
    preferences: dict[str, Any] = Field(default_factory=dict)
    tags: tuple[str, ...] = Field(default_factory=tuple)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    engagement_score: float | None = None
    churn_risk: str | None = None
    status: str = "active"

    @field_validator("date_created")
    @classmethod
    def normalize_created(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def total_donated(self) -> float:
        return sum(d.amount for d in self.donations)

    @property
    def donation_count(self) -> int:
        return len(self.donations)

    @property
    def average_donation(self) -> float:
        return self.total_donated / len(self.donations) if self.donations else 0.0

    def first_donation_date(self) -> datetime | None:
        return min((d.date for d in self.donations), default=None)

    def last_donation_date(self) -> datetime | None:
        return max((d.date for d in self.donations), default=None)

    def days_since_first_donation(self, now: datetime) -> int:
        first = self.first_donation_date()
        if first is None:
            return NO_DONATION_DAYS
        return int(days_between(first, now))

    def days_since_last_donation(self, now: datetime) -> int:
        last = self.last_donation_date()
        if last is None:
            return NO_DONATION_DAYS
        return int(days_between(last, now))


# ============================================================================
# Rules
# ============================================================================


class RuleOperator(Enum):
    """Comparison operators for segment rules."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class LogicalOperator(Enum):
    AND = "AND"
    OR = "OR"


class Rule(BaseModel):
    """An atomic comparison on a donor field."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    field: str = Field(min_length=1)
    operator: RuleOperator
    value: Any = None

    @model_validator(mode="after")
    def validate_value_shape(self) -> Self:
        """Collection operators need a collection, between needs bounds."""
        if self.operator in (RuleOperator.IN, RuleOperator.NOT_IN):
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                raise ValueError(f"Operator {self.operator.value} requires a list value")
        elif self.operator == RuleOperator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("Operator between requires a two-element [low, high] value")
        return self


class RuleGroup(BaseModel):
    """A flat AND/OR combination of rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    name: str = ""
    rules: tuple[Rule, ...] = Field(default_factory=tuple)
    logical_operator: LogicalOperator = LogicalOperator.AND


# ============================================================================
# Segments
# ============================================================================


class SegmentType(Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"
    PREDICTIVE = "predictive"


class SegmentStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class UpdateFrequency(Enum):
    REAL_TIME = "real_time"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class DuplicateHandling(Enum):
    ALLOW = "allow"
    PRIORITIZE_NEWEST = "prioritize_newest"
    PRIORITIZE_OLDEST = "prioritize_oldest"


class SegmentPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SegmentConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    update_frequency: UpdateFrequency = UpdateFrequency.DAILY
    auto_update: bool = True
    duplicate_handling: DuplicateHandling = DuplicateHandling.PRIORITIZE_NEWEST


class SegmentMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    size: int = Field(default=0, ge=0)
    last_updated: datetime | None = None
    created_by: str = "system"
    tags: tuple[str, ...] = Field(default_factory=tuple)
    priority: SegmentPriority = SegmentPriority.MEDIUM


class SegmentPerformance(BaseModel):
    """Campaign outcome rates, reported by external collaborators."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    conversion_rate: float = 0.0
    engagement_rate: float = 0.0
    average_gift_size: float = 0.0
    total_revenue: float = 0.0
    revenue_per_member: float = 0.0
    growth_rate: float = 0.0
    churn_rate: float = 0.0
    campaign_response_rate: float = 0.0


class Personalization(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    dynamic_content: bool = False
    personalized_amounts: bool = False
    optimized_timing: bool = False
    channel_preference: bool = False
    custom_variables: dict[str, Any] = Field(default_factory=dict)


def default_include_criteria() -> RuleGroup:
    return RuleGroup(id="default_include", name="Default Include")


class SegmentDefinition(BaseModel):
    """Caller-supplied definition used to create a segment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = "Untitled Segment"
    description: str = ""
    type: SegmentType = SegmentType.DYNAMIC
    status: SegmentStatus = SegmentStatus.ACTIVE
    include_criteria: RuleGroup = Field(default_factory=default_include_criteria)
    exclude_criteria: RuleGroup | None = None
    cluster_id: str | None = None
    behavioral_patterns: tuple[str, ...] = Field(default_factory=tuple)
    config: SegmentConfig = Field(default_factory=SegmentConfig)
    tags: tuple[str, ...] = Field(default_factory=tuple)
    priority: SegmentPriority = SegmentPriority.MEDIUM
    created_by: str = "system"
    performance: SegmentPerformance = Field(default_factory=SegmentPerformance)
    personalization: Personalization = Field(default_factory=Personalization)


class AudienceSegment(BaseModel):
    """A named, criteria-defined subset of the donor population."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    type: SegmentType = SegmentType.DYNAMIC
    status: SegmentStatus = SegmentStatus.ACTIVE

    # Qualification mechanisms
    include_criteria: RuleGroup = Field(default_factory=default_include_criteria)
    exclude_criteria: RuleGroup | None = None
    cluster_id: str | None = None
    behavioral_patterns: tuple[str, ...] = Field(default_factory=tuple)

    config: SegmentConfig = Field(default_factory=SegmentConfig)
    metadata: SegmentMetadata = Field(default_factory=SegmentMetadata)
    performance: SegmentPerformance = Field(default_factory=SegmentPerformance)
    personalization: Personalization = Field(default_factory=Personalization)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_definition(cls, definition: SegmentDefinition) -> "AudienceSegment":
        return cls(
            name=definition.name,
            description=definition.description,
            type=definition.type,
            status=definition.status,
            include_criteria=definition.include_criteria,
            exclude_criteria=definition.exclude_criteria,
            cluster_id=definition.cluster_id,
            behavioral_patterns=definition.behavioral_patterns,
            config=definition.config,
            metadata=SegmentMetadata(
                created_by=definition.created_by,
                tags=definition.tags,
                priority=definition.priority,
            ),
            performance=definition.performance,
            personalization=definition.personalization,
        )

    @property
    def is_auto_updating(self) -> bool:
        return self.status == SegmentStatus.ACTIVE and self.config.auto_update


# ============================================================================
# Memberships, updates, alerts
# ============================================================================


class MembershipSource(Enum):
    RULES = "rules"
    ML_CLUSTERING = "ml_clustering"
    PREDICTION = "prediction"


class SegmentMembership(BaseModel):
    """The fact that a donor currently qualifies for a segment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    donor_id: str
    segment_id: str
    joined_at: datetime = Field(default_factory=utc_now)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    source: MembershipSource = MembershipSource.RULES

    @property
    def key(self) -> tuple[str, str]:
        return self.donor_id, self.segment_id


class ChangeType(Enum):
    ADDED = "added"
    REMOVED = "removed"


class SegmentUpdate(BaseModel):
    """Immutable membership diff record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    segment_id: str
    change_type: ChangeType
    donor_ids: tuple[str, ...]
    reason: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class AlertType(Enum):
    SIZE_CHANGE = "size_change"
    UPDATE_FAILED = "update_failed"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SegmentAlert(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    segment_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    action_required: bool = False
    created_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# Behavioral patterns
# ============================================================================


class BehaviorType(Enum):
    DONATION_FREQUENCY = "donation_frequency"
    DONATION_AMOUNT = "donation_amount"
    ENGAGEMENT_LEVEL = "engagement_level"
    CHANNEL_PREFERENCE = "channel_preference"
    CAMPAIGN_RESPONSE = "campaign_response"


class Trend(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class PatternTimeframe(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime
    end: datetime
    window_days: int = Field(ge=0)


class PatternMetrics(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    frequency: float | None = None
    recency: float | None = None
    monetary: float | None = None
    trend: Trend | None = None
    consistency: float | None = Field(default=None, ge=0.0, le=1.0)


class PatternThresholds(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    high: float
    medium: float
    low: float


class BehavioralPattern(BaseModel):
    """A statistical summary of donor activity over a time window."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=new_id)
    key: str = ""  # Generic pattern key, e.g. "donation_behavior"
    name: str
    description: str = ""
    type: BehaviorType
    timeframe: PatternTimeframe | None = None
    metrics: PatternMetrics = Field(default_factory=PatternMetrics)
    thresholds: PatternThresholds
    weight: float = Field(gt=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class TimeWindows(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    short: int = Field(default=30, gt=0)
    medium: int = Field(default=90, gt=0)
    long: int = Field(default=365, gt=0)


class BehaviorAnalysisConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    time_windows: TimeWindows = Field(default_factory=TimeWindows)
    minimum_activity: int = Field(default=2, ge=1)
    weight_decay: float = Field(default=0.95, gt=0.0, le=1.0)


# ============================================================================
# Clusters
# ============================================================================


class ClusteringAlgorithm(Enum):
    K_MEANS = "k_means"
    HIERARCHICAL = "hierarchical"
    DBSCAN = "dbscan"


class ClusteringConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    algorithm: ClusteringAlgorithm = ClusteringAlgorithm.K_MEANS
    num_clusters: int
    features: tuple[str, ...]
    normalize_features: bool = True
    max_iterations: int = Field(default=100, gt=0)
    tolerance: float = Field(default=0.001, gt=0.0)
    random_seed: int | None = None


class ClusterCharacteristics(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    avg_donation_amount: float = 0.0
    avg_donation_frequency: float = 0.0
    avg_engagement_score: float = 0.0
    avg_lifetime_value: float = 0.0
    avg_age: float | None = None
    primary_channels: tuple[str, ...] = Field(default_factory=tuple)


class DonorCluster(BaseModel):
    """An unsupervised grouping of donors in feature space."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str
    description: str = ""
    algorithm: ClusteringAlgorithm
    run_id: str
    features: tuple[str, ...]
    centroid: dict[str, float]
    size: int = Field(ge=0)
    characteristics: ClusterCharacteristics = Field(default_factory=ClusterCharacteristics)
    insights: tuple[str, ...] = Field(default_factory=tuple)
    recommended_actions: tuple[str, ...] = Field(default_factory=tuple)
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def validate_centroid(self) -> Self:
        """One centroid component per feature, no more, no less."""
        if len(self.centroid) != len(self.features) or set(self.centroid) != set(self.features):
            raise ValueError(
                f"Centroid has {len(self.centroid)} components for {len(self.features)} features"
            )
        return self
