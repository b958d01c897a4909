"""Shared data models for the PowerTrack disaster-report pipeline.

This module contains the core data structures used throughout the pipeline
for representing inbound stream activities, provisioned filter rules,
classification verdicts and reconnection state.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field


class RuleFamily(enum.Enum):
    """Closed set of filter rule families an activity can match."""

    BOUNDING_BOX = "bounding_box"
    ADDRESSED = "addressed"
    LOCATION_MATCH = "location_match"

    @classmethod
    def from_tag(cls, tag: Optional[str]) -> Optional["RuleFamily"]:
        """Infer the rule family of a tag from its prefix.

        Args:
            tag: Rule tag as configured or as attached by the stream provider

        Returns:
            The matching RuleFamily, or None if the tag has no known prefix
        """
        if not tag:
            return None
        for prefix, family in _TAG_PREFIXES:
            if tag.startswith(prefix):
                return family
        return None


_TAG_PREFIXES: Tuple[Tuple[str, RuleFamily], ...] = (
    ("geo", RuleFamily.BOUNDING_BOX),
    ("boundingbox", RuleFamily.BOUNDING_BOX),
    ("addressed", RuleFamily.ADDRESSED),
    ("location", RuleFamily.LOCATION_MATCH),
)


@dataclass(frozen=True)
class ProvisionedRule:
    """A single filter rule pushed to the stream provider.

    Attributes:
        tag: Tag the provider attaches to activities matching this rule
        query: PowerTrack rule text
        family: Rule family fixed when the rule set is built
    """

    tag: str
    query: str
    family: RuleFamily

    def to_wire(self) -> Dict[str, str]:
        """Convert to the rules API payload format."""
        return {"value": self.query, "tag": self.tag}


class RuleSet:
    """The provisioned rules, indexed by tag for family lookup."""

    def __init__(self, rules: Iterable[ProvisionedRule]) -> None:
        self.rules: List[ProvisionedRule] = list(rules)
        self._families: Dict[str, RuleFamily] = {rule.tag: rule.family for rule in self.rules}

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str]) -> "RuleSet":
        """Build a rule set from a tag -> query mapping.

        Args:
            mapping: Rule tags mapped to rule text

        Returns:
            RuleSet with a family attached to every rule

        Raises:
            ValueError: If a tag does not belong to any rule family
        """
        rules = []
        for tag, query in mapping.items():
            family = RuleFamily.from_tag(tag)
            if family is None:
                raise ValueError(f"Rule tag '{tag}' does not belong to a known rule family")
            rules.append(ProvisionedRule(tag=tag, query=query, family=family))
        return cls(rules)

    def family_of(self, tag: Optional[str]) -> Optional[RuleFamily]:
        """Resolve the family of an incoming tag.

        Tags provisioned by this process resolve by exact lookup; anything else
        (e.g. rules added to the same stream by another client) falls back to
        prefix inference.
        """
        if tag in self._families:
            return self._families[tag]
        return RuleFamily.from_tag(tag)

    def families_for(self, tags: Iterable[str]) -> FrozenSet[RuleFamily]:
        """Resolve the set of families matched by a collection of tags."""
        families = set()
        for tag in tags:
            family = self.family_of(tag)
            if family is not None:
                families.add(family)
        return frozenset(families)

    def to_wire(self) -> List[Dict[str, str]]:
        return [rule.to_wire() for rule in self.rules]

    def __len__(self) -> int:
        return len(self.rules)


@dataclass(frozen=True)
class GeoPoint:
    """A WGS84 point."""

    longitude: float
    latitude: float

    def to_wkt(self) -> str:
        """Render as well-known text for PostGIS."""
        return f"POINT({self.longitude} {self.latitude})"


@dataclass(frozen=True)
class StreamEvent:
    """Represents one activity delivered by the PowerTrack stream.

    Attributes:
        username: Author handle (screen name, without @)
        posted_at: Timestamp when the activity was posted
        body: Text of the activity
        language: Language code attached by the provider
        geo: Optional point the activity was geotagged with
        hashtags: Hashtag entities, passed through unmodified
        urls: URL entities, passed through unmodified
        user_mentions: Mention entities, passed through unmodified
        matching_tags: Tags of the filter rules the activity matched
        families: Rule families resolved from the matching tags
    """

    username: str
    posted_at: datetime
    body: str
    language: Optional[str] = None
    geo: Optional[GeoPoint] = None
    hashtags: Tuple[Any, ...] = ()
    urls: Tuple[Any, ...] = ()
    user_mentions: Tuple[Any, ...] = ()
    matching_tags: FrozenSet[str] = frozenset()
    families: FrozenSet[RuleFamily] = frozenset()

    @property
    def has_geo(self) -> bool:
        return self.geo is not None

    @classmethod
    def from_activity(cls, activity: Dict[str, Any], rule_set: Optional[RuleSet] = None) -> "StreamEvent":
        """Build a StreamEvent from a PowerTrack activity document.

        Args:
            activity: Decoded activity JSON
            rule_set: Provisioned rules used to resolve matching tags to families

        Returns:
            StreamEvent for the activity

        Raises:
            ValueError: If the activity has no author or its body is not text
        """
        username = (activity.get("actor") or {}).get("preferredUsername")
        if not username:
            raise ValueError("Activity has no actor.preferredUsername")

        body = activity.get("body") or ""
        if not isinstance(body, str):
            raise ValueError("Activity body is not text")

        tags = frozenset(
            rule["tag"]
            for rule in (activity.get("gnip") or {}).get("matching_rules") or []
            if rule.get("tag")
        )
        resolver = rule_set or RuleSet([])
        entities = activity.get("twitter_entities") or {}

        return cls(
            username=username,
            posted_at=_parse_posted_time(activity.get("postedTime")),
            body=body,
            language=activity.get("twitter_lang"),
            geo=_parse_geo(activity.get("geo")),
            hashtags=tuple(entities.get("hashtags") or ()),
            urls=tuple(entities.get("urls") or ()),
            user_mentions=tuple(entities.get("user_mentions") or ()),
            matching_tags=tags,
            families=resolver.families_for(tags),
        )


def _parse_posted_time(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def _parse_geo(geo: Optional[Dict[str, Any]]) -> Optional[GeoPoint]:
    # Activity streams carry [latitude, longitude]
    if not geo or not geo.get("coordinates"):
        return None
    coordinates = geo["coordinates"]
    if len(coordinates) < 2:
        return None
    return GeoPoint(longitude=float(coordinates[1]), latitude=float(coordinates[0]))


class ReportCategory(enum.Enum):
    """Outcome of classifying a stream event."""

    CONFIRMED = "confirmed"
    ASK_FOR_GEO = "ask_for_geo"
    UNCONFIRMED = "unconfirmed"
    INVITE = "invite"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class ClassificationVerdict:
    """A category plus the facts that produced it."""

    category: ReportCategory
    has_geo: bool
    in_bounding_box: bool
    addressed: bool
    location_match: bool

    def describe(self) -> str:
        """Render the facts as e.g. '+BOUNDINGBOX -GEO +ADDRESSED -LOCATION'."""
        flags = (
            (self.in_bounding_box, "BOUNDINGBOX"),
            (self.has_geo, "GEO"),
            (self.addressed, "ADDRESSED"),
            (self.location_match, "LOCATION"),
        )
        return " ".join(("+" if value else "-") + name for value, name in flags)


@dataclass
class ReconnectState:
    """Backoff delay owned by one stream connection manager.

    Attributes:
        floor: Delay in seconds after a successful session
        ceiling: Optional upper bound for the delay in seconds
        delay: Current delay in seconds
    """

    floor: float = 1.0
    ceiling: Optional[float] = None
    delay: float = field(init=False)

    def __post_init__(self) -> None:
        """Validate backoff bounds."""
        if self.floor <= 0:
            raise ValueError("Backoff floor must be positive")
        if self.ceiling is not None and self.ceiling < self.floor:
            raise ValueError("Backoff ceiling must not be below the floor")
        self.delay = self.floor

    def reset(self) -> None:
        self.delay = self.floor

    def grow(self) -> None:
        self.delay *= 2
        if self.ceiling is not None:
            self.delay = min(self.delay, self.ceiling)
