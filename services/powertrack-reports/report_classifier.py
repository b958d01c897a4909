"""
Report Classifier

Maps a stream event to a report category using the rule families its
matching rules belong to and whether it carries coordinates.
"""

from shared.models import ClassificationVerdict, ReportCategory, RuleFamily, StreamEvent


def categorize(in_bounding_box: bool, has_geo: bool, addressed: bool, location_match: bool) -> ReportCategory:
    """
    Pick the report category for a combination of facts.

    Rows are evaluated in priority order and the first match wins.

    Args:
        in_bounding_box: Activity matched a bounding-box rule
        has_geo: Activity carries coordinates
        addressed: Activity matched an addressed rule
        location_match: Activity matched a location rule

    Returns:
        The report category
    """
    if in_bounding_box and addressed:
        return ReportCategory.CONFIRMED
    if not in_bounding_box and not has_geo and addressed and location_match:
        return ReportCategory.ASK_FOR_GEO
    if in_bounding_box and not addressed:
        return ReportCategory.UNCONFIRMED
    if not in_bounding_box and not has_geo and not addressed and location_match:
        return ReportCategory.INVITE
    return ReportCategory.UNMATCHED


def classify(event: StreamEvent) -> ClassificationVerdict:
    """
    Classify a stream event.

    Args:
        event: Event with its matching rule families resolved

    Returns:
        Verdict with the category and the facts that produced it
    """
    in_bounding_box = RuleFamily.BOUNDING_BOX in event.families
    addressed = RuleFamily.ADDRESSED in event.families
    location_match = RuleFamily.LOCATION_MATCH in event.families

    return ClassificationVerdict(
        category=categorize(in_bounding_box, event.has_geo, addressed, location_match),
        has_geo=event.has_geo,
        in_bounding_box=in_bounding_box,
        addressed=addressed,
        location_match=location_match,
    )
