"""Topic pattern matching for colon-segmented topics.

``*`` matches exactly one segment, ``**`` matches zero or more segments from
its position onward. A pattern without wildcards matches only itself.
"""

DELIMITER = ":"
SINGLE = "*"
MULTI = "**"


def split_topic(topic: str) -> list[str]:
    return topic.split(DELIMITER)


def is_wildcard(pattern: str) -> bool:
    """True if any segment of pattern is * or **."""
    return any(seg in (SINGLE, MULTI) for seg in split_topic(pattern))


def topic_matches(pattern: str, topic: str) -> bool:
    """Return True if topic is matched by pattern."""
    if pattern == topic:
        return True
    if pattern == MULTI:
        return True
    return _match_segments(split_topic(pattern), split_topic(topic))


def _match_segments(pattern: list[str], topic: list[str]) -> bool:
    p = 0
    t = 0
    # Backtracking point for the most recent ** (pattern index, topic index)
    star_p = -1
    star_t = -1
    while t < len(topic):
        if p < len(pattern) and pattern[p] == MULTI:
            star_p = p
            star_t = t
            p += 1
            continue
        if p < len(pattern) and (pattern[p] == SINGLE or pattern[p] == topic[t]):
            p += 1
            t += 1
            continue
        if star_p >= 0:
            # Let the last ** absorb one more topic segment and retry
            star_t += 1
            t = star_t
            p = star_p + 1
            continue
        return False
    while p < len(pattern) and pattern[p] == MULTI:
        p += 1
    return p == len(pattern)


def specificity(pattern: str) -> tuple[int, int, int, int]:
    """Sort key for choosing between overlapping patterns; larger is more specific.

    Order: exact (no wildcards) first, then more literal segments, then fewer
    ``**`` segments, then more segments overall.
    """
    segments = split_topic(pattern)
    literal = sum(1 for seg in segments if seg not in (SINGLE, MULTI))
    multi = sum(1 for seg in segments if seg == MULTI)
    exact = 0 if is_wildcard(pattern) else 1
    return (exact, literal, -multi, len(segments))
