"""Cache key construction.

Every key is ``<kind>:<part>:<part>...``. Parts are percent-escaped so the
separator never appears inside a part and two different identities can
never produce the same key.
"""

SEPARATOR = ":"


def _escape(part) -> str:
    return str(part).replace("%", "%25").replace(SEPARATOR, "%3A")


def build_key(kind: str, *parts) -> str:
    return SEPARATOR.join([kind, *(_escape(p) for p in parts)])


def district_data(district_code, period) -> str:
    return build_key("district", district_code, period.label)


def district_history(district_code, start, end) -> str:
    return build_key("history", district_code, start.label, end.label)


def district_comparison(district_code) -> str:
    return build_key("comparison", district_code)


def state_districts(state_code) -> str:
    return build_key("state", state_code, "districts")


def location(ip) -> str:
    return build_key("location", ip)


def popular_districts() -> str:
    return "popular:districts"


def states_list() -> str:
    return "states:list"


def entity_pattern(district_code) -> str:
    """Glob matching every key that mentions a district."""
    return f"*{_escape(district_code)}*"


def comparison_pattern() -> str:
    return build_key("comparison", "*")
