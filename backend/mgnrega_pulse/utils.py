def to_number(v):
    """Government API numbers arrive as strings, sometimes with commas or 'NA'."""
    if v is None:
        return 0.0
    if isinstance(v, str):
        v = v.replace(",", "").strip()
        if v in ("", "NA"):
            return 0.0
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0


def safe_string(v):
    if v is None:
        return "0"
    return str(v)


def calculate_percentage(numerator, denominator):
    if denominator == 0:
        return 0
    return round(numerator / denominator * 100, 2)


def average(values):
    values = list(values)
    if not values:
        return 0.0
    return sum(values) / len(values)
