"""
Normalization schema for government API records.

Raw upstream records are duck-typed dicts. ``normalize_record`` checks the
required identity fields and coerces every indicator to a string so the
exact upstream value survives for display. ``present_record`` adds the
derived numeric view used by charts and comparisons.
"""

from typing import Any, Dict, Mapping

from mgnrega_pulse.core.errors import ValidationError
from mgnrega_pulse.services.staleness import Period
from mgnrega_pulse.utils import calculate_percentage, safe_string, to_number

REQUIRED_FIELDS = ("fin_year", "month", "state_code", "state_name", "district_code", "district_name")

INDICATOR_FIELDS = (
    "Approved_Labour_Budget",
    "Average_Wage_rate_per_day_per_person",
    "Average_days_of_employment_provided_per_Household",
    "Differently_abled_persons_worked",
    "Material_and_skilled_Wages",
    "Number_of_Completed_Works",
    "Number_of_GPs_with_NIL_exp",
    "Number_of_Ongoing_Works",
    "Persondays_of_Central_Liability_so_far",
    "SC_persondays",
    "SC_workers_against_active_workers",
    "ST_persondays",
    "ST_workers_against_active_workers",
    "Total_Adm_Expenditure",
    "Total_Exp",
    "Total_Households_Worked",
    "Total_Individuals_Worked",
    "Total_No_of_Active_Job_Cards",
    "Total_No_of_Active_Workers",
    "Total_No_of_HHs_completed_100_Days_of_Wage_Employment",
    "Total_No_of_JobCards_issued",
    "Total_No_of_Workers",
    "Total_No_of_Works_Takenup",
    "Wages",
    "Women_Persondays",
    "percent_of_Category_B_Works",
    "percent_of_Expenditure_on_Agriculture_Allied_Works",
    "percent_of_NRM_Expenditure",
    "percentage_payments_gererated_within_15_days",
    "Remarks",
)

HOUSEHOLDS_FIELD = "Total_Households_Worked"
EXPENDITURE_FIELD = "Total_Exp"

PROVENANCE_TAGS = ("api", "manual", "etl")


def normalize_record(raw: Any, source: str = "api") -> Dict[str, Any]:
    """Validate and normalize one upstream record.

    Returns a dict with identity fields, the canonical ``period`` and an
    ``indicators`` mapping of strings.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("Invalid API data format")
    if source not in PROVENANCE_TAGS:
        raise ValidationError(f"Unknown provenance tag: {source}")

    missing = [f for f in REQUIRED_FIELDS if raw.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field: {missing[0]}", {"missing": missing})

    return {
        "district_code": str(raw["district_code"]).strip(),
        "district_name": str(raw["district_name"]).strip(),
        "state_code": str(raw["state_code"]).strip(),
        "state_name": str(raw["state_name"]).strip(),
        "period": Period.from_fiscal(raw["fin_year"], raw["month"]),
        "indicators": {name: safe_string(raw.get(name)) for name in INDICATOR_FIELDS},
        "fetched_from": source,
    }


def normalize_upload(record: Mapping[str, Any], source: str = "manual") -> Dict[str, Any]:
    """Normalize a manually uploaded record.

    Uploads may carry either period representation, and indicators either at
    the top level or under ``indicators``. Names are optional here because
    the district may already be registered.
    """
    if not isinstance(record, Mapping):
        raise ValidationError("Record must be an object")
    if not record.get("district_code"):
        raise ValidationError("Missing required fields: district_code, year, month")

    nested = record.get("indicators") or {}
    if not isinstance(nested, Mapping):
        raise ValidationError("indicators must be an object")
    return {
        "district_code": str(record["district_code"]).strip(),
        "district_name": record.get("district_name"),
        "state_code": record.get("state_code"),
        "state_name": record.get("state_name") or record.get("state"),
        "period": Period.from_payload(record),
        "indicators": {
            name: safe_string(nested.get(name, record.get(name))) for name in INDICATOR_FIELDS
        },
        "fetched_from": source,
    }


def calculate_metrics(indicators: Mapping[str, Any]) -> Dict[str, Any]:
    def n(field):
        return to_number(indicators.get(field))

    persondays = n("Persondays_of_Central_Liability_so_far")
    return {
        "totalHouseholdsWorked": n("Total_Households_Worked"),
        "totalIndividualsWorked": n("Total_Individuals_Worked"),
        "totalExpenditure": n("Total_Exp"),
        "averageWageRate": n("Average_Wage_rate_per_day_per_person"),
        "averageDaysEmployment": n("Average_days_of_employment_provided_per_Household"),
        "womenPersondays": n("Women_Persondays"),
        "scPersondays": n("SC_persondays"),
        "stPersondays": n("ST_persondays"),
        "completedWorks": n("Number_of_Completed_Works"),
        "ongoingWorks": n("Number_of_Ongoing_Works"),
        "totalWorks": n("Total_No_of_Works_Takenup"),
        "households100Days": n("Total_No_of_HHs_completed_100_Days_of_Wage_Employment"),
        "womenParticipationRate": calculate_percentage(n("Women_Persondays"), persondays),
        "scParticipationRate": calculate_percentage(n("SC_persondays"), persondays),
        "stParticipationRate": calculate_percentage(n("ST_persondays"), persondays),
        "workCompletionRate": calculate_percentage(n("Number_of_Completed_Works"),
                                                   n("Total_No_of_Works_Takenup")),
    }


def present_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Shape a stored record for API consumers."""
    updated_at = record.get("updated_at")
    return {
        "districtCode": record["district_code"],
        "districtName": record.get("district_name"),
        "stateCode": record.get("state_code"),
        "stateName": record.get("state_name"),
        "finYear": record.get("fin_year"),
        "month": record.get("month"),
        "period": record["period"].label,
        "rawData": dict(record.get("indicators") or {}),
        "metrics": calculate_metrics(record.get("indicators") or {}),
        "lastUpdated": updated_at.isoformat() if updated_at else None,
        "source": record.get("fetched_from"),
    }
