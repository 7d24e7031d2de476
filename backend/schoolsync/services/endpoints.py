"""Endpoint step registry: default order per source and override resolution."""

from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from schoolsync.constants.sync_status import SchoolSource
from schoolsync.exceptions import ScopeError

# Dependency order: parent records before rows that reference them
MB_ENDPOINTS_ALL: Tuple[str, ...] = (
    "school", "academic-years", "grades", "subjects", "teachers", "students", "classes", "year-groups",
)
NEX_ENDPOINTS_ALL: Tuple[str, ...] = (
    "schools", "students", "staff", "classes", "allocation-master", "student-allocations",
    "staff-allocations", "daily-plans", "daily-attendance", "student-assessments",
)

DEFAULT_ENDPOINTS: Dict[str, Tuple[str, ...]] = {
    SchoolSource.MANAGEBAC.value: MB_ENDPOINTS_ALL,
    SchoolSource.NEXQUARE.value: NEX_ENDPOINTS_ALL,
}


def resolve_endpoints(source: str, overrides: Optional[Sequence[str]] = None) -> List[str]:
    """Endpoint steps to run for ``source``.

    No overrides means every endpoint. Overrides pick a subset, which still
    runs in the default order so dependencies hold.
    """
    defaults = DEFAULT_ENDPOINTS.get(source)
    if defaults is None:
        raise ScopeError(f"Unknown source '{source}'")
    if not overrides:
        return list(defaults)
    unknown = sorted(set(overrides) - set(defaults))
    if unknown:
        raise ScopeError(f"Unknown {source} endpoints: {', '.join(unknown)}")
    wanted = set(overrides)
    return [endpoint for endpoint in defaults if endpoint in wanted]


def default_academic_year() -> str:
    return str(date.today().year)


def academic_year_date_range(academic_year: Optional[str]) -> Tuple[str, str]:
    """'2024' or '2024-2025' -> ('2024-01-01', '2024-12-31')."""
    year_str = (academic_year or "")[:4]
    year = int(year_str) if year_str.isdigit() else date.today().year
    return f"{year}-01-01", f"{year}-12-31"
