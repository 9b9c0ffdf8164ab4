"""Brazilian national holiday calendar and business-day helpers."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from dateutil.easter import easter as easter_sunday
import yaml  # type: ignore[import-untyped]

RuleType = Literal["fixed", "easter_offset"]


@dataclass(frozen=True)
class HolidayRule:
    """Date matching rule for a holiday."""

    rule_type: RuleType
    month: int | None = None
    day: int | None = None
    offset: int | None = None

    def matches(self, target_date: date) -> bool:
        """Return True if the rule matches the target date."""
        if self.rule_type == "fixed":
            return self.month == target_date.month and self.day == target_date.day

        if self.rule_type == "easter_offset":
            if self.offset is None:
                return False
            easter = easter_sunday(target_date.year)
            return easter + timedelta(days=self.offset) == target_date

        return False


@dataclass(frozen=True)
class HolidayDefinition:
    """Named holiday with its matching rule."""

    name: str
    rule: HolidayRule
    banking: bool = True

    def matches(self, target_date: date) -> bool:
        return self.rule.matches(target_date)


def _parse_rule(idx: int, item: dict[str, Any]) -> HolidayRule:
    rule_value = item.get("date_rule")
    if not isinstance(rule_value, str):
        raise ValueError(f"holidays[{idx}] date_rule must be a string")

    normalized = rule_value.strip().lower()
    if normalized == "fixed":
        month = item.get("month")
        day = item.get("day")
        if not isinstance(month, int) or not isinstance(day, int):
            raise ValueError(f"holidays[{idx}] fixed date_rule requires month and day")
        if not (1 <= month <= 12) or not (1 <= day <= 31):
            raise ValueError(f"holidays[{idx}] fixed date_rule month/day out of range")
        return HolidayRule(rule_type="fixed", month=month, day=day)

    if normalized == "easter_offset":
        offset = item.get("offset")
        if not isinstance(offset, int):
            raise ValueError(f"holidays[{idx}] easter_offset requires an integer offset")
        return HolidayRule(rule_type="easter_offset", offset=offset)

    raise ValueError(f"holidays[{idx}] invalid date_rule {rule_value!r}")


@lru_cache
def load_holiday_calendar() -> list[HolidayDefinition]:
    """Load national holiday definitions from YAML."""
    holidays_path = Path(__file__).resolve().parent / "holidays_br.yaml"
    if not holidays_path.exists():
        return []

    data = yaml.safe_load(holidays_path.read_text(encoding="utf-8"))
    if data is None:
        return []

    items = data.get("holidays") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("holidays_br.yaml must be a list or mapping with 'holidays'")

    results: list[HolidayDefinition] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"holidays[{idx}] must be a mapping")
        name = item.get("name")
        if not name:
            raise ValueError(f"holidays[{idx}] missing name")
        results.append(
            HolidayDefinition(
                name=str(name),
                rule=_parse_rule(idx, item),
                banking=bool(item.get("banking", True)),
            )
        )

    return results


def holiday_name(target_date: date) -> str | None:
    """Return the holiday name for a date, if any."""
    for holiday in load_holiday_calendar():
        if holiday.banking and holiday.matches(target_date):
            return holiday.name
    return None


def is_business_day(target_date: date) -> bool:
    """Weekdays that are not national banking holidays."""
    if target_date.weekday() >= 5:
        return False
    return holiday_name(target_date) is None


def previous_business_day(target_date: date) -> date:
    """Roll back to the closest business day on or before the date."""
    current = target_date
    while not is_business_day(current):
        current -= timedelta(days=1)
    return current


def next_business_day(target_date: date) -> date:
    """Roll forward to the closest business day on or after the date."""
    current = target_date
    while not is_business_day(current):
        current += timedelta(days=1)
    return current


def last_business_day_of_month(year: int, month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return previous_business_day(date(year, month, last_day))
