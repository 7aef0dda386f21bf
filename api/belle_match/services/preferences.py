from __future__ import annotations

from typing import Any

from ..domain import (
    Preferences,
    SET_FIELDS,
    genders_from_label,
    normalize_genders,
    normalize_intent,
    normalize_tokens,
)

# Accepted payload keys per preference field, first match wins.
_SET_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "interests": ("preferredInterests", "interests"),
    "languages": ("preferredLanguages", "languages"),
    "religions": ("preferredReligions", "religions"),
    "education_levels": ("preferredEducationLevels", "educationLevels", "education_levels"),
    "political_views": ("preferredPoliticalViews", "politicalViews", "political_views"),
    "family_plans": ("preferredFamilyPlans", "familyPlans", "family_plans"),
    "relationship_intents": ("preferredIntents", "preferredRelationshipIntents", "relationship_intents"),
    "exercise_habits": ("preferredExerciseHabits", "exerciseHabits", "exercise_habits"),
    "smoking_habits": ("preferredSmokingHabits", "smokingHabits", "smoking_habits"),
    "drinking_habits": ("preferredDrinkingHabits", "drinkingHabits", "drinking_habits"),
    "ethnicities": ("preferredEthnicities", "ethnicities"),
}


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _age(value: Any) -> int | None:
    try:
        age = int(value)
    except (TypeError, ValueError):
        return None
    return age if 0 <= age <= 150 else None


def _distance(value: Any) -> float | None:
    try:
        km = float(value)
    except (TypeError, ValueError):
        return None
    return km if km >= 0 else None


def parse_preferences(data: dict[str, Any] | None) -> Preferences:
    """Normalize a raw preference payload (camelCase or snake_case).

    Unknown tokens and malformed numbers are dropped, never raised. An age
    range with min > max is treated as unset.
    """
    data = data or {}
    kwargs: dict[str, Any] = {}
    for name in SET_FIELDS:
        kwargs[name] = normalize_tokens(_first(data, *_SET_FIELD_KEYS[name]))
    kwargs["relationship_intents"] = frozenset(
        i.value for i in (normalize_intent(v) for v in kwargs["relationship_intents"]) if i is not None
    )

    genders = normalize_genders(_first(data, "preferredGenders", "genders"))
    if not genders and data.get("genderPreference") is not None:
        genders = genders_from_label(data.get("genderPreference"))

    age_range = data.get("ageRange") if isinstance(data.get("ageRange"), dict) else {}
    min_age = _age(_first(age_range, "min")) if age_range else None
    max_age = _age(_first(age_range, "max")) if age_range else None
    if min_age is None and max_age is None:
        min_age = _age(_first(data, "preferredMinAge", "min_age"))
        max_age = _age(_first(data, "preferredMaxAge", "max_age"))
    if min_age is not None and max_age is not None and min_age > max_age:
        min_age = max_age = None

    return Preferences(
        genders=genders,
        min_age=min_age,
        max_age=max_age,
        max_distance_km=_distance(_first(data, "maxDistanceKm", "maxDistance", "max_distance_km")),
        max_radius_km=_distance(_first(data, "maxRadius", "max_radius_km")),
        **kwargs,
    )


def merge(base: Preferences | None, override: Preferences | None = None) -> Preferences:
    """Merge stored base preferences with a per-request filter.

    A filter field wins only when it is set (collections non-empty, age range
    with both endpoints). Base age range is used only when both endpoints are
    stored. Distance falls back filter, base maxDistance, base maxRadius.
    """
    base = base or Preferences()
    override = override or Preferences()

    sets: dict[str, frozenset] = {}
    for name in SET_FIELDS:
        sets[name] = override.preferred(name) or base.preferred(name)

    if override.has_age_range:
        min_age, max_age = override.min_age, override.max_age
    elif base.has_age_range:
        min_age, max_age = base.min_age, base.max_age
    else:
        min_age = max_age = None

    filter_distance = override.max_distance_km if override.max_distance_km is not None else override.max_radius_km
    if filter_distance is not None:
        distance = filter_distance
    elif base.max_distance_km is not None:
        distance = base.max_distance_km
    else:
        distance = base.max_radius_km

    return Preferences(
        genders=override.genders or base.genders,
        min_age=min_age,
        max_age=max_age,
        max_distance_km=distance,
        max_radius_km=None,
        **sets,
    )
