"""Farmer profile and location context attached to chat and suggestion requests."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping

from ..chat.message_model import utc_timestamp

LOGGER = logging.getLogger(__name__)

SQ_METERS_TO_ACRES = 0.000247105
_CROP_SEPARATORS = re.compile(r"[;,]")


def split_crops(value: Any) -> list[str]:
    """Accept a list or a ``"onion; paddy, wheat"`` string."""

    if isinstance(value, str):
        items = _CROP_SEPARATORS.split(value)
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        return []
    return [item.strip() for item in items if item and item.strip()]


@dataclass(slots=True)
class UserProfile:
    name: str = ""
    language: str = ""
    experience: str = ""
    farm_type: str = ""
    farm_size: str = ""
    main_crops: list[str] = field(default_factory=list)

    @property
    def main_crops_joined(self) -> str:
        return ", ".join(self.main_crops)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "UserProfile":
        data = payload or {}
        return cls(
            name=str(data.get("name") or ""),
            language=str(data.get("language") or ""),
            experience=str(data.get("experience") or ""),
            farm_type=str(data.get("farmType") or data.get("farm_type") or ""),
            farm_size=str(data.get("farmSize") or data.get("farm_size") or ""),
            main_crops=split_crops(data.get("mainCrops") or data.get("main_crops")),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "language": self.language,
            "experience": self.experience,
            "farmType": self.farm_type,
            "farmSize": self.farm_size,
            "mainCrops": list(self.main_crops),
        }
        return {key: value for key, value in payload.items() if value}


@dataclass(slots=True)
class LocationContext:
    address: str = ""
    city_name: str = ""
    state_name: str = ""
    area_size_acres: str = ""
    latitude: float | None = None
    longitude: float | None = None
    area_size_sq_meters: float | None = None

    @property
    def display_name(self) -> str:
        """``"City, State"`` when both are known, else the address."""

        if self.city_name and self.state_name:
            return f"{self.city_name}, {self.state_name}"
        return self.address

    @classmethod
    def from_selected_location(cls, payload: Mapping[str, Any] | None) -> "LocationContext | None":
        """Build the context from a location picker record (``lat``/``lng``/``areaSize``)."""

        if not payload:
            return None
        city = str(payload.get("cityName") or "")
        state = str(payload.get("stateName") or "")
        address = str(payload.get("address") or "") or ", ".join(part for part in (city, state) if part)
        area = payload.get("areaSize")
        area_sq_meters = float(area) if isinstance(area, (int, float)) and not isinstance(area, bool) else None
        acres = str(payload.get("areaSizeAcres") or "")
        if not acres and area_sq_meters is not None:
            acres = f"{area_sq_meters * SQ_METERS_TO_ACRES:.2f} acres"
        return cls(
            address=address,
            city_name=city,
            state_name=state,
            area_size_acres=acres,
            latitude=_as_float(payload.get("lat", payload.get("latitude"))),
            longitude=_as_float(payload.get("lng", payload.get("longitude"))),
            area_size_sq_meters=area_sq_meters,
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "address": self.address,
            "cityName": self.city_name,
            "stateName": self.state_name,
            "areaSizeAcres": self.area_size_acres,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "areaSizeSqMeters": self.area_size_sq_meters,
        }
        return {key: value for key, value in payload.items() if value not in (None, "")}


def build_user_context(
    profile: UserProfile | None,
    location: LocationContext | None,
    *,
    timestamp: str | None = None,
) -> Dict[str, Any] | None:
    """Flatten profile and location into the chat request's ``userContext``."""

    if profile is None and location is None:
        return None
    context: Dict[str, Any] = dict(profile.to_payload()) if profile is not None else {}
    if location is not None and location.display_name:
        context["location"] = location.display_name
    context["currentTimestamp"] = timestamp or utc_timestamp()
    return context


SaveLocationCallback = Callable[[LocationContext], None]


class UserContextProvider:
    """Holds the current profile and location for request builders.

    Location changes are forwarded to the injected ``save_location``
    callback so collaborators can persist them.
    """

    def __init__(
        self,
        profile: UserProfile | None = None,
        location: LocationContext | None = None,
        *,
        save_location: SaveLocationCallback | None = None,
    ) -> None:
        self._profile = profile
        self._location = location
        self._save_location = save_location

    @property
    def profile(self) -> UserProfile | None:
        return self._profile

    @property
    def location(self) -> LocationContext | None:
        return self._location

    def update_profile(self, **changes: Any) -> UserProfile:
        if "main_crops" in changes:
            changes["main_crops"] = split_crops(changes["main_crops"])
        self._profile = replace(self._profile or UserProfile(), **changes)
        return self._profile

    def update_location(self, location: LocationContext) -> None:
        self._location = location
        if self._save_location is None:
            return
        try:
            self._save_location(location)
        except Exception:
            LOGGER.warning("Saving the selected location failed", exc_info=True)

    def user_context(self) -> Dict[str, Any] | None:
        return build_user_context(self._profile, self._location)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


__all__ = [
    "SQ_METERS_TO_ACRES",
    "UserProfile",
    "LocationContext",
    "SaveLocationCallback",
    "UserContextProvider",
    "build_user_context",
    "split_crops",
]
