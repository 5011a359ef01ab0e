"""Tests for the farmer profile and location context."""

from __future__ import annotations

import pytest

from cropwise.services.user_context import (
    LocationContext,
    UserContextProvider,
    UserProfile,
    build_user_context,
    split_crops,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("onion; paddy, wheat", ["onion", "paddy", "wheat"]),
        (["tomato", " potato "], ["tomato", "potato"]),
        (None, []),
        (";;", []),
    ],
)
def test_split_crops(value, expected) -> None:
    assert split_crops(value) == expected


def test_profile_from_camel_case_payload() -> None:
    profile = UserProfile.from_dict(
        {"name": "Asha", "language": "Hindi", "farmType": "organic", "farmSize": "2 acres", "mainCrops": "onion,paddy"}
    )

    assert profile.farm_type == "organic"
    assert profile.main_crops_joined == "onion, paddy"
    assert profile.to_payload()["mainCrops"] == ["onion", "paddy"]


def test_location_from_picker_record() -> None:
    location = LocationContext.from_selected_location(
        {"lat": 20.5, "lng": 85.8, "cityName": "Cuttack", "stateName": "Odisha", "areaSize": 4046.86}
    )

    assert location is not None
    assert location.address == "Cuttack, Odisha"
    assert location.area_size_acres == "1.00 acres"
    assert (location.latitude, location.longitude) == (20.5, 85.8)
    assert location.display_name == "Cuttack, Odisha"
    assert LocationContext.from_selected_location(None) is None


def test_display_name_falls_back_to_address() -> None:
    assert LocationContext(address="Village Road 4").display_name == "Village Road 4"


def test_build_user_context_flattens_profile_and_location() -> None:
    profile = UserProfile(name="Asha", main_crops=["onion"])
    location = LocationContext(city_name="Nashik", state_name="Maharashtra")

    context = build_user_context(profile, location, timestamp="2024-06-01T00:00:00+00:00")

    assert context == {
        "name": "Asha",
        "mainCrops": ["onion"],
        "location": "Nashik, Maharashtra",
        "currentTimestamp": "2024-06-01T00:00:00+00:00",
    }
    assert build_user_context(None, None) is None


def test_provider_forwards_location_changes() -> None:
    saved: list[LocationContext] = []
    provider = UserContextProvider(save_location=saved.append)
    location = LocationContext(city_name="Puri", state_name="Odisha")

    provider.update_location(location)

    assert saved == [location]
    assert provider.location is location


def test_provider_survives_failing_save_callback(caplog: pytest.LogCaptureFixture) -> None:
    def broken(_location: LocationContext) -> None:
        raise RuntimeError("storage offline")

    provider = UserContextProvider(save_location=broken)

    with caplog.at_level("WARNING"):
        provider.update_location(LocationContext(address="Farm 7"))

    assert provider.location is not None
    assert "Saving the selected location failed" in caplog.text


def test_update_profile_splits_crops() -> None:
    provider = UserContextProvider(UserProfile(name="Ravi"))

    profile = provider.update_profile(main_crops="wheat; potato", language="Odia")

    assert profile.name == "Ravi"
    assert profile.main_crops == ["wheat", "potato"]
    context = provider.user_context()
    assert context is not None and context["language"] == "Odia"
