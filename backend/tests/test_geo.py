import pytest

from backend.calpin.services.geo import distance_and_duration, haversine_miles

# Sather Gate and the Downtown Berkeley BART station
SATHER_GATE = (37.8703, -122.2595)
DOWNTOWN_BART = (37.8701, -122.2681)


def test_zero_distance():
    assert haversine_miles(*SATHER_GATE, *SATHER_GATE) == 0


def test_known_distance():
    # One degree of latitude is about 69.1 miles
    assert haversine_miles(0, 0, 1, 0) == pytest.approx(69.09, abs=0.01)


def test_distance_is_symmetric():
    there = haversine_miles(*SATHER_GATE, *DOWNTOWN_BART)
    back = haversine_miles(*DOWNTOWN_BART, *SATHER_GATE)
    assert there == pytest.approx(back)


def test_display_strings():
    distance, duration = distance_and_duration(SATHER_GATE, *DOWNTOWN_BART)
    # ~0.47 miles at 15 minutes per mile
    assert distance == "0.5mi"
    assert duration == "8min"


def test_same_place_is_zero_minutes():
    assert distance_and_duration(SATHER_GATE, *SATHER_GATE) == ("0.0mi", "0min")


def test_placeholder_without_origin():
    assert distance_and_duration(None, *DOWNTOWN_BART) == ("0.5mi", "5min")
    assert distance_and_duration(None, 0, 0, placeholder=("?", "?")) == ("?", "?")
