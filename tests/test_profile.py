from drivekenya_rec import profile
from drivekenya_rec.data_access import SearchRecord, UserAggregates


def _search(category=None, location=None, created_at="2025-01-01T10:00:00"):
    return SearchRecord(category=category, price_range="0-5000", location=location, created_at=created_at)


def test_searches_count_once_and_booked_categories_twice():
    aggregates = UserAggregates(user_id=1, total_bookings=3, preferred_categories=["suv", "luxury"])
    searches = [
        _search("suv", "Nairobi"),
        _search("suv", "Mombasa"),
        _search("economy"),
    ]

    built = profile.build_profile(aggregates, searches)

    assert built.preferences.categories == {"suv": 4, "economy": 1, "luxury": 2}
    assert built.preferences.locations == {"Nairobi": 1, "Mombasa": 1}
    assert built.preferences.price_range == (0, 10000)
    assert built.total_bookings == 3


def test_only_recent_searches_are_mined_and_five_kept():
    searches = [_search("compact", created_at=f"2025-01-{day:02d}T00:00:00") for day in range(25, 0, -1)]

    built = profile.build_profile(UserAggregates(user_id=1), searches)

    assert built.preferences.categories == {"compact": 20}
    assert len(built.searches) == 5
    assert built.searches[0].created_at == "2025-01-25T00:00:00"


def test_no_history_yields_empty_tables_not_none():
    built = profile.build_profile(UserAggregates(user_id=9), None)

    assert built.user_id == 9
    assert built.preferences.categories == {}
    assert built.preferences.locations == {}
    assert built.searches == []
    assert built.avg_spending is None


def test_blank_search_fields_are_ignored():
    built = profile.build_profile(UserAggregates(user_id=1), [_search(None, None), _search("", "")])

    assert built.preferences.categories == {}
    assert built.preferences.locations == {}


def test_aggregates_from_row_splits_group_concat():
    aggregates = UserAggregates.from_row(5, {
        "age": 28,
        "total_bookings": 4,
        "avg_spending": "1500.5",
        "preferred_categories": "suv, luxury,",
        "preferred_location": "",
    })

    assert aggregates.preferred_categories == ["suv", "luxury"]
    assert aggregates.avg_spending == 1500.5
    assert aggregates.preferred_location is None
    assert UserAggregates.from_row(5, None) == UserAggregates(user_id=5)


def test_user_preferred_location_fallbacks():
    built = profile.build_profile(
        UserAggregates(user_id=1),
        [_search(location="Kisumu"), _search(location="Nakuru"), _search(location="Nakuru")],
    )

    assert profile.user_preferred_location(built, "Eldoret") == "Eldoret"
    # searched locations alone are not a location preference
    assert profile.user_preferred_location(built) is None

    built.preferred_location = "Nairobi"
    assert profile.user_preferred_location(built) == "Nairobi"

    empty = profile.build_profile(UserAggregates(user_id=2))
    assert profile.user_preferred_location(empty) is None
