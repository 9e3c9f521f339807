"""
Unit tests for itinerary assembly (services/itinerary_assembler.py).

Scenarios: 5 places over 2 days by car, a fixed appointment on day 2 at 14:00,
accommodation check-in split, time recalculation and itinerary validation.
"""
import pytest
from conftest import HOTEL, build_places, build_trip
from models.schemas import (
    DailyAccommodation,
    DailyItinerary,
    EndpointType,
    FixedSchedule,
    Place,
    RouteSegment,
    ScheduleItem,
    TransitDetails,
    TransitSubPath,
    TransportMode,
    TripLocation,
)
from services.itinerary_assembler import (
    assemble,
    check_in_reserved_minutes,
    classify_segment_mode,
    create_daily_itinerary,
    recalculate_itinerary_times,
    resolve_day_destination,
    resolve_day_origin,
    resolve_distribution_endpoints,
    split_place_ids_by_check_in,
    validate_duration,
    validate_itinerary,
)
from services.planning_context import PlanningContext, accommodation_node_id
from services.routes_matrix import RoutesMatrixService
from utils.diagnostics import CollectingDiagnostics
from utils.time_utils import minutes_to_time, time_to_minutes


def estimated_matrix(context):
    return RoutesMatrixService(provider=object()).build_estimated(context.node_list, TransportMode.CAR)


def assert_chained(itinerary):
    """Each arrival equals the previous departure plus the travel leg between them."""
    schedule = itinerary.schedule
    first_leg = itinerary.transport_from_origin.duration if itinerary.transport_from_origin else 0
    if not schedule[0].is_fixed:
        assert time_to_minutes(schedule[0].arrival_time) == time_to_minutes(itinerary.start_time) + first_leg
    for prev, item in zip(schedule, schedule[1:]):
        if item.is_fixed:
            continue
        expected = time_to_minutes(prev.departure_time) + prev.transport_to_next.duration
        assert time_to_minutes(item.arrival_time) == expected
    for item in schedule:
        assert time_to_minutes(item.departure_time) - time_to_minutes(item.arrival_time) == item.duration


class TestFivePlacesTwoDays:
    @pytest.fixture
    def result(self, trip, places):
        context = PlanningContext.build(trip, places)
        matrix = estimated_matrix(context)
        return assemble([["p1", "p2", "p3"], ["p4", "p5"]], matrix, context), matrix

    def test_one_itinerary_per_day(self, result):
        itineraries, _ = result
        assert [i.day_number for i in itineraries] == [1, 2]
        assert [i.date for i in itineraries] == ["2025-03-01", "2025-03-02"]
        assert [i.place_count for i in itineraries] == [3, 2]

    def test_times_are_chained(self, result):
        itineraries, _ = result
        for itinerary in itineraries:
            assert itinerary.start_time == "10:00"
            assert_chained(itinerary)
            assert [item.order for item in itinerary.schedule] == list(range(1, itinerary.place_count + 1))

    def test_items_inside_day_window(self, result):
        itineraries, _ = result
        for itinerary in itineraries:
            for item in itinerary.schedule:
                assert item.arrival_time >= "10:00"
                assert item.departure_time <= "20:00"

    def test_endpoints(self, result):
        itineraries, matrix = result
        day1, day2 = itineraries

        assert day1.day_origin.type == EndpointType.ORIGIN
        assert day1.day_destination is None
        assert day1.transport_to_destination is None
        assert day1.end_time == day1.schedule[-1].departure_time

        assert day2.day_origin.type == EndpointType.LAST_PLACE
        assert day2.day_origin.node_id == "p3"
        assert day2.transport_from_origin == matrix.get("p3", "p4")
        assert day2.day_destination.type == EndpointType.DESTINATION
        leg = day2.transport_to_destination.duration
        assert day2.end_time == minutes_to_time(time_to_minutes(day2.schedule[-1].departure_time) + leg)

    def test_totals(self, result):
        itineraries, _ = result
        day2 = itineraries[1]
        legs = [day2.transport_from_origin, day2.schedule[0].transport_to_next, day2.transport_to_destination]

        assert day2.schedule[-1].transport_to_next is None
        assert day2.total_distance == sum(leg.distance for leg in legs)
        assert day2.total_duration == sum(leg.duration for leg in legs)
        assert day2.total_stay_duration == 120


class TestFixedAppointment:
    def test_fixed_place_arrives_at_fixed_time(self, trip, places):
        fixed = FixedSchedule(id="s1", place_id="p3", date="2025-03-02", start_time="14:00", end_time="15:00")
        context = PlanningContext.build(trip, places, [fixed])
        matrix = estimated_matrix(context)

        itineraries = assemble([["p1", "p2"], ["p4", "p3", "p5"]], matrix, context)

        p3 = itineraries[1].schedule[1]
        assert p3.place_id == "p3"
        assert p3.is_fixed
        assert p3.arrival_time == "14:00"
        assert p3.departure_time == "15:00"
        p5 = itineraries[1].schedule[2]
        assert p5.arrival_time == minutes_to_time(15 * 60 + p3.transport_to_next.duration)
        assert_chained(itineraries[1])

    def test_fixed_item_past_day_end_is_flagged_not_clamped(self, trip, places):
        fixed = FixedSchedule(id="s1", place_id="p1", date="2025-03-01", start_time="19:30", end_time="21:00")
        context = PlanningContext.build(trip, places, [fixed])
        diagnostics = CollectingDiagnostics()

        itineraries = assemble([["p1"], []], estimated_matrix(context), context, diagnostics)

        item = itineraries[0].schedule[0]
        assert item.departure_time == "21:00"
        assert item.exceeds_day_end
        assert diagnostics.count("itinerary.out_of_hours") == 1

    def test_normal_item_past_day_end_emits_diagnostic(self, trip):
        places = build_places(2, duration=400)
        context = PlanningContext.build(trip, places)
        diagnostics = CollectingDiagnostics()

        itineraries = assemble([["p1", "p2"], []], estimated_matrix(context), context, diagnostics)

        assert not itineraries[0].schedule[1].exceeds_day_end
        assert diagnostics.count("itinerary.out_of_hours") == 1
        assert diagnostics.warnings[0]["place_id"] == "p2"


class TestEmptyDays:
    def test_missing_assignments_still_produce_days(self, trip, places):
        context = PlanningContext.build(trip, places)
        itineraries = assemble([["p1"]], estimated_matrix(context), context)

        assert len(itineraries) == 2
        empty = itineraries[1]
        assert empty.schedule == []
        assert empty.start_time == empty.end_time == "10:00"
        assert empty.total_distance == 0

    def test_unknown_place_is_skipped(self, trip, places):
        context = PlanningContext.build(trip, places)
        matrix = estimated_matrix(context)
        itinerary = create_daily_itinerary(
            ["ghost", "p1"], context.nodes, matrix, "2025-03-01", 1, "10:00", "20:00",
            start_id=context.origin_id,
        )
        assert [item.place_id for item in itinerary.schedule] == ["p1"]


def single_point_trip(check_in_time="15:00"):
    """Everything at one coordinate so that every travel leg is 0 minutes."""
    spot = TripLocation(name="한 곳", lat=37.5, lng=127.0)
    return build_trip(
        origin=spot,
        destination=spot,
        accommodations=[
            DailyAccommodation(
                start_date="2025-03-01",
                end_date="2025-03-02",
                location=TripLocation(name="호텔", address="서울", lat=37.5, lng=127.0),
                check_in_time=check_in_time,
            )
        ],
    )


def single_point_places(durations):
    return [
        Place(id=f"p{i + 1}", name=f"P{i + 1}", lat=37.5, lng=127.0, estimated_duration=d)
        for i, d in enumerate(durations)
    ]


class TestCheckIn:
    @pytest.fixture
    def context(self):
        return PlanningContext.build(single_point_trip(), single_point_places([180, 120, 60]))

    def test_split_and_merge(self, context):
        itineraries = assemble([["p1", "p2", "p3"], []], estimated_matrix(context), context)
        day1 = itineraries[0]
        event = day1.check_in_event

        assert [item.order for item in day1.schedule] == [1, 2, 3]
        assert event.insert_after_order == 2
        assert event.arrival_time == "15:00"
        assert event.start_time == "15:00"
        assert event.end_time == "15:30"
        assert event.duration_min == 30
        assert day1.schedule[2].arrival_time == "15:30"
        assert day1.schedule[2].departure_time == "16:30"
        assert day1.end_time == "16:30"
        assert day1.total_stay_duration == 180 + 120 + 60 + 30
        assert day1.day_destination.type == EndpointType.ACCOMMODATION
        assert event.transport_to_hotel is not None
        assert event.transport_from_hotel is not None

    def test_check_in_at_end_of_day(self, context):
        itineraries = assemble([["p1", "p2"], []], estimated_matrix(context), context)
        day1 = itineraries[0]

        assert day1.check_in_event.insert_after_order == 2
        assert day1.transport_to_destination is None
        assert day1.end_time == "15:30"

    def test_next_day_starts_from_accommodation(self, context):
        itineraries = assemble([["p1"], ["p2"]], estimated_matrix(context), context)
        day2 = itineraries[1]

        assert day2.day_origin.type == EndpointType.ACCOMMODATION
        assert day2.day_origin.node_id == accommodation_node_id(0)
        assert day2.check_in_event is None

    def test_recalculation_keeps_assembled_times(self, context):
        day1 = assemble([["p1", "p2", "p3"], []], estimated_matrix(context), context)[0]
        recalculated = recalculate_itinerary_times(day1)

        assert [(i.arrival_time, i.departure_time) for i in recalculated.schedule] == [
            (i.arrival_time, i.departure_time) for i in day1.schedule
        ]
        assert recalculated.check_in_event == day1.check_in_event
        assert recalculated.end_time == day1.end_time

    def test_reserved_minutes(self, context):
        assert check_in_reserved_minutes(context) == {"2025-03-01": 30}

    def test_split_on_fixed_start(self, context):
        nodes = dict(context.nodes)
        nodes["p2"] = nodes["p2"].model_copy(update={"is_fixed": True, "fixed_start_time": "15:00"})
        matrix = estimated_matrix(context)

        before, after = split_place_ids_by_check_in(
            ["p1", "p2", "p3"], nodes, matrix, context.origin_id, 600, 900
        )
        assert before == ["p1"]
        assert after == ["p2", "p3"]

    def test_check_in_before_day_start_puts_everything_after(self, context):
        before, after = split_place_ids_by_check_in(
            ["p1", "p2"], context.nodes, estimated_matrix(context), context.origin_id, 600, 540
        )
        assert before == []
        assert after == ["p1", "p2"]


class TestEndpointResolution:
    @pytest.fixture
    def context(self, places):
        trip = build_trip(
            end_date="2025-03-03",
            accommodations=[
                DailyAccommodation(start_date="2025-03-01", end_date="2025-03-02", location=HOTEL),
            ],
        )
        return PlanningContext.build(trip, places)

    def test_origin_strategies(self, context):
        assert resolve_day_origin(0, context)[1].type == EndpointType.ORIGIN
        assert resolve_day_origin(1, context)[0] == accommodation_node_id(0)
        assert resolve_day_origin(2, context)[1].type == EndpointType.ORIGIN

    def test_destination_strategies(self, context):
        assert resolve_day_destination(0, context)[0] == accommodation_node_id(0)
        assert resolve_day_destination(1, context) == (None, None)
        assert resolve_day_destination(2, context)[1].type == EndpointType.DESTINATION

    def test_distribution_endpoints(self, context):
        endpoints = resolve_distribution_endpoints(context)

        assert endpoints[0].start_id == context.origin_id
        assert endpoints[0].end_id == accommodation_node_id(0)
        assert endpoints[1].start_id == accommodation_node_id(0)
        assert endpoints[1].end_id is None
        assert endpoints[2].end_id == context.destination_id

    def test_day_without_hotel_starts_after_previous_day(self, context):
        endpoints = resolve_distribution_endpoints(context)

        # the distributor replaces the origin with day 2's last place once it is known
        assert endpoints[2].start_id == context.origin_id
        assert endpoints[2].start_after_previous_day is True
        assert not endpoints[0].start_after_previous_day
        assert not endpoints[1].start_after_previous_day

    def test_check_in_time_only_on_check_in_day(self, context):
        endpoints = resolve_distribution_endpoints(context)

        assert endpoints[0].check_in_time == "15:00"
        assert endpoints[1].check_in_time is None
        assert endpoints[2].check_in_time is None


class TestRecalculateTimes:
    def test_duration_edit_shifts_following_items(self, trip, places):
        context = PlanningContext.build(trip, places)
        day1 = assemble([["p1", "p2", "p3"], []], estimated_matrix(context), context)[0]

        edited = day1.model_copy(deep=True)
        edited.schedule[0].duration = 120
        recalculated = recalculate_itinerary_times(edited)

        shift = 60
        for before, after in zip(day1.schedule[1:], recalculated.schedule[1:]):
            assert time_to_minutes(after.arrival_time) == time_to_minutes(before.arrival_time) + shift
        assert recalculated.total_stay_duration == day1.total_stay_duration + shift

    def test_reorder_renumbers_and_keeps_fixed_arrival(self):
        leg = RouteSegment(mode=TransportMode.CAR, distance=1000, duration=10)
        itinerary = create_itinerary([
            ScheduleItem(order=2, place_id="b", place_name="B", arrival_time="00:00",
                         departure_time="00:00", duration=60, transport_to_next=leg),
            ScheduleItem(order=1, place_id="a", place_name="A", arrival_time="13:00",
                         departure_time="14:00", duration=60, is_fixed=True),
        ])

        recalculated = recalculate_itinerary_times(itinerary)

        assert [i.order for i in recalculated.schedule] == [1, 2]
        assert recalculated.schedule[0].arrival_time == "10:00"
        assert recalculated.schedule[1].arrival_time == "13:00"
        assert recalculated.end_time == "14:00"
        assert recalculated.total_duration == 10

    def test_empty_day(self):
        recalculated = recalculate_itinerary_times(create_itinerary([]), "09:00", "18:00")
        assert recalculated.start_time == recalculated.end_time == "09:00"


def create_itinerary(schedule):
    return DailyItinerary(
        day_number=1,
        date="2025-03-01",
        schedule=schedule,
        start_time="10:00",
        end_time="10:00",
        daily_start_time="10:00" if schedule else None,
        daily_end_time="20:00" if schedule else None,
    )


class TestValidateItinerary:
    def test_valid(self):
        itinerary = create_itinerary([
            ScheduleItem(order=1, place_id="a", place_name="A", arrival_time="10:00",
                         departure_time="11:00", duration=60),
        ])
        assert validate_itinerary([itinerary]) == []

    def test_issue_codes(self):
        itinerary = create_itinerary([
            ScheduleItem(order=1, place_id="a", place_name="A", arrival_time="09:00",
                         departure_time="09:20", duration=20),
            ScheduleItem(order=2, place_id="b", place_name="B", arrival_time="19:30",
                         departure_time="21:15", duration=105),
            ScheduleItem(order=3, place_id="c", place_name="C", arrival_time="12:00",
                         departure_time="12:00", duration=60),
        ])
        empty = create_itinerary([]).model_copy(update={"day_number": 2})

        issues = validate_itinerary([itinerary, empty])
        codes = [(i.code, i.place_id) for i in issues]

        assert ("EMPTY_DAY", None) in codes
        assert ("INVALID_DURATION", "a") in codes
        assert ("OUT_OF_HOURS", "a") in codes
        assert ("INVALID_DURATION", "b") in codes
        assert ("OUT_OF_HOURS", "b") in codes
        assert ("INVALID_TIME", "c") in codes
        assert all(i.day_number == 1 for i in issues if i.code != "EMPTY_DAY")

    @pytest.mark.parametrize("duration,expected", [
        (30, True), (720, True), (90, True), (0, False), (45, False), (750, False),
    ])
    def test_validate_duration(self, duration, expected):
        assert validate_duration(duration) is expected


class TestClassifySegmentMode:
    def test_car_stays_car(self):
        assert classify_segment_mode(RouteSegment(mode=TransportMode.CAR, distance=1, duration=1)) == TransportMode.CAR

    def test_public_without_details_is_walking(self):
        segment = RouteSegment(mode=TransportMode.PUBLIC, distance=300, duration=5)
        assert classify_segment_mode(segment) == TransportMode.WALKING

    def test_single_walk_leg_is_walking(self):
        segment = RouteSegment(
            mode=TransportMode.PUBLIC, distance=300, duration=5,
            transit_details=TransitDetails(sub_paths=[TransitSubPath(traffic_type=3, distance=300, section_time=5)]),
        )
        assert classify_segment_mode(segment) == TransportMode.WALKING

    def test_real_transit(self):
        segment = RouteSegment(
            mode=TransportMode.PUBLIC, distance=3000, duration=15,
            transit_details=TransitDetails(sub_paths=[
                TransitSubPath(traffic_type=3, distance=100, section_time=2),
                TransitSubPath(traffic_type=2, distance=2900, section_time=13),
            ]),
        )
        assert classify_segment_mode(segment) == TransportMode.PUBLIC
