from datetime import date, time, timedelta
from types import SimpleNamespace

import pytest

from krib.errors import PolicyViolation
from krib.services.schedule_blocks import (
    WorkWeek,
    build_crew_requirements,
    calculate_days_needed,
    create_multi_day_schedule,
    format_segment_display,
    generate_schedule_blocks,
    get_multi_day_label,
    get_segment_for_date,
    is_multi_day_job,
    validate_crew_size,
)

FRIDAY = date(2025, 6, 6)
SATURDAY = date(2025, 6, 7)
MONDAY = date(2025, 6, 9)


class TestGenerateScheduleBlocks:
    @pytest.mark.parametrize("duration", [0, -30, None])
    def test_no_duration_means_no_blocks(self, duration):
        assert generate_schedule_blocks(MONDAY, duration, WorkWeek()) == []

    def test_one_full_day(self):
        assert generate_schedule_blocks(MONDAY, 480, WorkWeek()) == [
            {"date": "2025-06-09", "dayNumber": 1, "startTime": "08:00", "endTime": "16:00", "durationMinutes": 480},
        ]

    def test_friday_start_skips_the_weekend(self):
        blocks = generate_schedule_blocks(FRIDAY, 1000, WorkWeek())
        assert [(b["date"], b["startTime"], b["endTime"], b["durationMinutes"]) for b in blocks] == [
            ("2025-06-06", "08:00", "16:00", 480),
            ("2025-06-09", "08:00", "16:00", 480),
            ("2025-06-10", "08:00", "08:40", 40),
        ]
        assert [b["dayNumber"] for b in blocks] == [1, 2, 3]

    def test_weekend_start_rolls_forward(self):
        blocks = generate_schedule_blocks(SATURDAY, 480, WorkWeek())
        assert blocks[0]["date"] == "2025-06-09"

    @pytest.mark.parametrize("duration", [1, 479, 481, 960, 2400, 5000])
    def test_blocks_cover_duration_on_weekdays_only(self, duration):
        blocks = generate_schedule_blocks(FRIDAY, duration, WorkWeek())
        assert sum(b["durationMinutes"] for b in blocks) == duration
        assert all(date.fromisoformat(b["date"]).weekday() < 5 for b in blocks)
        assert all(b["durationMinutes"] <= 480 for b in blocks)

    def test_string_start_date(self):
        assert generate_schedule_blocks("2025-06-09", 60, WorkWeek())[0]["endTime"] == "09:00"

    def test_custom_work_week(self):
        week = WorkWeek(days=frozenset({0, 1, 2, 3, 4, 5}), start_time=time(7, 0), daily_capacity_min=600)
        blocks = generate_schedule_blocks(FRIDAY, 1200, week)
        assert [(b["date"], b["startTime"], b["endTime"]) for b in blocks] == [
            ("2025-06-06", "07:00", "17:00"),
            ("2025-06-07", "07:00", "17:00"),
        ]

    def test_first_day_start_moves_day_one_only(self):
        blocks = generate_schedule_blocks(FRIDAY, 1000, WorkWeek(), first_day_start=time(13, 30))
        assert [(b["date"], b["startTime"], b["endTime"]) for b in blocks] == [
            ("2025-06-06", "13:30", "21:30"),
            ("2025-06-09", "08:00", "16:00"),
            ("2025-06-10", "08:00", "08:40"),
        ]

    def test_late_first_day_start_stops_at_midnight(self):
        blocks = generate_schedule_blocks(MONDAY, 600, WorkWeek(), first_day_start=time(20, 0))
        assert [(b["startTime"], b["endTime"], b["durationMinutes"]) for b in blocks] == [
            ("20:00", "24:00", 240),
            ("08:00", "14:00", 360),
        ]

    def test_invalid_start_is_rejected(self):
        with pytest.raises(PolicyViolation):
            generate_schedule_blocks("someday", 60, WorkWeek())


class TestWorkWeek:
    def test_defaults_from_settings(self):
        week = WorkWeek.from_settings()
        assert week.days == frozenset({0, 1, 2, 3, 4})
        assert week.start_time == time(8, 0)
        assert week.daily_capacity_min == 480

    def test_contractor_override(self):
        contractor = SimpleNamespace(scheduling={"workWeek": {"days": [1, 2, 3, 4, 5], "startTime": "09:30", "dailyCapacityMinutes": 420}})
        week = WorkWeek.for_contractor(contractor)
        assert week.days == frozenset({1, 2, 3, 4, 5})
        assert week.start_time == time(9, 30)
        assert week.daily_capacity_min == 420

    def test_partial_override_keeps_defaults(self):
        contractor = SimpleNamespace(scheduling={"workWeek": {"dailyCapacityMinutes": 360}})
        week = WorkWeek.for_contractor(contractor)
        assert week.days == frozenset({0, 1, 2, 3, 4})
        assert week.daily_capacity_min == 360

    def test_no_override(self):
        assert WorkWeek.for_contractor(SimpleNamespace(scheduling=None)) == WorkWeek.from_settings()

    @pytest.mark.parametrize("kwargs", [
        {"days": frozenset()},
        {"days": frozenset({7})},
        {"daily_capacity_min": 0},
        {"start_time": time(20, 0), "daily_capacity_min": 480},
    ])
    def test_invalid_work_weeks(self, kwargs):
        with pytest.raises(PolicyViolation):
            WorkWeek(**kwargs)

    def test_next_working_day(self):
        week = WorkWeek()
        assert week.next_working_day(SATURDAY) == MONDAY
        assert week.next_working_day(MONDAY) == MONDAY


class TestMultiDayHelpers:
    @pytest.mark.parametrize("duration,expected", [(480, False), (481, True), (None, False), (0, False)])
    def test_is_multi_day(self, duration, expected):
        assert is_multi_day_job(duration) is expected

    @pytest.mark.parametrize("duration,expected", [(0, 1), (60, 1), (480, 1), (481, 2), (1000, 3)])
    def test_days_needed(self, duration, expected):
        assert calculate_days_needed(duration, 480) == expected

    def test_schedule_summary(self):
        schedule = create_multi_day_schedule(FRIDAY, 1000, WorkWeek())
        assert schedule["isMultiDay"] is True
        assert schedule["totalDays"] == 3
        assert schedule["startDate"] == "2025-06-06"
        assert schedule["endDate"] == "2025-06-10"
        assert schedule["totalDurationMinutes"] == 1000

    def test_segment_lookup_and_labels(self):
        blocks = generate_schedule_blocks(FRIDAY, 1000, WorkWeek())
        segment = get_segment_for_date(blocks, "2025-06-09")
        assert segment["dayNumber"] == 2
        assert get_segment_for_date(blocks, SATURDAY) is None
        assert format_segment_display(blocks[0], 3) == "Day 1 of 3: 8:00 AM - 4:00 PM"
        assert format_segment_display(blocks[2], 3) == "Day 3 of 3: 8:00 AM - 8:40 AM"
        assert get_multi_day_label(blocks, MONDAY) == "Day 2/3"
        assert get_multi_day_label(blocks, MONDAY + timedelta(days=7)) == ""

    def test_single_block_has_no_label(self):
        blocks = generate_schedule_blocks(MONDAY, 60, WorkWeek())
        assert get_multi_day_label(blocks, MONDAY) == ""
        assert format_segment_display(None, 1) == ""


class TestCrewRequirements:
    def test_specified_crew(self):
        req = build_crew_requirements(3, 600)
        assert req == {
            "required": 3,
            "minimum": 2,
            "maximum": 5,
            "source": "specified",
            "requiresMultipleTechs": True,
            "totalLaborHours": 30.0,
            "notes": ["Direct job: 3 techs specified"],
        }

    def test_default_crew(self):
        req = build_crew_requirements(None, 120)
        assert req["required"] == 1
        assert req["minimum"] == 1
        assert req["maximum"] == 3
        assert req["source"] == "default"
        assert req["notes"] == []

    def test_crew_size_does_not_shorten_schedule(self):
        # Labor hours scale with crew; calendar days come from duration alone
        assert build_crew_requirements(4, 1000)["totalLaborHours"] == pytest.approx(1000 / 60 * 4)
        assert len(generate_schedule_blocks(FRIDAY, 1000, WorkWeek())) == 3

    def test_validate_crew_size(self):
        req = build_crew_requirements(3, 600)
        validate_crew_size(["a", "b"], req)
        validate_crew_size(["a", "b", "c", "d", "e"], req)
        with pytest.raises(PolicyViolation):
            validate_crew_size(["a"], req)
        with pytest.raises(PolicyViolation):
            validate_crew_size(["a", "b", "c", "d", "e", "f"], req)

    def test_no_requirements_accepts_anything(self):
        validate_crew_size([], None)
