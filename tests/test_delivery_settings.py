#!/usr/bin/env python3
"""Tests for delivery settings and automatic send-time generation."""

from __future__ import annotations

from pathlib import Path

import pytest

from vocab_scheduler.database.models import ScheduleMode
from vocab_scheduler.database.operations import load_delivery_settings
from vocab_scheduler.scheduler.delivery_settings import (
    DeliverySettingsResolver,
    DuplicateTimePolicy,
    NotConfiguredError,
    generate_auto_times,
)


def test_auto_times_spread_over_window() -> None:
    assert generate_auto_times(5) == ["09:00", "12:00", "15:00", "18:00", "21:00"]
    assert generate_auto_times(4) == ["09:00", "13:00", "17:00", "21:00"]
    assert generate_auto_times(2) == ["09:00", "21:00"]


def test_single_word_goes_out_at_window_start() -> None:
    assert generate_auto_times(1) == ["09:00"]
    assert generate_auto_times(1, start_hour=7, end_hour=22) == ["07:00"]


def test_auto_times_round_half_up() -> None:
    # Ten words: 12 / 9 hours apart, 10.33 -> 10 and 11.67 -> 12
    assert generate_auto_times(10) == [
        "09:00", "10:00", "12:00", "13:00", "14:00",
        "16:00", "17:00", "18:00", "20:00", "21:00",
    ]
    # A 9.5 slot rounds up to 10, not down to the even hour
    assert generate_auto_times(3, start_hour=9, end_hour=10, policy=DuplicateTimePolicy.ALLOW) == [
        "09:00", "10:00", "10:00",
    ]


def test_colliding_slots_are_staggered() -> None:
    assert generate_auto_times(3, start_hour=9, end_hour=10) == ["09:00", "10:00", "10:05"]
    assert generate_auto_times(5, start_hour=9, end_hour=11, stagger_minutes=10) == [
        "09:00", "10:00", "10:10", "11:00", "11:10",
    ]


def test_stagger_past_midnight_is_rejected() -> None:
    with pytest.raises(ValueError):
        generate_auto_times(3, start_hour=23, end_hour=23, stagger_minutes=30)


def test_invalid_auto_time_arguments() -> None:
    with pytest.raises(ValueError):
        generate_auto_times(0)
    with pytest.raises(ValueError):
        generate_auto_times(3, start_hour=21, end_hour=9)
    with pytest.raises(ValueError):
        generate_auto_times(3, stagger_minutes=0)


def test_save_and_resolve_auto(db_path: Path) -> None:
    resolver = DeliverySettingsResolver(db_path)
    saved = resolver.save("user-1", 3, "auto")

    resolved = resolver.resolve("user-1")
    assert resolved == saved
    assert resolved.mode is ScheduleMode.AUTO
    assert resolver.schedule_times(resolved) == ["09:00", "15:00", "21:00"]


def test_save_custom_times_normalizes_and_truncates(db_path: Path) -> None:
    resolver = DeliverySettingsResolver(db_path)
    saved = resolver.save("user-1", 2, ScheduleMode.CUSTOM, ["7:30", "12:00:00", "19:45"], "Europe/London")

    assert saved.custom_times == ("07:30", "12:00")
    assert resolver.schedule_times(saved) == ["07:30", "12:00"]
    assert load_delivery_settings("user-1", db_path) == saved


def test_custom_times_may_be_fewer_than_words_per_day(db_path: Path) -> None:
    resolver = DeliverySettingsResolver(db_path)
    saved = resolver.save("user-1", 5, "custom", ["08:00", "20:00"])
    assert resolver.schedule_times(saved) == ["08:00", "20:00"]


@pytest.mark.parametrize(
    "words_per_day, mode, custom_times, timezone",
    [
        (0, "auto", (), None),
        (11, "auto", (), None),
        (3, "weekly", (), None),
        (3, "custom", (), None),
        (3, "custom", ("08:00", "08:00"), None),
        (3, "custom", ("25:00",), None),
        (3, "auto", (), "Mars/Olympus_Mons"),
    ],
)
def test_save_rejects_invalid_settings(db_path: Path, words_per_day, mode, custom_times, timezone) -> None:
    with pytest.raises(ValueError):
        DeliverySettingsResolver(db_path).save("user-1", words_per_day, mode, custom_times, timezone)
    assert load_delivery_settings("user-1", db_path) is None


def test_resolve_unconfigured_user(db_path: Path) -> None:
    with pytest.raises(NotConfiguredError):
        DeliverySettingsResolver(db_path).resolve("nobody")


def test_resolver_uses_its_window(db_path: Path) -> None:
    resolver = DeliverySettingsResolver(db_path, start_hour=8, end_hour=20)
    settings = resolver.save("user-1", 3, "auto")
    assert resolver.schedule_times(settings) == ["08:00", "14:00", "20:00"]
