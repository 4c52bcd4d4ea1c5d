import pytest

from extensions.logging_manager import LoggingManager


class StepClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now


def test_display_buffer_keeps_most_recent_entries():
    lm = LoggingManager(300)
    for i in range(350):
        lm.log_message(f"m{i}")

    shown = lm.get_display_logs()
    assert len(shown) == 300
    assert shown[0].message == "m50"
    assert shown[-1].message == "m349"
    assert len(lm.get_all_logs()) == 350


def test_shrinking_display_limit_keeps_newest():
    lm = LoggingManager(10)
    for i in range(10):
        lm.log_message(f"m{i}")
    lm.set_max_display_logs(3)
    assert [e.message for e in lm.get_display_logs()] == ["m7", "m8", "m9"]
    assert lm.max_display_logs == 3
    with pytest.raises(ValueError):
        lm.set_max_display_logs(0)


def test_town_lifecycle_and_summary():
    clock = StepClock()
    lm = LoggingManager(clock=clock)

    lm.log_town_start("Paarl")
    lm.log_industry_progress("Paarl", "Plumbers", "scraping")
    clock.now += 2.0
    lm.log_town_complete("Paarl", 3)

    lm.log_town_start("Worcester")
    clock.now += 1.0
    lm.log_error("Worcester", "Plumbers", "timeout")

    paarl = lm.get_town_log("Paarl")
    assert paarl.status == "completed"
    assert paarl.lead_count == 3
    assert paarl.duration_ms == pytest.approx(2000)
    assert paarl.industry_progress == {"Plumbers": "scraping"}

    s = lm.get_summary()
    assert s["total_towns"] == 2
    assert s["completed_towns"] == 1
    assert s["total_leads"] == 3
    assert s["total_errors"] == 1
    assert s["average_duration_ms"] == pytest.approx(2000)
    assert s["total_duration_ms"] == pytest.approx(3000)
    assert lm.get_town_log("Worcester").status == "error"


def test_error_after_completion_keeps_completed_status():
    lm = LoggingManager()
    lm.log_town_start("Paarl")
    lm.log_town_complete("Paarl", 2)
    lm.log_error("Paarl", "Plumbers", "late failure")

    tl = lm.get_town_log("Paarl")
    assert tl.status == "completed"
    assert tl.errors == ["Plumbers: late failure"]


def test_events_for_unknown_town_create_it():
    lm = LoggingManager()
    lm.log_industry_progress("Ceres", "Bakeries", "scraping")
    tl = lm.get_town_log("Ceres")
    assert tl is not None
    assert tl.status == "in_progress"


def test_summary_table_lists_each_town():
    lm = LoggingManager()
    lm.log_town_start("Paarl")
    lm.log_town_complete("Paarl", 3)
    lm.log_town_start("Stellenbosch")
    lm.log_error("Stellenbosch", "", "boom")

    lines = lm.get_summary_table()
    assert lines[0] == "=== SCRAPING SUMMARY ==="
    body = "\n".join(lines)
    assert "Paarl" in body and "Completed" in body
    assert "Stellenbosch" in body and "Error" in body
    assert "Total Businesses: 3" in body


def test_on_log_hook_sees_every_entry_and_errors_are_contained():
    seen = []
    lm = LoggingManager(on_log=seen.append)
    lm.log_message("hello", "success")
    assert seen[0].message == "hello"
    assert seen[0].level == "success"

    def broken(_entry):
        raise RuntimeError("sink down")

    lm.on_log = broken
    lm.log_message("still logged")
    assert lm.get_all_logs()[-1].message == "still logged"


def test_clear_resets_everything():
    lm = LoggingManager()
    lm.log_town_start("Paarl")
    lm.clear()
    assert lm.get_all_logs() == []
    assert lm.get_display_logs() == []
    assert lm.get_town_logs() == {}


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        LoggingManager(0)
