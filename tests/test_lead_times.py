from datetime import timedelta

import pytest

from conftest import T0, stages_of
from fabtrack import SimpleStageActual, StageKind, StageStatus, lead_days
from fabtrack.domain import QuoteLineItem, Setting
from fabtrack.lead_times import (
    EPOCH,
    FORMULA_VERSION,
    LanePool,
    quoted_hours_for_stage,
)
from fabtrack.settings import (
    LEAD_TIME_SETTING_KEYS,
    LeadTimeConfig,
    load_lead_time_config,
)
from fabtrack.store import SettingsStore

DEFAULTS = LeadTimeConfig()


@pytest.mark.parametrize(
    "hours, expected",
    [
        (0, 5),
        (35, 5),
        (35.99, 5),
        (36, 7),
        (48, 7),
        (49, 9),
        (1000, 52),
    ],
)
def test_lead_days_with_default_settings(hours, expected):
    assert lead_days(hours, StageKind.PRINT, DEFAULTS) == expected


def test_lead_days_never_decreases_with_hours():
    previous = 0
    for tenth in range(0, 5000):
        days = lead_days(tenth / 10, StageKind.DESIGN, DEFAULTS)
        assert days >= previous
        assert days >= 1
        previous = days


def test_negative_or_garbage_hours_count_as_zero():
    assert lead_days(-12, StageKind.SCANNING, DEFAULTS) == 5
    assert lead_days(float("nan"), StageKind.SCANNING, DEFAULTS) == 5


def test_multiplier_scales_lead_days_per_kind():
    config = LeadTimeConfig.from_values({"lead_time_multiplier_design": 1.5})
    assert lead_days(10, StageKind.DESIGN, config) == 8
    assert lead_days(10, StageKind.PRINT, config) == 5


def test_settings_are_clamped_to_their_minimums():
    config = LeadTimeConfig.from_values(
        {
            "lead_time_hours_threshold": -5,
            "lead_time_bucket_step_days": -1,
            "lead_time_multiplier_scanning": 0,
            "lead_time_concurrency_contract_print": "abc",
            "lead_time_concurrency_design": 2.7,
        }
    )
    assert config.hours_threshold == 1
    assert config.bucket_step_days == 0
    assert config.multiplier_for(StageKind.SCANNING) == pytest.approx(0.1)
    assert config.lane_count_for(StageKind.PRINT) == 1
    assert config.lane_count_for(StageKind.DESIGN) == 2
    assert lead_days(0, StageKind.SCANNING, config) == 1


def test_quoted_hours_per_kind():
    printing = QuoteLineItem(
        id="i1",
        quote_id="Q",
        service_type=StageKind.PRINT,
        labor_hours=99,
        print_time_hours=40,
        support_removal_hours=2,
        setup_hours=1,
        admin_hours=0.5,
    )
    design = QuoteLineItem(
        id="i2", quote_id="Q", service_type=StageKind.DESIGN, labor_hours=30, print_time_hours=8
    )
    items = {StageKind.PRINT: printing, StageKind.DESIGN: design}
    assert quoted_hours_for_stage(StageKind.PRINT, items) == pytest.approx(43.5)
    assert quoted_hours_for_stage(StageKind.DESIGN, items) == 30
    assert quoted_hours_for_stage(StageKind.SCANNING, items) == 0


def test_lane_pool_resize_and_tie_break():
    pool = LanePool(kind=StageKind.PRINT)
    pool.resize(3)
    assert pool.free_at == [EPOCH, EPOCH, EPOCH]
    assert pool.earliest() == (0, EPOCH)

    pool.occupy(0, T0)
    assert pool.earliest() == (1, EPOCH)
    pool.occupy(1, T0)
    pool.occupy(2, T0)
    assert pool.earliest() == (0, T0)

    pool.resize(1)
    assert pool.free_at == [T0]
    pool.resize(0)
    assert len(pool.free_at) == 1


def _print_orders(service, count):
    return [
        service.create_work_order(
            f"Customer {index}",
            "Printed parts",
            [StageKind.PRINT],
            created_at=T0 + timedelta(seconds=index),
        )
        for index in range(count)
    ]


def test_third_order_waits_for_the_first_free_lane(service):
    service.update_setting("lead_time_concurrency_contract_print", 2, recompute=False)
    orders = _print_orders(service, 3)

    summary = service.recompute_lead_times()

    lanes = [entry.lane_index for entry in summary.scheduled]
    starts = [entry.payload.starts_at for entry in summary.scheduled]
    assert [entry.work_order_id for entry in summary.scheduled] == [o.id for o in orders]
    assert lanes == [0, 1, 0]
    assert starts[0] == T0
    assert starts[1] == T0 + timedelta(seconds=1)
    assert starts[2] == T0 + timedelta(days=7)
    assert summary.scheduled[2].payload.due_at == T0 + timedelta(days=12)
    assert all(entry.payload.queue_concurrency == 2 for entry in summary.scheduled)


def test_orders_created_together_start_together(service):
    service.update_setting("lead_time_concurrency_contract_print", 2, recompute=False)
    orders = [
        service.create_work_order(
            f"Customer {index}", "Printed parts", [StageKind.PRINT], created_at=T0
        )
        for index in range(3)
    ]

    summary = service.recompute_lead_times()
    again = service.recompute_lead_times()

    scheduled_ids = [entry.work_order_id for entry in summary.scheduled]
    assert scheduled_ids == sorted(order.id for order in orders)
    assert [entry.work_order_id for entry in again.scheduled] == scheduled_ids
    assert [entry.lane_index for entry in summary.scheduled] == [0, 1, 0]
    starts = [entry.payload.starts_at for entry in summary.scheduled]
    assert starts[0] == starts[1] == T0
    assert starts[2] == T0 + timedelta(days=5 + 2)
    assert [entry.payload for entry in again.scheduled] == [
        entry.payload for entry in summary.scheduled
    ]


def test_older_orders_are_served_first(service):
    service.add_quote_line_item("Q-big", StageKind.PRINT, print_time_hours=50)
    later = service.create_work_order(
        "Later", "Small print", [StageKind.PRINT], created_at=T0 + timedelta(hours=1)
    )
    earlier = service.create_work_order(
        "Earlier", "Big print", [StageKind.PRINT], quote_id="Q-big", created_at=T0
    )

    summary = service.recompute_lead_times()

    first, second = summary.scheduled
    assert first.work_order_id == earlier.id
    assert first.payload.lead_days == 9
    assert first.payload.quoted_hours == 50
    assert second.work_order_id == later.id
    assert second.payload.starts_at == T0 + timedelta(days=11)


def test_recompute_stores_payloads_and_deadline(service, full_order):
    service.add_quote_line_item("Q-7", StageKind.DESIGN, labor_hours=60)
    service.link_quote(full_order.id, "Q-7")

    summary = service.recompute_lead_times()

    scan, design, print_stage = stages_of(service, full_order)
    payload = service.store.get_stage_actual(design.id).lead_time
    assert payload == summary.by_stage[design.id]
    assert payload.formula_version == FORMULA_VERSION
    assert payload.calculated_at == T0
    assert payload.quoted_hours == 60
    # lanes are per kind, so every stage of a fresh order starts right away
    assert {summary.by_stage[s.id].starts_at for s in (scan, design, print_stage)} == {T0}

    deadline = service.store.get_work_order(full_order.id).job_deadline
    assert deadline == max(p.due_at for p in summary.by_stage.values())
    assert deadline == summary.deadlines[full_order.id]


def test_recompute_is_idempotent(service, full_order):
    _print_orders(service, 2)
    first = service.recompute_lead_times()
    deadlines = {o.id: o.job_deadline for o in service.store.list_open_work_orders()}

    second = service.recompute_lead_times()

    assert second.by_stage == first.by_stage
    assert second.deadlines == first.deadlines
    assert {o.id: o.job_deadline for o in service.store.list_open_work_orders()} == deadlines


def test_completed_work_is_not_scheduled(service, full_order):
    service.recompute_lead_times()
    scan, _, _ = stages_of(service, full_order)
    scheduled_before = service.store.get_stage_actual(scan.id).lead_time
    service.transition_stage(scan.id, StageStatus.IN_PROGRESS)
    service.transition_stage(scan.id, StageStatus.COMPLETED)

    (done,) = _print_orders(service, 1)
    (done_stage,) = stages_of(service, done)
    service.transition_stage(done_stage.id, StageStatus.IN_PROGRESS)
    service.transition_stage(done_stage.id, StageStatus.COMPLETED)

    summary = service.recompute_lead_times()

    assert scan.id not in summary.by_stage
    assert done.id not in summary.deadlines
    assert service.store.get_stage_actual(scan.id).lead_time == scheduled_before


def test_recompute_with_nothing_open(service):
    summary = service.recompute_lead_times()
    assert summary.scheduled == []
    assert summary.deadlines == {}


def test_missing_settings_are_seeded():
    settings = SettingsStore()
    config = load_lead_time_config(settings)
    assert sorted(s.key for s in settings.list()) == sorted(LEAD_TIME_SETTING_KEYS)
    assert config == LeadTimeConfig.from_values({})


def test_setting_changes_apply_on_next_recompute(service, full_order):
    _, _, print_stage = stages_of(service, full_order)
    assert service.recompute_lead_times().by_stage[print_stage.id].lead_days == 5

    service.update_setting("lead_time_multiplier_contract_print", 2)

    payload = service.store.get_stage_actual(print_stage.id).lead_time
    assert payload.lead_days == 10
    assert payload.lead_multiplier == 2


def test_non_numeric_stored_setting_falls_back_to_minimum(service):
    load_lead_time_config(service.settings)
    service.settings.settings.upsert(
        "lead_time_hours_threshold",
        Setting(key="lead_time_hours_threshold", label="Threshold", unit="hours", value="lots"),
    )
    assert load_lead_time_config(service.settings).hours_threshold == 1


def test_recompute_keeps_recorded_usage(service, full_order):
    scan, _, _ = stages_of(service, full_order)
    service.record_stage_actual(scan.id, SimpleStageActual(actual_hours=3))

    service.recompute_lead_times()

    actual = service.store.get_stage_actual(scan.id)
    assert actual.actual_hours == 3
    assert actual.lead_time is not None
