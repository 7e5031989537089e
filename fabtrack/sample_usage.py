"""Demonstration script for the fabrication work-order tracker."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pprint import pprint

from . import FabricationService, PrintStageActual, SimpleStageActual, StageKind, StageStatus


def main() -> None:
    shop = FabricationService()
    opened = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

    # Quotes
    shop.add_quote_line_item("Q-1001", StageKind.SCANNING, labor_hours=4)
    shop.add_quote_line_item("Q-1001", StageKind.DESIGN, labor_hours=30)
    shop.add_quote_line_item(
        "Q-1001",
        StageKind.PRINT,
        print_time_hours=40,
        support_removal_hours=2,
        setup_hours=1,
        admin_hours=0.5,
    )
    shop.add_quote_line_item("Q-1002", StageKind.PRINT, print_time_hours=12, setup_hours=0.5)

    # Work orders
    bracket = shop.create_work_order(
        "Lakeside Instruments",
        "Reverse-engineer and print a sensor bracket",
        [StageKind.SCANNING, StageKind.DESIGN, StageKind.PRINT],
        quote_id="Q-1001",
        created_at=opened,
    )
    covers = shop.create_work_order(
        "Pinecrest Audio",
        "Print speaker grille covers",
        [StageKind.PRINT],
        quote_id="Q-1002",
        created_at=opened + timedelta(hours=1),
    )

    # Lead times with a single print lane
    summary = shop.recompute_lead_times()
    print("Stage schedule")
    for entry in summary.scheduled:
        payload = entry.payload
        print(
            f" - {entry.kind.value} ({entry.work_order_id[:8]}), lane {entry.lane_index}:"
            f" {payload.starts_at:%d.%m} -> {payload.due_at:%d.%m} ({payload.lead_days} days)"
        )

    # Adding a second printer lets the covers start right away
    shop.update_setting("lead_time_concurrency_contract_print", 2)
    for order in (bracket, covers):
        deadline = shop.store.get_work_order(order.id).job_deadline
        print(f"Deadline {order.customer_name}: {deadline:%d.%m.%Y}")

    # Shop-floor progress
    scan, design, _ = shop.store.list_stages_for_work_order(bracket.id)
    shop.transition_stage(scan.id, StageStatus.IN_PROGRESS, "Part received")
    shop.transition_stage(scan.id, StageStatus.COMPLETED)
    shop.record_stage_actual(scan.id, SimpleStageActual(actual_hours=5.5))
    shop.transition_stage(design.id, StageStatus.IN_PROGRESS)
    print(f"\nProgress: {shop.progress_label(bracket.id)}")

    (print_stage,) = shop.store.list_stages_for_work_order(covers.id)
    shop.transition_stage(print_stage.id, StageStatus.IN_PROGRESS)
    shop.transition_stage(print_stage.id, StageStatus.COMPLETED)
    shop.record_stage_actual(
        print_stage.id, PrintStageActual(restarted=True, extra_machine_hours=3)
    )

    print("\nQuoted vs actual")
    pprint(shop.reconcile_hours(bracket.id) + shop.reconcile_hours(covers.id))


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
